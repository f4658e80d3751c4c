"""Deduplicated, time-ordered queue of pending pin requests."""

from __future__ import annotations

import asyncio
import heapq
import itertools
import logging
import time
from collections import OrderedDict

from pinrelay.errors import CancellationError
from pinrelay.models.records import CID, PinRequest
from pinrelay.stream.tee import TeeHandle

log = logging.getLogger(__name__)


class PinQueue:
    """Work queue of pin requests keyed by identifier.

    Each identifier has at most one entry. An entry is either scheduled (in
    the ready heap, ordered by ``next_attempt_at``) or in flight (handed to a
    worker, with ``in_flight`` naming the backends being called). Enqueueing
    an identifier that is already present merges backend sets; backends that
    already confirmed the identifier, or already failed it terminally, are
    dropped.

    All structural mutation happens under one ``asyncio.Condition``; nothing
    awaits backend I/O while holding it.
    """

    def __init__(self, confirmed_cache_size: int = 100_000) -> None:
        self._entries: dict[str, PinRequest] = {}
        self._ready: list[tuple[float, int, str]] = []
        self._scheduled: dict[str, int] = {}  # key -> seq of its live heap item
        self._confirmed: OrderedDict[str, set[str]] = OrderedDict()
        self._failed: OrderedDict[str, set[str]] = OrderedDict()
        self._history_size = confirmed_cache_size
        self._cond = asyncio.Condition()
        self._seq = itertools.count()
        self._content_ids = itertools.count(1)
        self._closed = False

    # ── Introspection ─────────────────────────────────────

    def __len__(self) -> int:
        return len(self._entries)

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def in_flight_count(self) -> int:
        return sum(1 for r in self._entries.values() if r.in_flight)

    def pending(self) -> list[PinRequest]:
        """Snapshot of all queued and in-flight requests."""
        return list(self._entries.values())

    def get(self, key: str) -> PinRequest | None:
        return self._entries.get(key)

    def confirmed(self, cid: CID | str) -> set[str]:
        """Backends that have confirmed ``cid`` (bounded recent history)."""
        return set(self._confirmed.get(str(cid), ()))

    def failed(self, cid: CID | str) -> set[str]:
        """Backends that gave up on ``cid`` (bounded recent history)."""
        return set(self._failed.get(str(cid), ()))

    # ── Producers ─────────────────────────────────────────

    async def enqueue(self, request: PinRequest) -> bool:
        """Add a request, merging into an existing entry for the same identifier.

        Returns True if any new (identifier, backend) work was added; the
        request's ``backends`` is then narrowed to exactly that work.
        """
        async with self._cond:
            if self._closed:
                raise CancellationError("pin queue is closed")

            if request.cid is None:
                request.key = f"content-{next(self._content_ids)}"
                self._entries[request.key] = request
                self._schedule(request)
                return True

            key = request.key = request.cid.hash
            wanted = request.backends - self._settled(key)
            if not wanted:
                return False

            existing = self._entries.get(key)
            if existing is not None:
                new = wanted - existing.backends
                if not new:
                    return False
                # Joins the entry's next round, in flight or scheduled
                existing.backends |= new
                request.backends = new
                log.debug("Merged %d backend(s) into queued request %s", len(new), key)
                return True

            request.backends = wanted
            self._entries[key] = request
            self._schedule(request)
            return True

    # ── Consumers ─────────────────────────────────────────

    async def dequeue(self) -> PinRequest:
        """Block until the earliest-due request is ready and hand it out in flight.

        Raises CancellationError once the queue is closed.
        """
        async with self._cond:
            while True:
                if self._closed:
                    raise CancellationError("pin queue is closed")

                timeout: float | None = None
                while self._ready:
                    at, seq, key = self._ready[0]
                    if self._scheduled.get(key) != seq:
                        heapq.heappop(self._ready)  # stale
                        continue
                    delay = at - time.monotonic()
                    if delay > 0:
                        timeout = delay
                        break
                    heapq.heappop(self._ready)
                    del self._scheduled[key]
                    request = self._entries[key]
                    request.in_flight = set(request.backends)
                    return request

                if timeout is None:
                    await self._cond.wait()
                else:
                    try:
                        await asyncio.wait_for(self._cond.wait(), timeout)
                    except asyncio.TimeoutError:
                        pass

    async def mark_done(self, key: str, backend: str) -> None:
        """``backend`` confirmed the request's identifier."""
        async with self._cond:
            request = self._entries.get(key)
            if request is None:
                return
            request.in_flight.discard(backend)
            request.backends.discard(backend)
            request.last_errors.pop(backend, None)
            if request.cid is not None:
                self._remember(self._confirmed, request.cid.hash, backend)
            self._settle(request)

    async def mark_failed(
        self, key: str, backend: str, error: str, attempts: int, retry_at: float
    ) -> None:
        """``backend`` failed; keep it pending and retry no earlier than ``retry_at``."""
        async with self._cond:
            request = self._entries.get(key)
            if request is None:
                return
            request.in_flight.discard(backend)
            request.attempts[backend] = attempts
            request.last_errors[backend] = error
            request.next_attempt_at = max(request.next_attempt_at, retry_at)
            self._settle(request)

    async def mark_terminal(self, key: str, backend: str, error: str) -> None:
        """``backend`` exhausted its retries; drop it from the request for good.

        The pair is remembered: pinning the identifier again does not bring
        ``backend`` back until ``forget_failed`` clears it.
        """
        async with self._cond:
            request = self._entries.get(key)
            if request is None:
                return
            request.in_flight.discard(backend)
            request.backends.discard(backend)
            request.last_errors[backend] = error
            if request.cid is not None:
                self._remember(self._failed, request.cid.hash, backend)
            self._settle(request)

    def exclude(self, cid: CID | str, backend: str) -> None:
        """Remember a terminal failure recorded by an earlier run."""
        self._remember(self._failed, str(cid), backend)

    def forget_failed(self, cid: CID | str) -> set[str]:
        """Clear the terminal failures of ``cid``. Returns the backends cleared."""
        return self._failed.pop(str(cid), set())

    async def resolve(self, key: str, cid: CID) -> PinRequest | None:
        """Re-key an in-flight pin-by-content request to its identifier.

        Returns the request, still in flight, if the worker should go on to
        pin it. Returns None if the work merged into an existing entry or
        every backend already confirmed (or gave up on) ``cid``.
        """
        async with self._cond:
            request = self._entries.pop(key, None)
            if request is None:
                return None
            if not self._adopt(request, cid):
                self._cond.notify_all()
                return None
            request.in_flight = set(request.backends)
            return request

    async def fall_back(self, key: str) -> PinRequest | None:
        """Stop waiting on an unidentified pin-by-content request.

        With an expected CID the request becomes a pin-by-reference request
        for it and is scheduled again; without one it is dropped. Returns
        the request (check ``resolved`` to tell which), or None when there
        is no unidentified request under ``key``.
        """
        async with self._cond:
            request = self._entries.get(key)
            if request is None or request.resolved:
                return None
            handle = self._release(request)
        if handle is not None:
            await handle.aclose()
        return request

    async def requeue(self, key: str, retry_at: float | None = None) -> None:
        """Return an in-flight request to the ready set without settling it."""
        async with self._cond:
            request = self._entries.get(key)
            if request is None:
                return
            request.in_flight.clear()
            if retry_at is not None:
                request.next_attempt_at = max(request.next_attempt_at, retry_at)
            if request.backends:
                self._schedule(request)
            else:
                self._remove(request)

    # ── Lifecycle ─────────────────────────────────────────

    async def join(self) -> None:
        """Wait until no request is queued or in flight (or the queue closes)."""
        async with self._cond:
            await self._cond.wait_for(lambda: not self._entries or self._closed)

    async def close(self) -> list[PinRequest]:
        """Stop handing out work and wake every waiter.

        Queued pin-by-content requests cannot outlive their stream, so their
        handles are closed. A request that came with an expected CID stays
        queued as a pin-by-reference request for it; one without is dropped.
        Returns every released request; the dropped ones have no ``cid``.
        """
        async with self._cond:
            self._closed = True
            released = [
                r for r in self._entries.values()
                if r.content is not None and not r.in_flight
            ]
            handles = [self._release(r) for r in released]
            self._cond.notify_all()
        for handle in handles:
            if handle is not None:
                await handle.aclose()
        dropped = sum(1 for r in released if not r.resolved)
        if dropped:
            log.warning("Dropped %d unidentified content request(s) on close", dropped)
        return released

    def reopen(self) -> None:
        self._closed = False

    # ── Internals (caller holds the lock) ─────────────────

    def _schedule(self, request: PinRequest) -> None:
        seq = next(self._seq)
        self._scheduled[request.key] = seq
        heapq.heappush(self._ready, (request.next_attempt_at, seq, request.key))
        self._cond.notify_all()

    def _settle(self, request: PinRequest) -> None:
        if request.in_flight:
            return
        if request.backends:
            self._schedule(request)
        else:
            self._remove(request)

    def _remove(self, request: PinRequest) -> None:
        self._entries.pop(request.key, None)
        self._scheduled.pop(request.key, None)
        self._cond.notify_all()

    def _settled(self, cid: str) -> set[str]:
        return self._confirmed.get(cid, set()) | self._failed.get(cid, set())

    def _adopt(self, request: PinRequest, cid: CID) -> bool:
        """Re-key a content request to ``cid``; False when it has nothing left to own."""
        request.content = None
        request.cid = cid
        request.key = cid.hash
        request.backends = request.backends - self._settled(cid.hash)

        existing = self._entries.get(cid.hash)
        if existing is not None:
            existing.backends |= request.backends
            return False
        if not request.backends:
            return False
        self._entries[cid.hash] = request
        return True

    def _release(self, request: PinRequest) -> TeeHandle | None:
        """Take a content request off its stream, keeping it by expected CID if any."""
        handle = request.content
        self._remove(request)
        request.in_flight.clear()
        request.content = None
        if request.expected_cid is not None and self._adopt(request, request.expected_cid):
            self._schedule(request)
        return handle

    def _remember(self, history: OrderedDict[str, set[str]], cid: str, backend: str) -> None:
        history.setdefault(cid, set()).add(backend)
        history.move_to_end(cid)
        while len(history) > self._history_size:
            history.popitem(last=False)
