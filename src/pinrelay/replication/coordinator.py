"""Pin coordinator - fans queued pin requests out to every registered backend."""

from __future__ import annotations

import asyncio
import inspect
import logging
import time
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Sequence

from pinrelay.errors import BackendError, CancellationError
from pinrelay.interfaces.backend import PinBackend
from pinrelay.interfaces.store import StateStore
from pinrelay.models.records import (
    CID,
    CoordinatorStats,
    FailureRecord,
    PinRequest,
    PinResult,
)
from pinrelay.replication.backoff import RetryPolicy
from pinrelay.replication.queue import PinQueue
from pinrelay.stream.tee import TeeHandle

log = logging.getLogger(__name__)

Identify = Callable[[TeeHandle], Awaitable[CID]]
FailureCallback = Callable[[FailureRecord], Any]


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class PinCoordinator:
    """Replicates identifiers to N pinning backends in the background.

    A fixed pool of worker tasks drains the queue. Each round calls every
    still-pending backend of one request concurrently; successes are
    confirmed, failures are retried with exponential backoff until the
    retry budget runs out, at which point the (identifier, backend) pair is
    recorded as a terminal failure and never retried automatically again.

    ``pin`` and ``add`` only enqueue; nothing on the caller's path waits on a
    backend.
    """

    def __init__(
        self,
        backends: Sequence[PinBackend],
        policy: RetryPolicy | None = None,
        workers: int = 4,
        pin_timeout: float = 60.0,
        identify: Identify | None = None,
        verify_content: bool = False,
        store: StateStore | None = None,
        on_failure: FailureCallback | None = None,
    ) -> None:
        if workers < 1:
            raise ValueError("workers must be >= 1")
        self._backends: dict[str, PinBackend] = {}
        for backend in backends:
            if backend.name in self._backends:
                raise ValueError(f"duplicate backend name: {backend.name}")
            self._backends[backend.name] = backend

        self._policy = policy or RetryPolicy()
        self._worker_count = workers
        self._pin_timeout = pin_timeout
        self._identify = identify
        self._verify_content = verify_content
        self._store = store
        self._on_failure = on_failure

        self._queue = PinQueue()
        self._workers: list[asyncio.Task] = []
        self._running = False
        self._failures: list[FailureRecord] = []
        self._pinned = 0
        self._retried = 0

    # ── Introspection ─────────────────────────────────────

    @property
    def backend_names(self) -> list[str]:
        return list(self._backends)

    @property
    def queue(self) -> PinQueue:
        return self._queue

    @property
    def running(self) -> bool:
        return self._running

    @property
    def wants_content(self) -> bool:
        """True when ``add`` re-reads a deferred copy that comes with a CID."""
        return self._verify_content and self._identify is not None

    @property
    def terminal_failures(self) -> list[FailureRecord]:
        """(CID, backend) pairs that exhausted their retries since construction."""
        return list(self._failures)

    def stats(self) -> CoordinatorStats:
        return CoordinatorStats(
            running=self._running,
            workers=len(self._workers),
            queued=len(self._queue),
            in_flight=self._queue.in_flight_count,
            pinned=self._pinned,
            retried=self._retried,
            failed=len(self._failures),
        )

    # ── Lifecycle ─────────────────────────────────────────

    async def start(self) -> None:
        """Resume persisted jobs and spawn the worker pool. Idempotent."""
        if self._running:
            return
        self._queue.reopen()
        self._running = True
        await self._resume()

        self._workers = [
            asyncio.create_task(self._worker_loop(i), name=f"pinrelay-worker-{i}")
            for i in range(self._worker_count)
        ]
        log.info(
            "Pin coordinator started (workers=%d, backends=%s)",
            self._worker_count, ", ".join(self._backends) or "none",
        )
        if self._store:
            await self._store.log_activity(
                "coordinator_started",
                f"Coordinator started with {len(self._backends)} backend(s)",
            )

    async def stop(self, timeout: float | None = None) -> None:
        """Stop the workers after their current round. Idempotent.

        Workers never start a new round once the queue closes. If ``timeout``
        elapses first, the remaining workers are cancelled and their
        in-flight requests go back to the queue.

        Deferred copies still waiting for a worker are released. Those with
        a known CID are pinned by reference on the next ``start``; the rest
        are recorded as terminal failures.
        """
        if not self._running:
            return
        self._running = False
        for request in await self._queue.close():
            await self._release(request, "shutdown before identification")

        if self._workers:
            _, pending = await asyncio.wait(self._workers, timeout=timeout)
            if pending:
                log.warning("Cancelling %d worker(s) still busy after %ss", len(pending), timeout)
                for task in pending:
                    task.cancel()
                await asyncio.gather(*pending, return_exceptions=True)
        self._workers = []

        if self._store:
            await self._store.log_activity(
                "coordinator_stopped",
                f"Coordinator stopped with {len(self._queue)} request(s) queued",
            )
        log.info("Pin coordinator stopped (%d request(s) left queued)", len(self._queue))

    async def drain(self, timeout: float | None = None) -> None:
        """Wait until the queue is quiescent."""
        await asyncio.wait_for(self._queue.join(), timeout)

    async def _resume(self) -> None:
        """Re-enqueue jobs a previous run left pending in the state store."""
        if not self._store:
            return
        for record in await self._store.get_failures():
            self._queue.exclude(record.cid, record.backend)
        jobs = await self._store.get_jobs("pending")
        requests: dict[str, PinRequest] = {}
        for job in jobs:
            if job.backend not in self._backends:
                log.warning("Skipping pending job for unregistered backend %s", job.backend)
                continue
            request = requests.setdefault(
                job.cid, PinRequest.by_reference(CID(job.cid), []),
            )
            request.backends.add(job.backend)
            request.attempts[job.backend] = job.attempts

        for request in requests.values():
            await self._queue.enqueue(request)
        if requests:
            log.info("Resumed %d pending request(s) from the state store", len(requests))

    # ── Producers ─────────────────────────────────────────

    async def pin(self, cid: CID, retry_failed: bool = False) -> bool:
        """Schedule ``cid`` for every registered backend.

        Returns False when the identifier is already queued, in flight, or
        settled on every backend. A backend that gave up on ``cid`` stays
        settled unless ``retry_failed`` grants it a fresh retry budget.
        Raises CancellationError after ``stop``.
        """
        if retry_failed:
            cleared = self._queue.forget_failed(cid)
            if cleared:
                log.info("Retrying %s on %s after terminal failure", cid, ", ".join(sorted(cleared)))
        request = PinRequest.by_reference(cid, self._backends)
        added = await self._queue.enqueue(request)
        if not added:
            log.debug("Pin of %s absorbed (already queued or settled)", cid)
            return False

        log.info("Queued %s for %d backend(s)", cid, len(request.backends))
        if self._store:
            await self._store.save_jobs(cid.hash, sorted(request.backends))
            await self._store.log_activity(
                "pin_queued", f"Queued for {len(request.backends)} backend(s)", cid=cid.hash,
            )
        return True

    async def add(self, content: TeeHandle, cid: CID | None = None) -> bool:
        """Accept the deferred copy of uploaded content.

        If ``cid`` is known and content verification is off, the copy is
        released right away and ``cid`` is pinned by reference. Otherwise a
        worker identifies the copy first (and checks it against ``cid``).
        """
        if cid is not None and not self.wants_content:
            await content.aclose()
            return await self.pin(cid)
        if self._identify is None:
            await content.aclose()
            raise ValueError("a CID is required when no identify step is configured")
        if not self._backends:
            await content.aclose()
            return False

        request = PinRequest.by_content(content, self._backends, expected_cid=cid)
        try:
            await self._queue.enqueue(request)
        except CancellationError:
            await content.aclose()
            raise
        log.info("Queued deferred content %s for identification", request.key)
        return True

    # ── Workers ───────────────────────────────────────────

    async def _worker_loop(self, index: int) -> None:
        while True:
            try:
                request = await self._queue.dequeue()
            except CancellationError:
                break

            try:
                await self._process(request)
            except asyncio.CancelledError:
                if request.resolved:
                    await self._queue.requeue(request.key)
                else:
                    released = await self._queue.fall_back(request.key)
                    if released is not None:
                        await self._release(released, "worker cancelled before identification")
                raise
            except Exception as exc:
                log.error(
                    "Worker %d failed processing %s: %s", index, request.key, exc, exc_info=True,
                )
                await self._queue.requeue(
                    request.key, retry_at=time.monotonic() + self._policy.delay(1),
                )
        log.debug("Worker %d exiting", index)

    async def _process(self, request: PinRequest) -> None:
        if not request.resolved:
            resolved = await self._resolve_content(request)
            if resolved is None:
                return
            request = resolved

        assert request.cid is not None
        names = [name for name in self._backends if name in request.in_flight]
        results = await asyncio.gather(*(self._pin_one(name, request.cid) for name in names))

        now = time.monotonic()
        for name, result in zip(names, results):
            if result.success:
                await self._confirm(request, name, result)
                continue

            error = result.error or "pin failed"
            attempts = request.attempts.get(name, 0) + 1
            if self._policy.exhausted(attempts):
                await self._give_up(request, name, attempts, error)
                continue

            delay = self._policy.delay(attempts)
            self._retried += 1
            log.warning(
                "Pin of %s on %s failed (attempt %d/%d), retrying in %.1fs: %s",
                request.cid, name, attempts, self._policy.max_attempts, delay, error,
            )
            if self._store:
                await self._store.mark_job_retry(request.cid.hash, name, attempts, error)
                await self._store.log_activity(
                    "pin_retry", f"Attempt {attempts} failed: {error}",
                    cid=request.cid.hash, backend=name,
                )
            await self._queue.mark_failed(request.key, name, error, attempts, now + delay)

    async def _pin_one(self, name: str, cid: CID) -> PinResult:
        """One bounded pin call. Timeouts and exceptions become failed results."""
        start = time.monotonic()
        try:
            return await asyncio.wait_for(self._backends[name].pin(cid), self._pin_timeout)
        except asyncio.TimeoutError:
            error = f"timeout after {self._pin_timeout}s"
        except BackendError as exc:
            error = exc.message
        except Exception as exc:
            log.debug("Backend %s raised on %s", name, cid, exc_info=True)
            error = f"{type(exc).__name__}: {exc}"
        duration = int((time.monotonic() - start) * 1000)
        return PinResult(
            success=False, cid=cid.hash, backend=name, error=error, duration_ms=duration,
        )

    async def _confirm(self, request: PinRequest, name: str, result: PinResult) -> None:
        assert request.cid is not None
        self._pinned += 1
        log.info("Pinned %s on %s in %dms", request.cid, name, result.duration_ms)
        if self._store:
            await self._store.mark_job_done(request.cid.hash, name)
            await self._store.log_activity(
                "pin_success", f"Pinned on {name}", cid=request.cid.hash, backend=name,
            )
        await self._queue.mark_done(request.key, name)

    async def _give_up(
        self, request: PinRequest, name: str, attempts: int, error: str
    ) -> None:
        cid = request.cid or request.expected_cid
        record = FailureRecord(
            cid=cid.hash if cid else request.key,
            backend=name,
            attempts=attempts,
            error=error,
            failed_at=_now(),
        )
        self._failures.append(record)
        log.error(
            "Giving up on %s for backend %s after %d attempt(s): %s",
            record.cid, name, attempts, error,
        )
        if self._store:
            await self._store.mark_job_failed(record.cid, name, attempts, error)
            await self._store.log_activity(
                "pin_failed", f"Gave up after {attempts} attempt(s): {error}",
                cid=record.cid, backend=name,
            )
        if self._on_failure:
            try:
                outcome = self._on_failure(record)
                if inspect.isawaitable(outcome):
                    await outcome
            except Exception as exc:
                log.error("Failure callback raised: %s", exc, exc_info=True)
        await self._queue.mark_terminal(request.key, name, error)

    async def _resolve_content(self, request: PinRequest) -> PinRequest | None:
        """Identify a pin-by-content request's stream and re-key it to its CID.

        When identification itself fails but the primary store already
        reported a CID, that CID is pinned by reference instead. Without one
        the stream is spent and nothing is left to retry, so every backend
        gives up.
        """
        assert self._identify is not None and request.content is not None
        content = request.content
        error = None
        try:
            cid = await self._identify(content)
        except Exception as exc:
            if request.expected_cid is None:
                error = f"identify: {exc}"
            else:
                log.warning(
                    "Could not verify deferred copy of %s, pinning by reference: %s",
                    request.expected_cid, exc,
                )
                cid = request.expected_cid
        finally:
            await content.aclose()

        if error is None and request.expected_cid and cid != request.expected_cid:
            error = f"cid_mismatch: expected {request.expected_cid}, got {cid}"
        if error is not None:
            for name in list(request.in_flight):
                await self._give_up(request, name, 1, error)
            return None

        resolved = await self._queue.resolve(request.key, cid)
        if resolved is None:
            log.debug("Deferred content resolved to %s, already queued or settled", cid)
            return None
        log.info("Deferred content resolved to %s", cid)
        if self._store:
            await self._store.save_jobs(cid.hash, sorted(resolved.backends))
            await self._store.log_activity(
                "content_identified", "Deferred copy identified", cid=cid.hash,
            )
        return resolved

    async def _release(self, request: PinRequest, reason: str) -> None:
        """Account for a content request that lost its stream unidentified."""
        if not request.resolved:
            for name in sorted(request.backends):
                await self._give_up(
                    request, name, request.attempts.get(name, 0), f"content not identified: {reason}",
                )
            return

        assert request.cid is not None
        log.warning("Deferred copy of %s released (%s), pinning by reference", request.cid, reason)
        if self._store and request.backends:
            await self._store.save_jobs(request.cid.hash, sorted(request.backends))
            await self._store.log_activity(
                "pin_queued", f"Queued by reference after {reason}", cid=request.cid.hash,
            )
