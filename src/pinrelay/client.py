"""Ingestion façade - wires the primary store, stream duplicator, and pin coordinator."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Sequence

from pinrelay.backends import build_backend
from pinrelay.interfaces.backend import PinBackend
from pinrelay.interfaces.primary import ContentReader, PrimaryStore
from pinrelay.interfaces.store import StateStore
from pinrelay.ipfs.store import KuboStore
from pinrelay.models.config import BufferConfig, RelayConfig
from pinrelay.models.records import CID
from pinrelay.replication.coordinator import FailureCallback, PinCoordinator
from pinrelay.storage.sqlite import SQLiteStateStore
from pinrelay.stream.tee import tee

log = logging.getLogger(__name__)


def _as_cid(cid: CID | str) -> CID:
    return cid if isinstance(cid, CID) else CID.parse(cid)


class PinRelayClient:
    """Uploads to the primary store and replicates to every pinning backend.

    ``add`` and ``pin`` return as soon as the primary store has confirmed;
    backend pinning runs on the coordinator's workers. Only primary-store
    errors (TransportError) and stream errors (BufferOverflow) reach the
    caller. Satisfies the RelayClient protocol.
    """

    def __init__(
        self,
        primary: PrimaryStore,
        coordinator: PinCoordinator,
        buffer: BufferConfig | None = None,
        store: StateStore | None = None,
        backends: Sequence[PinBackend] = (),
    ) -> None:
        self.primary = primary
        self.coordinator = coordinator
        self.store = store
        self._buffer = buffer or BufferConfig()
        self._backends = list(backends)

    @classmethod
    def from_config(
        cls, cfg: RelayConfig, on_failure: FailureCallback | None = None
    ) -> PinRelayClient:
        primary = KuboStore(cfg.kubo_rpc_url, cfg.cid_version, cfg.ipfs_timeout)
        backends = [build_backend(b) for b in cfg.backends]
        store = SQLiteStateStore(cfg.db_path)
        coordinator = PinCoordinator(
            backends,
            policy=cfg.retry.to_retry_policy(),
            workers=cfg.workers,
            pin_timeout=cfg.pin_timeout,
            identify=primary.identify,
            verify_content=cfg.verify_content,
            store=store,
            on_failure=on_failure,
        )
        return cls(primary, coordinator, buffer=cfg.buffer, store=store, backends=backends)

    # ── Lifecycle ─────────────────────────────────────────

    async def start(self) -> None:
        if self.store:
            await self.store.initialize()
        await self.coordinator.start()

    async def close(self, drain_timeout: float | None = None) -> None:
        """Stop replication and release every connection.

        With ``drain_timeout`` set, first wait up to that long for queued
        replication to finish. Work still pending stays in the state store
        and resumes on the next ``start``.
        """
        if drain_timeout is not None and self.coordinator.running:
            try:
                await self.coordinator.drain(drain_timeout)
            except asyncio.TimeoutError:
                log.warning(
                    "Replication not drained after %ss, %d request(s) left queued",
                    drain_timeout, len(self.coordinator.queue),
                )
        await self.coordinator.stop(timeout=drain_timeout)
        for backend in self._backends:
            await backend.close()
        await self.primary.close()
        if self.store:
            await self.store.close()

    async def __aenter__(self) -> PinRelayClient:
        await self.start()
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.close()

    # ── Content ───────────────────────────────────────────

    async def add(self, source: Any) -> CID:
        """Upload ``source`` to the primary store and schedule its replication.

        ``source`` is read exactly once: bytes, an async iterable of bytes,
        or a (sync or async) file-like object.
        """
        buf = self._buffer
        stream = tee(
            source,
            ceiling=buf.ceiling,
            chunk_size=buf.chunk_size,
            spill_threshold=buf.spill_threshold if buf.spill_to_disk else None,
            spill_dir=buf.spill_dir,
        )
        primary, deferred = stream
        if not self.coordinator.wants_content:
            # Replication goes by CID; no need to spool a second copy
            await deferred.aclose()

        try:
            cid = await self.primary.add(primary)
        except BaseException:
            await stream.aclose()
            raise
        await primary.aclose()

        log.info("Added %s to the primary store", cid)
        if self.store:
            await self.store.log_activity("content_added", "Stored on primary", cid=cid.hash)
        await self.coordinator.add(deferred, cid)
        return cid

    async def pin(self, cid: CID | str, retry_failed: bool = False) -> None:
        """Pin an existing CID on the primary store and on every backend.

        Backends that already gave up on ``cid`` are only tried again with
        ``retry_failed``.
        """
        cid = _as_cid(cid)
        await self.coordinator.pin(cid, retry_failed=retry_failed)
        await self.primary.pin(cid)

    async def get(self, cid: CID | str) -> ContentReader:
        return await self.primary.get(_as_cid(cid))

    async def list_pinned(self) -> list[CID]:
        return await self.primary.list_pinned()
