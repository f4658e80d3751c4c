"""PinBackend protocol - one external service that can durably pin content."""

from __future__ import annotations

from typing import Protocol

from pinrelay.models.records import CID, PinResult


class PinBackend(Protocol):
    """An independent pinning service (secondary Kubo node, hosted pinning API, ...).

    ``pin`` must be idempotent: pinning an already-pinned CID succeeds.
    Latency and availability are unknown; the coordinator bounds every call.
    """

    name: str

    async def pin(self, cid: CID) -> PinResult:
        """Ask the backend to retain ``cid``. Failures are reported in the result."""
        ...

    async def close(self) -> None:
        """Release any connection pool held by the backend."""
        ...
