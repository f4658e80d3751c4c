"""Kubo pin backend - asks a secondary Kubo node to pin a CID via its HTTP RPC."""

from __future__ import annotations

import logging
import time

import httpx

from pinrelay.models.records import CID, PinResult

log = logging.getLogger(__name__)


class KuboBackend:
    """Replicates to another Kubo node with /api/v0/pin/add.

    The remote node fetches the blocks over bitswap, so the call can take as
    long as the content is large; the coordinator bounds it. Pinning an
    already-pinned CID is a no-op on Kubo, which makes the call idempotent.
    """

    def __init__(self, name: str, kubo_rpc_url: str, timeout: int = 30) -> None:
        self.name = name
        self._base_url = kubo_rpc_url.rstrip("/")
        self._timeout = timeout

    def _url(self, endpoint: str) -> str:
        return f"{self._base_url}/api/v0/{endpoint}"

    async def pin(self, cid: CID) -> PinResult:
        start = time.monotonic()
        try:
            async with httpx.AsyncClient(
                timeout=httpx.Timeout(self._timeout, connect=10),
            ) as client:
                resp = await client.post(self._url("pin/add"), params={"arg": cid.hash})
        except httpx.TimeoutException:
            return self._failed(cid, start, f"timeout after {self._timeout}s")
        except httpx.HTTPError as exc:
            return self._failed(cid, start, f"{type(exc).__name__}: {exc}")

        if resp.status_code != 200:
            try:
                message = resp.json().get("Message") or resp.text[:200]
            except ValueError:
                message = resp.text[:200]
            return self._failed(cid, start, f"HTTP {resp.status_code}: {message}")

        duration = int((time.monotonic() - start) * 1000)
        log.debug("%s pinned %s in %dms", self.name, cid, duration)
        return PinResult(success=True, cid=cid.hash, backend=self.name, duration_ms=duration)

    def _failed(self, cid: CID, start: float, error: str) -> PinResult:
        duration = int((time.monotonic() - start) * 1000)
        return PinResult(
            success=False, cid=cid.hash, backend=self.name, error=error, duration_ms=duration,
        )

    async def close(self) -> None:
        # Clients are per call
        return None
