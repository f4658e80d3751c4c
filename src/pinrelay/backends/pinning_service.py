"""Pinning Service API backend (Pinata, web3.storage, Filebase, ...)."""

from __future__ import annotations

import logging
import time

import httpx

from pinrelay.models.records import CID, PinResult

log = logging.getLogger(__name__)

# Statuses that mean the service has accepted the pin and will retain it
ACCEPTED_STATUSES = ("queued", "pinning", "pinned")


def _service_error(resp: httpx.Response) -> str:
    """Format the {"error": {"reason", "details"}} body the API returns on failure."""
    try:
        err = resp.json().get("error") or {}
        reason = err.get("reason") or ""
        details = err.get("details") or ""
    except (ValueError, AttributeError):
        return f"HTTP {resp.status_code}: {resp.text[:200]}"
    message = f"{reason}: {details}" if details else reason
    return f"HTTP {resp.status_code}: {message or resp.text[:200]}"


class PinningServiceBackend:
    """Remote pinning via the IPFS Pinning Service API.

    1. GET /pins?cid=<cid>&status=queued,pinning,pinned: if the service
       already has a live pin request, the pin succeeds without a new one
    2. POST /pins {"cid", "name"}: create a pin request; "failed" is a failure

    An accepted request (queued/pinning) counts as success: the service has
    taken responsibility for retaining the content.
    """

    def __init__(self, name: str, url: str, token: str = "", timeout: int = 30) -> None:
        self.name = name
        self._base_url = url.rstrip("/")
        self._token = token
        self._timeout = timeout

    def _headers(self) -> dict[str, str]:
        headers = {"Accept": "application/json"}
        if self._token:
            headers["Authorization"] = f"Bearer {self._token}"
        return headers

    async def pin(self, cid: CID) -> PinResult:
        start = time.monotonic()
        try:
            async with httpx.AsyncClient(
                timeout=httpx.Timeout(self._timeout, connect=10),
                headers=self._headers(),
            ) as client:
                existing = await client.get(
                    f"{self._base_url}/pins",
                    params={
                        "cid": cid.hash,
                        "status": ",".join(ACCEPTED_STATUSES),
                        "limit": "1",
                    },
                )
                if existing.status_code != 200:
                    return self._failed(cid, start, _service_error(existing))
                if existing.json().get("count", 0) > 0:
                    log.debug("%s already holds a pin for %s", self.name, cid)
                    return self._ok(cid, start)

                resp = await client.post(
                    f"{self._base_url}/pins",
                    json={"cid": cid.hash, "name": cid.hash},
                )
                if resp.status_code not in (200, 202):
                    return self._failed(cid, start, _service_error(resp))
                status = resp.json().get("status", "")
        except httpx.TimeoutException:
            return self._failed(cid, start, f"timeout after {self._timeout}s")
        except httpx.HTTPError as exc:
            return self._failed(cid, start, f"{type(exc).__name__}: {exc}")
        except (ValueError, AttributeError) as exc:
            return self._failed(cid, start, f"malformed response: {exc}")

        if status not in ACCEPTED_STATUSES:
            return self._failed(cid, start, f"pin request {status or 'rejected'}")
        return self._ok(cid, start)

    def _ok(self, cid: CID, start: float) -> PinResult:
        duration = int((time.monotonic() - start) * 1000)
        return PinResult(success=True, cid=cid.hash, backend=self.name, duration_ms=duration)

    def _failed(self, cid: CID, start: float, error: str) -> PinResult:
        duration = int((time.monotonic() - start) * 1000)
        return PinResult(
            success=False, cid=cid.hash, backend=self.name, error=error, duration_ms=duration,
        )

    async def close(self) -> None:
        return None
