"""Kubo primary store - adds, pins, and reads content via the Kubo HTTP RPC."""

from __future__ import annotations

import json
import logging
import uuid
from typing import AsyncIterator

import httpx

from pinrelay.errors import TransportError
from pinrelay.models.records import CID

log = logging.getLogger(__name__)


def _kubo_message(resp: httpx.Response) -> str:
    """Extract the error message Kubo puts in its JSON error body."""
    try:
        return str(resp.json().get("Message") or resp.text[:200])
    except ValueError:
        return resp.text[:200]


async def _multipart(
    stream: AsyncIterator[bytes], boundary: str, filename: str = "data"
) -> AsyncIterator[bytes]:
    """Stream a single-file multipart/form-data body without buffering it."""
    yield (
        f"--{boundary}\r\n"
        f'Content-Disposition: form-data; name="file"; filename="{filename}"\r\n'
        "Content-Type: application/octet-stream\r\n\r\n"
    ).encode("utf-8")
    async for chunk in stream:
        yield chunk
    yield f"\r\n--{boundary}--\r\n".encode("utf-8")


class KuboContentReader:
    """Streaming reader over a /api/v0/cat response."""

    def __init__(self, resp: httpx.Response) -> None:
        self._resp = resp
        self._chunks = resp.aiter_bytes()
        self._buffer = b""
        self._eof = False

    async def _next_chunk(self) -> bytes:
        if self._eof:
            return b""
        try:
            return await self._chunks.__anext__()
        except StopAsyncIteration:
            self._eof = True
            return b""
        except httpx.HTTPError as exc:
            raise TransportError(f"kubo cat: {exc}") from exc

    async def read(self, n: int = -1) -> bytes:
        if n is None or n < 0:
            parts = [self._buffer]
            self._buffer = b""
            while chunk := await self._next_chunk():
                parts.append(chunk)
            return b"".join(parts)

        while len(self._buffer) < n:
            chunk = await self._next_chunk()
            if not chunk:
                break
            self._buffer += chunk
        data, self._buffer = self._buffer[:n], self._buffer[n:]
        return data

    async def __aiter__(self) -> AsyncIterator[bytes]:
        if self._buffer:
            data, self._buffer = self._buffer, b""
            yield data
        while chunk := await self._next_chunk():
            yield chunk

    async def aclose(self) -> None:
        await self._resp.aclose()

    async def __aenter__(self) -> KuboContentReader:
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.aclose()


class KuboStore:
    """Primary content-addressed store backed by a Kubo node.

    Uses the Kubo HTTP RPC API at /api/v0/ for:
    - add: upload and pin content (streamed as multipart)
    - add?only-hash: compute the CID of content without storing it
    - pin/add, pin/ls: pin an existing CID, list recursive pins
    - cat: read content back
    """

    def __init__(
        self,
        kubo_rpc_url: str = "http://127.0.0.1:5001",
        cid_version: int = 1,
        timeout: int = 120,
    ) -> None:
        self._base_url = kubo_rpc_url.rstrip("/")
        self._cid_version = cid_version
        self._client = httpx.AsyncClient(timeout=httpx.Timeout(timeout, connect=10))

    def _url(self, endpoint: str) -> str:
        return f"{self._base_url}/api/v0/{endpoint}"

    async def add(self, stream: AsyncIterator[bytes]) -> CID:
        """Upload ``stream`` to Kubo and pin it. Consumes the stream exactly once."""
        cid = await self._add(stream, pin=True, only_hash=False)
        log.info("Added %s to Kubo", cid)
        return cid

    async def identify(self, stream: AsyncIterator[bytes]) -> CID:
        """Compute the CID ``stream`` would get on this node, without storing it."""
        return await self._add(stream, pin=False, only_hash=True)

    async def _add(self, stream: AsyncIterator[bytes], pin: bool, only_hash: bool) -> CID:
        boundary = uuid.uuid4().hex
        params = {
            "cid-version": str(self._cid_version),
            "pin": "true" if pin else "false",
            "only-hash": "true" if only_hash else "false",
            "quieter": "true",
        }
        try:
            resp = await self._client.post(
                self._url("add"),
                params=params,
                content=_multipart(stream, boundary),
                headers={"Content-Type": f"multipart/form-data; boundary={boundary}"},
            )
        except httpx.HTTPError as exc:
            raise TransportError(f"kubo add: {exc}") from exc
        if resp.status_code != 200:
            raise TransportError(
                f"kubo add: HTTP {resp.status_code}: {_kubo_message(resp)}"
            )

        # One JSON object per line; the root is last
        lines = resp.text.strip().splitlines()
        try:
            return CID(json.loads(lines[-1])["Hash"])
        except (IndexError, KeyError, TypeError, ValueError) as exc:
            raise TransportError(f"kubo add: malformed response {resp.text[:200]!r}") from exc

    async def pin(self, cid: CID) -> None:
        try:
            resp = await self._client.post(self._url("pin/add"), params={"arg": cid.hash})
        except httpx.HTTPError as exc:
            raise TransportError(f"kubo pin/add {cid}: {exc}") from exc
        if resp.status_code != 200:
            raise TransportError(
                f"kubo pin/add {cid}: HTTP {resp.status_code}: {_kubo_message(resp)}"
            )
        log.info("Pinned %s on Kubo", cid)

    async def get(self, cid: CID) -> KuboContentReader:
        """Open ``cid`` for reading. HTTP errors are raised before any bytes are read."""
        request = self._client.build_request("POST", self._url("cat"), params={"arg": cid.hash})
        try:
            resp = await self._client.send(request, stream=True)
        except httpx.HTTPError as exc:
            raise TransportError(f"kubo cat {cid}: {exc}") from exc
        if resp.status_code != 200:
            await resp.aread()
            message = _kubo_message(resp)
            await resp.aclose()
            raise TransportError(f"kubo cat {cid}: HTTP {resp.status_code}: {message}")
        return KuboContentReader(resp)

    async def list_pinned(self) -> list[CID]:
        try:
            resp = await self._client.post(self._url("pin/ls"), params={"type": "recursive"})
        except httpx.HTTPError as exc:
            raise TransportError(f"kubo pin/ls: {exc}") from exc
        if resp.status_code != 200:
            raise TransportError(f"kubo pin/ls: HTTP {resp.status_code}: {_kubo_message(resp)}")
        try:
            keys = resp.json().get("Keys") or {}
        except (ValueError, AttributeError) as exc:
            raise TransportError(f"kubo pin/ls: malformed response {resp.text[:200]!r}") from exc
        return [CID(key) for key in keys]

    async def close(self) -> None:
        await self._client.aclose()
