"""PrimaryStore protocol - the content-addressed store content is uploaded to."""

from __future__ import annotations

from typing import AsyncIterator, Protocol

from pinrelay.models.records import CID


class ContentReader(Protocol):
    """Readable content returned by ``PrimaryStore.get``."""

    async def read(self, n: int = -1) -> bytes:
        ...

    def __aiter__(self) -> AsyncIterator[bytes]:
        ...

    async def aclose(self) -> None:
        ...


class PrimaryStore(Protocol):
    """Content-addressed store (an IPFS node). All methods raise TransportError."""

    async def add(self, stream: AsyncIterator[bytes]) -> CID:
        """Consume ``stream`` exactly once, store and pin it, return its CID."""
        ...

    async def identify(self, stream: AsyncIterator[bytes]) -> CID:
        """Consume ``stream`` and return the CID it would get, without storing it."""
        ...

    async def pin(self, cid: CID) -> None:
        """Pin an existing CID on the store."""
        ...

    async def get(self, cid: CID) -> ContentReader:
        """Open the content of ``cid`` for reading."""
        ...

    async def list_pinned(self) -> list[CID]:
        """All CIDs currently pinned on the store."""
        ...

    async def close(self) -> None:
        ...
