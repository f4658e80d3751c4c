"""RelayClient protocol - the public ingestion surface."""

from __future__ import annotations

from typing import Any, Protocol

from pinrelay.interfaces.primary import ContentReader
from pinrelay.models.records import CID


class RelayClient(Protocol):
    """Upload, pin, and read content; replication to backends happens in the background.

    Callers only ever see primary-store and stream errors. Backend failures
    are retried and logged, never returned.
    """

    async def add(self, source: Any) -> CID:
        """Upload content to the primary store and schedule replication."""
        ...

    async def pin(self, cid: CID | str, retry_failed: bool = False) -> None:
        """Pin an existing CID on the primary store and schedule replication."""
        ...

    async def get(self, cid: CID | str) -> ContentReader:
        """Read content back from the primary store."""
        ...

    async def list_pinned(self) -> list[CID]:
        """CIDs pinned on the primary store."""
        ...
