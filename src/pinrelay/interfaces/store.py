"""StateStore protocol - persists replication jobs for crash recovery and auditing."""

from __future__ import annotations

from typing import Protocol

from pinrelay.models.records import ActivityRecord, FailureRecord, PinJobRecord


class StateStore(Protocol):
    """Persists (CID, backend) job state and an activity log."""

    # ── Lifecycle ──────────────────────────────────────────

    async def initialize(self) -> None:
        """Create tables if they don't exist."""
        ...

    async def close(self) -> None:
        """Close the database connection."""
        ...

    # ── Pin jobs ───────────────────────────────────────────

    async def save_jobs(self, cid: str, backends: list[str]) -> None:
        ...

    async def mark_job_done(self, cid: str, backend: str) -> None:
        ...

    async def mark_job_retry(
        self, cid: str, backend: str, attempts: int, error: str
    ) -> None:
        ...

    async def mark_job_failed(
        self, cid: str, backend: str, attempts: int, error: str
    ) -> None:
        ...

    async def get_jobs(self, status: str | None = None) -> list[PinJobRecord]:
        ...

    async def get_failures(self) -> list[FailureRecord]:
        ...

    # ── Activity log ───────────────────────────────────────

    async def log_activity(
        self,
        event_type: str,
        message: str,
        cid: str | None = None,
        backend: str | None = None,
    ) -> None:
        ...

    async def get_recent_activity(self, limit: int = 50) -> list[ActivityRecord]:
        ...
