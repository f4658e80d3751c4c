"""SQLite implementation of the StateStore protocol."""

from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path

import aiosqlite

from pinrelay.models.records import ActivityRecord, FailureRecord, PinJobRecord

SCHEMA = """
-- (CID, backend) replication jobs
CREATE TABLE IF NOT EXISTS pin_jobs (
    cid TEXT NOT NULL,
    backend TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'pending',
    attempts INTEGER NOT NULL DEFAULT 0,
    last_error TEXT,
    created_at TEXT NOT NULL DEFAULT (datetime('now')),
    updated_at TEXT NOT NULL DEFAULT (datetime('now')),
    PRIMARY KEY (cid, backend)
);
CREATE INDEX IF NOT EXISTS idx_pin_jobs_status ON pin_jobs(status);

-- Activity log
CREATE TABLE IF NOT EXISTS activity_log (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    event_type TEXT NOT NULL,
    cid TEXT,
    backend TEXT,
    message TEXT NOT NULL,
    created_at TEXT NOT NULL DEFAULT (datetime('now'))
);
CREATE INDEX IF NOT EXISTS idx_activity_created ON activity_log(created_at);
"""


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class SQLiteStateStore:
    """SQLite-backed implementation of the StateStore protocol."""

    def __init__(self, db_path: str) -> None:
        self._db_path = db_path
        self._db: aiosqlite.Connection | None = None

    async def initialize(self) -> None:
        if self._db_path != ":memory:":
            Path(self._db_path).parent.mkdir(parents=True, exist_ok=True)
        self._db = await aiosqlite.connect(self._db_path)
        self._db.row_factory = aiosqlite.Row
        await self._db.executescript(SCHEMA)
        await self._db.commit()

    async def close(self) -> None:
        if self._db:
            await self._db.close()
            self._db = None

    @property
    def db(self) -> aiosqlite.Connection:
        assert self._db is not None, "Store not initialized. Call initialize() first."
        return self._db

    # ── Pin jobs ───────────────────────────────────────────

    async def save_jobs(self, cid: str, backends: list[str]) -> None:
        """Record pending jobs; finished jobs for the same pair start over."""
        now = _now()
        await self.db.executemany(
            "INSERT INTO pin_jobs (cid, backend, status, attempts, created_at, updated_at)"
            " VALUES (?, ?, 'pending', 0, ?, ?)"
            " ON CONFLICT(cid, backend) DO UPDATE SET"
            " status='pending', attempts=0, last_error=NULL, updated_at=excluded.updated_at"
            " WHERE pin_jobs.status != 'pending'",
            [(cid, backend, now, now) for backend in backends],
        )
        await self.db.commit()

    async def mark_job_done(self, cid: str, backend: str) -> None:
        await self.db.execute(
            "UPDATE pin_jobs SET status='done', last_error=NULL, updated_at=?"
            " WHERE cid=? AND backend=?",
            (_now(), cid, backend),
        )
        await self.db.commit()

    async def mark_job_retry(
        self, cid: str, backend: str, attempts: int, error: str
    ) -> None:
        await self.db.execute(
            "UPDATE pin_jobs SET attempts=?, last_error=?, updated_at=?"
            " WHERE cid=? AND backend=?",
            (attempts, error, _now(), cid, backend),
        )
        await self.db.commit()

    async def mark_job_failed(
        self, cid: str, backend: str, attempts: int, error: str
    ) -> None:
        now = _now()
        await self.db.execute(
            "INSERT INTO pin_jobs"
            " (cid, backend, status, attempts, last_error, created_at, updated_at)"
            " VALUES (?, ?, 'failed', ?, ?, ?, ?)"
            " ON CONFLICT(cid, backend) DO UPDATE SET status='failed',"
            " attempts=excluded.attempts, last_error=excluded.last_error,"
            " updated_at=excluded.updated_at",
            (cid, backend, attempts, error, now, now),
        )
        await self.db.commit()

    async def get_jobs(self, status: str | None = None) -> list[PinJobRecord]:
        if status:
            query = "SELECT * FROM pin_jobs WHERE status=? ORDER BY created_at, cid, backend"
            params: tuple = (status,)
        else:
            query = "SELECT * FROM pin_jobs ORDER BY created_at, cid, backend"
            params = ()
        async with self.db.execute(query, params) as cur:
            return [_row_to_job(row) async for row in cur]

    async def get_failures(self) -> list[FailureRecord]:
        async with self.db.execute(
            "SELECT * FROM pin_jobs WHERE status='failed' ORDER BY updated_at"
        ) as cur:
            return [
                FailureRecord(
                    cid=row["cid"],
                    backend=row["backend"],
                    attempts=row["attempts"],
                    error=row["last_error"] or "",
                    failed_at=row["updated_at"],
                )
                async for row in cur
            ]

    # ── Activity log ───────────────────────────────────────

    async def log_activity(
        self,
        event_type: str,
        message: str,
        cid: str | None = None,
        backend: str | None = None,
    ) -> None:
        await self.db.execute(
            "INSERT INTO activity_log (event_type, cid, backend, message, created_at)"
            " VALUES (?, ?, ?, ?, ?)",
            (event_type, cid, backend, message, _now()),
        )
        await self.db.commit()

    async def get_recent_activity(self, limit: int = 50) -> list[ActivityRecord]:
        async with self.db.execute(
            "SELECT * FROM activity_log ORDER BY created_at DESC, id DESC LIMIT ?", (limit,)
        ) as cur:
            return [
                ActivityRecord(
                    id=row["id"],
                    event_type=row["event_type"],
                    cid=row["cid"],
                    backend=row["backend"],
                    message=row["message"],
                    created_at=row["created_at"],
                )
                async for row in cur
            ]


def _row_to_job(row: aiosqlite.Row) -> PinJobRecord:
    return PinJobRecord(
        cid=row["cid"],
        backend=row["backend"],
        status=row["status"],
        attempts=row["attempts"],
        last_error=row["last_error"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )
