"""Record types for identifiers, pin results, queued work, and persisted state."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from pinrelay.errors import BackendError

if TYPE_CHECKING:
    from pinrelay.stream.tee import TeeHandle


@dataclass(frozen=True)
class CID:
    """Content identifier: an opaque, human-readable hash string."""

    hash: str

    @classmethod
    def parse(cls, text: str) -> CID:
        """Normalize a user-supplied identifier. Multihash decoding is left to the store."""
        value = (text or "").strip()
        if not value or any(c.isspace() for c in value):
            raise ValueError(f"invalid content identifier: {text!r}")
        return cls(value)

    def __str__(self) -> str:
        return self.hash


@dataclass
class PinResult:
    """Result of one pin call against one backend."""

    success: bool
    cid: str
    backend: str
    error: str | None = None
    duration_ms: int = 0

    def raise_for_status(self) -> None:
        if not self.success:
            raise BackendError(self.backend, self.error or "pin failed")


@dataclass
class PinRequest:
    """One unit of replication work for a single identifier.

    ``cid`` is None for pin-by-content requests until the deferred copy in
    ``content`` has been identified. ``backends`` holds the backends not yet
    confirmed; ``in_flight`` the subset a worker is calling right now.
    """

    key: str
    backends: set[str]
    cid: CID | None = None
    content: TeeHandle | None = None
    expected_cid: CID | None = None
    attempts: dict[str, int] = field(default_factory=dict)  # backend -> failed attempts
    created_at: float = field(default_factory=time.monotonic)
    next_attempt_at: float = field(default_factory=time.monotonic)
    in_flight: set[str] = field(default_factory=set)
    last_errors: dict[str, str] = field(default_factory=dict)

    @classmethod
    def by_reference(cls, cid: CID, backends: set[str] | list[str]) -> PinRequest:
        return cls(key=cid.hash, cid=cid, backends=set(backends))

    @classmethod
    def by_content(
        cls,
        content: TeeHandle,
        backends: set[str] | list[str],
        expected_cid: CID | None = None,
    ) -> PinRequest:
        # The queue assigns the provisional key on enqueue
        return cls(
            key="", content=content, expected_cid=expected_cid, backends=set(backends),
        )

    @property
    def resolved(self) -> bool:
        return self.cid is not None

    @property
    def attempt_count(self) -> int:
        return max(self.attempts.values(), default=0)


@dataclass
class FailureRecord:
    """A (CID, backend) pair that exhausted its retry budget."""

    cid: str
    backend: str
    attempts: int
    error: str
    failed_at: str = ""


@dataclass
class PinJobRecord:
    """A (CID, backend) replication job as persisted in the state store."""

    cid: str
    backend: str
    status: str = "pending"  # pending | done | failed
    attempts: int = 0
    last_error: str | None = None
    created_at: str = ""
    updated_at: str = ""


@dataclass
class ActivityRecord:
    """A single activity log entry."""

    id: int
    event_type: str
    cid: str | None
    backend: str | None
    message: str
    created_at: str


@dataclass
class CoordinatorStats:
    """Point-in-time counters for the coordinator."""

    running: bool
    workers: int
    queued: int
    in_flight: int
    pinned: int
    retried: int
    failed: int
