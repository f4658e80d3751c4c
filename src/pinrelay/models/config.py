"""Configuration models for the relay."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum

from pinrelay.replication.backoff import RetryPolicy


class BackendType(str, Enum):
    """Kind of external pinning backend."""

    KUBO = "kubo"  # Secondary Kubo node via /api/v0/pin/add
    PINNING_SERVICE = "pinning_service"  # IPFS Pinning Service API (Pinata, web3.storage, ...)


@dataclass(frozen=True)
class BackendConfig:
    """One registered pinning backend."""

    name: str
    type: BackendType
    url: str
    token: str = ""
    timeout: int = 30  # seconds per HTTP request


@dataclass(frozen=True)
class RetryConfig:
    """Retry and backoff parameters for backend pins."""

    max_attempts: int = 10
    base_delay: float = 1.0  # seconds
    factor: float = 2.0
    max_delay: float = 300.0  # 5 minutes
    jitter: float = 0.1  # fraction of the delay added at random

    def to_retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_attempts=self.max_attempts,
            base=self.base_delay,
            factor=self.factor,
            cap=self.max_delay,
            jitter=self.jitter,
        )


@dataclass(frozen=True)
class BufferConfig:
    """Stream duplication limits."""

    ceiling: int = 268_435_456  # 256 MiB of lag before BufferOverflow
    chunk_size: int = 65_536
    spill_to_disk: bool = False
    spill_threshold: int = 8_388_608  # 8 MiB held in memory before spilling
    spill_dir: str | None = None


@dataclass(frozen=True)
class RelayConfig:
    """Complete relay configuration. Built once, never mutated by the core."""

    # Relay
    workers: int = 4
    pin_timeout: int = 60  # seconds per backend pin call
    verify_content: bool = False  # re-hash the deferred copy before replicating
    log_level: str = "info"

    # IPFS (primary store)
    kubo_rpc_url: str = "http://127.0.0.1:5001"
    cid_version: int = 1
    ipfs_timeout: int = 120  # seconds

    # Replication
    retry: RetryConfig = field(default_factory=RetryConfig)
    buffer: BufferConfig = field(default_factory=BufferConfig)
    backends: tuple[BackendConfig, ...] = ()

    # Storage
    db_path: str = "~/.pinrelay/state.db"
