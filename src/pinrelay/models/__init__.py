"""Data models for pinrelay."""

from pinrelay.models.records import (
    CID,
    ActivityRecord,
    CoordinatorStats,
    FailureRecord,
    PinJobRecord,
    PinRequest,
    PinResult,
)
from pinrelay.models.config import (
    BackendConfig,
    BackendType,
    BufferConfig,
    RelayConfig,
    RetryConfig,
)

__all__ = [
    "CID", "ActivityRecord", "CoordinatorStats", "FailureRecord",
    "PinJobRecord", "PinRequest", "PinResult",
    "BackendConfig", "BackendType", "BufferConfig", "RelayConfig", "RetryConfig",
]
