"""Pin backend implementations."""

from __future__ import annotations

from pinrelay.backends.kubo import KuboBackend
from pinrelay.backends.pinning_service import PinningServiceBackend
from pinrelay.errors import ConfigError
from pinrelay.interfaces.backend import PinBackend
from pinrelay.models.config import BackendConfig, BackendType


def build_backend(cfg: BackendConfig) -> PinBackend:
    """Construct the backend variant named by ``cfg.type``."""
    if cfg.type == BackendType.KUBO:
        return KuboBackend(cfg.name, cfg.url, timeout=cfg.timeout)
    if cfg.type == BackendType.PINNING_SERVICE:
        return PinningServiceBackend(cfg.name, cfg.url, token=cfg.token, timeout=cfg.timeout)
    raise ConfigError(f"unknown backend type for {cfg.name}: {cfg.type}")


__all__ = ["KuboBackend", "PinningServiceBackend", "build_backend"]
