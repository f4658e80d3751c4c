"""Configuration loading: TOML file + environment variables."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any

try:
    import tomllib  # Python 3.11+
except ModuleNotFoundError:
    import tomli as tomllib  # type: ignore[no-redef]

from pinrelay.errors import ConfigError
from pinrelay.models.config import (
    BackendConfig,
    BackendType,
    BufferConfig,
    RelayConfig,
    RetryConfig,
)

LOG_LEVELS = ("debug", "info", "warning", "error", "critical")


def _int(section: str, key: str, value: Any, minimum: int = 0) -> int:
    try:
        number = int(value)
    except (TypeError, ValueError):
        raise ConfigError(f"[{section}] {key} must be an integer, got {value!r}") from None
    if number < minimum:
        raise ConfigError(f"[{section}] {key} must be >= {minimum}, got {number}")
    return number


def _float(section: str, key: str, value: Any, minimum: float = 0.0) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError):
        raise ConfigError(f"[{section}] {key} must be a number, got {value!r}") from None
    if number < minimum:
        raise ConfigError(f"[{section}] {key} must be >= {minimum}, got {number}")
    return number


def load_config(
    config_path: str | Path | None = None,
    env_prefix: str = "PINRELAY_",
) -> RelayConfig:
    """Load relay configuration from a TOML file and env vars.

    Priority (highest wins):
        1. Environment variables (PINRELAY_KUBO_RPC_URL, etc.)
        2. TOML config file
        3. Defaults from RelayConfig

    Raises ConfigError on unreadable files or invalid values.
    """
    raw: dict = {}
    if config_path is not None:
        p = Path(config_path).expanduser()
        if p.exists():
            try:
                with open(p, "rb") as f:
                    raw = tomllib.load(f)
            except tomllib.TOMLDecodeError as exc:
                raise ConfigError(f"{p}: {exc}") from exc

    values: dict[str, Any] = {}

    # ── Relay section ──────────────────────────────────────
    relay = raw.get("relay", {})
    if (v := relay.get("workers")) is not None:
        values["workers"] = _int("relay", "workers", v, minimum=1)
    if (v := relay.get("pin_timeout")) is not None:
        values["pin_timeout"] = _int("relay", "pin_timeout", v, minimum=1)
    if (v := relay.get("verify_content")) is not None:
        values["verify_content"] = bool(v)
    if v := relay.get("log_level"):
        values["log_level"] = str(v)

    # ── IPFS section ───────────────────────────────────────
    ipfs = raw.get("ipfs", {})
    if v := ipfs.get("kubo_rpc_url"):
        values["kubo_rpc_url"] = str(v)
    if (v := ipfs.get("cid_version")) is not None:
        values["cid_version"] = _int("ipfs", "cid_version", v)
    if (v := ipfs.get("timeout")) is not None:
        values["ipfs_timeout"] = _int("ipfs", "timeout", v, minimum=1)

    # ── Retry section ──────────────────────────────────────
    retry = raw.get("retry", {})
    defaults = RetryConfig()
    values["retry"] = RetryConfig(
        max_attempts=_int("retry", "max_attempts", retry.get("max_attempts", defaults.max_attempts), 1),
        base_delay=_float("retry", "base_delay", retry.get("base_delay", defaults.base_delay)),
        factor=_float("retry", "factor", retry.get("factor", defaults.factor), 1.0),
        max_delay=_float("retry", "max_delay", retry.get("max_delay", defaults.max_delay)),
        jitter=_float("retry", "jitter", retry.get("jitter", defaults.jitter)),
    )

    # ── Buffer section ─────────────────────────────────────
    buffer = raw.get("buffer", {})
    buf_defaults = BufferConfig()
    values["buffer"] = BufferConfig(
        ceiling=_int("buffer", "ceiling", buffer.get("ceiling", buf_defaults.ceiling)),
        chunk_size=_int("buffer", "chunk_size", buffer.get("chunk_size", buf_defaults.chunk_size), 1),
        spill_to_disk=bool(buffer.get("spill_to_disk", buf_defaults.spill_to_disk)),
        spill_threshold=_int(
            "buffer", "spill_threshold",
            buffer.get("spill_threshold", buf_defaults.spill_threshold),
        ),
        spill_dir=buffer.get("spill_dir", buf_defaults.spill_dir),
    )

    # ── Storage section ────────────────────────────────────
    storage = raw.get("storage", {})
    if v := storage.get("db_path"):
        values["db_path"] = str(v)

    # ── Backends ───────────────────────────────────────────
    values["backends"] = tuple(_load_backends(raw.get("backends", [])))

    # ── Environment variable overrides (highest priority) ──
    if url := os.environ.get(f"{env_prefix}KUBO_RPC_URL"):
        values["kubo_rpc_url"] = url
    if db := os.environ.get(f"{env_prefix}DB_PATH"):
        values["db_path"] = db
    if workers := os.environ.get(f"{env_prefix}WORKERS"):
        values["workers"] = _int("env", f"{env_prefix}WORKERS", workers, minimum=1)
    if level := os.environ.get(f"{env_prefix}LOG_LEVEL"):
        values["log_level"] = level

    if "log_level" in values:
        values["log_level"] = values["log_level"].lower()
        if values["log_level"] not in LOG_LEVELS:
            raise ConfigError(f"unknown log level {values['log_level']!r}")

    # Expand ~ in paths
    if values.get("db_path", RelayConfig.db_path) != ":memory:":
        values["db_path"] = str(Path(values.get("db_path", RelayConfig.db_path)).expanduser())

    return RelayConfig(**values)


def _load_backends(entries: list[dict]) -> list[BackendConfig]:
    """Build [[backends]] entries, resolving tokens from their ``token_env``."""
    backends: list[BackendConfig] = []
    seen: set[str] = set()
    for entry in entries:
        name = entry.get("name")
        if not name:
            raise ConfigError("[[backends]] entry without a name")
        if name in seen:
            raise ConfigError(f"duplicate backend name: {name}")
        seen.add(name)

        try:
            kind = BackendType(entry.get("type", BackendType.KUBO.value))
        except ValueError:
            raise ConfigError(f"backend {name}: unknown type {entry.get('type')!r}") from None
        url = entry.get("url")
        if not url:
            raise ConfigError(f"backend {name}: url is required")

        token = str(entry.get("token", ""))
        if token_env := entry.get("token_env"):
            token = os.environ.get(token_env, token)
        if kind == BackendType.PINNING_SERVICE and not token:
            raise ConfigError(f"backend {name}: pinning services need a token or token_env")

        backends.append(BackendConfig(
            name=str(name),
            type=kind,
            url=str(url),
            token=token,
            timeout=_int(f"backends.{name}", "timeout", entry.get("timeout", 30), 1),
        ))
    return backends
