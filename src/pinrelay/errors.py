"""Error types raised by pinrelay."""


class PinRelayError(Exception):
    """Base error for pinrelay."""


class ConfigError(PinRelayError):
    """Raised when configuration loading or validation fails."""


class TransportError(PinRelayError):
    """Raised when the primary store is unreachable or returns a malformed response."""


class BackendError(PinRelayError):
    """Raised when a pinning backend rejects or fails a pin.

    Never surfaced to ``add``/``pin`` callers; the coordinator records and
    retries these.
    """

    def __init__(self, backend: str, message: str) -> None:
        super().__init__(f"{backend}: {message}")
        self.backend = backend
        self.message = message


class BufferOverflow(PinRelayError):
    """Raised when the backlog of a duplicated stream exceeds its ceiling."""

    def __init__(self, ceiling: int, backlog: int) -> None:
        super().__init__(
            f"duplication backlog {backlog} bytes exceeds ceiling of {ceiling} bytes"
        )
        self.ceiling = ceiling
        self.backlog = backlog


class CancellationError(PinRelayError):
    """Raised when a blocking call is interrupted by shutdown."""
