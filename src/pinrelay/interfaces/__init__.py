"""Protocol interfaces for all pinrelay components."""

from pinrelay.interfaces.backend import PinBackend
from pinrelay.interfaces.client import RelayClient
from pinrelay.interfaces.primary import ContentReader, PrimaryStore
from pinrelay.interfaces.store import StateStore

__all__ = [
    "PinBackend",
    "RelayClient",
    "ContentReader", "PrimaryStore",
    "StateStore",
]
