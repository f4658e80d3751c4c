"""Synthetic content and identifier factories for testing."""

from __future__ import annotations

import hashlib
import random

from pinrelay.models.records import CID, PinRequest


def make_cid(seed: str | int = "test") -> CID:
    return CID("bafy" + hashlib.sha256(str(seed).encode("utf-8")).hexdigest()[:52])


def make_content(size: int = 10_000, seed: int = 0) -> bytes:
    return random.Random(seed).randbytes(size)


async def chunked(data: bytes, size: int = 1000):
    """Async iterable source that yields ``data`` in fixed-size chunks."""
    for offset in range(0, len(data), size):
        yield data[offset:offset + size]


def make_request(seed: str | int = "test", backends=("b1", "b2"), at: float | None = None) -> PinRequest:
    request = PinRequest.by_reference(make_cid(seed), backends)
    if at is not None:
        request.next_attempt_at = at
    return request
