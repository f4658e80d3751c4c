"""Shared fixtures for pinrelay tests."""

from __future__ import annotations

import pytest
from pytest_metadata.plugin import metadata_key

from pinrelay.models.config import BufferConfig, RelayConfig, RetryConfig
from pinrelay.replication.backoff import RetryPolicy
from pinrelay.replication.coordinator import PinCoordinator
from pinrelay.storage.sqlite import SQLiteStateStore

from tests.mocks import (
    FakeKubo,
    FakePinningService,
    MockBackend,
    MockPrimaryStore,
    serve,
)

KUBO_RPC_URL = "http://127.0.0.1:5001"


# ── Report metadata ──────────────────────────────────────────────


def pytest_configure(config):
    """Add relay info to the HTML report Environment table."""
    meta = config.stash.setdefault(metadata_key, {})
    meta["Kubo RPC"] = KUBO_RPC_URL
    meta["Package"] = "pinrelay"


def make_test_config(**overrides) -> RelayConfig:
    """Build a RelayConfig suitable for testing."""
    defaults = dict(
        workers=2,
        pin_timeout=5,
        kubo_rpc_url=KUBO_RPC_URL,
        ipfs_timeout=10,
        retry=RetryConfig(max_attempts=3, base_delay=0.01, factor=2.0, max_delay=0.05, jitter=0.0),
        buffer=BufferConfig(ceiling=1_048_576, chunk_size=1024),
        db_path=":memory:",
    )
    defaults.update(overrides)
    return RelayConfig(**defaults)


def fast_policy(**overrides) -> RetryPolicy:
    """Retry policy with millisecond delays."""
    defaults = dict(max_attempts=5, base=0.01, factor=2.0, cap=0.2, jitter=0.0)
    defaults.update(overrides)
    return RetryPolicy(**defaults)


@pytest.fixture
def test_config():
    """Default RelayConfig for tests."""
    return make_test_config()


@pytest.fixture
async def store():
    """Initialized in-memory SQLiteStateStore."""
    s = SQLiteStateStore(":memory:")
    await s.initialize()
    yield s
    await s.close()


@pytest.fixture
def primary():
    return MockPrimaryStore()


@pytest.fixture
def b1():
    return MockBackend("b1")


@pytest.fixture
def b2():
    return MockBackend("b2")


@pytest.fixture
async def coordinator(b1, b2, store, primary):
    """Running PinCoordinator over two mock backends."""
    c = PinCoordinator(
        [b1, b2],
        policy=fast_policy(),
        workers=2,
        pin_timeout=1.0,
        identify=primary.identify,
        store=store,
    )
    await c.start()
    yield c
    await c.stop(timeout=1.0)


@pytest.fixture
async def fake_kubo():
    """(FakeKubo, base_url) served on a local port."""
    kubo = FakeKubo()
    async with serve(kubo.app()) as url:
        yield kubo, url


@pytest.fixture
async def fake_pinning_service():
    """(FakePinningService, base_url) served on a local port."""
    service = FakePinningService()
    async with serve(service.app()) as url:
        yield service, url
