"""Tier 2 fixtures: real Kubo daemon."""

from __future__ import annotations

import httpx
import pytest

from pinrelay.client import PinRelayClient
from pinrelay.ipfs.store import KuboStore
from pinrelay.models.config import BackendConfig, BackendType

from tests.conftest import KUBO_RPC_URL, make_test_config


@pytest.fixture(scope="session")
def kubo_available():
    """Check if local Kubo daemon is running. Skip tier2 tests if not."""
    try:
        r = httpx.post(f"{KUBO_RPC_URL}/api/v0/id", timeout=3)
        if r.status_code == 200:
            return True
        pytest.skip(f"Kubo daemon not available at {KUBO_RPC_URL}")
    except (httpx.ConnectError, httpx.TimeoutException):
        pytest.skip(f"Kubo daemon not available at {KUBO_RPC_URL}")


@pytest.fixture
async def real_store(kubo_available):
    """Real KuboStore for Tier 2 tests."""
    cfg = make_test_config()
    s = KuboStore(cfg.kubo_rpc_url, cfg.cid_version, cfg.ipfs_timeout)
    yield s
    await s.close()


@pytest.fixture
async def real_client(kubo_available, tmp_path):
    """PinRelayClient that replicates back to the same node as a Kubo backend."""
    cfg = make_test_config(
        db_path=str(tmp_path / "state.db"),
        backends=(BackendConfig(name="self", type=BackendType.KUBO, url=KUBO_RPC_URL),),
    )
    client = PinRelayClient.from_config(cfg)
    await client.start()
    yield client
    await client.close(drain_timeout=10)


@pytest.fixture
async def unpin_after(kubo_available):
    """Collects CIDs to unpin from the local node on teardown."""
    cids: list[str] = []
    yield cids
    async with httpx.AsyncClient() as client:
        for cid in cids:
            await client.post(f"{KUBO_RPC_URL}/api/v0/pin/rm", params={"arg": cid})
