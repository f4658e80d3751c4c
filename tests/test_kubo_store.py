"""Tests 63-70: Kubo primary store against a local RPC stand-in."""

from __future__ import annotations

import pytest

from pinrelay.errors import TransportError
from pinrelay.ipfs.store import KuboStore
from pinrelay.models.records import CID
from pinrelay.stream.tee import tee

from tests.factories import chunked, make_cid, make_content
from tests.mocks import content_cid


@pytest.fixture
async def kubo_store(fake_kubo):
    kubo, url = fake_kubo
    s = KuboStore(url, cid_version=1, timeout=5)
    yield s
    await s.close()


# ── Test 63: Streamed add and read back ───────────────────────────


async def test_add_streams_multipart_and_pins(kubo_store, fake_kubo):
    kubo, _ = fake_kubo
    data = make_content(300_000)

    cid = await kubo_store.add(chunked(data, 16_384))

    assert cid == content_cid(data)
    assert kubo.blocks[cid.hash] == data
    assert cid.hash in kubo.pins
    assert kubo.add_params[0]["cid-version"] == "1"
    assert kubo.add_params[0]["pin"] == "true"


async def test_get_streams_content(kubo_store, fake_kubo):
    kubo, _ = fake_kubo
    data = make_content(100_000, seed=1)
    kubo.blocks["bafyknown"] = data

    async with await kubo_store.get(CID("bafyknown")) as reader:
        head = await reader.read(10)
        rest = b""
        async for chunk in reader:
            rest += chunk
    assert head + rest == data


async def test_add_from_tee_handle(kubo_store):
    data = make_content(20_000, seed=2)
    async with tee(data, ceiling=100_000, chunk_size=4096) as stream:
        cid = await kubo_store.add(stream.primary)
        assert await stream.deferred.read() == data

    reader = await kubo_store.get(cid)
    try:
        assert await reader.read() == data
    finally:
        await reader.aclose()


# ── Test 64: identify does not store ──────────────────────────────


async def test_identify_only_hashes(kubo_store, fake_kubo):
    kubo, _ = fake_kubo
    cid = await kubo_store.identify(chunked(b"just hashing"))

    assert cid == content_cid(b"just hashing")
    assert kubo.blocks == {}
    assert kubo.add_params[0]["only-hash"] == "true"
    assert kubo.add_params[0]["pin"] == "false"


# ── Test 65: pin and list ─────────────────────────────────────────


async def test_pin_and_list(kubo_store, fake_kubo):
    kubo, _ = fake_kubo
    kubo.blocks["bafyexisting"] = b"x"

    await kubo_store.pin(CID("bafyexisting"))
    assert await kubo_store.list_pinned() == [CID("bafyexisting")]


# ── Test 66: Errors map to TransportError ─────────────────────────


async def test_pin_unknown_cid_raises_with_kubo_message(kubo_store):
    with pytest.raises(TransportError, match="not found locally"):
        await kubo_store.pin(make_cid("unknown"))


async def test_get_unknown_cid_raises_before_reading(kubo_store):
    with pytest.raises(TransportError, match="HTTP 500"):
        await kubo_store.get(make_cid("unknown"))


async def test_malformed_add_response(kubo_store, fake_kubo):
    kubo, _ = fake_kubo
    kubo.malformed = True
    with pytest.raises(TransportError, match="malformed"):
        await kubo_store.add(chunked(b"data"))


async def test_unreachable_node():
    s = KuboStore("http://127.0.0.1:1", timeout=2)
    try:
        with pytest.raises(TransportError):
            await s.add(chunked(b"data"))
        with pytest.raises(TransportError):
            await s.list_pinned()
        with pytest.raises(TransportError):
            await s.get(make_cid("x"))
    finally:
        await s.close()
