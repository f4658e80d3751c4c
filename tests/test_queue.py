"""Tests 11-20: Pin request queue ordering, dedup, and lifecycle."""

from __future__ import annotations

import asyncio
import time

import pytest

from pinrelay.errors import CancellationError
from pinrelay.models.records import PinRequest
from pinrelay.replication.queue import PinQueue
from pinrelay.stream.tee import tee

from tests.factories import make_cid, make_request


# ── Test 11: Dedup merge ──────────────────────────────────────────


async def test_enqueue_same_cid_merges():
    queue = PinQueue()
    assert await queue.enqueue(make_request("a", backends=["b1"]))
    assert not await queue.enqueue(make_request("a", backends=["b1"]))

    second = make_request("a", backends=["b1", "b2"])
    assert await queue.enqueue(second)
    assert second.backends == {"b2"}

    assert len(queue) == 1
    assert queue.get(make_cid("a").hash).backends == {"b1", "b2"}


async def test_enqueue_while_in_flight_joins_next_round():
    queue = PinQueue()
    await queue.enqueue(make_request("a", backends=["b1"]))
    request = await queue.dequeue()
    assert request.in_flight == {"b1"}

    assert not await queue.enqueue(make_request("a", backends=["b1"]))
    assert await queue.enqueue(make_request("a", backends=["b2"]))
    assert request.in_flight == {"b1"}

    await queue.mark_done(request.key, "b1")
    again = await asyncio.wait_for(queue.dequeue(), 1)
    assert again is request
    assert again.in_flight == {"b2"}


# ── Test 12: Ordering by next attempt time ────────────────────────


async def test_dequeue_earliest_ready_first():
    queue = PinQueue()
    now = time.monotonic()
    await queue.enqueue(make_request("late", at=now - 1))
    await queue.enqueue(make_request("early", at=now - 5))
    await queue.enqueue(make_request("middle", at=now - 3))

    order = [(await queue.dequeue()).cid for _ in range(3)]
    assert order == [make_cid("early"), make_cid("middle"), make_cid("late")]


async def test_dequeue_waits_until_due():
    queue = PinQueue()
    await queue.enqueue(make_request("a", at=time.monotonic() + 0.2))

    with pytest.raises(asyncio.TimeoutError):
        await asyncio.wait_for(queue.dequeue(), 0.05)
    request = await asyncio.wait_for(queue.dequeue(), 1)
    assert request.cid == make_cid("a")


async def test_dequeue_wakes_on_enqueue():
    queue = PinQueue()
    waiter = asyncio.create_task(queue.dequeue())
    await asyncio.sleep(0.01)
    assert not waiter.done()

    await queue.enqueue(make_request("a"))
    request = await asyncio.wait_for(waiter, 1)
    assert request.cid == make_cid("a")


# ── Test 13: Settling backends ────────────────────────────────────


async def test_mark_failed_reschedules_after_retry_at():
    queue = PinQueue()
    await queue.enqueue(make_request("a", backends=["b1", "b2"]))
    request = await queue.dequeue()

    await queue.mark_done(request.key, "b1")
    assert len(queue) == 1
    retry_at = time.monotonic() + 0.1
    await queue.mark_failed(request.key, "b2", "boom", 1, retry_at)

    assert request.backends == {"b2"}
    assert request.attempts == {"b2": 1}
    assert request.last_errors == {"b2": "boom"}
    assert request.next_attempt_at >= retry_at

    again = await asyncio.wait_for(queue.dequeue(), 1)
    assert time.monotonic() >= retry_at
    assert again.in_flight == {"b2"}


async def test_last_backend_done_removes_request():
    queue = PinQueue()
    await queue.enqueue(make_request("a", backends=["b1"]))
    request = await queue.dequeue()
    await queue.mark_done(request.key, "b1")

    assert len(queue) == 0
    assert queue.confirmed(make_cid("a")) == {"b1"}
    # Confirmed pairs are not queued again
    assert not await queue.enqueue(make_request("a", backends=["b1"]))


async def test_mark_terminal_drops_backend():
    queue = PinQueue()
    await queue.enqueue(make_request("a", backends=["b1", "b2"]))
    request = await queue.dequeue()
    await queue.mark_terminal(request.key, "b1", "gave up")
    await queue.mark_done(request.key, "b2")

    assert len(queue) == 0
    assert queue.confirmed(make_cid("a")) == {"b2"}


# ── Test 14: Requeue ──────────────────────────────────────────────


async def test_requeue_returns_request_untouched():
    queue = PinQueue()
    await queue.enqueue(make_request("a"))
    request = await queue.dequeue()
    await queue.requeue(request.key)

    assert request.in_flight == set()
    assert request.attempts == {}
    again = await asyncio.wait_for(queue.dequeue(), 1)
    assert again is request


# ── Test 15: Pin-by-content requests ──────────────────────────────


async def test_content_request_resolves_to_cid():
    queue = PinQueue()
    stream = tee(b"payload", ceiling=100)
    request = PinRequest.by_content(stream.deferred, ["b1"])
    assert await queue.enqueue(request)
    assert request.key.startswith("content-")

    taken = await queue.dequeue()
    resolved = await queue.resolve(taken.key, make_cid("a"))
    assert resolved is request
    assert resolved.key == make_cid("a").hash
    assert resolved.in_flight == {"b1"}
    assert queue.get(make_cid("a").hash) is request
    await stream.aclose()


async def test_content_request_merges_into_existing_entry():
    queue = PinQueue()
    await queue.enqueue(make_request("a", backends=["b1"]))
    stream = tee(b"payload", ceiling=100)
    await queue.enqueue(PinRequest.by_content(stream.deferred, ["b1", "b2"]))

    # Earliest first: the by-reference request was queued first
    first = await queue.dequeue()
    content = await queue.dequeue()
    assert content.cid is None

    assert await queue.resolve(content.key, make_cid("a")) is None
    assert first.backends == {"b1", "b2"}
    assert len(queue) == 1
    await stream.aclose()


# ── Test 16: Close and join ───────────────────────────────────────


async def test_close_wakes_blocked_dequeue():
    queue = PinQueue()
    waiter = asyncio.create_task(queue.dequeue())
    await asyncio.sleep(0.01)
    await queue.close()

    with pytest.raises(CancellationError):
        await asyncio.wait_for(waiter, 1)
    with pytest.raises(CancellationError):
        await queue.enqueue(make_request("a"))


async def test_close_releases_queued_content():
    queue = PinQueue()
    anonymous = tee(b"payload", ceiling=100)
    known = tee(b"known payload", ceiling=100)
    await queue.enqueue(PinRequest.by_content(anonymous.deferred, ["b1"]))
    await queue.enqueue(
        PinRequest.by_content(known.deferred, ["b1"], expected_cid=make_cid("known")),
    )
    await queue.enqueue(make_request("a"))

    released = await queue.close()
    assert len(released) == 2
    assert anonymous.deferred.closed and known.deferred.closed

    # Content with a known CID stays queued by reference, the rest is dropped
    [dropped] = [r for r in released if not r.resolved]
    assert dropped.expected_cid is None
    kept = queue.get(make_cid("known").hash)
    assert kept is not None and kept.content is None
    assert kept.backends == {"b1"}
    assert len(queue) == 2
    await anonymous.aclose()
    await known.aclose()


async def test_join_waits_for_quiescence():
    queue = PinQueue()
    await queue.enqueue(make_request("a", backends=["b1"]))
    joiner = asyncio.create_task(queue.join())
    request = await queue.dequeue()
    await asyncio.sleep(0.01)
    assert not joiner.done()

    await queue.mark_done(request.key, "b1")
    await asyncio.wait_for(joiner, 1)


async def test_confirmed_cache_is_bounded():
    queue = PinQueue(confirmed_cache_size=2)
    for seed in ("a", "b", "c"):
        await queue.enqueue(make_request(seed, backends=["b1"]))
        request = await queue.dequeue()
        await queue.mark_done(request.key, "b1")

    assert queue.confirmed(make_cid("a")) == set()
    assert queue.confirmed(make_cid("c")) == {"b1"}


# ── Test 17: Terminally failed pairs stay settled ─────────────────


async def test_terminal_pair_is_not_queued_again():
    queue = PinQueue()
    await queue.enqueue(make_request("a", backends=["b1", "b2"]))
    request = await queue.dequeue()
    await queue.mark_terminal(request.key, "b1", "gave up")
    await queue.mark_done(request.key, "b2")

    assert queue.failed(make_cid("a")) == {"b1"}
    assert not await queue.enqueue(make_request("a", backends=["b1", "b2"]))
    assert len(queue) == 0

    assert queue.forget_failed(make_cid("a")) == {"b1"}
    again = make_request("a", backends=["b1", "b2"])
    assert await queue.enqueue(again)
    assert again.backends == {"b1"}


async def test_content_resolving_to_failed_pair_is_absorbed():
    queue = PinQueue()
    queue.exclude(make_cid("a"), "b1")
    stream = tee(b"payload", ceiling=100)
    await queue.enqueue(PinRequest.by_content(stream.deferred, ["b1"]))
    taken = await queue.dequeue()

    assert await queue.resolve(taken.key, make_cid("a")) is None
    assert len(queue) == 0
    await stream.aclose()


async def test_fall_back_rekeys_to_expected_cid():
    queue = PinQueue()
    stream = tee(b"payload", ceiling=100)
    await queue.enqueue(
        PinRequest.by_content(stream.deferred, ["b1"], expected_cid=make_cid("a")),
    )
    taken = await queue.dequeue()

    request = await queue.fall_back(taken.key)
    assert request is taken
    assert request.resolved
    assert request.in_flight == set()
    assert stream.deferred.closed
    assert queue.get(make_cid("a").hash) is request
    assert await queue.fall_back(request.key) is None

    again = await asyncio.wait_for(queue.dequeue(), 1)
    assert again.cid == make_cid("a")
    await stream.aclose()
