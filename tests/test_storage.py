"""Tests 50-54: SQLite state store."""

from __future__ import annotations

from pinrelay.storage.sqlite import SQLiteStateStore


# ── Test 50: Job lifecycle ────────────────────────────────────────


async def test_save_and_settle_jobs(store):
    await store.save_jobs("bafyA", ["b1", "b2"])
    jobs = await store.get_jobs("pending")
    assert [(j.cid, j.backend, j.attempts) for j in jobs] == [
        ("bafyA", "b1", 0), ("bafyA", "b2", 0),
    ]

    await store.mark_job_done("bafyA", "b1")
    await store.mark_job_retry("bafyA", "b2", 1, "HTTP 502")
    pending = await store.get_jobs("pending")
    assert [(j.backend, j.attempts, j.last_error) for j in pending] == [("b2", 1, "HTTP 502")]
    assert [j.backend for j in await store.get_jobs("done")] == ["b1"]


async def test_save_jobs_keeps_pending_attempts(store):
    await store.save_jobs("bafyA", ["b1"])
    await store.mark_job_retry("bafyA", "b1", 4, "slow")
    await store.save_jobs("bafyA", ["b1"])

    [job] = await store.get_jobs()
    assert job.attempts == 4


async def test_save_jobs_restarts_finished_jobs(store):
    await store.save_jobs("bafyA", ["b1", "b2"])
    await store.mark_job_done("bafyA", "b1")
    await store.mark_job_failed("bafyA", "b2", 10, "gone")
    await store.save_jobs("bafyA", ["b1", "b2"])

    jobs = await store.get_jobs("pending")
    assert [(j.backend, j.attempts, j.last_error) for j in jobs] == [
        ("b1", 0, None), ("b2", 0, None),
    ]
    assert await store.get_failures() == []


# ── Test 51: Failures ─────────────────────────────────────────────


async def test_mark_job_failed_without_saved_job(store):
    await store.mark_job_failed("content-1", "b1", 1, "identify: timeout")
    [failure] = await store.get_failures()
    assert failure.cid == "content-1"
    assert failure.attempts == 1
    assert failure.error == "identify: timeout"
    assert failure.failed_at


# ── Test 52: Activity log ─────────────────────────────────────────


async def test_activity_log_newest_first(store):
    await store.log_activity("pin_queued", "first", cid="bafyA")
    await store.log_activity("pin_success", "second", cid="bafyA", backend="b1")
    await store.log_activity("coordinator_stopped", "third")

    recent = await store.get_recent_activity(2)
    assert [a.message for a in recent] == ["third", "second"]
    assert recent[1].backend == "b1"
    assert recent[0].cid is None


# ── Test 53: On-disk database survives reopen ─────────────────────


async def test_jobs_persist_across_connections(tmp_path):
    path = str(tmp_path / "nested" / "state.db")
    first = SQLiteStateStore(path)
    await first.initialize()
    await first.save_jobs("bafyA", ["b1"])
    await first.close()

    second = SQLiteStateStore(path)
    await second.initialize()
    try:
        assert [j.cid for j in await second.get_jobs("pending")] == ["bafyA"]
    finally:
        await second.close()
