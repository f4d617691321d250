"""Tests for the timer-fed delivery queue."""
import asyncio

import pytest

from wahub.services.delivery_queue import DelayQueue


@pytest.fixture
async def queue():
    q = DelayQueue(workers=2)
    await q.start()
    yield q
    await q.stop(timeout=1)


async def test_immediate_jobs_run_on_workers(queue):
    ran = []

    async def job():
        ran.append("x")

    for _ in range(5):
        queue.schedule(0, job)
    await queue.join()

    assert ran == ["x"] * 5
    assert queue.pending == 0


async def test_delayed_job_waits_on_a_timer(queue):
    done = asyncio.Event()

    async def job():
        done.set()

    queue.schedule(0.05, job)
    assert queue.pending == 1
    assert not done.is_set()

    await asyncio.wait_for(done.wait(), timeout=1)


async def test_worker_pool_bounds_concurrency():
    queue = DelayQueue(workers=2)
    await queue.start()
    active = 0
    peak = 0

    async def job():
        nonlocal active, peak
        active += 1
        peak = max(peak, active)
        await asyncio.sleep(0.01)
        active -= 1

    for _ in range(6):
        queue.schedule(0, job)
    await queue.join()
    await queue.stop()

    assert peak == 2


async def test_crashing_job_does_not_kill_the_worker(queue):
    ran = []

    async def broken():
        raise RuntimeError("boom")

    async def job():
        ran.append(1)

    queue.schedule(0, broken)
    queue.schedule(0, job)
    await queue.join()

    assert ran == [1]


async def test_stop_drops_pending_timers():
    queue = DelayQueue(workers=1)
    await queue.start()
    ran = []
    dropped = []

    async def job():
        ran.append(1)

    async def on_drop():
        dropped.append(1)

    queue.schedule(60, job, on_drop=on_drop)
    await queue.stop()

    assert queue.pending == 0
    assert not queue.running
    assert ran == []
    assert dropped == [1]


async def test_retry_scheduled_while_draining_is_dropped_not_orphaned():
    queue = DelayQueue(workers=1)
    await queue.start()
    events = []

    async def retry():
        events.append("retry ran")

    async def retry_dropped():
        events.append("retry dropped")

    async def first_attempt():
        events.append("first attempt")
        queue.schedule(0.01, retry, on_drop=retry_dropped)

    queue.schedule(0, first_attempt)
    await queue.stop()
    await asyncio.sleep(0.05)

    assert events == ["first attempt", "retry dropped"]
    assert queue.pending == 0


async def test_ready_jobs_are_drained_on_stop():
    queue = DelayQueue(workers=1)
    await queue.start()
    ran = []
    dropped = []

    async def job():
        ran.append(1)

    async def on_drop():
        dropped.append(1)

    for _ in range(3):
        queue.schedule(0, job, on_drop=on_drop)
    await queue.stop()

    assert ran == [1, 1, 1]
    assert dropped == []


async def test_failing_drop_handler_does_not_block_the_others():
    queue = DelayQueue(workers=1)
    await queue.start()
    dropped = []

    async def job():
        pass

    async def broken():
        raise RuntimeError("database down")

    async def on_drop():
        dropped.append(1)

    queue.schedule(60, job, on_drop=broken)
    queue.schedule(60, job, on_drop=on_drop)
    await queue.stop()

    assert dropped == [1]


async def test_stopped_queue_refuses_work():
    queue = DelayQueue(workers=1)
    await queue.start()
    await queue.stop()

    async def job():
        pass

    with pytest.raises(RuntimeError):
        queue.schedule(0, job)


def test_needs_a_worker():
    with pytest.raises(ValueError):
        DelayQueue(workers=0)
