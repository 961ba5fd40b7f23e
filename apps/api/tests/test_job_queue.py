import pytest

from services.job_queue import JobQueue, NackOutcome


@pytest.mark.asyncio
async def test_enqueue_is_idempotent_per_report(session_maker, clock):
    queue = JobQueue(session_maker, clock=clock, max_attempts=3, visibility_timeout_seconds=300)

    first = await queue.enqueue("report-1", "PAINT_ANALYSIS")
    second = await queue.enqueue("report-1", "PAINT_ANALYSIS")

    assert first.job_id == second.job_id
    assert await queue.depth() == 1


@pytest.mark.asyncio
async def test_dequeue_message_schema(session_maker, clock):
    queue = JobQueue(session_maker, clock=clock, max_attempts=3, visibility_timeout_seconds=300)
    await queue.enqueue("report-1", "DAMAGE_ANALYSIS")

    job = await queue.dequeue("worker-a")

    assert job.to_message() == {
        "reportId": "report-1",
        "reportType": "DAMAGE_ANALYSIS",
        "attempt": 1,
        "enqueuedAt": clock.now.isoformat(),
    }
    assert job.leased_by == "worker-a"
    assert await queue.dequeue("worker-b") is None


@pytest.mark.asyncio
async def test_fifo_within_lane_and_priority_first(session_maker, clock):
    queue = JobQueue(session_maker, clock=clock, max_attempts=3, visibility_timeout_seconds=300)
    await queue.enqueue("first", "PAINT_ANALYSIS")
    clock.advance(1)
    await queue.enqueue("second", "PAINT_ANALYSIS")
    clock.advance(1)
    await queue.enqueue("urgent", "PAINT_ANALYSIS", priority=5)

    order = []
    for _ in range(3):
        job = await queue.dequeue("worker")
        order.append(job.report_id)

    assert order == ["urgent", "first", "second"]


@pytest.mark.asyncio
async def test_lane_filter(session_maker, clock):
    queue = JobQueue(session_maker, clock=clock, max_attempts=3, visibility_timeout_seconds=300)
    await queue.enqueue("paint", "PAINT_ANALYSIS")
    await queue.enqueue("engine", "ENGINE_SOUND_ANALYSIS")

    job = await queue.dequeue("worker", lanes=["ENGINE_SOUND_ANALYSIS"])

    assert job.report_id == "engine"
    assert await queue.depth(lane="PAINT_ANALYSIS") == 1


@pytest.mark.asyncio
async def test_unacked_job_is_redelivered_after_visibility_timeout(session_maker, clock):
    queue = JobQueue(session_maker, clock=clock, max_attempts=3, visibility_timeout_seconds=300)
    await queue.enqueue("report-1", "PAINT_ANALYSIS")

    crashed = await queue.dequeue("worker-a")
    clock.advance(299)
    assert await queue.dequeue("worker-b") is None

    clock.advance(2)
    redelivered = await queue.dequeue("worker-b")

    assert redelivered.report_id == "report-1"
    assert redelivered.attempt == 2
    assert redelivered.lease_token != crashed.lease_token
    # The crashed worker's lease is gone; only the current holder can ack.
    assert await queue.ack(crashed) is False
    assert await queue.ack(redelivered) is True
    assert await queue.depth() == 0


@pytest.mark.asyncio
async def test_nack_requeues_with_delay_then_dead_letters(session_maker, clock):
    queue = JobQueue(session_maker, clock=clock, max_attempts=2, visibility_timeout_seconds=300)
    await queue.enqueue("report-1", "VALUE_ESTIMATION")

    job = await queue.dequeue("worker")
    assert await queue.nack(job, retry_after_seconds=30, error="timeout") == NackOutcome.REQUEUED
    assert await queue.dequeue("worker") is None

    clock.advance(30)
    job = await queue.dequeue("worker")
    assert job.attempt == 2
    assert job.is_final_attempt
    assert await queue.nack(job, retry_after_seconds=30, error="timeout") == NackOutcome.DEAD_LETTERED

    clock.advance(3600)
    assert await queue.dequeue("worker") is None
    dead = await queue.dead_letters()
    assert [item.report_id for item in dead] == ["report-1"]
    stats = await queue.stats()
    assert stats["totals"]["dead"] == 1
    assert await queue.depth() == 0


@pytest.mark.asyncio
async def test_nack_with_lost_lease_is_ignored(session_maker, clock):
    queue = JobQueue(session_maker, clock=clock, max_attempts=3, visibility_timeout_seconds=10)
    await queue.enqueue("report-1", "PAINT_ANALYSIS")
    stale = await queue.dequeue("worker-a")
    clock.advance(11)
    current = await queue.dequeue("worker-b")

    assert await queue.nack(stale, retry_after_seconds=0) == NackOutcome.LEASE_LOST
    assert (await queue.get_for_report("report-1")).lease_token == current.lease_token
