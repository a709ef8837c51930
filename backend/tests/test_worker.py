"""Tests for the queue worker."""
from datetime import timedelta

import pytest

from pushflow.models.scheduled_job import JobKind, JobStatus
from pushflow.services.scheduler import WorkerService

from conftest import START


@pytest.fixture
def worker(queue, notifications, dispatcher, clock):
    return WorkerService(
        queue=queue,
        notifications=notifications,
        tick_seconds=1,
        concurrency=2,
        stale_after_seconds=60,
        token_retention_days=30,
        clock=clock,
        dispatcher=dispatcher,
    )


def broadcast(topic="news") -> dict:
    return {"topic": topic, "title": "T", "body": "B", "company_id": "c1"}


async def test_tick_runs_and_acks_due_jobs(worker, queue, provider):
    first = await queue.enqueue(JobKind.TOPIC_BROADCAST, broadcast("a"))
    second = await queue.enqueue(JobKind.TOPIC_BROADCAST, broadcast("b"))
    later = await queue.enqueue(JobKind.TOPIC_BROADCAST, broadcast("c"), delay=60)

    assert await worker.run_tick() == 2

    assert sorted(topic for topic, _ in provider.topic_calls) == ["a", "b"]
    assert (await queue.get(first.id)).status == JobStatus.SUCCEEDED.value
    assert (await queue.get(second.id)).status == JobStatus.SUCCEEDED.value
    assert (await queue.get(later.id)).status == JobStatus.QUEUED.value


async def test_tick_with_nothing_due(worker):
    assert await worker.run_tick() == 0


async def test_skipped_jobs_are_recorded_as_skipped(worker, queue):
    job = await queue.enqueue(JobKind.BULK_SEND, {"template_id": "gone", "recipients": ["u1"], "company_id": "c1"})

    await worker.run_tick()

    assert (await queue.get(job.id)).status == JobStatus.SKIPPED.value


async def test_failed_job_is_requeued_with_backoff(worker, queue, provider, clock):
    provider.topic_error = "quota exceeded"
    job = await queue.enqueue(JobKind.TOPIC_BROADCAST, broadcast())

    await worker.run_tick()

    stored = await queue.get(job.id)
    assert stored.status == JobStatus.QUEUED.value
    assert stored.attempts == 1
    assert stored.run_at == START + timedelta(seconds=30)
    assert "quota exceeded" in stored.last_error

    # Exhausts the three attempts
    for _ in range(2):
        clock.advance(hours=1)
        await worker.run_tick()
    assert (await queue.get(job.id)).status == JobStatus.FAILED.value


async def test_tick_recovers_stale_jobs(worker, queue, clock):
    job = await queue.enqueue(JobKind.TOPIC_BROADCAST, broadcast())
    await queue.claim()

    clock.advance(seconds=30)
    assert await worker.run_tick() == 0

    clock.advance(seconds=60)
    assert await worker.run_tick() == 1
    stored = await queue.get(job.id)
    assert stored.status == JobStatus.SUCCEEDED.value
    assert stored.attempts == 2


async def test_cleanup_is_enqueued_once_per_day(worker, queue, clock):
    await worker.enqueue_cleanup()
    await worker.enqueue_cleanup()

    jobs = await queue.list_jobs(kind=JobKind.CLEANUP)
    assert len(jobs) == 1
    assert jobs[0].dedupe_key == f"cleanup:{START.date().isoformat()}"
    assert jobs[0].data == {"days_inactive": 30}

    clock.advance(days=1)
    await worker.enqueue_cleanup()
    assert len(await queue.list_jobs(kind=JobKind.CLEANUP)) == 2


async def test_start_and_stop(worker, dispatcher):
    worker.start(dispatcher)
    try:
        assert worker.running
        assert {job.id for job in worker.scheduler.get_jobs()} == {
            "run_jobs",
            "enqueue_cleanup",
            "sweep_expired_notifications",
        }
    finally:
        worker.stop()
    assert not worker.running
