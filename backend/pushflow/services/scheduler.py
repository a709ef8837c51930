"""Worker service - pulls due jobs from the queue and runs them.

Scalability Design:
- Every process runs its own worker; the queue's atomic claim guarantees
  each job is processed by exactly one of them
- The scheduler ticks every few seconds and claims a bounded batch per tick
- Jobs in flight are limited by a semaphore to prevent resource contention
- Jobs left in "processing" by a dead worker are handed back after a timeout

Capacity: With 10 concurrent jobs and ~2s average fan-out:
- Can drain ~300 jobs per minute per process
- Scale by increasing WORKER_CONCURRENCY or adding more server instances
"""
import asyncio
import logging
from datetime import datetime
from typing import Callable, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from ..config import settings
from ..models.scheduled_job import JobKind, JobStatus, ScheduledJob
from ..schemas.jobs import CleanupPayload
from ..utils.time_utils import utcnow
from .dispatcher import JobDispatcher
from .job_queue import JobQueue, job_queue
from .notification_store import NotificationStore, notification_store

logger = logging.getLogger(__name__)


class WorkerService:
    """Service for claiming and processing queued jobs."""

    def __init__(
        self,
        queue: JobQueue = job_queue,
        notifications: NotificationStore = notification_store,
        tick_seconds: int = 5,
        concurrency: int = 10,
        stale_after_seconds: int = 900,
        token_retention_days: int = 30,
        clock: Callable[[], datetime] = utcnow,
        dispatcher: Optional[JobDispatcher] = None,
    ):
        self.queue = queue
        self.notifications = notifications
        self.tick_seconds = tick_seconds
        self.concurrency = concurrency
        self.stale_after_seconds = stale_after_seconds
        self.token_retention_days = token_retention_days
        self._clock = clock
        self.dispatcher = dispatcher
        self.scheduler: Optional[AsyncIOScheduler] = None
        self._running = False
        self._semaphore = asyncio.Semaphore(concurrency)

    @property
    def running(self) -> bool:
        return self._running

    def start(self, dispatcher: Optional[JobDispatcher] = None):
        """Start the scheduler."""
        if self._running:
            return

        if dispatcher is not None:
            self.dispatcher = dispatcher
        self.scheduler = AsyncIOScheduler()

        # Claim and run due jobs
        self.scheduler.add_job(
            self.run_tick,
            trigger=IntervalTrigger(seconds=self.tick_seconds),
            id="run_jobs",
            replace_existing=True,
            max_instances=1,
            misfire_grace_time=self.tick_seconds,
        )

        # Daily inactive-token sweep (deduplicated across processes)
        self.scheduler.add_job(
            self.enqueue_cleanup,
            trigger=IntervalTrigger(days=1),
            id="enqueue_cleanup",
            replace_existing=True,
            max_instances=1,
        )

        # Archive/delete expired notifications
        self.scheduler.add_job(
            self.sweep_expired_notifications,
            trigger=IntervalTrigger(hours=1),
            id="sweep_expired_notifications",
            replace_existing=True,
            max_instances=1,
        )

        self.scheduler.start()
        self._running = True
        logger.info(f"Worker started (tick={self.tick_seconds}s, max_concurrent={self.concurrency})")

    def stop(self):
        """Stop the scheduler."""
        if self.scheduler and self._running:
            self.scheduler.shutdown(wait=False)
            self._running = False
            logger.info("Worker stopped")

    async def run_tick(self) -> int:
        """Recover stale jobs, claim a batch and run it. Returns the number of jobs run."""
        try:
            await self.queue.requeue_stale(self.stale_after_seconds)
            jobs = await self.queue.claim(limit=self.concurrency * 2)
            if not jobs:
                return 0

            logger.debug(f"Processing {len(jobs)} claimed jobs")
            await asyncio.gather(*[self._run_with_limit(job) for job in jobs])
            return len(jobs)
        except Exception as e:
            logger.error(f"Error running jobs: {e}")
            return 0

    async def _run_with_limit(self, job: ScheduledJob):
        async with self._semaphore:
            await self.run_job(job)

    async def run_job(self, job: ScheduledJob) -> JobStatus:
        """Process one claimed job and settle it in the queue."""
        try:
            outcome = await self.dispatcher.process(job)
        except Exception as e:
            return await self.queue.fail(job, e)
        await self.queue.ack(job, outcome)
        return outcome

    async def enqueue_cleanup(self):
        """Queue today's token sweep; other processes enqueueing the same day are deduplicated."""
        try:
            today = self._clock().date().isoformat()
            await self.queue.enqueue(
                JobKind.CLEANUP,
                CleanupPayload(days_inactive=self.token_retention_days),
                dedupe_key=f"cleanup:{today}",
            )
        except Exception as e:
            logger.error(f"Error enqueueing token cleanup: {e}")

    async def sweep_expired_notifications(self):
        """Archive and delete expired notifications."""
        try:
            await self.notifications.sweep_expired()
        except Exception as e:
            logger.error(f"Error sweeping expired notifications: {e}")


# Global instance
worker_service = WorkerService(
    tick_seconds=settings.worker_tick_seconds,
    concurrency=settings.worker_concurrency,
    stale_after_seconds=settings.job_stale_after_seconds,
    token_retention_days=settings.token_retention_days,
)
