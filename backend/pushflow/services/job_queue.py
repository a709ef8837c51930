"""Durable job queue over the scheduled_jobs table.

The queue is the only serialization point between workers:
- claim is a compare-and-swap (queued -> processing) per row, so two worker
  processes can never both claim the same job
- retry with exponential backoff is owned here, not by the dispatcher
- enqueue is idempotent when a dedupe key is given
"""
import json
import logging
import uuid
from datetime import datetime, timedelta
from typing import Callable, Optional, Union

from pydantic import BaseModel
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import async_sessionmaker

from ..config import settings
from ..database import async_session
from ..exceptions import NotFoundError
from ..models.scheduled_job import JobKind, JobStatus, ScheduledJob
from ..schemas.jobs import parse_payload
from ..utils.db_utils import retry_on_lock
from ..utils.time_utils import as_naive_utc, utcnow

logger = logging.getLogger(__name__)

# Longest wait between two attempts of the same job
MAX_BACKOFF_SECONDS = 6 * 3600


class JobQueue:
    """Enqueue, claim, ack and fail jobs."""

    def __init__(
        self,
        session_factory: async_sessionmaker = async_session,
        clock: Callable[[], datetime] = utcnow,
        max_attempts: int = 5,
        backoff_seconds: float = 30.0,
    ):
        self._session_factory = session_factory
        self._clock = clock
        self.max_attempts = max_attempts
        self.backoff_seconds = backoff_seconds

    async def enqueue(
        self,
        kind,
        payload: Union[dict, BaseModel],
        delay: Optional[Union[float, timedelta]] = None,
        scheduled_at: Optional[datetime] = None,
        dedupe_key: Optional[str] = None,
        schedule_id: Optional[str] = None,
        max_attempts: Optional[int] = None,
    ) -> ScheduledJob:
        """Add a job; it becomes due at ``scheduled_at`` or after ``delay``.

        With a dedupe key, enqueueing the same key twice returns the first job.

        Raises:
            ValidationError: unknown kind or malformed payload
        """
        kind = JobKind(kind)
        if isinstance(payload, BaseModel):
            payload = payload.model_dump(mode="json")
        model = parse_payload(kind, payload)

        now = self._clock()
        run_at = now
        if scheduled_at is not None:
            run_at = max(now, as_naive_utc(scheduled_at))
        if delay:
            seconds = delay.total_seconds() if isinstance(delay, timedelta) else float(delay)
            run_at = max(run_at, now + timedelta(seconds=seconds))

        if dedupe_key:
            existing = await self._find_by_dedupe_key(dedupe_key)
            if existing is not None:
                logger.debug(f"Job with dedupe key {dedupe_key} already queued ({existing.id})")
                return existing

        job = ScheduledJob(
            id=str(uuid.uuid4()),
            kind=kind.value,
            payload=json.dumps(model.model_dump(mode="json")),
            status=JobStatus.QUEUED.value,
            attempts=0,
            max_attempts=max_attempts or self.max_attempts,
            run_at=run_at,
            dedupe_key=dedupe_key,
            schedule_id=schedule_id,
            created_at=now,
        )
        async with self._session_factory() as session:
            session.add(job)
            try:
                await retry_on_lock(session.commit)
            except IntegrityError:
                # Lost a race on the dedupe key
                await session.rollback()
                existing = await self._find_by_dedupe_key(dedupe_key)
                if existing is None:
                    raise
                return existing
            await session.refresh(job)

        logger.info(f"Job enqueued: {job.id} kind={kind.value} run_at={run_at.isoformat()}")
        return job

    async def _find_by_dedupe_key(self, dedupe_key: str) -> Optional[ScheduledJob]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(ScheduledJob).where(ScheduledJob.dedupe_key == dedupe_key)
            )
            return result.scalar_one_or_none()

    async def get(self, job_id: str) -> ScheduledJob:
        """Load a job.

        Raises:
            NotFoundError: no such job
        """
        async with self._session_factory() as session:
            job = await session.get(ScheduledJob, job_id)
        if job is None:
            raise NotFoundError("ScheduledJob", job_id)
        return job

    async def list_jobs(self, kind=None, status=None) -> list[ScheduledJob]:
        """Jobs ordered by due time, optionally filtered."""
        query = select(ScheduledJob)
        if kind is not None:
            query = query.where(ScheduledJob.kind == JobKind(kind).value)
        if status is not None:
            query = query.where(ScheduledJob.status == JobStatus(status).value)
        async with self._session_factory() as session:
            result = await session.execute(query.order_by(ScheduledJob.run_at, ScheduledJob.created_at))
            return list(result.scalars().all())

    async def claim(self, limit: int = 10) -> list[ScheduledJob]:
        """Claim up to ``limit`` due jobs for this worker."""
        now = self._clock()
        claimed_ids = []
        async with self._session_factory() as session:
            result = await session.execute(
                select(ScheduledJob.id)
                .where(
                    ScheduledJob.status == JobStatus.QUEUED.value,
                    ScheduledJob.run_at <= now,
                )
                .order_by(ScheduledJob.run_at)
                .limit(limit)
            )
            candidate_ids = list(result.scalars().all())

            for job_id in candidate_ids:
                swapped = await session.execute(
                    update(ScheduledJob)
                    .where(
                        ScheduledJob.id == job_id,
                        ScheduledJob.status == JobStatus.QUEUED.value,
                    )
                    .values(
                        status=JobStatus.PROCESSING.value,
                        locked_at=now,
                        attempts=ScheduledJob.attempts + 1,
                    )
                )
                if swapped.rowcount == 1:
                    claimed_ids.append(job_id)
            await retry_on_lock(session.commit)

            if not claimed_ids:
                return []
            result = await session.execute(
                select(ScheduledJob)
                .where(ScheduledJob.id.in_(claimed_ids))
                .order_by(ScheduledJob.run_at)
            )
            return list(result.scalars().all())

    async def ack(self, job: ScheduledJob, outcome: JobStatus = JobStatus.SUCCEEDED) -> None:
        """Mark a claimed job finished (succeeded or skipped)."""
        outcome = JobStatus(outcome)
        async with self._session_factory() as session:
            await session.execute(
                update(ScheduledJob)
                .where(ScheduledJob.id == job.id)
                .values(status=outcome.value, finished_at=self._clock(), locked_at=None)
            )
            await retry_on_lock(session.commit)
        logger.debug(f"Job {job.id} {outcome.value}")

    def backoff_for(self, attempts: int) -> timedelta:
        """Delay before the next attempt after ``attempts`` failed attempts."""
        seconds = self.backoff_seconds * (2 ** max(0, attempts - 1))
        return timedelta(seconds=min(seconds, MAX_BACKOFF_SECONDS))

    async def fail(self, job: ScheduledJob, error: BaseException) -> JobStatus:
        """Record a failed attempt; re-queue with backoff or give up.

        Returns:
            QUEUED if the job will be retried, FAILED if attempts are exhausted
        """
        now = self._clock()
        async with self._session_factory() as session:
            current = await session.get(ScheduledJob, job.id)
            if current is None:
                raise NotFoundError("ScheduledJob", job.id)
            current.last_error = f"{type(error).__name__}: {error}"
            current.locked_at = None
            if current.attempts < current.max_attempts:
                current.status = JobStatus.QUEUED.value
                current.run_at = now + self.backoff_for(current.attempts)
            else:
                current.status = JobStatus.FAILED.value
                current.finished_at = now
            status = JobStatus(current.status)
            attempts, max_attempts, run_at = current.attempts, current.max_attempts, current.run_at
            await retry_on_lock(session.commit)

        if status == JobStatus.QUEUED:
            logger.warning(f"Job {job.id} ({job.kind}) attempt {attempts}/{max_attempts} failed, retrying at {run_at.isoformat()}")
        else:
            logger.error(f"Job {job.id} ({job.kind}) failed permanently after {attempts} attempts: {error}")
        return status

    async def cancel_for_schedule(self, schedule_id: str) -> int:
        """Cancel queued (not yet claimed) jobs of a schedule."""
        async with self._session_factory() as session:
            result = await session.execute(
                update(ScheduledJob)
                .where(
                    ScheduledJob.schedule_id == schedule_id,
                    ScheduledJob.status == JobStatus.QUEUED.value,
                )
                .values(status=JobStatus.CANCELLED.value, finished_at=self._clock())
            )
            await retry_on_lock(session.commit)
        return result.rowcount

    async def requeue_stale(self, older_than_seconds: int) -> int:
        """Hand jobs back whose worker died mid-flight.

        The interrupted attempt counts towards max_attempts: a stale job that
        has used them all is failed instead of re-queued.

        Returns:
            Number of jobs re-queued
        """
        now = self._clock()
        cutoff = now - timedelta(seconds=older_than_seconds)
        stale = (
            ScheduledJob.status == JobStatus.PROCESSING.value,
            ScheduledJob.locked_at < cutoff,
        )
        async with self._session_factory() as session:
            exhausted = await session.execute(
                update(ScheduledJob)
                .where(*stale, ScheduledJob.attempts >= ScheduledJob.max_attempts)
                .values(
                    status=JobStatus.FAILED.value,
                    locked_at=None,
                    finished_at=now,
                    last_error=f"Worker lost the job for over {older_than_seconds}s on its final attempt",
                )
            )
            result = await session.execute(
                update(ScheduledJob)
                .where(*stale)
                .values(status=JobStatus.QUEUED.value, locked_at=None, run_at=now)
            )
            await retry_on_lock(session.commit)
        if exhausted.rowcount:
            logger.error(f"Failed {exhausted.rowcount} stale jobs that had no attempts left")
        if result.rowcount:
            logger.warning(f"Re-queued {result.rowcount} stale jobs")
        return result.rowcount


# Global instance
job_queue = JobQueue(
    max_attempts=settings.job_max_attempts,
    backoff_seconds=settings.job_backoff_seconds,
)
