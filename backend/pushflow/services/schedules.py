"""Schedule store - owner records of scheduled and recurring sends."""
import logging
import uuid
from datetime import datetime
from typing import Callable, Optional

from sqlalchemy.ext.asyncio import async_sessionmaker

from ..database import async_session
from ..exceptions import NotFoundError
from ..models.notification_schedule import NotificationSchedule, RepeatRule
from ..schemas.jobs import RepeatConfig
from ..utils.db_utils import retry_on_lock
from ..utils.time_utils import utcnow

logger = logging.getLogger(__name__)


class ScheduleStore:
    """Persists NotificationSchedule records."""

    def __init__(
        self,
        session_factory: async_sessionmaker = async_session,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._session_factory = session_factory
        self._clock = clock

    async def create(
        self,
        template_name: str,
        company_id: str,
        recipients: list[str],
        scheduled_at: datetime,
        variables: Optional[dict] = None,
        timezone: str = "UTC",
        repeat: RepeatRule = RepeatRule.NONE,
        repeat_config: Optional[RepeatConfig] = None,
    ) -> NotificationSchedule:
        """Create an active schedule whose first run is ``scheduled_at``."""
        schedule = NotificationSchedule(
            id=str(uuid.uuid4()),
            template_name=template_name,
            company_id=company_id,
            recipients=list(recipients),
            variables=variables or {},
            timezone=timezone,
            repeat=RepeatRule(repeat).value,
            repeat_config=repeat_config.model_dump(mode="json", exclude_none=True) if repeat_config else None,
            next_run_at=scheduled_at,
            is_active=True,
        )
        async with self._session_factory() as session:
            session.add(schedule)
            await retry_on_lock(session.commit)
            await session.refresh(schedule)
        logger.info(f"Schedule created: {schedule.id} template={template_name} repeat={schedule.repeat}")
        return schedule

    async def get(self, schedule_id: str) -> NotificationSchedule:
        """Load a schedule.

        Raises:
            NotFoundError: no such schedule
        """
        async with self._session_factory() as session:
            schedule = await session.get(NotificationSchedule, schedule_id)
        if schedule is None:
            raise NotFoundError("NotificationSchedule", schedule_id)
        return schedule

    async def deactivate(self, schedule_id: str) -> NotificationSchedule:
        """Stop a repeat chain. Idempotent."""
        async with self._session_factory() as session:
            schedule = await session.get(NotificationSchedule, schedule_id)
            if schedule is None:
                raise NotFoundError("NotificationSchedule", schedule_id)
            schedule.is_active = False
            schedule.next_run_at = None
            await retry_on_lock(session.commit)
            await session.refresh(schedule)
        logger.info(f"Schedule deactivated: {schedule_id}")
        return schedule

    async def record_run(
        self,
        schedule_id: str,
        ran_at: datetime,
        sent: int,
        failed: int,
        next_run_at: Optional[datetime],
    ) -> Optional[NotificationSchedule]:
        """Update counters after a run; a chain without a next run becomes inactive.

        A schedule cancelled while its occurrence was running keeps the counters
        of that run but gets no next run.
        """
        async with self._session_factory() as session:
            schedule = await session.get(NotificationSchedule, schedule_id)
            if schedule is None:
                return None
            schedule.last_run_at = ran_at
            schedule.sent_count = (schedule.sent_count or 0) + sent
            schedule.failed_count = (schedule.failed_count or 0) + failed
            if not schedule.is_active:
                schedule.next_run_at = None
            else:
                schedule.next_run_at = next_run_at
                if next_run_at is None:
                    schedule.is_active = False
            await retry_on_lock(session.commit)
            await session.refresh(schedule)
        return schedule


# Global instance
schedule_store = ScheduleStore()
