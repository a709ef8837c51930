"""Notifier - caller-facing API mapping requests onto queue jobs.

Every call validates its input before touching persistence or the queue, so
a ValidationError means nothing was written.
"""
import logging
from datetime import datetime
from typing import Iterable, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from ..exceptions import NotFoundError, ValidationError
from ..models.notification import Priority
from ..models.notification_schedule import NotificationSchedule
from ..models.scheduled_job import JobKind, ScheduledJob
from ..schemas.jobs import RepeatConfig, ScheduledSendPayload, parse_payload
from .job_queue import JobQueue, job_queue
from .schedule_calculator import next_occurrence, pin_anchor_day
from .schedules import ScheduleStore, schedule_store
from .templates import TemplateStore, template_store

logger = logging.getLogger(__name__)


def _recipients(recipients: Iterable[str]) -> list[str]:
    """De-duplicated, order-preserving recipient list."""
    if isinstance(recipients, str):
        recipients = [recipients]
    cleaned = list(dict.fromkeys(r for r in recipients if r))
    if not cleaned:
        raise ValidationError("At least one recipient is required", field="recipients")
    return cleaned


def _check_timezone(name: str) -> str:
    try:
        ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        raise ValidationError(f"Unknown timezone: {name}", field="timezone") from None
    return name


class Notifier:
    """Send, schedule, broadcast and maintenance entry points."""

    def __init__(
        self,
        queue: JobQueue = job_queue,
        templates: TemplateStore = template_store,
        schedules: ScheduleStore = schedule_store,
    ):
        self.queue = queue
        self.templates = templates
        self.schedules = schedules

    async def send_notification(
        self,
        user_id: str,
        company_id: str,
        template_name: str,
        variables: Optional[dict] = None,
        priority: Optional[Priority] = None,
        scheduled_at: Optional[datetime] = None,
        expires_at: Optional[datetime] = None,
    ) -> ScheduledJob:
        """Send the active template named ``template_name`` to one user.

        The created record is archived by the expiry sweep once ``expires_at`` passes.

        Raises:
            ValidationError: malformed input
            NotFoundError: no active template with that name
            ConfigurationError: several active templates share the name
        """
        recipients = _recipients([user_id])
        if not template_name:
            raise ValidationError("template_name is required", field="template_name")

        template = await self.templates.resolve(template_name)
        if template is None:
            raise NotFoundError("NotificationTemplate", template_name)

        payload = parse_payload(JobKind.BULK_SEND, {
            "template_id": template.id,
            "recipients": recipients,
            "company_id": company_id,
            "variables": variables or {},
            "priority": priority,
            "scheduled_at": scheduled_at,
            "expires_at": expires_at,
        })
        return await self.queue.enqueue(JobKind.BULK_SEND, payload, scheduled_at=payload.scheduled_at)

    async def send_bulk(
        self,
        template_id: str,
        recipients: Iterable[str],
        company_id: str,
        variables: Optional[dict] = None,
        priority: Optional[Priority] = None,
        scheduled_at: Optional[datetime] = None,
        category: Optional[str] = None,
        expires_at: Optional[datetime] = None,
    ) -> ScheduledJob:
        """Render one template once and fan it out; future ``scheduled_at`` defers the job.

        Raises:
            ValidationError: malformed input
            NotFoundError: no such template
        """
        payload = parse_payload(JobKind.BULK_SEND, {
            "template_id": template_id,
            "recipients": _recipients(recipients),
            "company_id": company_id,
            "variables": variables or {},
            "priority": priority,
            "scheduled_at": scheduled_at,
            "category": category,
            "expires_at": expires_at,
        })
        await self.templates.get(template_id)

        job = await self.queue.enqueue(JobKind.BULK_SEND, payload, scheduled_at=payload.scheduled_at)
        logger.info(f"Bulk send queued: job={job.id} recipients={len(payload.recipients)}")
        return job

    async def schedule_notification(
        self,
        template_name: str,
        company_id: str,
        recipients: Iterable[str],
        scheduled_at: datetime,
        variables: Optional[dict] = None,
        timezone: str = "UTC",
        repeat="none",
        repeat_config=None,
        ttl_seconds: Optional[int] = None,
    ) -> NotificationSchedule:
        """Schedule a templated send, optionally recurring.

        A monthly rule without a day of month keeps the day of ``scheduled_at``.
        Each occurrence's records expire ``ttl_seconds`` after they are sent.

        Raises:
            ValidationError: malformed recipients, timezone, repeat rule or config
        """
        recipients = _recipients(recipients)
        if not isinstance(scheduled_at, datetime):
            raise ValidationError("scheduled_at must be a datetime", field="scheduled_at")
        _check_timezone(timezone)
        # Rejects unknown rules and malformed configs
        repeat_config = pin_anchor_day(scheduled_at, repeat, repeat_config)
        next_occurrence(scheduled_at, repeat, repeat_config)
        payload: ScheduledSendPayload = parse_payload(JobKind.SCHEDULED_SEND, {
            "template_name": template_name,
            "recipients": recipients,
            "company_id": company_id,
            "variables": variables or {},
            "scheduled_at": scheduled_at,
            "timezone": timezone,
            "repeat": "none" if repeat in (None, "once") else repeat,
            "repeat_config": repeat_config.model_dump() if isinstance(repeat_config, RepeatConfig) else repeat_config,
            "ttl_seconds": ttl_seconds,
        })

        schedule = await self.schedules.create(
            template_name=payload.template_name,
            company_id=payload.company_id,
            recipients=payload.recipients,
            scheduled_at=payload.scheduled_at,
            variables=payload.variables,
            timezone=payload.timezone,
            repeat=payload.repeat,
            repeat_config=payload.repeat_config,
        )
        payload.schedule_id = schedule.id
        await self.queue.enqueue(
            JobKind.SCHEDULED_SEND,
            payload,
            scheduled_at=payload.scheduled_at,
            dedupe_key=f"{schedule.id}:{payload.scheduled_at.isoformat()}",
            schedule_id=schedule.id,
        )
        return schedule

    async def cancel_schedule(self, schedule_id: str) -> int:
        """Deactivate a schedule and cancel its queued occurrences.

        Returns:
            Number of queued jobs cancelled

        Raises:
            NotFoundError: no such schedule
        """
        await self.schedules.deactivate(schedule_id)
        cancelled = await self.queue.cancel_for_schedule(schedule_id)
        logger.info(f"Schedule {schedule_id} cancelled ({cancelled} queued jobs)")
        return cancelled

    async def broadcast_to_topic(
        self,
        topic: str,
        title: str,
        body: str,
        company_id: str,
        data: Optional[dict] = None,
        scheduled_at: Optional[datetime] = None,
    ) -> ScheduledJob:
        """Queue a topic broadcast."""
        payload = parse_payload(JobKind.TOPIC_BROADCAST, {
            "topic": topic,
            "title": title,
            "body": body,
            "company_id": company_id,
            "data": {k: str(v) for k, v in (data or {}).items()},
        })
        return await self.queue.enqueue(JobKind.TOPIC_BROADCAST, payload, scheduled_at=scheduled_at)

    async def cleanup_inactive_tokens(self, days_inactive: int = 30) -> ScheduledJob:
        """Queue a sweep of tokens inactive for more than ``days_inactive`` days."""
        payload = parse_payload(JobKind.CLEANUP, {"days_inactive": days_inactive})
        return await self.queue.enqueue(JobKind.CLEANUP, payload)

    async def retry_notifications(self, notification_ids: Iterable[str]) -> ScheduledJob:
        """Queue a re-attempt of previously failed notifications."""
        payload = parse_payload(JobKind.RETRY, {"notification_ids": list(dict.fromkeys(notification_ids))})
        return await self.queue.enqueue(JobKind.RETRY, payload)


# Global instance
notifier = Notifier()
