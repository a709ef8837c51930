"""Job dispatcher - runs one claimed job to a terminal outcome.

Outcomes:
- SUCCEEDED: the job did its work (possibly with per-token failures)
- SKIPPED: a soft condition (inactive template, no tokens, missing record);
  the queue must not retry it
- any exception: logged with job context and re-raised so the queue's
  backoff policy applies
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Optional

from ..config import settings
from ..exceptions import DeliveryError, NotFoundError
from ..models.notification import Channel, DeliveryStatus, NotificationStatus
from ..models.notification_schedule import RepeatRule
from ..models.scheduled_job import JobKind, JobStatus, ScheduledJob
from ..schemas.jobs import (
    BulkSendPayload,
    CleanupPayload,
    RetryPayload,
    ScheduledSendPayload,
    TopicBroadcastPayload,
    parse_payload,
)
from ..utils.time_utils import utcnow
from .delivery_gateway import DeliveryGateway, DeliveryReport, PushContent, PushTarget
from .device_registry import DeviceRegistry, device_registry
from .job_queue import JobQueue, job_queue
from .notification_store import NotificationStore, notification_store
from .preference_filter import deliverable_now, eligible_channels
from .preferences import PreferencesStore, preferences_store
from .schedule_calculator import next_occurrence, pin_anchor_day
from .schedules import ScheduleStore, schedule_store
from .template_renderer import render
from .templates import TemplateStore, template_store

logger = logging.getLogger(__name__)


@dataclass
class RecipientPlan:
    """Channels and devices resolved for one recipient at send time."""
    user_id: str
    company_id: str
    channels: set[Channel]
    devices: list = field(default_factory=list)

    @property
    def used_channels(self) -> set[str]:
        used = {channel.value for channel in self.channels}
        if not self.devices:
            used.discard(Channel.PUSH.value)
        return used


@dataclass
class FanOutResult:
    """What one fan-out produced."""
    notification_ids: list[str] = field(default_factory=list)
    retry_ids: list[str] = field(default_factory=list)
    sent: int = 0
    failed: int = 0


def _recipient_count(payload) -> int:
    if isinstance(payload, (ScheduledSendPayload, BulkSendPayload)):
        return len(payload.recipients)
    if isinstance(payload, RetryPayload):
        return len(payload.notification_ids)
    return 0


class JobDispatcher:
    """Single entry point for every job kind."""

    def __init__(
        self,
        gateway: DeliveryGateway,
        registry: DeviceRegistry = device_registry,
        templates: TemplateStore = template_store,
        preferences: PreferencesStore = preferences_store,
        notifications: NotificationStore = notification_store,
        schedules: ScheduleStore = schedule_store,
        queue: JobQueue = job_queue,
        clock: Callable[[], datetime] = utcnow,
        retry_delay_seconds: int = 300,
        max_delivery_retries: int = 3,
    ):
        self.gateway = gateway
        self.registry = registry
        self.templates = templates
        self.preferences = preferences
        self.notifications = notifications
        self.schedules = schedules
        self.queue = queue
        self._clock = clock
        self.retry_delay_seconds = retry_delay_seconds
        self.max_delivery_retries = max_delivery_retries
        self._handlers = {
            JobKind.SCHEDULED_SEND: self._scheduled_send,
            JobKind.BULK_SEND: self._bulk_send,
            JobKind.TOPIC_BROADCAST: self._topic_broadcast,
            JobKind.CLEANUP: self._cleanup,
            JobKind.RETRY: self._retry,
        }

    async def process(self, job: ScheduledJob) -> JobStatus:
        """Run a claimed job.

        Returns:
            JobStatus.SUCCEEDED or JobStatus.SKIPPED

        Raises:
            Exception: any hard failure, after logging job id, kind and recipient count
        """
        kind = JobKind(job.kind)
        payload = None
        try:
            payload = parse_payload(kind, job.data)
            return await self._handlers[kind](job, payload)
        except NotFoundError as e:
            logger.warning(f"Job {job.id} ({kind.value}) skipped: {e}")
            return JobStatus.SKIPPED
        except Exception as e:
            logger.error(
                f"Job {job.id} ({kind.value}) failed on attempt {job.attempts}, "
                f"recipients={_recipient_count(payload)}: {type(e).__name__}: {e}"
            )
            raise

    # Recipient resolution and fan-out

    async def _plan_recipient(self, user_id: str, company_id: str, category: str, priority, now: datetime) -> RecipientPlan:
        """Preferences first; tokens are only looked up when push may go out now."""
        preferences = await self.preferences.get_for_user(user_id)
        channels = eligible_channels(preferences, category, priority, now)
        plan = RecipientPlan(user_id=user_id, company_id=company_id, channels=channels)
        if Channel.PUSH in channels and deliverable_now(preferences, Channel.PUSH):
            plan.devices = await self.registry.tokens_for(user_id, company_id)
        return plan

    @staticmethod
    def _tally(devices: list, report: DeliveryReport) -> tuple[int, int, Optional[str]]:
        """Success/failure counts and the first error for one recipient's devices."""
        per_token = report.per_token
        success = failure = 0
        error = None
        for device in devices:
            result = per_token.get(device.token)
            if result is None:
                continue
            if result.success:
                success += 1
            else:
                failure += 1
                error = error or result.error
        return success, failure, error

    async def _deactivate_unregistered(self, report: DeliveryReport) -> None:
        tokens = report.unregistered_tokens
        if tokens:
            await self.registry.deactivate_tokens(tokens)

    async def _fan_out(
        self,
        job: ScheduledJob,
        recipients: list[str],
        company_id: str,
        category: str,
        priority: str,
        content: PushContent,
        template_id: Optional[str] = None,
        data: Optional[dict] = None,
        expires_at: Optional[datetime] = None,
    ) -> Optional[FanOutResult]:
        """Resolve, deliver and record; None when no recipient has a token."""
        now = self._clock()
        plans = [
            await self._plan_recipient(user_id, company_id, category, priority, now)
            for user_id in dict.fromkeys(recipients)
        ]

        targets = [PushTarget.from_device(d) for plan in plans for d in plan.devices]
        if not targets:
            logger.warning(f"Job {job.id} ({job.kind}): no device tokens for {len(plans)} recipients, skipping")
            return None

        # Raises DeliveryError on total transport failure, before anything is recorded
        report = await self.gateway.send_to_tokens(targets, content)

        transport_failed = set(report.transport_failed_tokens)
        result = FanOutResult()
        for plan in plans:
            if not plan.used_channels:
                continue
            notification = await self.notifications.create(
                user_id=plan.user_id,
                company_id=company_id,
                category=category,
                priority=priority,
                title=content.title,
                body=content.body,
                channels=plan.used_channels,
                data=data,
                template_id=template_id,
                job_id=job.id,
                expires_at=expires_at,
            )
            result.notification_ids.append(notification.id)
            if not plan.devices:
                continue

            success, failure, error = self._tally(plan.devices, report)
            await self.notifications.record_delivery(notification.id, success, failure, error=error)
            result.sent += success
            result.failed += failure
            if any(device.token in transport_failed for device in plan.devices):
                result.retry_ids.append(notification.id)

        await self._deactivate_unregistered(report)
        await self._enqueue_retry(job, result.retry_ids, attempt=1)
        logger.info(
            f"Job {job.id} ({job.kind}): {len(result.notification_ids)} notifications, "
            f"{result.sent} delivered, {result.failed} failed"
        )
        return result

    async def _enqueue_retry(self, job: ScheduledJob, notification_ids: list[str], attempt: int) -> None:
        if not notification_ids:
            return
        if attempt > self.max_delivery_retries:
            logger.warning(f"Job {job.id}: giving up on {len(notification_ids)} notifications after {attempt - 1} retries")
            return
        await self.queue.enqueue(
            JobKind.RETRY,
            RetryPayload(notification_ids=notification_ids, attempt=attempt),
            delay=self.retry_delay_seconds,
            dedupe_key=f"retry:{job.id}",
        )

    # Job kinds

    async def _scheduled_send(self, job: ScheduledJob, payload: ScheduledSendPayload) -> JobStatus:
        if payload.schedule_id:
            schedule = await self.schedules.get(payload.schedule_id)
            if not schedule.is_active:
                logger.info(f"Job {job.id}: schedule {payload.schedule_id} is inactive, skipping")
                return JobStatus.SKIPPED

        outcome = JobStatus.SKIPPED
        result = None
        now = self._clock()
        template = await self.templates.resolve(payload.template_name)
        if template is None:
            logger.warning(f"Job {job.id}: no active template '{payload.template_name}', skipping")
        else:
            rendered = render(template, payload.variables)
            content = PushContent(
                title=rendered.title,
                body=rendered.body,
                data=dict(template.data or {}),
                priority=template.priority,
                sound=template.sound,
                icon=template.icon,
                image_url=template.image_url,
                click_action=rendered.click_action,
            )
            result = await self._fan_out(
                job,
                payload.recipients,
                payload.company_id,
                template.category,
                template.priority,
                content,
                template_id=template.id,
                data=template.data,
                expires_at=now + timedelta(seconds=payload.ttl_seconds) if payload.ttl_seconds else None,
            )
            if result is not None:
                outcome = JobStatus.SUCCEEDED

        await self._advance_chain(job, payload, result)
        return outcome

    async def _advance_chain(self, job: ScheduledJob, payload: ScheduledSendPayload, result: Optional[FanOutResult]) -> None:
        """Record the run and enqueue the next occurrence, if any."""
        now = self._clock()
        repeat_config = pin_anchor_day(payload.scheduled_at, payload.repeat, payload.repeat_config)
        upcoming = next_occurrence(payload.scheduled_at, payload.repeat, repeat_config, now)

        schedule = None
        if payload.schedule_id:
            schedule = await self.schedules.record_run(
                payload.schedule_id,
                ran_at=now,
                sent=result.sent if result else 0,
                failed=result.failed if result else 0,
                next_run_at=upcoming,
            )
        if upcoming is None:
            if payload.repeat != RepeatRule.NONE:
                logger.info(f"Job {job.id}: repeat chain for '{payload.template_name}' ended")
            return
        if schedule is not None and not schedule.is_active:
            logger.info(f"Job {job.id}: schedule {payload.schedule_id} was cancelled during the run, not re-enqueueing")
            return

        next_payload = payload.model_copy(update={"scheduled_at": upcoming, "repeat_config": repeat_config})
        await self.queue.enqueue(
            JobKind.SCHEDULED_SEND,
            next_payload,
            scheduled_at=upcoming,
            dedupe_key=f"{payload.schedule_id or job.id}:{upcoming.isoformat()}",
            schedule_id=payload.schedule_id,
        )
        logger.info(f"Job {job.id}: next '{payload.template_name}' occurrence at {upcoming.isoformat()}")

    async def _bulk_send(self, job: ScheduledJob, payload: BulkSendPayload) -> JobStatus:
        template = await self.templates.get(payload.template_id)
        if not template.is_active:
            logger.warning(f"Job {job.id}: template {template.name} v{template.version} is inactive, skipping")
            return JobStatus.SKIPPED

        priority = payload.priority.value if payload.priority else template.priority
        category = payload.category or template.category
        rendered = render(template, payload.variables)
        content = PushContent(
            title=rendered.title,
            body=rendered.body,
            data=dict(template.data or {}),
            priority=priority,
            sound=template.sound,
            icon=template.icon,
            image_url=template.image_url,
            click_action=rendered.click_action,
        )
        result = await self._fan_out(
            job,
            payload.recipients,
            payload.company_id,
            category,
            priority,
            content,
            template_id=template.id,
            data=template.data,
            expires_at=payload.expires_at,
        )
        return JobStatus.SKIPPED if result is None else JobStatus.SUCCEEDED

    async def _topic_broadcast(self, job: ScheduledJob, payload: TopicBroadcastPayload) -> JobStatus:
        content = PushContent(title=payload.title, body=payload.body, data=payload.data)
        result = await self.gateway.send_to_topic(payload.topic, content)
        logger.info(f"Job {job.id}: broadcast to topic {payload.topic} for company {payload.company_id} ({result.message_id})")
        return JobStatus.SUCCEEDED

    async def _cleanup(self, job: ScheduledJob, payload: CleanupPayload) -> JobStatus:
        sweep = await self.registry.sweep_inactive(payload.days_inactive)
        for error in sweep.errors:
            logger.warning(f"Job {job.id}: {error}")
        logger.info(f"Job {job.id}: removed {sweep.removed_count} inactive device tokens")
        return JobStatus.SUCCEEDED

    async def _retry(self, job: ScheduledJob, payload: RetryPayload) -> JobStatus:
        """Re-send stored content with tokens and preferences resolved now."""
        now = self._clock()
        candidates = [
            n for n in await self.notifications.get_many(payload.notification_ids)
            if n.status != NotificationStatus.DELETED.value
            and n.delivery_status != DeliveryStatus.SENT.value
        ]

        work = []
        for notification in candidates:
            plan = await self._plan_recipient(
                notification.user_id, notification.company_id, notification.category, notification.priority, now
            )
            if plan.devices:
                work.append((notification, plan))

        if not work:
            logger.warning(f"Job {job.id}: nothing to retry among {len(payload.notification_ids)} notifications")
            return JobStatus.SKIPPED

        retry_ids = []
        errors = []
        for notification, plan in work:
            content = PushContent(
                title=notification.title,
                body=notification.body,
                data={k: str(v) for k, v in (notification.data or {}).items()},
                priority=notification.priority,
            )
            try:
                report = await self.gateway.send_to_tokens([PushTarget.from_device(d) for d in plan.devices], content)
            except DeliveryError as e:
                errors.append(e)
                retry_ids.append(notification.id)
                continue

            success, failure, error = self._tally(plan.devices, report)
            await self.notifications.record_delivery(
                notification.id, success, failure, error=error, channels=plan.used_channels
            )
            await self._deactivate_unregistered(report)
            if report.transport_failed_tokens:
                retry_ids.append(notification.id)

        if errors and len(errors) == len(work):
            # Nothing got through at all: hand the whole job back to the queue
            raise errors[0]

        await self._enqueue_retry(job, retry_ids, attempt=payload.attempt + 1)
        logger.info(f"Job {job.id}: retried {len(work)} notifications (attempt {payload.attempt})")
        return JobStatus.SUCCEEDED


def build_dispatcher(gateway: DeliveryGateway) -> JobDispatcher:
    """Dispatcher wired to the global stores and settings."""
    return JobDispatcher(
        gateway,
        retry_delay_seconds=settings.retry_delay_seconds,
        max_delivery_retries=settings.max_delivery_retries,
    )
