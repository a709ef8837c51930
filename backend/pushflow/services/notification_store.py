"""Notification store - records, delivery bookkeeping and status lifecycle."""
import logging
import uuid
from datetime import datetime, timedelta
from typing import Callable, Iterable, Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import async_sessionmaker

from ..config import settings
from ..database import async_session
from ..exceptions import NotFoundError, ValidationError
from ..models.notification import DeliveryStatus, Notification, NotificationStatus
from ..utils.db_utils import retry_on_lock
from ..utils.time_utils import utcnow

logger = logging.getLogger(__name__)

# Allowed user-driven transitions; deleted is terminal
_TRANSITIONS = {
    NotificationStatus.READ: {NotificationStatus.UNREAD, NotificationStatus.READ},
    NotificationStatus.ARCHIVED: {NotificationStatus.UNREAD, NotificationStatus.READ, NotificationStatus.ARCHIVED},
    NotificationStatus.DELETED: {
        NotificationStatus.UNREAD,
        NotificationStatus.READ,
        NotificationStatus.ARCHIVED,
        NotificationStatus.DELETED,
    },
}


def delivery_status_for(success_count: int, failure_count: int) -> DeliveryStatus:
    """Summarize per-token outcomes for a record."""
    if success_count and failure_count:
        return DeliveryStatus.PARTIAL
    if success_count:
        return DeliveryStatus.SENT
    if failure_count:
        return DeliveryStatus.FAILED
    return DeliveryStatus.PENDING


class NotificationStore:
    """Persists Notification records."""

    def __init__(
        self,
        session_factory: async_sessionmaker = async_session,
        clock: Callable[[], datetime] = utcnow,
        retention_days: int = 90,
    ):
        self._session_factory = session_factory
        self._clock = clock
        self._retention_days = retention_days

    async def create(
        self,
        user_id: str,
        company_id: str,
        category: str,
        priority: str,
        title: str,
        body: str,
        channels: Iterable[str],
        data: Optional[dict] = None,
        template_id: Optional[str] = None,
        job_id: Optional[str] = None,
        expires_at: Optional[datetime] = None,
    ) -> Notification:
        """Create an unread record with pending delivery."""
        notification = Notification(
            id=str(uuid.uuid4()),
            user_id=user_id,
            company_id=company_id,
            category=category,
            priority=priority,
            title=title,
            body=body,
            data=data,
            channels=sorted(channels),
            status=NotificationStatus.UNREAD.value,
            delivery_status=DeliveryStatus.PENDING.value,
            template_id=template_id,
            job_id=job_id,
            created_at=self._clock(),
            expires_at=expires_at,
        )
        async with self._session_factory() as session:
            session.add(notification)
            await retry_on_lock(session.commit)
            await session.refresh(notification)
        return notification

    async def get(self, notification_id: str) -> Notification:
        """Load a record by id.

        Raises:
            NotFoundError: no such notification
        """
        async with self._session_factory() as session:
            notification = await session.get(Notification, notification_id)
        if notification is None:
            raise NotFoundError("Notification", notification_id)
        return notification

    async def get_many(self, notification_ids: Iterable[str]) -> list[Notification]:
        """Load existing records among the given ids; unknown ids are ignored."""
        ids = list(notification_ids)
        if not ids:
            return []
        async with self._session_factory() as session:
            result = await session.execute(select(Notification).where(Notification.id.in_(ids)))
            return list(result.scalars().all())

    async def record_delivery(
        self,
        notification_id: str,
        success_count: int,
        failure_count: int,
        error: Optional[str] = None,
        channels: Optional[Iterable[str]] = None,
    ) -> Notification:
        """Store the outcome of one delivery attempt.

        Counts describe this attempt only; the record's delivery status is
        derived from them.
        """
        async with self._session_factory() as session:
            notification = await session.get(Notification, notification_id)
            if notification is None:
                raise NotFoundError("Notification", notification_id)
            notification.success_count = success_count
            notification.failure_count = failure_count
            notification.delivery_attempts = (notification.delivery_attempts or 0) + 1
            notification.delivery_status = delivery_status_for(success_count, failure_count).value
            notification.last_error = error
            if channels is not None:
                notification.channels = sorted(channels)
            if success_count:
                notification.sent_at = self._clock()
            await retry_on_lock(session.commit)
            await session.refresh(notification)
        return notification

    async def _transition(self, notification_id: str, user_id: str, target: NotificationStatus) -> Notification:
        async with self._session_factory() as session:
            notification = await session.get(Notification, notification_id)
            if notification is None or notification.user_id != user_id:
                raise NotFoundError("Notification", notification_id)

            current = NotificationStatus(notification.status)
            if current not in _TRANSITIONS[target]:
                raise ValidationError(
                    f"Cannot move notification from {current.value} to {target.value}",
                    field="status",
                )
            if current != target:
                now = self._clock()
                notification.status = target.value
                if target == NotificationStatus.READ:
                    notification.read_at = now
                elif target == NotificationStatus.ARCHIVED:
                    notification.archived_at = now
                else:
                    notification.deleted_at = now
                await retry_on_lock(session.commit)
                await session.refresh(notification)
        return notification

    async def mark_read(self, notification_id: str, user_id: str) -> Notification:
        """unread -> read (idempotent for read)."""
        return await self._transition(notification_id, user_id, NotificationStatus.READ)

    async def archive(self, notification_id: str, user_id: str) -> Notification:
        """unread/read -> archived."""
        return await self._transition(notification_id, user_id, NotificationStatus.ARCHIVED)

    async def delete(self, notification_id: str, user_id: str) -> Notification:
        """Any state -> deleted (soft)."""
        return await self._transition(notification_id, user_id, NotificationStatus.DELETED)

    async def list_for_user(
        self,
        user_id: str,
        status: Optional[NotificationStatus] = None,
        limit: int = 50,
    ) -> list[Notification]:
        """Newest first, excluding deleted unless asked for."""
        query = select(Notification).where(Notification.user_id == user_id)
        if status is not None:
            query = query.where(Notification.status == NotificationStatus(status).value)
        else:
            query = query.where(Notification.status != NotificationStatus.DELETED.value)
        async with self._session_factory() as session:
            result = await session.execute(query.order_by(Notification.created_at.desc()).limit(limit))
            return list(result.scalars().all())

    async def sweep_expired(self, now: Optional[datetime] = None) -> dict[str, int]:
        """Move expired notifications forward, never back to unread.

        Expired unread/read records are archived; expired archived records past
        the retention window are deleted.
        """
        now = now or self._clock()
        retention_cutoff = now - timedelta(days=self._retention_days)
        async with self._session_factory() as session:
            archived = await session.execute(
                update(Notification)
                .where(
                    Notification.expires_at.is_not(None),
                    Notification.expires_at < now,
                    Notification.status.in_([NotificationStatus.UNREAD.value, NotificationStatus.READ.value]),
                )
                .values(status=NotificationStatus.ARCHIVED.value, archived_at=now)
            )
            deleted = await session.execute(
                update(Notification)
                .where(
                    Notification.expires_at.is_not(None),
                    Notification.expires_at < retention_cutoff,
                    Notification.status == NotificationStatus.ARCHIVED.value,
                )
                .values(status=NotificationStatus.DELETED.value, deleted_at=now)
            )
            await retry_on_lock(session.commit)

        counts = {"archived": archived.rowcount, "deleted": deleted.rowcount}
        logger.info(f"Expired notification sweep: {counts}")
        return counts


# Global instance
notification_store = NotificationStore(retention_days=settings.notification_retention_days)
