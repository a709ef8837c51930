"""Notification model - persisted outcome of a send, independent of channel."""
from enum import Enum

from sqlalchemy import Column, DateTime, Integer, String, Text, JSON, Index

from ..database import Base
from ..utils.time_utils import utcnow


class Channel(str, Enum):
    """Delivery channels a user can toggle."""
    IN_APP = "in_app"
    EMAIL = "email"
    PUSH = "push"
    SMS = "sms"
    WEBHOOK = "webhook"


class Priority(str, Enum):
    """Notification priority tiers. Urgent bypasses quiet hours."""
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    URGENT = "urgent"


class NotificationStatus(str, Enum):
    """User-facing status: unread -> read -> archived; deleted is terminal."""
    UNREAD = "unread"
    READ = "read"
    ARCHIVED = "archived"
    DELETED = "deleted"


class DeliveryStatus(str, Enum):
    """Push fan-out outcome for the record."""
    PENDING = "pending"
    SENT = "sent"
    PARTIAL = "partial"
    FAILED = "failed"


class Notification(Base):
    """A notification addressed to one user."""

    __tablename__ = "notifications"
    __table_args__ = (
        Index("ix_notifications_user_status", "user_id", "status"),
        Index("ix_notifications_expires_status", "expires_at", "status"),
    )

    id = Column(String, primary_key=True)
    user_id = Column(String, nullable=False)
    company_id = Column(String, nullable=False)
    category = Column(String, nullable=False)
    priority = Column(String, nullable=False, default=Priority.NORMAL.value)
    title = Column(String, nullable=False)
    body = Column(Text, nullable=False)
    data = Column(JSON, nullable=True)
    channels = Column(JSON, nullable=False, default=list)  # channels actually used
    status = Column(String, nullable=False, default=NotificationStatus.UNREAD.value)

    # Delivery bookkeeping
    delivery_status = Column(String, nullable=False, default=DeliveryStatus.PENDING.value)
    success_count = Column(Integer, nullable=False, default=0)
    failure_count = Column(Integer, nullable=False, default=0)
    delivery_attempts = Column(Integer, nullable=False, default=0)
    last_error = Column(Text, nullable=True)
    template_id = Column(String, nullable=True)
    job_id = Column(String, nullable=True)

    created_at = Column(DateTime, nullable=False, default=utcnow)
    sent_at = Column(DateTime, nullable=True)
    read_at = Column(DateTime, nullable=True)
    archived_at = Column(DateTime, nullable=True)
    deleted_at = Column(DateTime, nullable=True)
    expires_at = Column(DateTime, nullable=True)
