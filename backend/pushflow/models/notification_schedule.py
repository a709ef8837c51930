"""NotificationSchedule model - owner record of a repeat chain."""
from enum import Enum

from sqlalchemy import Boolean, Column, DateTime, Integer, String, JSON

from ..database import Base
from ..utils.time_utils import utcnow


class RepeatRule(str, Enum):
    """Recurrence pattern for scheduled sends."""
    NONE = "none"
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"


class NotificationSchedule(Base):
    """A scheduled (possibly recurring) templated send.

    Deactivating the schedule stops the chain: the next queued occurrence is
    skipped and nothing further is enqueued.
    """

    __tablename__ = "notification_schedules"

    id = Column(String, primary_key=True)
    template_name = Column(String, nullable=False)
    company_id = Column(String, nullable=False, index=True)
    recipients = Column(JSON, nullable=False)  # list of user ids
    variables = Column(JSON, nullable=True)
    timezone = Column(String, nullable=False, default="UTC")
    repeat = Column(String, nullable=False, default=RepeatRule.NONE.value)
    repeat_config = Column(JSON, nullable=True)
    next_run_at = Column(DateTime, nullable=True)
    last_run_at = Column(DateTime, nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)
    sent_count = Column(Integer, nullable=False, default=0)
    failed_count = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)
