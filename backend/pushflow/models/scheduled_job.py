"""ScheduledJob model - durable queue rows."""
import json
from enum import Enum

from sqlalchemy import Column, DateTime, Integer, String, Text, Index

from ..database import Base
from ..utils.time_utils import utcnow


class JobKind(str, Enum):
    """The five kinds of work the dispatcher understands."""
    SCHEDULED_SEND = "scheduled_send"
    BULK_SEND = "bulk_send"
    TOPIC_BROADCAST = "topic_broadcast"
    CLEANUP = "cleanup"
    RETRY = "retry"


class JobStatus(str, Enum):
    """Queue lifecycle of one job attempt chain."""
    QUEUED = "queued"
    PROCESSING = "processing"
    SUCCEEDED = "succeeded"
    SKIPPED = "skipped"
    FAILED = "failed"
    CANCELLED = "cancelled"


class ScheduledJob(Base):
    """One unit of work, claimed and processed by exactly one worker."""

    __tablename__ = "scheduled_jobs"
    __table_args__ = (
        Index("ix_scheduled_jobs_status_run_at", "status", "run_at"),
    )

    id = Column(String, primary_key=True)
    kind = Column(String, nullable=False)
    payload = Column(Text, nullable=False)  # JSON
    status = Column(String, nullable=False, default=JobStatus.QUEUED.value)
    attempts = Column(Integer, nullable=False, default=0)
    max_attempts = Column(Integer, nullable=False, default=5)
    run_at = Column(DateTime, nullable=False, default=utcnow)
    locked_at = Column(DateTime, nullable=True)
    finished_at = Column(DateTime, nullable=True)
    last_error = Column(Text, nullable=True)
    dedupe_key = Column(String, unique=True, nullable=True)
    schedule_id = Column(String, nullable=True, index=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)

    @property
    def data(self) -> dict:
        """Decoded payload."""
        return json.loads(self.payload) if self.payload else {}
