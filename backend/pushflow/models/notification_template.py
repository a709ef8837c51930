"""NotificationTemplate model - named, versioned content blueprints."""
from sqlalchemy import Boolean, Column, DateTime, Integer, String, Text, JSON, UniqueConstraint, Index

from ..database import Base
from ..utils.time_utils import utcnow


class NotificationTemplate(Base):
    """Title/body patterns with {{placeholders}} plus delivery metadata."""

    __tablename__ = "notification_templates"
    __table_args__ = (
        UniqueConstraint("name", "version", name="uq_notification_templates_name_version"),
        Index("ix_notification_templates_name_active", "name", "is_active"),
    )

    id = Column(String, primary_key=True)
    name = Column(String, nullable=False)  # logical lookup key
    version = Column(Integer, nullable=False, default=1)
    title = Column(String, nullable=False)
    body = Column(Text, nullable=False)
    category = Column(String, nullable=False, default="info")
    priority = Column(String, nullable=False, default="normal")  # low, normal, high, urgent
    sound = Column(String, nullable=True)
    icon = Column(String, nullable=True)
    image_url = Column(String, nullable=True)
    click_action = Column(String, nullable=True)
    data = Column(JSON, nullable=True)  # extra string payload forwarded to devices
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)
