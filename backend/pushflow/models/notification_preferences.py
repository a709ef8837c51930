"""NotificationPreferences model - per-user delivery policy."""
import copy

from sqlalchemy import Boolean, Column, DateTime, String, JSON

from ..database import Base
from ..utils.time_utils import utcnow

# Default routing per category/type
DEFAULT_CHANNEL_SETTINGS = {
    "quotation_created": ["in_app", "email"],
    "quotation_updated": ["in_app"],
    "quotation_approved": ["in_app", "email", "push"],
    "quotation_rejected": ["in_app", "email", "push"],
    "quotation_expired": ["in_app", "email"],
    "payment_received": ["in_app", "email", "push"],
    "payment_failed": ["in_app", "email", "push"],
    "invoice_generated": ["in_app", "email"],
    "user_invited": ["in_app", "email"],
    "user_joined": ["in_app"],
    "user_left": ["in_app"],
    "system_maintenance": ["in_app", "email"],
    "system_update": ["in_app", "email"],
    "reminder": ["in_app", "email", "push"],
    "alert": ["in_app", "email", "push"],
    "info": ["in_app", "push"],
    "success": ["in_app"],
    "warning": ["in_app", "email"],
    "error": ["in_app", "email", "push"],
}

# Route used for categories missing from a user's routing table
DEFAULT_ROUTE = ["in_app", "push"]

DEFAULT_PRIORITY_SETTINGS = {
    "low": True,
    "normal": True,
    "high": True,
    "urgent": True,
}

DEFAULT_FREQUENCY_SETTINGS = {
    "email": "immediate",
    "push": "immediate",
    "in_app": "immediate",
    "sms": "immediate",
    "webhook": "immediate",
}

FREQUENCY_BUCKETS = ("immediate", "hourly", "daily", "weekly")


class NotificationPreferences(Base):
    """Delivery policy for one user."""

    __tablename__ = "notification_preferences"

    user_id = Column(String, primary_key=True)

    # Global toggles
    notifications_enabled = Column(Boolean, nullable=False, default=True)
    in_app_notifications = Column(Boolean, nullable=False, default=True)
    email_notifications = Column(Boolean, nullable=False, default=True)
    push_notifications = Column(Boolean, nullable=False, default=True)
    sms_notifications = Column(Boolean, nullable=False, default=False)
    webhook_notifications = Column(Boolean, nullable=False, default=False)

    # Quiet hours, local time in quiet_hours_timezone
    quiet_hours_enabled = Column(Boolean, nullable=False, default=False)
    quiet_hours_start = Column(String, nullable=False, default="22:00")
    quiet_hours_end = Column(String, nullable=False, default="08:00")
    quiet_hours_timezone = Column(String, nullable=False, default="UTC")

    priority_settings = Column(JSON, nullable=False)  # priority -> bool
    type_settings = Column(JSON, nullable=False)  # category -> bool
    channel_settings = Column(JSON, nullable=False)  # category -> [channel]
    frequency_settings = Column(JSON, nullable=False)  # channel -> bucket

    muted_until = Column(DateTime, nullable=True)
    muted_types = Column(JSON, nullable=False)
    muted_categories = Column(JSON, nullable=False)

    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    def channel_enabled(self, channel: str) -> bool:
        """Global toggle for a channel; unknown channels are off."""
        return bool(getattr(self, f"{channel}_notifications", False))


def default_preferences(user_id: str, **overrides) -> NotificationPreferences:
    """Build an unsaved preferences row with every default filled in.

    Column defaults only apply on flush, so callers that evaluate preferences
    for a user without a stored row get a fully populated object from here.
    """
    values = {
        "user_id": user_id,
        "notifications_enabled": True,
        "in_app_notifications": True,
        "email_notifications": True,
        "push_notifications": True,
        "sms_notifications": False,
        "webhook_notifications": False,
        "quiet_hours_enabled": False,
        "quiet_hours_start": "22:00",
        "quiet_hours_end": "08:00",
        "quiet_hours_timezone": "UTC",
        "priority_settings": dict(DEFAULT_PRIORITY_SETTINGS),
        "type_settings": {},
        "channel_settings": copy.deepcopy(DEFAULT_CHANNEL_SETTINGS),
        "frequency_settings": dict(DEFAULT_FREQUENCY_SETTINGS),
        "muted_until": None,
        "muted_types": [],
        "muted_categories": [],
    }
    values.update(overrides)
    return NotificationPreferences(**values)
