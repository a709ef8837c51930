"""Database models."""
from .device_token import DeviceToken, Platform
from .notification_template import NotificationTemplate
from .notification_preferences import NotificationPreferences, default_preferences
from .notification import Notification, Channel, Priority, NotificationStatus, DeliveryStatus
from .notification_schedule import NotificationSchedule, RepeatRule
from .scheduled_job import ScheduledJob, JobKind, JobStatus

__all__ = [
    "DeviceToken",
    "Platform",
    "NotificationTemplate",
    "NotificationPreferences",
    "default_preferences",
    "Notification",
    "Channel",
    "Priority",
    "NotificationStatus",
    "DeliveryStatus",
    "NotificationSchedule",
    "RepeatRule",
    "ScheduledJob",
    "JobKind",
    "JobStatus",
]
