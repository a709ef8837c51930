"""Services for device registration, scheduling, and delivery."""
from .device_registry import DeviceRegistry
from .templates import TemplateStore
from .preferences import PreferencesStore
from .notification_store import NotificationStore
from .schedules import ScheduleStore
from .job_queue import JobQueue
from .push_sender import PushGateway
from .dispatcher import JobDispatcher
from .scheduler import WorkerService
from .notifier import Notifier

__all__ = [
    "DeviceRegistry",
    "TemplateStore",
    "PreferencesStore",
    "NotificationStore",
    "ScheduleStore",
    "JobQueue",
    "PushGateway",
    "JobDispatcher",
    "WorkerService",
    "Notifier",
]
