"""Preferences store - per-user delivery policy persistence."""
import copy
import logging
from datetime import datetime
from typing import Callable, Iterable, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from sqlalchemy.ext.asyncio import async_sessionmaker

from ..database import async_session
from ..exceptions import ValidationError
from ..models.notification import Channel, Priority
from ..models.notification_preferences import (
    FREQUENCY_BUCKETS,
    NotificationPreferences,
    default_preferences,
)
from ..utils.db_utils import retry_on_lock
from ..utils.time_utils import as_naive_utc, utcnow

logger = logging.getLogger(__name__)


def _channel(value) -> Channel:
    try:
        return Channel(value)
    except ValueError:
        raise ValidationError(f"Invalid notification channel: {value}", field="channel") from None


def _check_clock(value: str, field: str) -> str:
    try:
        hours, minutes = value.split(":")
        if not (0 <= int(hours) < 24 and 0 <= int(minutes) < 60):
            raise ValueError(value)
    except ValueError:
        raise ValidationError(f"Expected HH:MM, got {value!r}", field=field) from None
    return value


class PreferencesStore:
    """Reads and mutates NotificationPreferences rows."""

    def __init__(
        self,
        session_factory: async_sessionmaker = async_session,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._session_factory = session_factory
        self._clock = clock

    async def get_for_user(self, user_id: str) -> NotificationPreferences:
        """Stored preferences, or an unsaved default row when the user has none."""
        async with self._session_factory() as session:
            preferences = await session.get(NotificationPreferences, user_id)
        return preferences if preferences is not None else default_preferences(user_id)

    async def _mutate(self, user_id: str, apply: Callable[[NotificationPreferences], None]) -> NotificationPreferences:
        async with self._session_factory() as session:
            preferences = await session.get(NotificationPreferences, user_id)
            if preferences is None:
                preferences = default_preferences(user_id)
                session.add(preferences)
            apply(preferences)
            preferences.updated_at = self._clock()
            await retry_on_lock(session.commit)
            await session.refresh(preferences)
        return preferences

    async def ensure(self, user_id: str) -> NotificationPreferences:
        """Persist default preferences for a user if none are stored."""
        return await self._mutate(user_id, lambda preferences: None)

    async def set_enabled(self, user_id: str, enabled: bool) -> NotificationPreferences:
        """Master switch for all notifications."""
        def apply(preferences):
            preferences.notifications_enabled = enabled
        return await self._mutate(user_id, apply)

    async def toggle_channel(self, user_id: str, channel, enabled: bool) -> NotificationPreferences:
        """Turn one channel's global toggle on or off."""
        channel = _channel(channel)

        def apply(preferences):
            setattr(preferences, f"{channel.value}_notifications", enabled)

        preferences = await self._mutate(user_id, apply)
        logger.info(f"Channel {channel.value} {'enabled' if enabled else 'disabled'} for {user_id}")
        return preferences

    async def update_quiet_hours(
        self,
        user_id: str,
        enabled: bool,
        start: Optional[str] = None,
        end: Optional[str] = None,
        timezone: Optional[str] = None,
    ) -> NotificationPreferences:
        """Configure the quiet-hours window."""
        if start is not None:
            _check_clock(start, "start")
        if end is not None:
            _check_clock(end, "end")
        if timezone is not None:
            try:
                ZoneInfo(timezone)
            except (ZoneInfoNotFoundError, ValueError):
                raise ValidationError(f"Unknown timezone: {timezone}", field="timezone") from None

        def apply(preferences):
            preferences.quiet_hours_enabled = enabled
            if start is not None:
                preferences.quiet_hours_start = start
            if end is not None:
                preferences.quiet_hours_end = end
            if timezone is not None:
                preferences.quiet_hours_timezone = timezone

        return await self._mutate(user_id, apply)

    async def set_priority(self, user_id: str, priority, enabled: bool) -> NotificationPreferences:
        """Enable or disable a priority tier."""
        try:
            priority = Priority(priority)
        except ValueError:
            raise ValidationError(f"Invalid priority: {priority}", field="priority") from None

        def apply(preferences):
            settings = dict(preferences.priority_settings or {})
            settings[priority.value] = enabled
            preferences.priority_settings = settings

        return await self._mutate(user_id, apply)

    async def set_channel_routing(self, user_id: str, category: str, channels: Iterable) -> NotificationPreferences:
        """Replace the channels a category is routed to."""
        routed = sorted({_channel(channel).value for channel in channels})

        def apply(preferences):
            routing = copy.deepcopy(preferences.channel_settings or {})
            routing[category] = routed
            preferences.channel_settings = routing

        return await self._mutate(user_id, apply)

    async def set_type_enabled(self, user_id: str, category: str, enabled: bool) -> NotificationPreferences:
        """Per-category switch; a disabled category is treated as muted."""
        def apply(preferences):
            settings = dict(preferences.type_settings or {})
            settings[category] = enabled
            preferences.type_settings = settings
        return await self._mutate(user_id, apply)

    async def set_frequency(self, user_id: str, channel, bucket: str) -> NotificationPreferences:
        """Set a channel's delivery frequency bucket."""
        channel = _channel(channel)
        if bucket not in FREQUENCY_BUCKETS:
            raise ValidationError(f"Invalid frequency: {bucket}", field="frequency")

        def apply(preferences):
            settings = dict(preferences.frequency_settings or {})
            settings[channel.value] = bucket
            preferences.frequency_settings = settings

        return await self._mutate(user_id, apply)

    async def mute(
        self,
        user_id: str,
        muted_until: Optional[datetime] = None,
        muted_types: Optional[list[str]] = None,
        muted_categories: Optional[list[str]] = None,
    ) -> NotificationPreferences:
        """Mute until a time and/or for specific types and categories."""
        def apply(preferences):
            if muted_until is not None:
                preferences.muted_until = as_naive_utc(muted_until)
            if muted_types is not None:
                preferences.muted_types = list(muted_types)
            if muted_categories is not None:
                preferences.muted_categories = list(muted_categories)

        preferences = await self._mutate(user_id, apply)
        logger.info(f"Notifications muted for {user_id} until {muted_until}")
        return preferences

    async def unmute(self, user_id: str) -> NotificationPreferences:
        """Clear the mute window and muted sets."""
        def apply(preferences):
            preferences.muted_until = None
            preferences.muted_types = []
            preferences.muted_categories = []
        return await self._mutate(user_id, apply)

    async def reset(self, user_id: str) -> NotificationPreferences:
        """Restore defaults for a user."""
        defaults = default_preferences(user_id)

        def apply(preferences):
            for column in NotificationPreferences.__table__.columns:
                if column.name in ("user_id", "created_at", "updated_at"):
                    continue
                setattr(preferences, column.name, getattr(defaults, column.name))

        preferences = await self._mutate(user_id, apply)
        logger.info(f"Preferences reset to default for {user_id}")
        return preferences


# Global instance
preferences_store = PreferencesStore()
