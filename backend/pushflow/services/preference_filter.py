"""Preference filter - decides which channels may carry a notification.

Pure and total: every combination of inputs yields a set (possibly empty),
nothing raises.
"""
from datetime import datetime, time, timezone
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from ..models.notification import Channel, Priority
from ..models.notification_preferences import DEFAULT_ROUTE


def _parse_clock(value: Optional[str]) -> Optional[time]:
    """Parse "HH:MM" into a time; malformed values yield None."""
    if not value:
        return None
    try:
        hours, minutes = value.strip().split(":")[:2]
        return time(int(hours), int(minutes))
    except ValueError:
        return None


def _local_time(now: datetime, tz_name: Optional[str]) -> time:
    """Convert naive-UTC ``now`` to wall-clock time in ``tz_name`` (UTC fallback)."""
    try:
        zone = ZoneInfo(tz_name or "UTC")
    except (ZoneInfoNotFoundError, ValueError):
        zone = timezone.utc
    aware = now if now.tzinfo else now.replace(tzinfo=timezone.utc)
    return aware.astimezone(zone).time()


def in_window(moment: time, start: time, end: time) -> bool:
    """Check whether ``moment`` lies in [start, end), wrapping past midnight.

    A window with start == end is empty.
    """
    if start == end:
        return False
    if start < end:
        return start <= moment < end
    return moment >= start or moment < end


def in_quiet_hours(preferences, now: datetime) -> bool:
    """True if quiet hours are enabled and ``now`` falls inside the window."""
    if not preferences.quiet_hours_enabled:
        return False
    start = _parse_clock(preferences.quiet_hours_start)
    end = _parse_clock(preferences.quiet_hours_end)
    if start is None or end is None:
        return False
    return in_window(_local_time(now, preferences.quiet_hours_timezone), start, end)


def is_muted(preferences, category: str, now: datetime) -> bool:
    """Mute window, muted categories/types and per-type switches."""
    muted_until = preferences.muted_until
    if muted_until is not None:
        if muted_until.tzinfo is not None:
            muted_until = muted_until.astimezone(timezone.utc).replace(tzinfo=None)
        if now < muted_until:
            return True
    if category in (preferences.muted_categories or []):
        return True
    if category in (preferences.muted_types or []):
        return True
    return (preferences.type_settings or {}).get(category, True) is False


def eligible_channels(preferences, category: str, priority, now: datetime) -> set[Channel]:
    """Channels on which a notification may be delivered right now.

    Decision order:
    1. notifications disabled -> nothing
    2. inside a mute window -> nothing
    3. category/type muted -> nothing
    4. inside quiet hours and not urgent -> nothing
    5. per channel: global toggle on, priority tier on, routed for category

    Args:
        preferences: NotificationPreferences (stored or default)
        category: Notification category/type
        priority: Priority or its string value
        now: Naive UTC time of evaluation
    """
    if now.tzinfo is not None:
        now = now.astimezone(timezone.utc).replace(tzinfo=None)
    priority_value = priority.value if isinstance(priority, Priority) else str(priority)

    if not preferences.notifications_enabled:
        return set()
    if is_muted(preferences, category, now):
        return set()
    if priority_value != Priority.URGENT.value and in_quiet_hours(preferences, now):
        return set()
    if not (preferences.priority_settings or {}).get(priority_value, True):
        return set()

    routing = preferences.channel_settings or {}
    routed = routing.get(category, DEFAULT_ROUTE)

    channels = set()
    for channel in Channel:
        if channel.value in routed and preferences.channel_enabled(channel.value):
            channels.add(channel)
    return channels


def deliverable_now(preferences, channel: Channel) -> bool:
    """Whether a channel's frequency bucket delivers immediately."""
    buckets = preferences.frequency_settings or {}
    return buckets.get(channel.value, "immediate") == "immediate"
