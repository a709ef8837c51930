"""Tests for channel eligibility decisions."""
from datetime import datetime, time

import pytest

from pushflow.models.notification import Channel, Priority
from pushflow.models.notification_preferences import default_preferences
from pushflow.services.preference_filter import (
    deliverable_now,
    eligible_channels,
    in_quiet_hours,
    in_window,
)

NOON = datetime(2024, 1, 15, 12, 0)


def prefs(**overrides):
    return default_preferences("u1", **overrides)


@pytest.mark.parametrize("moment, inside", [
    (time(23, 0), True),
    (time(3, 0), True),
    (time(22, 0), True),
    (time(8, 0), False),
    (time(12, 0), False),
])
def test_quiet_hours_wraparound_window(moment, inside):
    assert in_window(moment, time(22, 0), time(8, 0)) is inside


def test_same_day_window():
    assert in_window(time(13, 0), time(12, 0), time(14, 0))
    assert not in_window(time(14, 0), time(12, 0), time(14, 0))


def test_empty_window():
    assert not in_window(time(12, 0), time(12, 0), time(12, 0))


@pytest.mark.parametrize("hour, quiet", [(23, True), (3, True), (12, False)])
def test_in_quiet_hours_uses_configured_window(hour, quiet):
    preferences = prefs(quiet_hours_enabled=True, quiet_hours_start="22:00", quiet_hours_end="08:00")
    assert in_quiet_hours(preferences, datetime(2024, 1, 15, hour, 0)) is quiet


def test_quiet_hours_evaluated_in_user_timezone():
    # 04:00 UTC is 23:00 the previous evening in New York (EST)
    preferences = prefs(quiet_hours_enabled=True, quiet_hours_timezone="America/New_York")
    assert in_quiet_hours(preferences, datetime(2024, 1, 15, 4, 0))
    assert not in_quiet_hours(preferences, datetime(2024, 1, 15, 17, 0))


def test_unknown_timezone_falls_back_to_utc():
    preferences = prefs(quiet_hours_enabled=True, quiet_hours_timezone="Mars/Olympus")
    assert in_quiet_hours(preferences, datetime(2024, 1, 15, 23, 0))


def test_default_preferences_route_category():
    assert eligible_channels(prefs(), "reminder", Priority.NORMAL, NOON) == {
        Channel.IN_APP, Channel.EMAIL, Channel.PUSH,
    }


def test_unknown_category_uses_default_route():
    assert eligible_channels(prefs(), "brand_new_type", "normal", NOON) == {Channel.IN_APP, Channel.PUSH}


@pytest.mark.parametrize("overrides", [
    {},
    {"quiet_hours_enabled": True},
    {"sms_notifications": True, "webhook_notifications": True},
    {"channel_settings": {"reminder": ["sms", "webhook", "push"]}},
])
def test_disabled_notifications_yield_nothing(overrides):
    preferences = prefs(notifications_enabled=False, **overrides)
    for priority in Priority:
        assert eligible_channels(preferences, "reminder", priority, NOON) == set()


def test_mute_window():
    preferences = prefs(muted_until=datetime(2024, 1, 15, 13, 0))
    assert eligible_channels(preferences, "reminder", "urgent", NOON) == set()
    assert eligible_channels(preferences, "reminder", "normal", datetime(2024, 1, 15, 13, 0)) != set()


def test_muted_category_and_type():
    assert eligible_channels(prefs(muted_categories=["reminder"]), "reminder", "normal", NOON) == set()
    assert eligible_channels(prefs(muted_types=["alert"]), "alert", "normal", NOON) == set()
    assert eligible_channels(prefs(muted_types=["alert"]), "reminder", "normal", NOON) != set()


def test_disabled_type_setting_mutes_category():
    preferences = prefs(type_settings={"reminder": False})
    assert eligible_channels(preferences, "reminder", "normal", NOON) == set()


def test_quiet_hours_suppress_non_urgent_only():
    preferences = prefs(quiet_hours_enabled=True)
    late = datetime(2024, 1, 15, 23, 0)
    assert eligible_channels(preferences, "alert", Priority.HIGH, late) == set()
    assert eligible_channels(preferences, "alert", Priority.URGENT, late) == {
        Channel.IN_APP, Channel.EMAIL, Channel.PUSH,
    }


def test_disabled_priority_tier():
    preferences = prefs(priority_settings={"low": False, "normal": True, "high": True, "urgent": True})
    assert eligible_channels(preferences, "info", "low", NOON) == set()
    assert eligible_channels(preferences, "info", "normal", NOON) == {Channel.IN_APP, Channel.PUSH}


def test_channel_toggle_and_routing_both_required():
    preferences = prefs(
        push_notifications=False,
        channel_settings={"alert": ["push", "sms", "in_app"]},
    )
    # push routed but toggled off, sms routed but off by default
    assert eligible_channels(preferences, "alert", "normal", NOON) == {Channel.IN_APP}


def test_aware_now_is_accepted():
    from datetime import timezone
    assert eligible_channels(prefs(), "info", "normal", NOON.replace(tzinfo=timezone.utc)) == {
        Channel.IN_APP, Channel.PUSH,
    }


def test_eligible_channels_is_pure():
    preferences = prefs(quiet_hours_enabled=True, muted_categories=["alert"])
    snapshot = (
        dict(preferences.priority_settings),
        dict(preferences.channel_settings),
        list(preferences.muted_categories),
    )
    results = [eligible_channels(preferences, "reminder", "high", NOON) for _ in range(5)]
    assert all(result == results[0] for result in results)
    assert snapshot == (
        dict(preferences.priority_settings),
        dict(preferences.channel_settings),
        list(preferences.muted_categories),
    )


def test_malformed_quiet_hours_do_not_raise():
    preferences = prefs(quiet_hours_enabled=True, quiet_hours_start="late", quiet_hours_end="8")
    assert eligible_channels(preferences, "info", "normal", datetime(2024, 1, 15, 23, 0)) == {
        Channel.IN_APP, Channel.PUSH,
    }


def test_deliverable_now_follows_frequency_bucket():
    preferences = prefs(frequency_settings={"push": "daily", "email": "immediate"})
    assert not deliverable_now(preferences, Channel.PUSH)
    assert deliverable_now(preferences, Channel.EMAIL)
    assert deliverable_now(preferences, Channel.IN_APP)
