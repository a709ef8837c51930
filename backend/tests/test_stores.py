"""Tests for the template and preferences stores."""
from datetime import datetime, timedelta, timezone

import pytest

from pushflow.exceptions import ConfigurationError, NotFoundError, ValidationError

from conftest import START


# Templates

async def test_new_version_replaces_the_active_one(templates):
    first = await templates.create(name="welcome", title="Hi", body="v1")
    second = await templates.create(name="welcome", title="Hi", body="v2", priority="high")

    assert (first.version, second.version) == (1, 2)
    assert second.priority == "high"
    assert not (await templates.get(first.id)).is_active
    assert (await templates.resolve("welcome")).id == second.id


async def test_resolve_without_active_template(templates):
    template = await templates.create(name="welcome", title="Hi", body="v1")
    await templates.set_active(template.id, False)

    assert await templates.resolve("welcome") is None
    assert await templates.resolve("never-created") is None


async def test_resolve_refuses_to_guess(templates):
    first = await templates.create(name="welcome", title="Hi", body="v1")
    await templates.create(name="welcome", title="Hi", body="v2")
    await templates.set_active(first.id, True)

    with pytest.raises(ConfigurationError, match="2 active versions"):
        await templates.resolve("welcome")


@pytest.mark.parametrize("kwargs", [
    {"name": "", "title": "t", "body": "b"},
    {"name": "n", "title": "", "body": "b"},
    {"name": "n", "title": "t", "body": "b", "priority": "critical"},
])
async def test_template_validation(templates, kwargs):
    with pytest.raises(ValidationError):
        await templates.create(**kwargs)
    assert await templates.list_templates() == []


async def test_template_lookup_and_listing(templates):
    await templates.create(name="b", title="t", body="b", category="promo")
    await templates.create(name="a", title="t", body="a1")
    await templates.create(name="a", title="t", body="a2")

    assert [(t.name, t.version) for t in await templates.list_templates()] == [("a", 1), ("a", 2), ("b", 1)]
    assert [t.name for t in await templates.list_templates(category="promo")] == ["b"]
    assert [(t.name, t.version) for t in await templates.list_templates(active_only=True)] == [("a", 2), ("b", 1)]

    with pytest.raises(NotFoundError):
        await templates.get("missing")
    with pytest.raises(NotFoundError):
        await templates.set_active("missing", True)


# Preferences

async def test_defaults_are_not_persisted_on_read(preferences, session_factory):
    from pushflow.models.notification_preferences import NotificationPreferences

    prefs = await preferences.get_for_user("u1")
    assert prefs.notifications_enabled
    assert prefs.push_notifications
    assert not prefs.sms_notifications

    async with session_factory() as session:
        assert await session.get(NotificationPreferences, "u1") is None


async def test_mutations_persist(preferences):
    await preferences.toggle_channel("u1", "email", False)
    await preferences.set_channel_routing("u1", "promo", ["email", "in_app", "email"])
    await preferences.set_priority("u1", "low", False)
    await preferences.set_type_enabled("u1", "promo", False)
    await preferences.set_frequency("u1", "email", "daily")
    await preferences.update_quiet_hours("u1", True, start="21:30", end="07:00", timezone="America/New_York")

    prefs = await preferences.get_for_user("u1")
    assert not prefs.email_notifications
    assert prefs.channel_settings["promo"] == ["email", "in_app"]
    assert prefs.priority_settings["low"] is False
    assert prefs.type_settings["promo"] is False
    assert prefs.frequency_settings["email"] == "daily"
    assert (prefs.quiet_hours_start, prefs.quiet_hours_end) == ("21:30", "07:00")
    assert prefs.quiet_hours_timezone == "America/New_York"


async def test_mute_and_unmute(preferences):
    until = datetime(2024, 1, 16, 12, 0, tzinfo=timezone(timedelta(hours=2)))
    prefs = await preferences.mute("u1", muted_until=until, muted_categories=["promo"])

    assert prefs.muted_until == datetime(2024, 1, 16, 10, 0)
    assert prefs.muted_categories == ["promo"]

    prefs = await preferences.unmute("u1")
    assert prefs.muted_until is None
    assert prefs.muted_categories == []


async def test_reset_restores_defaults(preferences):
    await preferences.set_enabled("u1", False)
    await preferences.toggle_channel("u1", "push", False)

    prefs = await preferences.reset("u1")
    assert prefs.notifications_enabled
    assert prefs.push_notifications
    assert prefs.updated_at == START


@pytest.mark.parametrize("call", [
    lambda p: p.toggle_channel("u1", "pigeon", True),
    lambda p: p.update_quiet_hours("u1", True, start="25:00"),
    lambda p: p.update_quiet_hours("u1", True, end="noon"),
    lambda p: p.update_quiet_hours("u1", True, timezone="Nowhere/City"),
    lambda p: p.set_priority("u1", "critical", True),
    lambda p: p.set_frequency("u1", "push", "fortnightly"),
    lambda p: p.set_channel_routing("u1", "promo", ["fax"]),
])
async def test_preference_validation(preferences, call):
    with pytest.raises(ValidationError):
        await call(preferences)
