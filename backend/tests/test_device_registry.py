"""Tests for device registration, lookup and the inactive-token sweep."""
import asyncio
from datetime import timedelta

import pytest
from sqlalchemy import func, select

from pushflow.exceptions import NotFoundError, ValidationError
from pushflow.models.device_token import DeviceToken, Platform
from pushflow.services.device_registry import validate_token_format

from conftest import android_token, ios_token


async def count_rows(session_factory) -> int:
    async with session_factory() as session:
        return (await session.execute(select(func.count(DeviceToken.id)))).scalar()


async def test_register_then_reregister_keeps_one_token(registry):
    first = android_token(1)
    await registry.register("u1", "c1", first, "android", "d1")

    tokens = await registry.tokens_for("u1", "c1")
    assert len(tokens) == 1
    assert tokens[0].token == first
    assert tokens[0].is_active is True

    second = android_token(2)
    await registry.register("u1", "c1", second, "android", "d1")

    tokens = await registry.tokens_for("u1", "c1")
    assert [t.token for t in tokens] == [second]


async def test_sequential_registrations_converge(registry, session_factory, clock):
    for n in range(5):
        clock.advance(seconds=1)
        await registry.register("u1", "c1", android_token(n), Platform.ANDROID, "d1", app_version=f"1.{n}")
    assert await count_rows(session_factory) == 1
    device = (await registry.tokens_for("u1", "c1"))[0]
    assert device.app_version == "1.4"
    assert device.last_used_at == clock.now


async def test_concurrent_registrations_converge(registry, session_factory):
    await asyncio.gather(*[
        registry.register("u1", "c1", android_token(n), "android", "d1") for n in range(8)
    ])
    assert await count_rows(session_factory) == 1
    assert len(await registry.tokens_for("u1", "c1")) == 1


async def test_same_device_id_for_other_user_is_separate(registry):
    await registry.register("u1", "c1", android_token(1), "android", "d1")
    await registry.register("u2", "c1", android_token(2), "android", "d1")
    assert len(await registry.tokens_for("u1", "c1")) == 1
    assert len(await registry.tokens_for("u2", "c1")) == 1


async def test_token_moving_to_another_user_releases_old_row(registry, session_factory):
    token = ios_token(7)
    await registry.register("u1", "c1", token, "ios", "phone-a")
    await registry.register("u2", "c1", token, "ios", "phone-b")

    assert await registry.tokens_for("u1", "c1") == []
    assert [t.token for t in await registry.tokens_for("u2", "c1")] == [token]
    assert await count_rows(session_factory) == 1


async def test_reregistering_reactivates(registry):
    device = await registry.register("u1", "c1", android_token(1), "android", "d1")
    await registry.deactivate(device.id)
    assert await registry.tokens_for("u1", "c1") == []

    await registry.register("u1", "c1", android_token(1), "android", "d1")
    assert len(await registry.tokens_for("u1", "c1")) == 1


async def test_tokens_ordered_by_recent_use(registry, clock):
    await registry.register("u1", "c1", android_token(1), "android", "old")
    clock.advance(hours=1)
    await registry.register("u1", "c1", ios_token(2), "ios", "new")
    assert [t.device_id for t in await registry.tokens_for("u1", "c1")] == ["new", "old"]


@pytest.mark.parametrize("token, platform", [
    ("a" * 139, "android"),
    ("a" * 201, "android"),
    ("g" * 64, "ios"),
    ("a" * 63, "ios"),
    ("a" * 99, "web"),
    ("a" * 501, "web"),
    (" " + "a" * 149, "android"),
    ("a" * 150, "blackberry"),
])
async def test_invalid_tokens_are_rejected_without_writes(registry, session_factory, token, platform):
    with pytest.raises(ValidationError):
        await registry.register("u1", "c1", token, platform, "d1")
    assert await count_rows(session_factory) == 0


@pytest.mark.parametrize("token, platform", [
    ("a" * 140, "android"),
    ("a" * 200, "android"),
    ("ABCDEF" + "0" * 58, "ios"),
    ("w" * 100, "web"),
    ("w" * 500, "web"),
])
def test_valid_token_formats(token, platform):
    validate_token_format(token, platform)


async def test_deactivate_reactivate_are_idempotent(registry, clock):
    device = await registry.register("u1", "c1", android_token(1), "android", "d1")
    await registry.deactivate(device.id)
    again = await registry.deactivate(device.id)
    assert again.is_active is False

    clock.advance(minutes=5)
    reactivated = await registry.reactivate(device.id)
    assert reactivated.is_active is True
    assert reactivated.last_used_at == clock.now


async def test_unknown_device_raises_not_found(registry):
    with pytest.raises(NotFoundError):
        await registry.deactivate("missing")
    with pytest.raises(NotFoundError):
        await registry.remove("missing")
    with pytest.raises(NotFoundError):
        await registry.get("missing")


async def test_deactivate_tokens_by_value(registry):
    await registry.register("u1", "c1", android_token(1), "android", "d1")
    await registry.register("u1", "c1", android_token(2), "android", "d2")
    assert await registry.deactivate_tokens([android_token(1), "unknown"]) == 1
    assert [t.token for t in await registry.tokens_for("u1", "c1")] == [android_token(2)]


async def test_remove_and_remove_for_user(registry, session_factory):
    d1 = await registry.register("u1", "c1", android_token(1), "android", "d1")
    await registry.register("u1", "c1", android_token(2), "android", "d2")
    await registry.register("u1", "c2", android_token(3), "android", "d3")

    await registry.remove(d1.id)
    assert await count_rows(session_factory) == 2
    assert await registry.remove_for_user("u1", "c1") == 1
    assert await count_rows(session_factory) == 1


async def test_company_lookups(registry):
    await registry.register("u1", "c1", android_token(1), "android", "d1")
    await registry.register("u2", "c1", ios_token(2), "ios", "d2")
    await registry.register("u3", "c2", ios_token(3), "ios", "d3")

    assert len(await registry.tokens_for_company("c1")) == 2
    assert [t.user_id for t in await registry.tokens_for_company("c1", platform="ios")] == ["u2"]
    assert await registry.count_by_platform("c1") == {"android": 1, "ios": 1, "web": 0}


async def test_sweep_removes_only_old_inactive_tokens(registry, clock):
    start = clock.now
    old = await registry.register("u1", "c1", android_token(1), "android", "old")
    recent = await registry.register("u1", "c1", android_token(2), "android", "recent")
    active = await registry.register("u1", "c1", android_token(3), "android", "active")
    await registry.deactivate(old.id)
    await registry.deactivate(recent.id)

    # Deactivation does not refresh last use; move "recent" to 29 days before the sweep
    clock.now = start + timedelta(days=2)
    await registry.reactivate(recent.id)
    await registry.deactivate(recent.id)

    clock.now = start + timedelta(days=31)
    result = await registry.sweep_inactive(30)

    assert result.removed_count == 1
    assert result.errors == []
    with pytest.raises(NotFoundError):
        await registry.get(old.id)
    assert (await registry.get(recent.id)).is_active is False
    assert (await registry.get(active.id)).is_active is True


async def test_sweep_never_removes_active_tokens(registry, clock):
    device = await registry.register("u1", "c1", android_token(1), "android", "d1")
    clock.advance(days=400)
    result = await registry.sweep_inactive(30)
    assert result.removed_count == 0
    assert (await registry.get(device.id)).is_active is True


async def test_sweep_rejects_non_positive_age(registry):
    with pytest.raises(ValidationError):
        await registry.sweep_inactive(0)
