"""Tests for notification records, delivery bookkeeping and the expiry sweep."""
from datetime import timedelta

import pytest

from pushflow.exceptions import NotFoundError, ValidationError
from pushflow.models.notification import DeliveryStatus, NotificationStatus
from pushflow.services.notification_store import delivery_status_for


async def create(notifications, user_id="u1", **kwargs):
    values = dict(
        user_id=user_id,
        company_id="c1",
        category="info",
        priority="normal",
        title="Hello",
        body="World",
        channels=["push", "in_app"],
    )
    values.update(kwargs)
    return await notifications.create(**values)


@pytest.mark.parametrize("success, failure, status", [
    (0, 0, DeliveryStatus.PENDING),
    (2, 0, DeliveryStatus.SENT),
    (1, 1, DeliveryStatus.PARTIAL),
    (0, 3, DeliveryStatus.FAILED),
])
def test_delivery_status_for(success, failure, status):
    assert delivery_status_for(success, failure) == status


async def test_create_defaults(notifications):
    notification = await create(notifications)
    assert notification.status == NotificationStatus.UNREAD.value
    assert notification.delivery_status == DeliveryStatus.PENDING.value
    assert notification.channels == ["in_app", "push"]


async def test_record_delivery_counts_attempts(notifications, clock):
    notification = await create(notifications)
    updated = await notifications.record_delivery(notification.id, 1, 1, error="unregistered")
    assert updated.delivery_status == DeliveryStatus.PARTIAL.value
    assert updated.delivery_attempts == 1
    assert updated.sent_at == clock.now

    clock.advance(minutes=5)
    updated = await notifications.record_delivery(notification.id, 0, 2, error="transport", channels=["in_app"])
    assert updated.delivery_status == DeliveryStatus.FAILED.value
    assert updated.delivery_attempts == 2
    assert updated.last_error == "transport"
    assert updated.channels == ["in_app"]


async def test_status_lifecycle(notifications):
    notification = await create(notifications)
    read = await notifications.mark_read(notification.id, "u1")
    assert read.status == NotificationStatus.READ.value
    assert read.read_at is not None
    assert (await notifications.mark_read(notification.id, "u1")).status == NotificationStatus.READ.value

    archived = await notifications.archive(notification.id, "u1")
    assert archived.status == NotificationStatus.ARCHIVED.value
    with pytest.raises(ValidationError):
        await notifications.mark_read(notification.id, "u1")

    deleted = await notifications.delete(notification.id, "u1")
    assert deleted.status == NotificationStatus.DELETED.value
    with pytest.raises(ValidationError):
        await notifications.archive(notification.id, "u1")


async def test_transitions_are_scoped_to_owner(notifications):
    notification = await create(notifications)
    with pytest.raises(NotFoundError):
        await notifications.mark_read(notification.id, "someone-else")


async def test_list_for_user_newest_first_without_deleted(notifications, clock):
    first = await create(notifications, title="first")
    clock.advance(minutes=1)
    second = await create(notifications, title="second")
    await create(notifications, user_id="u2")
    clock.advance(minutes=1)
    third = await create(notifications, title="third")
    await notifications.delete(third.id, "u1")

    assert [n.id for n in await notifications.list_for_user("u1")] == [second.id, first.id]
    assert [n.id for n in await notifications.list_for_user("u1", status="deleted")] == [third.id]


async def test_get_many_ignores_unknown_ids(notifications):
    notification = await create(notifications)
    assert [n.id for n in await notifications.get_many([notification.id, "missing"])] == [notification.id]
    assert await notifications.get_many([]) == []


async def test_sweep_expired_moves_forward_only(notifications, clock):
    now = clock.now
    fresh = await create(notifications, expires_at=now + timedelta(days=1))
    expired_unread = await create(notifications, expires_at=now - timedelta(days=1))
    expired_read = await create(notifications, expires_at=now - timedelta(days=1))
    await notifications.mark_read(expired_read.id, "u1")
    long_gone = await create(notifications, expires_at=now - timedelta(days=100))
    await notifications.archive(long_gone.id, "u1")

    counts = await notifications.sweep_expired()
    assert counts == {"archived": 2, "deleted": 1}

    assert (await notifications.get(fresh.id)).status == NotificationStatus.UNREAD.value
    assert (await notifications.get(expired_unread.id)).status == NotificationStatus.ARCHIVED.value
    assert (await notifications.get(expired_read.id)).status == NotificationStatus.ARCHIVED.value
    assert (await notifications.get(long_gone.id)).status == NotificationStatus.DELETED.value
