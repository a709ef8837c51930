"""Device registry - owns the mapping from (user, company, device) to a live token.

Registration is one INSERT .. ON CONFLICT statement keyed by the
(device_id, user_id, company_id) unique constraint, so near-simultaneous
registrations from the same device converge on a single row without a
read-then-write race.
"""
import logging
import re
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Iterable, Optional

from sqlalchemy import delete, func, select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..database import async_session
from ..exceptions import NotFoundError, ValidationError
from ..models.device_token import DeviceToken, Platform
from ..utils.db_utils import retry_on_lock
from ..utils.time_utils import utcnow

logger = logging.getLogger(__name__)

_HEX64 = re.compile(r"^[0-9a-fA-F]{64}$")


@dataclass
class SweepResult:
    """Outcome of an inactive-token sweep."""
    removed_count: int = 0
    errors: list[str] = field(default_factory=list)


def _short(token: str) -> str:
    return f"{token[:16]}..."


def validate_token_format(token: str, platform) -> None:
    """Reject tokens that cannot belong to the given platform.

    android (FCM): 140-200 characters
    ios (APNs): 64 hex characters
    web (FCM web/push): 100-500 characters

    Raises:
        ValidationError: unknown platform or malformed token
    """
    try:
        platform = Platform(platform)
    except ValueError:
        raise ValidationError(f"Unknown platform: {platform}", field="platform") from None

    if not token or token != token.strip():
        raise ValidationError("Token must be non-empty without surrounding whitespace", field="token")

    length = len(token)
    if platform == Platform.ANDROID:
        valid = 140 <= length <= 200
    elif platform == Platform.IOS:
        valid = bool(_HEX64.match(token))
    else:
        valid = 100 <= length <= 500

    if not valid:
        raise ValidationError(
            f"Token of length {length} is not a valid {platform.value} token",
            field="token",
        )


class DeviceRegistry:
    """Service owning DeviceToken records."""

    def __init__(
        self,
        session_factory: async_sessionmaker = async_session,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._session_factory = session_factory
        self._clock = clock

    def _insert_for(self, session: AsyncSession):
        """Dialect-specific insert supporting ON CONFLICT."""
        if session.bind.dialect.name == "postgresql":
            return postgresql.insert
        return sqlite.insert

    async def register(
        self,
        user_id: str,
        company_id: str,
        token: str,
        platform,
        device_id: str,
        device_name: Optional[str] = None,
        app_version: Optional[str] = None,
        os_version: Optional[str] = None,
    ) -> DeviceToken:
        """Register or refresh a device token.

        Upserts by (device_id, user_id, company_id): an existing row gets the new
        token, platform and metadata and is reactivated with a fresh last-used
        time. A token currently held by another device tuple is released first.

        Raises:
            ValidationError: malformed token for the platform (nothing is written)
        """
        validate_token_format(token, platform)
        platform = Platform(platform)
        if not device_id or not user_id or not company_id:
            raise ValidationError("user_id, company_id and device_id are required", field="device_id")

        now = self._clock()
        values = {
            "token": token,
            "platform": platform.value,
            "device_name": device_name,
            "app_version": app_version,
            "os_version": os_version,
            "is_active": True,
            "last_used_at": now,
            "updated_at": now,
        }

        async with self._session_factory() as session:
            # Same token moved to another user/device: the old row is stale
            await session.execute(
                delete(DeviceToken).where(
                    DeviceToken.token == token,
                    ~(
                        (DeviceToken.device_id == device_id)
                        & (DeviceToken.user_id == user_id)
                        & (DeviceToken.company_id == company_id)
                    ),
                )
            )

            insert = self._insert_for(session)
            stmt = insert(DeviceToken).values(
                id=str(uuid.uuid4()),
                user_id=user_id,
                company_id=company_id,
                device_id=device_id,
                created_at=now,
                **values,
            )
            stmt = stmt.on_conflict_do_update(
                index_elements=["device_id", "user_id", "company_id"],
                set_=values,
            )
            await session.execute(stmt)
            await retry_on_lock(session.commit)

            result = await session.execute(
                select(DeviceToken).where(
                    DeviceToken.device_id == device_id,
                    DeviceToken.user_id == user_id,
                    DeviceToken.company_id == company_id,
                )
            )
            device = result.scalar_one()

        logger.info(f"Device token registered: device={device_id} user={user_id} platform={platform.value} token={_short(token)}")
        return device

    async def get(self, device_token_id: str) -> DeviceToken:
        """Get a device token by id.

        Raises:
            NotFoundError: no such device token
        """
        async with self._session_factory() as session:
            device = await session.get(DeviceToken, device_token_id)
        if device is None:
            raise NotFoundError("DeviceToken", device_token_id)
        return device

    async def tokens_for(self, user_id: str, company_id: str) -> list[DeviceToken]:
        """Active tokens for a user, most recently used first."""
        async with self._session_factory() as session:
            result = await session.execute(
                select(DeviceToken)
                .where(
                    DeviceToken.user_id == user_id,
                    DeviceToken.company_id == company_id,
                    DeviceToken.is_active.is_(True),
                )
                .order_by(DeviceToken.last_used_at.desc())
            )
            return list(result.scalars().all())

    async def tokens_for_company(self, company_id: str, platform=None) -> list[DeviceToken]:
        """Active tokens for a company, optionally for one platform."""
        query = select(DeviceToken).where(
            DeviceToken.company_id == company_id,
            DeviceToken.is_active.is_(True),
        )
        if platform is not None:
            query = query.where(DeviceToken.platform == Platform(platform).value)
        async with self._session_factory() as session:
            result = await session.execute(query.order_by(DeviceToken.last_used_at.desc()))
            return list(result.scalars().all())

    async def count_by_platform(self, company_id: str) -> dict[str, int]:
        """Active device count per platform for a company."""
        counts = {platform.value: 0 for platform in Platform}
        async with self._session_factory() as session:
            result = await session.execute(
                select(DeviceToken.platform, func.count(DeviceToken.id))
                .where(DeviceToken.company_id == company_id, DeviceToken.is_active.is_(True))
                .group_by(DeviceToken.platform)
            )
            for platform, count in result.all():
                counts[platform] = count
        return counts

    async def _set_active(self, device_token_id: str, active: bool) -> DeviceToken:
        async with self._session_factory() as session:
            device = await session.get(DeviceToken, device_token_id)
            if device is None:
                raise NotFoundError("DeviceToken", device_token_id)
            now = self._clock()
            device.is_active = active
            device.updated_at = now
            if active:
                device.last_used_at = now
            await retry_on_lock(session.commit)
            await session.refresh(device)
        return device

    async def deactivate(self, device_token_id: str) -> DeviceToken:
        """Soft-deactivate a token. Idempotent."""
        device = await self._set_active(device_token_id, False)
        logger.info(f"Device token deactivated: {device_token_id}")
        return device

    async def reactivate(self, device_token_id: str) -> DeviceToken:
        """Reactivate a token and refresh its last-used time. Idempotent."""
        device = await self._set_active(device_token_id, True)
        logger.info(f"Device token reactivated: {device_token_id}")
        return device

    async def deactivate_tokens(self, tokens: Iterable[str]) -> int:
        """Deactivate tokens by value, e.g. ones the provider reported unregistered."""
        tokens = list(set(tokens))
        if not tokens:
            return 0
        async with self._session_factory() as session:
            result = await session.execute(
                update(DeviceToken)
                .where(DeviceToken.token.in_(tokens), DeviceToken.is_active.is_(True))
                .values(is_active=False, updated_at=self._clock())
            )
            await retry_on_lock(session.commit)
        logger.info(f"Deactivated {result.rowcount} unregistered device tokens")
        return result.rowcount

    async def remove(self, device_token_id: str) -> None:
        """Hard-delete a token.

        Raises:
            NotFoundError: no such device token
        """
        async with self._session_factory() as session:
            device = await session.get(DeviceToken, device_token_id)
            if device is None:
                raise NotFoundError("DeviceToken", device_token_id)
            await session.delete(device)
            await retry_on_lock(session.commit)
        logger.info(f"Device token removed: {device_token_id}")

    async def remove_for_user(self, user_id: str, company_id: str) -> int:
        """Hard-delete every token of a user within a company."""
        async with self._session_factory() as session:
            result = await session.execute(
                delete(DeviceToken).where(
                    DeviceToken.user_id == user_id,
                    DeviceToken.company_id == company_id,
                )
            )
            await retry_on_lock(session.commit)
        logger.info(f"Removed {result.rowcount} device tokens for user {user_id}")
        return result.rowcount

    async def sweep_inactive(self, max_age_days: int) -> SweepResult:
        """Hard-delete inactive tokens whose last use is older than the cutoff.

        Active tokens are never removed. Each failed deletion is collected and
        the sweep continues.
        """
        if max_age_days < 1:
            raise ValidationError("max_age_days must be at least 1", field="max_age_days")

        cutoff = self._clock() - timedelta(days=max_age_days)
        async with self._session_factory() as session:
            result = await session.execute(
                select(DeviceToken.id).where(
                    DeviceToken.is_active.is_(False),
                    DeviceToken.last_used_at < cutoff,
                )
            )
            stale_ids = list(result.scalars().all())

        sweep = SweepResult()
        for device_token_id in stale_ids:
            try:
                async with self._session_factory() as session:
                    await session.execute(
                        delete(DeviceToken).where(
                            DeviceToken.id == device_token_id,
                            DeviceToken.is_active.is_(False),
                        )
                    )
                    await retry_on_lock(session.commit)
                sweep.removed_count += 1
            except Exception as e:
                sweep.errors.append(f"Failed to remove token {device_token_id}: {e}")

        logger.info(f"Inactive token sweep: removed={sweep.removed_count} errors={len(sweep.errors)} cutoff={cutoff.isoformat()}")
        return sweep


# Global instance
device_registry = DeviceRegistry()
