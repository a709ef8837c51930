"""Template store - persisted, versioned notification templates."""
import logging
import uuid
from datetime import datetime
from typing import Callable, Optional

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import async_sessionmaker

from ..database import async_session
from ..exceptions import ConfigurationError, NotFoundError, ValidationError
from ..models.notification import Priority
from ..models.notification_template import NotificationTemplate
from ..utils.db_utils import retry_on_lock
from ..utils.time_utils import utcnow

logger = logging.getLogger(__name__)


class TemplateStore:
    """Lookup and versioning for NotificationTemplate records."""

    def __init__(
        self,
        session_factory: async_sessionmaker = async_session,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._session_factory = session_factory
        self._clock = clock

    async def create(
        self,
        name: str,
        title: str,
        body: str,
        category: str = "info",
        priority: str = Priority.NORMAL.value,
        sound: Optional[str] = None,
        icon: Optional[str] = None,
        image_url: Optional[str] = None,
        click_action: Optional[str] = None,
        data: Optional[dict] = None,
    ) -> NotificationTemplate:
        """Create the next version of a named template and make it the only active one."""
        if not name or not title or not body:
            raise ValidationError("Template name, title and body are required", field="name")
        try:
            priority = Priority(priority).value
        except ValueError:
            raise ValidationError(f"Unknown priority: {priority}", field="priority") from None

        async with self._session_factory() as session:
            result = await session.execute(
                select(func.max(NotificationTemplate.version)).where(NotificationTemplate.name == name)
            )
            version = (result.scalar() or 0) + 1

            await session.execute(
                update(NotificationTemplate)
                .where(NotificationTemplate.name == name, NotificationTemplate.is_active.is_(True))
                .values(is_active=False, updated_at=self._clock())
            )
            template = NotificationTemplate(
                id=str(uuid.uuid4()),
                name=name,
                version=version,
                title=title,
                body=body,
                category=category,
                priority=priority,
                sound=sound,
                icon=icon,
                image_url=image_url,
                click_action=click_action,
                data=data,
                is_active=True,
            )
            session.add(template)
            await retry_on_lock(session.commit)
            await session.refresh(template)

        logger.info(f"Template created: {name} v{version} ({template.id})")
        return template

    async def get(self, template_id: str) -> NotificationTemplate:
        """Load a template by id.

        Raises:
            NotFoundError: no such template
        """
        async with self._session_factory() as session:
            template = await session.get(NotificationTemplate, template_id)
        if template is None:
            raise NotFoundError("NotificationTemplate", template_id)
        return template

    async def resolve(self, name: str) -> Optional[NotificationTemplate]:
        """The single active template for a name, or None if none is active.

        Raises:
            ConfigurationError: more than one active template shares the name
        """
        async with self._session_factory() as session:
            result = await session.execute(
                select(NotificationTemplate).where(
                    NotificationTemplate.name == name,
                    NotificationTemplate.is_active.is_(True),
                )
            )
            active = list(result.scalars().all())

        if len(active) > 1:
            versions = ", ".join(str(t.version) for t in active)
            raise ConfigurationError(f"Template '{name}' has {len(active)} active versions ({versions})")
        return active[0] if active else None

    async def set_active(self, template_id: str, active: bool) -> NotificationTemplate:
        """Flip a template's active flag. Activating does not touch siblings."""
        async with self._session_factory() as session:
            template = await session.get(NotificationTemplate, template_id)
            if template is None:
                raise NotFoundError("NotificationTemplate", template_id)
            template.is_active = active
            template.updated_at = self._clock()
            await retry_on_lock(session.commit)
            await session.refresh(template)
        logger.info(f"Template {template.name} v{template.version} active={active}")
        return template

    async def list_templates(self, category: Optional[str] = None, active_only: bool = False) -> list[NotificationTemplate]:
        """Templates ordered by name and version."""
        query = select(NotificationTemplate)
        if category:
            query = query.where(NotificationTemplate.category == category)
        if active_only:
            query = query.where(NotificationTemplate.is_active.is_(True))
        async with self._session_factory() as session:
            result = await session.execute(
                query.order_by(NotificationTemplate.name, NotificationTemplate.version)
            )
            return list(result.scalars().all())


# Global instance
template_store = TemplateStore()
