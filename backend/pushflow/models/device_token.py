"""DeviceToken model - registered push delivery endpoints."""
from enum import Enum

from sqlalchemy import Boolean, Column, DateTime, String, UniqueConstraint, Index

from ..database import Base
from ..utils.time_utils import utcnow


class Platform(str, Enum):
    """Delivery platforms; each has its own token format."""
    ANDROID = "android"
    IOS = "ios"
    WEB = "web"


class DeviceToken(Base):
    """One delivery endpoint owned by a (user, company) on a physical device."""

    __tablename__ = "device_tokens"
    __table_args__ = (
        UniqueConstraint("device_id", "user_id", "company_id", name="uq_device_tokens_device_user_company"),
        Index("ix_device_tokens_owner_active", "user_id", "company_id", "is_active"),
    )

    id = Column(String, primary_key=True)
    user_id = Column(String, nullable=False)
    company_id = Column(String, nullable=False, index=True)
    token = Column(String, unique=True, nullable=False)
    platform = Column(String, nullable=False)  # android, ios, web
    device_id = Column(String, nullable=False)
    device_name = Column(String, nullable=True)
    app_version = Column(String, nullable=True)
    os_version = Column(String, nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)
    last_used_at = Column(DateTime, nullable=False, default=utcnow)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    def __repr__(self) -> str:
        return f"<DeviceToken {self.id} {self.platform} user={self.user_id} active={self.is_active}>"
