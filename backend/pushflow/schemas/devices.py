"""Device registration schemas for API."""
from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field

from ..models.device_token import Platform


class DeviceRegisterRequest(BaseModel):
    """Request to register a device for push notifications."""
    user_id: str = Field(..., min_length=1)
    company_id: str = Field(..., min_length=1)
    token: str = Field(..., min_length=1)
    platform: Platform
    device_id: str = Field(..., min_length=1)
    device_name: Optional[str] = None
    app_version: Optional[str] = None
    os_version: Optional[str] = None


class DeviceTokenResponse(BaseModel):
    """Device token in API responses."""
    id: str
    user_id: str
    company_id: str
    platform: str
    device_id: str
    device_name: Optional[str] = None
    app_version: Optional[str] = None
    os_version: Optional[str] = None
    is_active: bool
    last_used_at: datetime
    created_at: datetime

    class Config:
        from_attributes = True
