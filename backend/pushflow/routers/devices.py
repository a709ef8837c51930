"""Device registration API endpoints for push notifications."""
import logging

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

from ..exceptions import NotFoundError, ValidationError
from ..schemas.devices import DeviceRegisterRequest, DeviceTokenResponse
from ..services.device_registry import DeviceRegistry, device_registry

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/devices", tags=["devices"])


class DeviceActionResponse(BaseModel):
    """Response after removing a device."""
    success: bool
    message: str


def get_registry() -> DeviceRegistry:
    """Dependency to get the device registry."""
    return device_registry


@router.post("/register", response_model=DeviceTokenResponse)
async def register_device(
    request: DeviceRegisterRequest,
    registry: DeviceRegistry = Depends(get_registry),
):
    """Register a device for push notifications.

    Registering the same (device, user, company) again updates the existing
    record. Apps should call this on every launch to keep the token current.
    """
    try:
        device = await registry.register(
            user_id=request.user_id,
            company_id=request.company_id,
            token=request.token,
            platform=request.platform,
            device_id=request.device_id,
            device_name=request.device_name,
            app_version=request.app_version,
            os_version=request.os_version,
        )
    except ValidationError as e:
        raise HTTPException(status_code=422, detail=str(e))
    return device


@router.get("/{company_id}/{user_id}", response_model=list[DeviceTokenResponse])
async def list_devices(
    company_id: str,
    user_id: str,
    registry: DeviceRegistry = Depends(get_registry),
):
    """Active devices of a user, most recently used first."""
    return await registry.tokens_for(user_id, company_id)


@router.post("/{device_token_id}/deactivate", response_model=DeviceTokenResponse)
async def deactivate_device(
    device_token_id: str,
    registry: DeviceRegistry = Depends(get_registry),
):
    """Stop sending to a device without deleting it."""
    try:
        return await registry.deactivate(device_token_id)
    except NotFoundError:
        raise HTTPException(status_code=404, detail="Device not found")


@router.post("/{device_token_id}/reactivate", response_model=DeviceTokenResponse)
async def reactivate_device(
    device_token_id: str,
    registry: DeviceRegistry = Depends(get_registry),
):
    """Resume sending to a previously deactivated device."""
    try:
        return await registry.reactivate(device_token_id)
    except NotFoundError:
        raise HTTPException(status_code=404, detail="Device not found")


@router.delete("/{device_token_id}", response_model=DeviceActionResponse)
async def remove_device(
    device_token_id: str,
    registry: DeviceRegistry = Depends(get_registry),
):
    """Delete a device record."""
    try:
        await registry.remove(device_token_id)
    except NotFoundError:
        raise HTTPException(status_code=404, detail="Device not found")

    return DeviceActionResponse(
        success=True,
        message="Device removed successfully",
    )
