"""
Devices API Endpoints
=====================

Push token registration for the calling user.
"""

import logging

from fastapi import APIRouter

from entitlement_core.dependencies import CurrentUserId, DBSession
from entitlement_core.schemas.device import DeviceResponse, RegisterDeviceRequest
from entitlement_core.services.device_service import DeviceService

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/register", response_model=DeviceResponse)
async def register_device(
    body: RegisterDeviceRequest,
    user_id: CurrentUserId,
    db: DBSession,
) -> DeviceResponse:
    """Register or reactivate an FCM token for the caller."""
    device, created = await DeviceService(db).register(
        user_id,
        body.fcm_token,
        device_type=body.device_type.value,
        device_name=body.device_name,
    )
    return DeviceResponse(
        id=device.id,
        device_type=device.device_type,
        device_name=device.device_name,
        is_active=device.is_active,
        created=created,
        updated_at=device.updated_at,
    )
