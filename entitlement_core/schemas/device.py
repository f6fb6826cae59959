"""
Device Schemas
==============
"""

from datetime import datetime
from typing import Optional
import uuid

from pydantic import BaseModel, Field

from entitlement_core.models.profile import Platform


class RegisterDeviceRequest(BaseModel):
    fcm_token: str = Field(alias="fcmToken", min_length=1, max_length=512)
    device_type: Platform = Field(default=Platform.WEB, alias="deviceType")
    device_name: Optional[str] = Field(None, alias="deviceName", max_length=255)

    class Config:
        populate_by_name = True


class DeviceResponse(BaseModel):
    id: uuid.UUID
    device_type: str = Field(alias="deviceType")
    device_name: Optional[str] = Field(None, alias="deviceName")
    is_active: bool = Field(alias="isActive")
    created: bool
    updated_at: Optional[datetime] = Field(None, alias="updatedAt")

    class Config:
        populate_by_name = True
