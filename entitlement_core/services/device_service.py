"""
Device Service
==============

Push registration tokens: registration, paging for campaigns, and
deactivation of tokens the messaging service rejects permanently.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional, Sequence
import uuid

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from entitlement_core.models.device import UserDevice

logger = logging.getLogger(__name__)

TARGET_ALL = "all"


@dataclass(frozen=True)
class DeviceRecord:
    """One active push target."""

    user_id: uuid.UUID
    token: str
    device_type: str


class DeviceStore(ABC):
    """Persistence seam for device tokens."""

    @abstractmethod
    async def count_active(self, target_device_type: str = TARGET_ALL) -> int:
        ...

    @abstractmethod
    async def page_active(
        self,
        target_device_type: str,
        offset: int,
        limit: int,
    ) -> list[DeviceRecord]:
        """Active devices in stable order, ``[offset, offset + limit)``."""

    @abstractmethod
    async def active_for_user(self, user_id: uuid.UUID) -> list[DeviceRecord]:
        ...

    @abstractmethod
    async def deactivate(self, tokens: Sequence[str]) -> int:
        """Flip every row holding one of ``tokens`` to inactive."""


def _apply_target(stmt, target_device_type: str):
    if target_device_type and target_device_type != TARGET_ALL:
        stmt = stmt.where(UserDevice.device_type == target_device_type)
    return stmt


class SQLDeviceStore(DeviceStore):
    """PostgreSQL-backed device store."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def count_active(self, target_device_type: str = TARGET_ALL) -> int:
        stmt = _apply_target(
            select(func.count()).select_from(UserDevice).where(UserDevice.is_active.is_(True)),
            target_device_type,
        )
        result = await self.db.execute(stmt)
        return int(result.scalar() or 0)

    async def page_active(
        self,
        target_device_type: str,
        offset: int,
        limit: int,
    ) -> list[DeviceRecord]:
        stmt = _apply_target(
            select(UserDevice.user_id, UserDevice.fcm_token, UserDevice.device_type)
            .where(UserDevice.is_active.is_(True)),
            target_device_type,
        ).order_by(UserDevice.created_at, UserDevice.id).offset(offset).limit(limit)
        result = await self.db.execute(stmt)
        return [DeviceRecord(user_id, token, device_type) for user_id, token, device_type in result.all()]

    async def active_for_user(self, user_id: uuid.UUID) -> list[DeviceRecord]:
        result = await self.db.execute(
            select(UserDevice.user_id, UserDevice.fcm_token, UserDevice.device_type)
            .where(UserDevice.user_id == user_id, UserDevice.is_active.is_(True))
        )
        return [DeviceRecord(uid, token, device_type) for uid, token, device_type in result.all()]

    async def deactivate(self, tokens: Sequence[str]) -> int:
        if not tokens:
            return 0
        result = await self.db.execute(
            update(UserDevice)
            .where(UserDevice.fcm_token.in_(list(tokens)), UserDevice.is_active.is_(True))
            .values(is_active=False, updated_at=datetime.now(timezone.utc))
            .execution_options(synchronize_session=False)
        )
        return result.rowcount or 0


class DeviceService:
    """Registration of push tokens for the calling user."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def register(
        self,
        user_id: uuid.UUID,
        fcm_token: str,
        device_type: str = "web",
        device_name: Optional[str] = None,
    ) -> tuple[UserDevice, bool]:
        """
        Register ``fcm_token`` for ``user_id``.

        An existing (user, token) row is reactivated and updated. The same
        token held by another user is deactivated there first, since a
        physical device only delivers to its current account.

        Returns:
            (device row, created)
        """
        now = datetime.now(timezone.utc)

        result = await self.db.execute(
            select(UserDevice).where(
                UserDevice.user_id == user_id,
                UserDevice.fcm_token == fcm_token,
            )
        )
        device = result.scalar_one_or_none()

        if device is not None:
            device.is_active = True
            device.device_type = device_type
            device.device_name = device_name
            device.updated_at = now
            await self.db.flush()
            logger.info("Device reactivated: user=%s type=%s", user_id, device_type)
            return device, False

        moved = await self.db.execute(
            update(UserDevice)
            .where(
                UserDevice.fcm_token == fcm_token,
                UserDevice.user_id != user_id,
                UserDevice.is_active.is_(True),
            )
            .values(is_active=False, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        if moved.rowcount:
            logger.info("Token moved from %d other account(s) to user=%s", moved.rowcount, user_id)

        device = UserDevice(
            user_id=user_id,
            fcm_token=fcm_token,
            device_type=device_type,
            device_name=device_name,
            is_active=True,
        )
        self.db.add(device)
        await self.db.flush()
        await self.db.refresh(device)
        logger.info("Device registered: user=%s type=%s", user_id, device_type)
        return device, True
