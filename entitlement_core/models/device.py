"""
Device Model
============

Push registration tokens. Rows are deactivated, never hard-deleted,
when the messaging service reports the token as permanently invalid.
"""

from typing import Optional
import uuid

from sqlalchemy import Boolean, Index, String, UniqueConstraint
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from entitlement_core.db.base import Base, TimestampMixin


class UserDevice(Base, TimestampMixin):
    """A device registered for push notifications."""

    __tablename__ = "user_devices"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    user_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        nullable=False,
        index=True,
    )
    fcm_token: Mapped[str] = mapped_column(
        String(512),
        nullable=False,
    )
    device_type: Mapped[str] = mapped_column(
        String(20),
        default="web",
        nullable=False,
    )
    device_name: Mapped[Optional[str]] = mapped_column(
        String(255),
        nullable=True,
    )
    is_active: Mapped[bool] = mapped_column(
        Boolean,
        default=True,
        nullable=False,
    )

    __table_args__ = (
        UniqueConstraint("user_id", "fcm_token", name="uq_user_devices_user_token"),
        Index("idx_user_devices_active_type", "is_active", "device_type"),
        Index("idx_user_devices_token", "fcm_token"),
    )

    def __repr__(self) -> str:
        return f"<UserDevice(user_id={self.user_id}, type={self.device_type}, active={self.is_active})>"
