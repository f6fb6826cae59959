"""
Campaign Models
===============

Marketing push campaigns and their per-recipient delivery log.

Campaign rows are created by the admin surface; only the dispatcher
moves them through ``pending -> processing -> completed | failed``.
``cancelled`` is written externally and observed between batches.
"""

from datetime import datetime
from enum import Enum
from typing import Optional
import uuid

from sqlalchemy import (
    DateTime,
    Enum as SQLEnum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from entitlement_core.db.base import Base, TimestampMixin, enum_values


class CampaignStatus(str, Enum):
    """Campaign lifecycle states."""
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"


class DeliveryStatus(str, Enum):
    """Outcome of one delivery attempt."""
    SENT = "sent"
    FAILED = "failed"


class Campaign(Base, TimestampMixin):
    """A push campaign targeting every active device (optionally one platform)."""

    __tablename__ = "marketing_campaigns"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    body: Mapped[str] = mapped_column(Text, nullable=False)
    image_url: Mapped[Optional[str]] = mapped_column(String(1024), nullable=True)
    # "all", "ios", "android" or "web"
    target_device_type: Mapped[str] = mapped_column(
        String(20),
        default="all",
        nullable=False,
    )
    status: Mapped[CampaignStatus] = mapped_column(
        SQLEnum(CampaignStatus, name="campaign_status", values_callable=enum_values),
        default=CampaignStatus.PENDING,
        nullable=False,
    )
    total_recipients: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    sent_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    failed_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    cursor_offset: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    current_batch: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    started_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    completed_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    last_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    __table_args__ = (
        Index("idx_campaigns_status_updated", "status", "updated_at"),
    )

    def __repr__(self) -> str:
        return f"<Campaign(id={self.id}, status={self.status}, offset={self.cursor_offset})>"


class CampaignLog(Base):
    """One row per attempted delivery; append-only."""

    __tablename__ = "marketing_campaign_logs"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    campaign_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("marketing_campaigns.id", ondelete="CASCADE"),
        nullable=False,
    )
    user_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    device_token: Mapped[str] = mapped_column(String(512), nullable=False)
    device_type: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    status: Mapped[DeliveryStatus] = mapped_column(
        SQLEnum(DeliveryStatus, name="delivery_status", values_callable=enum_values),
        nullable=False,
    )
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    sent_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )

    __table_args__ = (
        UniqueConstraint("campaign_id", "device_token", name="uq_campaign_logs_campaign_token"),
        Index("idx_campaign_logs_campaign_status", "campaign_id", "status"),
    )

    def __repr__(self) -> str:
        return f"<CampaignLog(campaign_id={self.campaign_id}, status={self.status})>"
