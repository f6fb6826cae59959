"""
Profile Model
=============

The user's profile row carries the entitlement snapshot: plan tier,
subscription state and credit balance. Rows are never deleted by this
service, only transitioned.
"""

from datetime import datetime
from enum import Enum
from typing import Optional
import uuid

from sqlalchemy import (
    CheckConstraint,
    DateTime,
    Enum as SQLEnum,
    Index,
    Integer,
    String,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from entitlement_core.db.base import Base, TimestampMixin, enum_values


class SubscriptionStatus(str, Enum):
    """Subscription status values."""
    NONE = "none"
    ACTIVE = "active"
    CANCELLING = "cancelling"
    PAST_DUE = "past_due"
    PAUSED = "paused"
    EXPIRED = "expired"
    REVOKED = "revoked"
    REFUNDED = "refunded"


class Platform(str, Enum):
    """Purchase / device platform."""
    IOS = "ios"
    ANDROID = "android"
    WEB = "web"


class Profile(Base, TimestampMixin):
    """
    User profile with entitlement fields.

    ``revision`` is bumped on every entitlement write and used as the
    compare-and-swap guard for concurrent reconciliations.
    """

    __tablename__ = "profiles"

    user_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    email: Mapped[Optional[str]] = mapped_column(
        String(255),
        nullable=True,
    )

    # Entitlement snapshot
    plan: Mapped[str] = mapped_column(
        String(50),
        default="free",
        nullable=False,
    )
    subscription_status: Mapped[SubscriptionStatus] = mapped_column(
        SQLEnum(SubscriptionStatus, name="subscription_status", values_callable=enum_values),
        default=SubscriptionStatus.NONE,
        nullable=False,
    )
    subscription_end_date: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    # Storefront order / transaction id of the current subscription
    subscription_reference: Mapped[Optional[str]] = mapped_column(
        String(255),
        nullable=True,
        index=True,
    )
    source: Mapped[Optional[str]] = mapped_column(
        String(20),
        nullable=True,
    )
    credits: Mapped[int] = mapped_column(
        Integer,
        default=0,
        nullable=False,
    )
    revision: Mapped[int] = mapped_column(
        Integer,
        default=0,
        nullable=False,
    )

    __table_args__ = (
        CheckConstraint("credits >= 0", name="ck_profiles_credits_non_negative"),
        Index("idx_profiles_status_end_date", "subscription_status", "subscription_end_date"),
    )

    def __repr__(self) -> str:
        return (
            f"<Profile(user_id={self.user_id}, plan={self.plan}, "
            f"status={self.subscription_status}, credits={self.credits})>"
        )
