"""
Catalog Models
==============

Admin-managed subscription plans and credit packages. Each row may carry
a storefront product id per platform; active rows override the built-in
product table.
"""

from typing import Optional
import uuid

from sqlalchemy import Boolean, Integer, String
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from entitlement_core.db.base import Base, TimestampMixin


class SubscriptionPlan(Base, TimestampMixin):
    """Subscription plan offered in the storefronts."""

    __tablename__ = "subscription_plans"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    credits: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    apple_product_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    android_product_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    def __repr__(self) -> str:
        return f"<SubscriptionPlan(name={self.name}, credits={self.credits})>"


class CreditPackage(Base, TimestampMixin):
    """One-time credit pack offered in the storefronts."""

    __tablename__ = "credit_packages"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    credits: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    apple_product_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    android_product_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    def __repr__(self) -> str:
        return f"<CreditPackage(name={self.name}, credits={self.credits})>"
