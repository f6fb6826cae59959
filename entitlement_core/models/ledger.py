"""
Credit Ledger Model
===================

Append-only audit trail of credit movements. ``reference_id`` carries
the storefront transaction / order id and is the idempotency key for
grants.
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
    func,
    text,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from entitlement_core.db.base import Base, enum_values


class LedgerEntryType(str, Enum):
    """Kinds of credit ledger rows."""
    SUBSCRIPTION = "subscription"
    RENEWAL = "renewal"
    PURCHASE = "purchase"
    USAGE = "usage"
    REFUND = "refund"


class CreditTransaction(Base):
    """
    Ledger row.

    At most one non-refund row and one refund row may exist per
    ``reference_id``; both are enforced by partial unique indexes.
    """

    __tablename__ = "credit_transactions"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    user_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("profiles.user_id", ondelete="CASCADE"),
        nullable=False,
    )
    type: Mapped[LedgerEntryType] = mapped_column(
        SQLEnum(LedgerEntryType, name="ledger_entry_type", values_callable=enum_values),
        nullable=False,
    )
    amount: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
    )
    description: Mapped[Optional[str]] = mapped_column(
        String(255),
        nullable=True,
    )
    reference_id: Mapped[Optional[str]] = mapped_column(
        String(255),
        nullable=True,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )

    __table_args__ = (
        Index(
            "uq_credit_transactions_grant_reference",
            "reference_id",
            unique=True,
            postgresql_where=text("type <> 'refund' AND reference_id IS NOT NULL"),
        ),
        Index(
            "uq_credit_transactions_refund_reference",
            "reference_id",
            unique=True,
            postgresql_where=text("type = 'refund' AND reference_id IS NOT NULL"),
        ),
        Index("idx_credit_transactions_user_created", "user_id", "created_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<CreditTransaction(user_id={self.user_id}, type={self.type}, "
            f"amount={self.amount}, reference_id={self.reference_id})>"
        )
