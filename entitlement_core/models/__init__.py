"""
Database Models
===============

SQLAlchemy ORM models for all database entities.

All models are imported here to ensure they are registered
with SQLAlchemy's metadata for migrations.
"""

from entitlement_core.models.profile import Profile, SubscriptionStatus, Platform
from entitlement_core.models.ledger import CreditTransaction, LedgerEntryType
from entitlement_core.models.catalog import SubscriptionPlan, CreditPackage
from entitlement_core.models.device import UserDevice
from entitlement_core.models.campaign import (
    Campaign,
    CampaignLog,
    CampaignStatus,
    DeliveryStatus,
)

__all__ = [
    # Profile
    "Profile",
    "SubscriptionStatus",
    "Platform",
    # Ledger
    "CreditTransaction",
    "LedgerEntryType",
    # Catalog
    "SubscriptionPlan",
    "CreditPackage",
    # Devices
    "UserDevice",
    # Campaigns
    "Campaign",
    "CampaignLog",
    "CampaignStatus",
    "DeliveryStatus",
]
