"""
Subscription Schemas
====================

Action API used by the mobile client after a storefront purchase.
"""

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


class SubscriptionAction(str, Enum):
    VERIFY = "verify"
    CHECK = "check"
    RESTORE = "restore"


class MobileSubscriptionRequest(BaseModel):
    """
    Request body for ``POST /mobile-subscription``.

    ``action`` and ``platform`` are plain strings so unsupported values
    produce a 400 with a specific error code instead of a 422.
    """

    action: str
    platform: Optional[str] = None
    receipt_data: Optional[str] = Field(None, alias="receiptData")
    product_id: Optional[str] = Field(None, alias="productId")
    purchase_token: Optional[str] = Field(None, alias="purchaseToken")
    package_name: Optional[str] = Field(None, alias="packageName")

    class Config:
        populate_by_name = True


class MobileSubscriptionResponse(BaseModel):
    """Union of the verify / check / restore response shapes."""

    success: bool = True
    duplicate: Optional[bool] = None
    restored: Optional[bool] = None
    message: Optional[str] = None
    product_id: Optional[str] = Field(None, alias="productId")
    credits: Optional[int] = None
    plan: Optional[str] = None
    type: Optional[str] = None
    expires_date: Optional[datetime] = Field(None, alias="expiresDate")
    subscription_status: Optional[str] = Field(None, alias="subscriptionStatus")
    subscription_end_date: Optional[datetime] = Field(None, alias="subscriptionEndDate")
    source: Optional[str] = None

    class Config:
        populate_by_name = True
