"""
Product Catalog
===============

Maps storefront product identifiers to what a purchase grants.

The built-in table covers every product id that may still show up in
receipts or pending transactions, legacy and renewal aliases included.
Active ``subscription_plans`` / ``credit_packages`` rows override it.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Mapping

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from entitlement_core.models.catalog import CreditPackage, SubscriptionPlan

logger = logging.getLogger(__name__)


class ProductKind(str, Enum):
    """What a product grants."""
    SUBSCRIPTION = "subscription"
    CONSUMABLE = "consumable"


@dataclass(frozen=True)
class ProductMapping:
    """Plan and credit grant for one storefront product id."""

    plan: str
    credit_delta: int
    kind: ProductKind

    @property
    def is_subscription(self) -> bool:
        return self.kind is ProductKind.SUBSCRIPTION


def _sub(plan: str, credits: int) -> ProductMapping:
    return ProductMapping(plan=plan, credit_delta=credits, kind=ProductKind.SUBSCRIPTION)


def _pack(credits: int) -> ProductMapping:
    return ProductMapping(plan="free", credit_delta=credits, kind=ProductKind.CONSUMABLE)


FALLBACK_PRODUCT_MAPPINGS: dict[str, ProductMapping] = {
    # iOS (current)
    "com.timeless.premium.monthly": _sub("premium", 0),
    "com.timeless.premium.yearly": _sub("premium", 0),
    "credits_1500_ios": _pack(1500),
    # iOS (legacy, still present in old receipts)
    "basic_weekly": _sub("premium", 0),
    "basic_monthly": _sub("premium", 0),
    "basic_monthly_renew": _sub("premium", 0),
    "basic_yearly": _sub("premium", 0),
    "timeless_premium_monthly": _sub("premium", 500),
    "timeless_premium_yearly": _sub("premium", 5000),
    "timeless_premium_plus_monthly": _sub("premium_plus", 1000),
    "timeless_premium_plus_yearly": _sub("premium_plus", 7500),
    "timeless_credits_350": _pack(350),
    "timeless_credits_700": _pack(700),
    "timeless_credits_1400": _pack(1400),
    # Android
    "timeless.premium.monthly": _sub("premium", 500),
    "timeless.premium.yearly": _sub("premium", 5000),
    "timeless.premium_plus.monthly": _sub("premium_plus", 1000),
    "timeless.premium_plus.yearly": _sub("premium_plus", 7500),
    "timeless.credits.350": _pack(350),
    "timeless.credits.700": _pack(700),
    "timeless.credits.1400": _pack(1400),
    "credits_1500_android": _pack(1500),
}

ProductCatalog = Mapping[str, ProductMapping]


def plan_from_name(name: str) -> str:
    """Derive the plan tier from an admin-entered plan name."""
    lowered = name.lower()
    if "plus" in lowered:
        return "premium_plus"
    if "premium" in lowered:
        return "premium"
    return "free"


async def load_product_catalog(db: AsyncSession, platform: str) -> dict[str, ProductMapping]:
    """
    Build the product catalog for a platform.

    Always starts from the fallback table so legacy ids keep resolving;
    a failing catalog query degrades to the fallback table only.
    """
    catalog = dict(FALLBACK_PRODUCT_MAPPINGS)
    plan_column = (
        SubscriptionPlan.apple_product_id if platform == "ios"
        else SubscriptionPlan.android_product_id
    )
    package_column = (
        CreditPackage.apple_product_id if platform == "ios"
        else CreditPackage.android_product_id
    )

    # Savepoint so a missing catalog table does not poison the caller's transaction
    try:
        async with db.begin_nested():
            plans = await db.execute(
                select(SubscriptionPlan.name, SubscriptionPlan.credits, plan_column)
                .where(SubscriptionPlan.is_active.is_(True))
            )
            packages = await db.execute(
                select(CreditPackage.credits, package_column)
                .where(CreditPackage.is_active.is_(True))
            )
        for name, credits, product_id in plans.all():
            if product_id:
                catalog[product_id] = _sub(plan_from_name(name), credits or 0)

        for credits, product_id in packages.all():
            if product_id:
                catalog[product_id] = _pack(credits or 0)
    except Exception as exc:
        logger.warning("Product catalog query failed, using built-in table only: %s", exc)
        return dict(FALLBACK_PRODUCT_MAPPINGS)

    logger.debug("Product catalog ready: platform=%s products=%d", platform, len(catalog))
    return catalog
