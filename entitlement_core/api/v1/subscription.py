"""
Mobile Subscription API
=======================

Single action endpoint used by the mobile client:

- ``verify``: validate a storefront purchase and grant its entitlement
- ``check``: read the caller's current entitlement
- ``restore``: re-apply an active subscription without granting credits
"""

import logging
from dataclasses import replace
from typing import Annotated, Awaitable, Callable

from fastapi import APIRouter, Depends

from entitlement_core.core.errors import (
    ConcurrentUpdateError,
    ConflictError,
    ErrorCodes,
    NotFoundError,
    ProfileNotFoundError,
    ServiceUnavailableError,
    UnknownProductError,
    ValidationError,
)
from entitlement_core.core.product_catalog import ProductCatalog, load_product_catalog
from entitlement_core.dependencies import (
    CurrentUserId,
    DBSession,
    get_entitlement_service,
    get_receipt_verifier,
)
from entitlement_core.schemas.subscription import (
    MobileSubscriptionRequest,
    MobileSubscriptionResponse,
    SubscriptionAction,
)
from entitlement_core.services.entitlement_service import EntitlementService
from entitlement_core.services.receipt_verifier import (
    AppleReceiptProof,
    GooglePurchaseProof,
    PurchaseProof,
    ReceiptVerifier,
)
from entitlement_core.services.reconciler import (
    EntitlementEvent,
    PurchaseGranted,
    PurchaseRestored,
    VerifiedPurchase,
)

logger = logging.getLogger(__name__)

router = APIRouter()

CatalogLoader = Callable[[str], Awaitable[ProductCatalog]]


def get_catalog_loader(db: DBSession) -> CatalogLoader:
    async def load(platform: str) -> ProductCatalog:
        return await load_product_catalog(db, platform)
    return load


Entitlements = Annotated[EntitlementService, Depends(get_entitlement_service)]
Verifier = Annotated[ReceiptVerifier, Depends(get_receipt_verifier)]
Catalogs = Annotated[CatalogLoader, Depends(get_catalog_loader)]


# =============================================================================
# Helpers
# =============================================================================

def _build_proof(body: MobileSubscriptionRequest, catalog: ProductCatalog) -> PurchaseProof:
    """Purchase proof for the request's platform; 400 when fields are missing."""
    if body.platform == "ios":
        if not body.receipt_data:
            raise ValidationError(
                "receiptData is required for iOS",
                field="receiptData",
                code=ErrorCodes.SUB_MISSING_PROOF,
            )
        return AppleReceiptProof(receipt_data=body.receipt_data)

    if body.platform == "android":
        if not (body.product_id and body.purchase_token and body.package_name):
            raise ValidationError(
                "productId, purchaseToken and packageName are required for Android",
                field="purchaseToken",
                code=ErrorCodes.SUB_MISSING_PROOF,
            )
        mapping = catalog.get(body.product_id)
        if mapping is None:
            raise UnknownProductError(body.product_id)
        return GooglePurchaseProof(
            package_name=body.package_name,
            product_id=body.product_id,
            purchase_token=body.purchase_token,
            is_subscription=mapping.is_subscription,
        )

    raise ValidationError(
        f"Unsupported platform: {body.platform}",
        field="platform",
        code=ErrorCodes.SUB_INVALID_PLATFORM,
    )


async def _verified_purchase(
    body: MobileSubscriptionRequest,
    verifier: ReceiptVerifier,
    catalog: ProductCatalog,
) -> VerifiedPurchase:
    proof = _build_proof(body, catalog)
    result = await verifier.verify(body.platform, proof)

    if not result.ok:
        logger.info("Verification failed: platform=%s error=%s", body.platform, result.error)
        if result.retryable:
            raise ServiceUnavailableError(message=result.error)
        raise ValidationError(result.error, code=ErrorCodes.SUB_VERIFICATION_FAILED)

    purchase = result.purchase
    # Old iOS receipts can carry product ids the catalog no longer knows
    if purchase.product_id not in catalog and body.product_id in catalog:
        logger.info(
            "Receipt product %s unmapped, using requested %s",
            purchase.product_id,
            body.product_id,
        )
        purchase = replace(purchase, product_id=body.product_id)
    return purchase


async def _apply(
    entitlements: EntitlementService,
    user_id,
    event: EntitlementEvent,
    catalog: ProductCatalog,
):
    try:
        return await entitlements.apply(user_id, event, catalog)
    except UnknownProductError as exc:
        raise ValidationError(str(exc), field="productId", code=ErrorCodes.SUB_UNKNOWN_PRODUCT)
    except ProfileNotFoundError as exc:
        raise NotFoundError(code=ErrorCodes.SUB_PROFILE_NOT_FOUND, message=str(exc))
    except ConcurrentUpdateError as exc:
        raise ConflictError(code=ErrorCodes.SUB_CONFLICT, message=str(exc))


# =============================================================================
# Actions
# =============================================================================

async def _verify(body, user_id, entitlements, verifier, catalogs) -> MobileSubscriptionResponse:
    catalog = await catalogs(body.platform)
    try:
        purchase = await _verified_purchase(body, verifier, catalog)
    except UnknownProductError as exc:
        raise ValidationError(str(exc), field="productId", code=ErrorCodes.SUB_UNKNOWN_PRODUCT)

    outcome = await _apply(entitlements, user_id, PurchaseGranted(purchase), catalog)
    if outcome.skipped:
        return MobileSubscriptionResponse(duplicate=True, message="Purchase already processed")

    mapping = outcome.mapping
    return MobileSubscriptionResponse(
        product_id=purchase.product_id,
        credits=mapping.credit_delta,
        plan=mapping.plan,
        type=mapping.kind.value,
        expires_date=purchase.expires_at,
    )


async def _check(user_id, entitlements) -> MobileSubscriptionResponse:
    try:
        snapshot = await entitlements.get_snapshot(user_id)
    except ProfileNotFoundError as exc:
        raise NotFoundError(code=ErrorCodes.SUB_PROFILE_NOT_FOUND, message=str(exc))
    return MobileSubscriptionResponse(
        credits=snapshot.credits,
        plan=snapshot.plan,
        subscription_status=snapshot.subscription_status.value,
        subscription_end_date=snapshot.subscription_end_date,
        source=snapshot.source,
    )


async def _restore(body, user_id, entitlements, verifier, catalogs) -> MobileSubscriptionResponse:
    catalog = await catalogs(body.platform)
    try:
        purchase = await _verified_purchase(body, verifier, catalog)
    except UnknownProductError:
        return MobileSubscriptionResponse(restored=False, message="No active subscription found")

    outcome = await _apply(entitlements, user_id, PurchaseRestored(purchase), catalog)
    if outcome.skipped:
        return MobileSubscriptionResponse(restored=False, message="No active subscription found")

    return MobileSubscriptionResponse(
        restored=True,
        plan=outcome.snapshot.plan,
        expires_date=outcome.snapshot.subscription_end_date,
    )


@router.post(
    "",
    response_model=MobileSubscriptionResponse,
    response_model_exclude_none=True,
    summary="Verify, check or restore a storefront purchase",
)
async def mobile_subscription(
    body: MobileSubscriptionRequest,
    user_id: CurrentUserId,
    entitlements: Entitlements,
    verifier: Verifier,
    catalogs: Catalogs,
) -> MobileSubscriptionResponse:
    """
    Action endpoint for the mobile client.

    Verification failures and unknown products return 400; a storefront
    outage returns 503 so the client can retry.
    """
    try:
        action = SubscriptionAction(body.action)
    except ValueError:
        raise ValidationError(
            f"Invalid action: {body.action}",
            field="action",
            code=ErrorCodes.SUB_INVALID_ACTION,
        )

    logger.info("Mobile subscription action=%s platform=%s user=%s", action.value, body.platform, user_id)

    if action is SubscriptionAction.CHECK:
        return await _check(user_id, entitlements)
    if action is SubscriptionAction.VERIFY:
        return await _verify(body, user_id, entitlements, verifier, catalogs)
    return await _restore(body, user_id, entitlements, verifier, catalogs)
