"""
Receipt Verifier
================

Validates a client-submitted purchase proof against the owning storefront
and normalizes it to a :class:`VerifiedPurchase`.

- iOS: the App Store ``verifyReceipt`` endpoint, with a single retry
  against the sandbox host when production answers status 21007.
- Android: the Play Developer publisher API, authenticated with a
  service-account bearer token.

Verification failures are returned as a :class:`VerificationResult`
carrying an error string; only missing configuration raises.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional, Union

import httpx

from entitlement_core.config import settings
from entitlement_core.core.errors import ConfigurationError, ProviderError
from entitlement_core.services.google_auth import (
    ANDROID_PUBLISHER_SCOPE,
    ServiceAccountAuthenticator,
)
from entitlement_core.services.reconciler import VerifiedPurchase

logger = logging.getLogger(__name__)

APPLE_STATUS_OK = 0
APPLE_STATUS_SANDBOX_RECEIPT = 21007

# paymentState (subscriptions) / purchaseState (one-time products)
GOOGLE_VALID_STATES = (0, 1)


@dataclass(frozen=True)
class AppleReceiptProof:
    """Base64 App Store receipt blob."""

    receipt_data: str


@dataclass(frozen=True)
class GooglePurchaseProof:
    """Play purchase coordinates."""

    package_name: str
    product_id: str
    purchase_token: str
    is_subscription: bool


PurchaseProof = Union[AppleReceiptProof, GooglePurchaseProof]


@dataclass(frozen=True)
class VerificationResult:
    """Either a verified purchase or a descriptive error."""

    purchase: Optional[VerifiedPurchase] = None
    error: Optional[str] = None
    retryable: bool = False

    @property
    def ok(self) -> bool:
        return self.purchase is not None

    @classmethod
    def success(cls, purchase: VerifiedPurchase) -> "VerificationResult":
        return cls(purchase=purchase)

    @classmethod
    def failure(cls, error: str, retryable: bool = False) -> "VerificationResult":
        return cls(error=error, retryable=retryable)


def _from_millis(value) -> Optional[datetime]:
    if value in (None, ""):
        return None
    return datetime.fromtimestamp(int(value) / 1000, tz=timezone.utc)


class ReceiptVerifier:
    """Storefront receipt verification for both platforms."""

    def __init__(
        self,
        authenticator: Optional[ServiceAccountAuthenticator] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        shared_secret: Optional[str] = None,
    ):
        self._authenticator = authenticator
        self.transport = transport
        self.shared_secret = (
            shared_secret if shared_secret is not None else settings.APPLE_SHARED_SECRET
        )

    @property
    def authenticator(self) -> ServiceAccountAuthenticator:
        if self._authenticator is None:
            self._authenticator = ServiceAccountAuthenticator.from_settings(
                ANDROID_PUBLISHER_SCOPE,
                transport=self.transport,
            )
        return self._authenticator

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            transport=self.transport,
            timeout=settings.HTTP_TIMEOUT_SECONDS,
        )

    async def verify(self, platform: str, proof: PurchaseProof) -> VerificationResult:
        """
        Verify ``proof`` for ``platform``.

        Raises:
            ConfigurationError: Shared secret or service account missing.
        """
        if platform == "ios" and isinstance(proof, AppleReceiptProof):
            return await self.verify_apple(proof)
        if platform == "android" and isinstance(proof, GooglePurchaseProof):
            return await self.verify_google(proof)
        return VerificationResult.failure(f"Unsupported platform or proof: {platform}")

    # -------------------------------------------------------------------------
    # App Store
    # -------------------------------------------------------------------------

    async def _post_receipt(self, client: httpx.AsyncClient, url: str, receipt_data: str) -> dict:
        response = await client.post(
            url,
            json={
                "receipt-data": receipt_data,
                "password": self.shared_secret,
                "exclude-old-transactions": True,
            },
        )
        if response.status_code >= 500:
            raise ProviderError(
                f"App Store returned HTTP {response.status_code}",
                status_code=response.status_code,
            )
        return response.json()

    async def verify_apple(self, proof: AppleReceiptProof) -> VerificationResult:
        if not self.shared_secret:
            raise ConfigurationError("APPLE_SHARED_SECRET is not configured")

        async with self._client() as client:
            try:
                result = await self._post_receipt(
                    client, settings.APPLE_PRODUCTION_VERIFY_URL, proof.receipt_data,
                )
                if result.get("status") == APPLE_STATUS_SANDBOX_RECEIPT:
                    logger.info("Sandbox receipt detected, retrying against sandbox host")
                    result = await self._post_receipt(
                        client, settings.APPLE_SANDBOX_VERIFY_URL, proof.receipt_data,
                    )
            except (httpx.HTTPError, ProviderError, ValueError) as exc:
                logger.warning("App Store verification unavailable: %s", exc)
                return VerificationResult.failure(
                    f"App Store verification unavailable: {exc}", retryable=True,
                )

        status = result.get("status")
        if status != APPLE_STATUS_OK:
            logger.info("App Store rejected receipt: status=%s", status)
            return VerificationResult.failure(f"Apple verification failed: status {status}")

        transaction = self._latest_apple_transaction(result)
        if transaction is None:
            return VerificationResult.failure("No purchase found in receipt")

        return VerificationResult.success(VerifiedPurchase(
            product_id=transaction.get("product_id", ""),
            transaction_id=str(transaction.get("transaction_id", "")),
            original_transaction_id=transaction.get("original_transaction_id"),
            expires_at=_from_millis(transaction.get("expires_date_ms")),
            raw_status=status,
            platform="ios",
        ))

    @staticmethod
    def _latest_apple_transaction(result: dict) -> Optional[dict]:
        """Most recent transaction from ``latest_receipt_info`` or the in-app list."""
        transactions = result.get("latest_receipt_info") or (
            result.get("receipt") or {}
        ).get("in_app") or []
        if not transactions:
            return None
        return max(
            transactions,
            key=lambda t: int(t.get("purchase_date_ms") or t.get("expires_date_ms") or 0),
        )

    # -------------------------------------------------------------------------
    # Google Play
    # -------------------------------------------------------------------------

    async def verify_google(self, proof: GooglePurchaseProof) -> VerificationResult:
        try:
            access_token = await self.authenticator.get_access_token()
        except ProviderError as exc:
            return VerificationResult.failure(str(exc), retryable=True)

        try:
            data = await self.fetch_google_purchase(proof, access_token)
        except ProviderError as exc:
            retryable = exc.status_code is None or exc.status_code >= 500
            return VerificationResult.failure(
                f"Google verification failed: {exc}", retryable=retryable,
            )

        state = data.get("paymentState") if proof.is_subscription else data.get("purchaseState")
        if state not in GOOGLE_VALID_STATES:
            logger.info(
                "Play purchase in unusable state: product=%s state=%s",
                proof.product_id,
                state,
            )
            return VerificationResult.failure("Invalid purchase state")

        return VerificationResult.success(VerifiedPurchase(
            product_id=proof.product_id,
            transaction_id=data.get("orderId") or proof.purchase_token,
            expires_at=_from_millis(data.get("expiryTimeMillis")),
            raw_status=state,
            platform="android",
        ))

    async def fetch_google_purchase(
        self,
        proof: GooglePurchaseProof,
        access_token: str,
    ) -> dict:
        """GET the authoritative purchase record from the publisher API."""
        kind = "subscriptions" if proof.is_subscription else "products"
        url = (
            f"{settings.GOOGLE_PLAY_PUBLISHER_BASE_URL}/applications/{proof.package_name}"
            f"/purchases/{kind}/{proof.product_id}/tokens/{proof.purchase_token}"
        )
        async with self._client() as client:
            try:
                response = await client.get(
                    url,
                    headers={"Authorization": f"Bearer {access_token}"},
                )
            except httpx.HTTPError as exc:
                raise ProviderError(f"Publisher API unreachable: {exc}") from exc

        if response.status_code != 200:
            logger.error(
                "Publisher API error: status=%d product=%s body=%s",
                response.status_code,
                proof.product_id,
                response.text[:200],
            )
            raise ProviderError(response.text[:200], status_code=response.status_code)
        return response.json()
