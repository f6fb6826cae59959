"""
Receipt Verifier Tests
======================

App Store and Play verification against mocked storefront endpoints.
"""

import json

import httpx
import pytest

from entitlement_core.config import settings
from entitlement_core.core.errors import ConfigurationError, ProviderError
from entitlement_core.services.receipt_verifier import (
    AppleReceiptProof,
    GooglePurchaseProof,
    ReceiptVerifier,
)

from fakes import StubAuthenticator

EXPIRES_MS = "1767225600000"  # 2026-01-01T00:00:00Z


def _apple_ok(transactions):
    return {"status": 0, "latest_receipt_info": transactions}


def _apple_transaction(product_id="com.timeless.premium.monthly", transaction_id="2000001",
                       purchase_ms="1764547200000"):
    return {
        "product_id": product_id,
        "transaction_id": transaction_id,
        "original_transaction_id": "1000001",
        "purchase_date_ms": purchase_ms,
        "expires_date_ms": EXPIRES_MS,
    }


def _apple_transport(production: dict, sandbox: dict | None = None, calls: list | None = None):
    def handler(request: httpx.Request) -> httpx.Response:
        if calls is not None:
            calls.append((str(request.url), json.loads(request.content)))
        if str(request.url) == settings.APPLE_SANDBOX_VERIFY_URL:
            return httpx.Response(200, json=sandbox)
        return httpx.Response(200, json=production)
    return httpx.MockTransport(handler)


class TestApple:

    @pytest.mark.asyncio
    async def test_production_receipt(self):
        calls = []
        verifier = ReceiptVerifier(
            transport=_apple_transport(_apple_ok([_apple_transaction()]), calls=calls),
            shared_secret="s3cret",
        )

        result = await verifier.verify("ios", AppleReceiptProof("base64-receipt"))

        assert result.ok
        purchase = result.purchase
        assert purchase.product_id == "com.timeless.premium.monthly"
        assert purchase.transaction_id == "2000001"
        assert purchase.original_transaction_id == "1000001"
        assert purchase.expires_at.year == 2026
        assert purchase.platform == "ios"
        assert len(calls) == 1
        url, body = calls[0]
        assert url == settings.APPLE_PRODUCTION_VERIFY_URL
        assert body == {
            "receipt-data": "base64-receipt",
            "password": "s3cret",
            "exclude-old-transactions": True,
        }

    @pytest.mark.asyncio
    async def test_sandbox_receipt_matches_direct_sandbox_result(self):
        transaction = _apple_transaction()
        calls = []
        via_retry = ReceiptVerifier(
            transport=_apple_transport({"status": 21007}, _apple_ok([transaction]), calls=calls),
            shared_secret="s3cret",
        )
        direct = ReceiptVerifier(
            transport=_apple_transport(_apple_ok([transaction])),
            shared_secret="s3cret",
        )

        retried = await via_retry.verify("ios", AppleReceiptProof("r"))
        expected = await direct.verify("ios", AppleReceiptProof("r"))

        assert retried == expected
        assert [url for url, _ in calls] == [
            settings.APPLE_PRODUCTION_VERIFY_URL,
            settings.APPLE_SANDBOX_VERIFY_URL,
        ]

    @pytest.mark.asyncio
    async def test_latest_transaction_wins(self):
        transactions = [
            _apple_transaction(transaction_id="old", purchase_ms="1000"),
            _apple_transaction(transaction_id="new", purchase_ms="3000"),
            _apple_transaction(transaction_id="mid", purchase_ms="2000"),
        ]
        verifier = ReceiptVerifier(transport=_apple_transport(_apple_ok(transactions)), shared_secret="s")

        result = await verifier.verify("ios", AppleReceiptProof("r"))

        assert result.purchase.transaction_id == "new"

    @pytest.mark.asyncio
    async def test_falls_back_to_in_app_list(self):
        body = {"status": 0, "receipt": {"in_app": [_apple_transaction(product_id="timeless_credits_350")]}}
        verifier = ReceiptVerifier(transport=_apple_transport(body), shared_secret="s")

        result = await verifier.verify("ios", AppleReceiptProof("r"))

        assert result.purchase.product_id == "timeless_credits_350"

    @pytest.mark.asyncio
    async def test_rejected_receipt(self):
        verifier = ReceiptVerifier(transport=_apple_transport({"status": 21003}), shared_secret="s")

        result = await verifier.verify("ios", AppleReceiptProof("r"))

        assert not result.ok
        assert not result.retryable
        assert "21003" in result.error

    @pytest.mark.asyncio
    async def test_empty_receipt(self):
        verifier = ReceiptVerifier(transport=_apple_transport({"status": 0}), shared_secret="s")

        result = await verifier.verify("ios", AppleReceiptProof("r"))

        assert result.error == "No purchase found in receipt"

    @pytest.mark.asyncio
    async def test_outage_is_retryable(self):
        transport = httpx.MockTransport(lambda request: httpx.Response(503, text="down"))
        verifier = ReceiptVerifier(transport=transport, shared_secret="s")

        result = await verifier.verify("ios", AppleReceiptProof("r"))

        assert not result.ok
        assert result.retryable

    @pytest.mark.asyncio
    async def test_missing_shared_secret(self):
        verifier = ReceiptVerifier(transport=_apple_transport({"status": 0}), shared_secret="")
        with pytest.raises(ConfigurationError):
            await verifier.verify("ios", AppleReceiptProof("r"))


def _google_proof(is_subscription=True, product_id="timeless.premium.monthly"):
    return GooglePurchaseProof(
        package_name="com.timeless.app",
        product_id=product_id,
        purchase_token="purchase-token-1",
        is_subscription=is_subscription,
    )


def _google_transport(status_code: int, body: dict, calls: list | None = None):
    def handler(request: httpx.Request) -> httpx.Response:
        if calls is not None:
            calls.append(request)
        return httpx.Response(status_code, json=body)
    return httpx.MockTransport(handler)


class TestGoogle:

    @pytest.mark.asyncio
    async def test_active_subscription(self):
        calls = []
        verifier = ReceiptVerifier(
            authenticator=StubAuthenticator("ya29.abc"),
            transport=_google_transport(
                200,
                {"orderId": "GPA.1234-5678", "paymentState": 1, "expiryTimeMillis": EXPIRES_MS},
                calls,
            ),
        )

        result = await verifier.verify("android", _google_proof())

        assert result.ok
        assert result.purchase.transaction_id == "GPA.1234-5678"
        assert result.purchase.expires_at.year == 2026
        assert result.purchase.platform == "android"
        request = calls[0]
        assert request.headers["Authorization"] == "Bearer ya29.abc"
        assert request.url.path.endswith(
            "/applications/com.timeless.app/purchases/subscriptions"
            "/timeless.premium.monthly/tokens/purchase-token-1"
        )

    @pytest.mark.asyncio
    @pytest.mark.parametrize("state, ok", [(0, True), (1, True), (2, False), (None, False)])
    async def test_payment_states(self, state, ok):
        verifier = ReceiptVerifier(
            authenticator=StubAuthenticator(),
            transport=_google_transport(200, {"orderId": "GPA.1", "paymentState": state}),
        )

        result = await verifier.verify("android", _google_proof())

        assert result.ok is ok
        if not ok:
            assert result.error == "Invalid purchase state"

    @pytest.mark.asyncio
    async def test_one_time_product_uses_purchase_state(self):
        calls = []
        verifier = ReceiptVerifier(
            authenticator=StubAuthenticator(),
            transport=_google_transport(200, {"purchaseState": 0}, calls),
        )

        result = await verifier.verify(
            "android", _google_proof(is_subscription=False, product_id="timeless.credits.350"),
        )

        assert result.ok
        # No orderId (test purchases): the purchase token is the reference
        assert result.purchase.transaction_id == "purchase-token-1"
        assert "/purchases/products/timeless.credits.350/tokens/" in calls[0].url.path

    @pytest.mark.asyncio
    async def test_not_found_is_final(self):
        verifier = ReceiptVerifier(
            authenticator=StubAuthenticator(),
            transport=_google_transport(404, {"error": {"status": "NOT_FOUND"}}),
        )

        result = await verifier.verify("android", _google_proof())

        assert not result.ok
        assert not result.retryable

    @pytest.mark.asyncio
    async def test_server_error_is_retryable(self):
        verifier = ReceiptVerifier(
            authenticator=StubAuthenticator(),
            transport=_google_transport(500, {}),
        )

        result = await verifier.verify("android", _google_proof())

        assert result.retryable

    @pytest.mark.asyncio
    async def test_token_failure_is_retryable(self):
        verifier = ReceiptVerifier(authenticator=StubAuthenticator(error=ProviderError("token endpoint down")))

        result = await verifier.verify("android", _google_proof())

        assert not result.ok
        assert result.retryable


@pytest.mark.asyncio
async def test_platform_and_proof_must_match():
    verifier = ReceiptVerifier(shared_secret="s")
    result = await verifier.verify("android", AppleReceiptProof("r"))
    assert not result.ok
