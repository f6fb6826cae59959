"""
Play Webhook API Tests
======================
"""

import base64
import json
from unittest.mock import AsyncMock

import pytest
from httpx import AsyncClient

from entitlement_core.api.v1 import webhooks
from entitlement_core.api.v1.subscription import get_catalog_loader
from entitlement_core.config import settings
from entitlement_core.core.errors import ProviderError
from entitlement_core.core.product_catalog import FALLBACK_PRODUCT_MAPPINGS
from entitlement_core.dependencies import (
    get_entitlement_service,
    get_notice_sender,
    get_receipt_verifier,
)
from entitlement_core.main import app
from entitlement_core.services.entitlement_service import EntitlementService

from conftest import USER_ID
from fakes import FakeVerifier, InMemoryEntitlementStore, make_snapshot

URL = "/api/v1/webhooks/google-play"


def _envelope(payload: dict, message_id: str = "msg-1") -> dict:
    data = base64.b64encode(json.dumps(payload).encode()).decode()
    return {"message": {"data": data, "messageId": message_id}}


TEST_ENVELOPE = _envelope({"version": "1.0", "packageName": "com.timeless.app", "testNotification": {}})

PURCHASE_ENVELOPE = _envelope({
    "version": "1.0",
    "packageName": "com.timeless.app",
    "subscriptionNotification": {
        "notificationType": 4,
        "purchaseToken": "sub-token",
        "subscriptionId": "timeless.premium.monthly",
    },
}, message_id="msg-2")


@pytest.fixture
def redis_dedup(monkeypatch):
    processed = AsyncMock(return_value=False)
    mark = AsyncMock()
    monkeypatch.setattr(webhooks, "is_message_processed", processed)
    monkeypatch.setattr(webhooks, "mark_message_processed", mark)
    return processed, mark


@pytest.fixture
def verifier() -> FakeVerifier:
    return FakeVerifier()


@pytest.fixture
def notices(db_session) -> list:
    """Lifecycle notices handed to the sender, with the commit count at send time."""
    sent = []

    async def send_notice(user_id, message):
        sent.append((user_id, message.title, db_session.commit.await_count))

    app.dependency_overrides[get_notice_sender] = lambda: send_notice
    return sent


@pytest.fixture
def wired(verifier, notices):
    store = InMemoryEntitlementStore(make_snapshot(USER_ID))

    async def catalogs(platform):
        return FALLBACK_PRODUCT_MAPPINGS

    app.dependency_overrides[get_entitlement_service] = lambda: EntitlementService(store)
    app.dependency_overrides[get_receipt_verifier] = lambda: verifier
    app.dependency_overrides[get_catalog_loader] = lambda: catalogs
    return store


class TestGooglePlayWebhook:

    @pytest.mark.asyncio
    async def test_test_notification_is_acknowledged(self, client: AsyncClient, db_session, redis_dedup, wired):
        _, mark = redis_dedup

        response = await client.post(URL, json=TEST_ENVELOPE)

        assert response.status_code == 200
        assert response.json() == {"received": True, "action": "test"}
        db_session.commit.assert_awaited_once()
        mark.assert_awaited_once_with("msg-1")

    @pytest.mark.asyncio
    async def test_redelivered_message_is_skipped(self, client: AsyncClient, db_session, redis_dedup, wired):
        processed, mark = redis_dedup
        processed.return_value = True

        response = await client.post(URL, json=TEST_ENVELOPE)

        assert response.status_code == 200
        assert response.json() == {"received": True, "duplicate": True}
        mark.assert_not_awaited()
        db_session.commit.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_invalid_json_returns_400(self, client: AsyncClient, redis_dedup, wired):
        response = await client.post(
            URL, content=b"{not json", headers={"Content-Type": "application/json"},
        )

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "WEBHOOK_001"

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "envelope",
        [
            {"message": {"data": "%%%", "messageId": "m"}},
            {"message": {"data": 12345, "messageId": "m"}},
            _envelope({"packageName": "com.timeless.app", "subscriptionNotification": "oops"}, message_id="m"),
            _envelope({"packageName": "com.timeless.app", "voidedPurchaseNotification": [1, 2]}, message_id="m"),
        ],
    )
    async def test_undecodable_envelope_returns_400(self, client: AsyncClient, redis_dedup, wired, envelope):
        response = await client.post(URL, json=envelope)

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "WEBHOOK_001"

    @pytest.mark.asyncio
    async def test_processing_failure_is_acknowledged_and_rolled_back(
        self, client: AsyncClient, db_session, redis_dedup, wired, verifier, notices,
    ):
        _, mark = redis_dedup
        verifier.fetch_error = ProviderError("publisher API down", status_code=503)

        response = await client.post(URL, json=PURCHASE_ENVELOPE)

        assert response.status_code == 200
        assert response.json() == {"received": True, "action": "failed"}
        db_session.rollback.assert_awaited_once()
        db_session.commit.assert_not_awaited()
        mark.assert_not_awaited()
        assert notices == []

    @pytest.mark.asyncio
    async def test_purchase_notification_updates_entitlement(
        self, client: AsyncClient, redis_dedup, wired, verifier, notices,
    ):
        verifier.purchases["sub-token"] = {
            "orderId": "GPA.5555",
            "expiryTimeMillis": "4102444800000",
            "paymentState": 1,
            "obfuscatedExternalAccountId": str(USER_ID),
        }

        response = await client.post(URL, json=PURCHASE_ENVELOPE)

        assert response.status_code == 200
        assert response.json()["action"] == "purchased"
        assert wired.profiles[USER_ID].plan == "premium"
        assert notices == [(USER_ID, "Subscription Activated!", 1)]

    @pytest.mark.asyncio
    async def test_redelivered_purchase_sends_no_notice(
        self, client: AsyncClient, redis_dedup, wired, verifier, notices,
    ):
        verifier.purchases["sub-token"] = {
            "orderId": "GPA.5555",
            "expiryTimeMillis": "4102444800000",
            "paymentState": 1,
            "obfuscatedExternalAccountId": str(USER_ID),
        }

        await client.post(URL, json=PURCHASE_ENVELOPE)
        response = await client.post(URL, json=_envelope(
            {
                "packageName": "com.timeless.app",
                "subscriptionNotification": {
                    "notificationType": 4,
                    "purchaseToken": "sub-token",
                    "subscriptionId": "timeless.premium.monthly",
                },
            },
            message_id="msg-3",
        ))

        assert response.json()["action"] == "duplicate"
        assert len(notices) == 1


class TestPushToken:

    @pytest.mark.asyncio
    async def test_wrong_token_is_rejected(self, client: AsyncClient, monkeypatch, redis_dedup, wired):
        monkeypatch.setattr(settings, "PUBSUB_VERIFICATION_TOKEN", "push-secret")

        response = await client.post(URL, params={"token": "guess"}, json=TEST_ENVELOPE)

        assert response.status_code == 401
        assert response.json()["error"]["code"] == "WEBHOOK_002"

    @pytest.mark.asyncio
    async def test_matching_token_is_accepted(self, client: AsyncClient, monkeypatch, redis_dedup, wired):
        monkeypatch.setattr(settings, "PUBSUB_VERIFICATION_TOKEN", "push-secret")

        response = await client.post(URL, params={"token": "push-secret"}, json=TEST_ENVELOPE)

        assert response.status_code == 200

    def test_unset_token_disables_check(self, monkeypatch):
        monkeypatch.setattr(settings, "PUBSUB_VERIFICATION_TOKEN", "")
        assert webhooks.verify_push_token(None)
