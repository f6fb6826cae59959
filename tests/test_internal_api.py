"""
Internal API Tests
==================

Service-to-service endpoints guarded by ``X-Internal-Key``:
- Campaign dispatch, cancel and status
- Single-user push
- Maintenance job triggers
"""

import uuid
from unittest.mock import AsyncMock

import pytest
from httpx import AsyncClient

from entitlement_core.api.v1 import jobs
from entitlement_core.dependencies import get_dispatcher, get_user_notifier
from entitlement_core.main import app
from entitlement_core.models.campaign import CampaignStatus
from entitlement_core.services.device_service import DeviceRecord
from entitlement_core.services.dispatcher import NotificationDispatcher
from entitlement_core.services.push import ERROR_NOT_REGISTERED
from entitlement_core.services.user_notifier import UserNotifier

from conftest import USER_ID
from fakes import (
    FakePushClient,
    InMemoryCampaignStore,
    InMemoryDeviceStore,
    RecordingScheduler,
    make_campaign,
    make_devices,
)


@pytest.fixture
def campaign():
    return make_campaign()


@pytest.fixture
def campaigns(campaign) -> InMemoryCampaignStore:
    store = InMemoryCampaignStore(campaign)
    dispatcher = NotificationDispatcher(
        campaigns=store,
        devices=InMemoryDeviceStore(make_devices(30)),
        push=FakePushClient(),
        scheduler=RecordingScheduler(),
        batch_size=20,
        max_batches=1,
        batch_pause=0,
    )
    app.dependency_overrides[get_dispatcher] = lambda: dispatcher
    return store


class TestInternalKey:

    @pytest.mark.asyncio
    @pytest.mark.parametrize("headers", [{}, {"X-Internal-Key": "wrong"}])
    async def test_rejected_without_valid_key(self, client: AsyncClient, campaigns, campaign, headers):
        response = await client.get(f"/api/v1/campaigns/{campaign.id}", headers=headers)

        assert response.status_code == 403
        assert response.json()["error"]["code"] == "AUTH_003"


class TestCampaignEndpoints:

    @pytest.mark.asyncio
    async def test_dispatch_runs_one_bounded_pass(self, client: AsyncClient, internal_headers, campaigns, campaign):
        response = await client.post(
            f"/api/v1/campaigns/{campaign.id}/dispatch", headers=internal_headers,
        )

        assert response.status_code == 200
        data = response.json()
        assert data["campaignId"] == str(campaign.id)
        assert data["status"] == "processing"
        assert data["sentCount"] == 20
        assert data["nextOffset"] == 20
        assert data["continuationScheduled"] is True

    @pytest.mark.asyncio
    async def test_dispatch_resumes_from_offset(self, client: AsyncClient, internal_headers, campaigns, campaign):
        await client.post(f"/api/v1/campaigns/{campaign.id}/dispatch", headers=internal_headers)

        response = await client.post(
            f"/api/v1/campaigns/{campaign.id}/dispatch",
            json={"resumeOffset": 20},
            headers=internal_headers,
        )

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "completed"
        assert data["sentCount"] == 30
        assert data["continuationScheduled"] is False

    @pytest.mark.asyncio
    async def test_negative_offset_is_invalid(self, client: AsyncClient, internal_headers, campaigns, campaign):
        response = await client.post(
            f"/api/v1/campaigns/{campaign.id}/dispatch",
            json={"resumeOffset": -1},
            headers=internal_headers,
        )

        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_status(self, client: AsyncClient, internal_headers, campaigns, campaign):
        response = await client.get(f"/api/v1/campaigns/{campaign.id}", headers=internal_headers)

        assert response.status_code == 200
        data = response.json()
        assert data["title"] == "Spring sale"
        assert data["status"] == "pending"
        assert data["targetDeviceType"] == "all"
        assert data["cursorOffset"] == 0

    @pytest.mark.asyncio
    async def test_cancel(self, client: AsyncClient, internal_headers, campaigns, campaign):
        response = await client.post(f"/api/v1/campaigns/{campaign.id}/cancel", headers=internal_headers)

        assert response.status_code == 200
        assert response.json() == {"campaignId": str(campaign.id), "cancelled": True}
        assert campaigns.campaigns[campaign.id].status is CampaignStatus.CANCELLED

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "method, suffix",
        [("post", "/dispatch"), ("post", "/cancel"), ("get", "")],
    )
    async def test_unknown_campaign(self, client: AsyncClient, internal_headers, campaigns, method, suffix):
        url = f"/api/v1/campaigns/{uuid.uuid4()}{suffix}"

        response = await getattr(client, method)(url, headers=internal_headers)

        assert response.status_code == 404
        assert response.json()["error"]["code"] == "CAMPAIGN_001"


class TestUserPush:

    @pytest.mark.asyncio
    async def test_pushes_to_user_devices(self, client: AsyncClient, internal_headers):
        devices = InMemoryDeviceStore([
            DeviceRecord(USER_ID, "phone", "android"),
            DeviceRecord(USER_ID, "stale-tablet", "android"),
            DeviceRecord(uuid.uuid4(), "someone-else", "ios"),
        ])
        push = FakePushClient(failures={"stale-tablet": ERROR_NOT_REGISTERED})
        app.dependency_overrides[get_user_notifier] = lambda: UserNotifier(devices, push)

        response = await client.post(
            f"/api/v1/notifications/users/{USER_ID}",
            json={"title": "Welcome back", "body": "Your credits are ready"},
            headers=internal_headers,
        )

        assert response.status_code == 200
        assert response.json() == {"sent": 1, "failed": 1, "deactivated": 1}
        assert sorted(push.sent) == ["phone", "stale-tablet"]
        assert devices.inactive == {"stale-tablet"}

    @pytest.mark.asyncio
    async def test_empty_title_is_invalid(self, client: AsyncClient, internal_headers):
        response = await client.post(
            f"/api/v1/notifications/users/{USER_ID}",
            json={"title": "", "body": "x"},
            headers=internal_headers,
        )

        assert response.status_code == 422


class TestJobs:

    @pytest.mark.asyncio
    async def test_expire_subscriptions(self, client: AsyncClient, internal_headers, db_session, monkeypatch):
        run = AsyncMock(return_value={"job": "expire_lapsed_subscriptions", "processed": 2, "errors": []})
        monkeypatch.setattr(jobs, "run_expire_lapsed_subscriptions", run)

        response = await client.post("/api/v1/jobs/expire-subscriptions", headers=internal_headers)

        assert response.status_code == 200
        assert response.json()["processed"] == 2
        run.assert_awaited_once_with(db_session)

    @pytest.mark.asyncio
    async def test_resume_campaigns(self, client: AsyncClient, internal_headers, monkeypatch):
        run = AsyncMock(return_value={"job": "resume_stalled_campaigns", "processed": 0, "campaign_ids": []})
        monkeypatch.setattr(jobs, "run_resume_stalled_campaigns", run)

        response = await client.post("/api/v1/jobs/resume-campaigns", headers=internal_headers)

        assert response.status_code == 200
        assert response.json()["job"] == "resume_stalled_campaigns"

    @pytest.mark.asyncio
    async def test_requires_internal_key(self, client: AsyncClient):
        response = await client.post("/api/v1/jobs/expire-subscriptions")
        assert response.status_code == 403
