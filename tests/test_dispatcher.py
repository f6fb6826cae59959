"""
Notification Dispatcher Tests
=============================

Batched campaign delivery:
- Bounded runs with continuation
- Cooperative cancellation
- Token deactivation and cursor adjustment
- Resumes that skip already-delivered tokens
- Systemic failures
"""

import uuid

import pytest

from entitlement_core.core.errors import CampaignNotFoundError, ProviderError
from entitlement_core.models.campaign import CampaignStatus, DeliveryStatus
from entitlement_core.services.dispatcher import DispatchRecord, NotificationDispatcher
from entitlement_core.services.push import ERROR_NOT_REGISTERED

from fakes import (
    FakePushClient,
    InMemoryCampaignStore,
    InMemoryDeviceStore,
    RecordingScheduler,
    make_campaign,
    make_devices,
)


def _dispatcher(campaigns, devices, push, scheduler=None, batch_size=100, max_batches=1):
    return NotificationDispatcher(
        campaigns=campaigns,
        devices=devices,
        push=push,
        scheduler=scheduler or RecordingScheduler(),
        batch_size=batch_size,
        max_batches=max_batches,
        batch_pause=0,
    )


class TestBoundedRuns:

    @pytest.mark.asyncio
    async def test_250_devices_over_three_runs(self):
        campaign = make_campaign()
        campaigns = InMemoryCampaignStore(campaign)
        devices = InMemoryDeviceStore(make_devices(250))
        push = FakePushClient()
        scheduler = RecordingScheduler()
        dispatcher = _dispatcher(campaigns, devices, push, scheduler)

        first = await dispatcher.dispatch(campaign.id)
        assert first.status is CampaignStatus.PROCESSING
        assert first.continuation_scheduled
        assert scheduler.scheduled == [(campaign.id, 100)]
        assert campaigns.campaigns[campaign.id].total_recipients == 250

        second = await dispatcher.dispatch(campaign.id, scheduler.scheduled[-1][1])
        assert second.next_offset == 200
        assert scheduler.scheduled[-1] == (campaign.id, 200)

        third = await dispatcher.dispatch(campaign.id, scheduler.scheduled[-1][1])
        assert third.status is CampaignStatus.COMPLETED
        assert not third.continuation_scheduled
        assert len(scheduler.scheduled) == 2

        state = campaigns.campaigns[campaign.id]
        assert state.status is CampaignStatus.COMPLETED
        assert state.sent_count == 250
        assert state.failed_count == 0
        assert state.current_batch == 3
        assert state.completed_at is not None
        assert sorted(push.sent) == sorted(d.token for d in devices.devices)
        assert len(campaigns.delivered(campaign.id)) == 250

    @pytest.mark.asyncio
    async def test_single_run_with_enough_budget(self):
        campaign = make_campaign()
        campaigns = InMemoryCampaignStore(campaign)
        scheduler = RecordingScheduler()
        dispatcher = _dispatcher(
            campaigns, InMemoryDeviceStore(make_devices(250)), FakePushClient(), scheduler, max_batches=5,
        )

        result = await dispatcher.dispatch(campaign.id)

        assert result.status is CampaignStatus.COMPLETED
        assert result.sent_count == 250
        assert result.batches_processed == 3
        assert scheduler.scheduled == []

    @pytest.mark.asyncio
    async def test_exact_multiple_completes_on_empty_page(self):
        campaign = make_campaign()
        campaigns = InMemoryCampaignStore(campaign)
        dispatcher = _dispatcher(
            campaigns, InMemoryDeviceStore(make_devices(200)), FakePushClient(), max_batches=5,
        )

        result = await dispatcher.dispatch(campaign.id)

        assert result.status is CampaignStatus.COMPLETED
        assert result.sent_count == 200
        assert result.batches_processed == 2

    @pytest.mark.asyncio
    async def test_no_recipients(self):
        campaign = make_campaign()
        campaigns = InMemoryCampaignStore(campaign)
        push = FakePushClient()

        result = await _dispatcher(campaigns, InMemoryDeviceStore(), push).dispatch(campaign.id)

        assert result.status is CampaignStatus.COMPLETED
        assert push.calls == 0

    @pytest.mark.asyncio
    async def test_target_device_type_filters_recipients(self):
        campaign = make_campaign(target_device_type="ios")
        campaigns = InMemoryCampaignStore(campaign)
        devices = InMemoryDeviceStore(make_devices(3, "android") + make_devices(2, "ios"))
        push = FakePushClient()

        await _dispatcher(campaigns, devices, push).dispatch(campaign.id)

        assert sorted(push.sent) == ["ios-token-0000", "ios-token-0001"]
        assert campaigns.campaigns[campaign.id].total_recipients == 2

    @pytest.mark.asyncio
    async def test_message_content(self):
        campaign = make_campaign(image_url="https://cdn.example/sale.png")
        campaigns = InMemoryCampaignStore(campaign)
        push = FakePushClient()

        await _dispatcher(campaigns, InMemoryDeviceStore(make_devices(1)), push).dispatch(campaign.id)

        message = push.messages[0]
        assert message.title == "Spring sale"
        assert message.image_url == "https://cdn.example/sale.png"
        assert message.data == {"type": "marketing", "campaign_id": str(campaign.id)}


class TestCancellation:

    @pytest.mark.asyncio
    async def test_cancel_after_first_batch(self):
        campaign = make_campaign()
        campaigns = InMemoryCampaignStore(campaign)
        scheduler = RecordingScheduler()

        async def cancel_after_first(call_number):
            if call_number == 1:
                await campaigns.cancel(campaign.id)

        push = FakePushClient(on_send=cancel_after_first)
        dispatcher = _dispatcher(
            campaigns, InMemoryDeviceStore(make_devices(250)), push, scheduler, max_batches=5,
        )

        result = await dispatcher.dispatch(campaign.id)

        assert result.status is CampaignStatus.CANCELLED
        assert result.sent_count == 100
        assert result.batches_processed == 1
        assert push.calls == 1
        assert scheduler.scheduled == []
        assert campaigns.campaigns[campaign.id].status is CampaignStatus.CANCELLED

    @pytest.mark.asyncio
    async def test_cancelled_campaign_is_not_dispatched(self):
        campaign = make_campaign(status=CampaignStatus.CANCELLED)
        push = FakePushClient()

        result = await _dispatcher(
            InMemoryCampaignStore(campaign), InMemoryDeviceStore(make_devices(5)), push,
        ).dispatch(campaign.id)

        assert result.status is CampaignStatus.CANCELLED
        assert push.calls == 0

    @pytest.mark.asyncio
    async def test_completed_campaign_is_not_redispatched(self):
        campaign = make_campaign(status=CampaignStatus.COMPLETED, sent_count=5)
        push = FakePushClient()

        result = await _dispatcher(
            InMemoryCampaignStore(campaign), InMemoryDeviceStore(make_devices(5)), push,
        ).dispatch(campaign.id)

        assert result.status is CampaignStatus.COMPLETED
        assert result.sent_count == 5
        assert push.calls == 0

    @pytest.mark.asyncio
    async def test_cancel_only_applies_to_live_campaigns(self):
        done = make_campaign(status=CampaignStatus.COMPLETED)
        live = make_campaign()
        dispatcher = _dispatcher(InMemoryCampaignStore(done, live), InMemoryDeviceStore(), FakePushClient())

        assert await dispatcher.cancel(live.id) is True
        assert await dispatcher.cancel(done.id) is False


class TestDeactivation:

    @pytest.mark.asyncio
    async def test_unregistered_token_is_deactivated_and_excluded(self):
        campaign = make_campaign()
        campaigns = InMemoryCampaignStore(campaign)
        devices = InMemoryDeviceStore(make_devices(5))
        dead = devices.devices[2].token
        push = FakePushClient(failures={dead: ERROR_NOT_REGISTERED})

        result = await _dispatcher(campaigns, devices, push).dispatch(campaign.id)

        assert result.sent_count == 4
        assert result.failed_count == 1
        assert dead in devices.inactive
        assert await devices.count_active() == 4
        assert campaigns.delivered(campaign.id, DeliveryStatus.FAILED) == [dead]

        # The next campaign never targets the dead token
        follow_up = make_campaign()
        campaigns.campaigns[follow_up.id] = follow_up
        push.sent.clear()
        await _dispatcher(campaigns, devices, push).dispatch(follow_up.id)
        assert dead not in push.sent
        assert campaigns.campaigns[follow_up.id].total_recipients == 4

    @pytest.mark.asyncio
    async def test_cursor_accounts_for_deactivated_tokens(self):
        campaign = make_campaign()
        campaigns = InMemoryCampaignStore(campaign)
        devices = InMemoryDeviceStore(make_devices(6))
        dead = devices.devices[1].token
        push = FakePushClient(failures={dead: ERROR_NOT_REGISTERED})
        scheduler = RecordingScheduler()
        dispatcher = _dispatcher(campaigns, devices, push, scheduler, batch_size=3)

        first = await dispatcher.dispatch(campaign.id)
        assert first.next_offset == 2

        offset = first.next_offset
        while True:
            result = await dispatcher.dispatch(campaign.id, offset)
            if not result.continuation_scheduled:
                break
            offset = result.next_offset

        assert result.status is CampaignStatus.COMPLETED
        # Every device attempted exactly once, none skipped by the shifted ordering
        assert sorted(push.sent) == sorted(d.token for d in devices.devices)
        assert len(push.sent) == 6

    @pytest.mark.asyncio
    async def test_transient_failure_keeps_token_active(self):
        campaign = make_campaign()
        devices = InMemoryDeviceStore(make_devices(2))
        flaky = devices.devices[0].token
        push = FakePushClient(failures={flaky: "UNAVAILABLE"})

        result = await _dispatcher(InMemoryCampaignStore(campaign), devices, push).dispatch(campaign.id)

        assert result.failed_count == 1
        assert devices.inactive == set()


class TestResume:

    @pytest.mark.asyncio
    async def test_already_logged_tokens_are_not_resent(self):
        campaign = make_campaign(status=CampaignStatus.PROCESSING, sent_count=2, current_batch=1)
        campaigns = InMemoryCampaignStore(campaign)
        devices = InMemoryDeviceStore(make_devices(5))
        for device in devices.devices[:2]:
            await campaigns.record_deliveries([DispatchRecord(
                campaign.id, device.user_id, device.token, device.device_type, DeliveryStatus.SENT,
            )])
        push = FakePushClient()

        # Crash happened after logging but before the cursor was saved
        result = await _dispatcher(campaigns, devices, push).dispatch(campaign.id, 0)

        assert sorted(push.sent) == sorted(d.token for d in devices.devices[2:])
        assert result.sent_count == 5
        assert result.status is CampaignStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_resume_does_not_restart(self):
        campaign = make_campaign(status=CampaignStatus.PROCESSING, total_recipients=99)
        campaigns = InMemoryCampaignStore(campaign)

        await _dispatcher(campaigns, InMemoryDeviceStore(make_devices(3)), FakePushClient()).dispatch(campaign.id, 1)

        assert campaigns.campaigns[campaign.id].total_recipients == 99


class TestFailures:

    @pytest.mark.asyncio
    async def test_unknown_campaign(self):
        dispatcher = _dispatcher(InMemoryCampaignStore(), InMemoryDeviceStore(), FakePushClient())
        with pytest.raises(CampaignNotFoundError):
            await dispatcher.dispatch(uuid.uuid4())

    @pytest.mark.asyncio
    async def test_messaging_outage_aborts_run(self):
        campaign = make_campaign()
        campaigns = InMemoryCampaignStore(campaign)
        scheduler = RecordingScheduler()
        push = FakePushClient(error=ProviderError("token endpoint unavailable", status_code=503))

        result = await _dispatcher(
            campaigns, InMemoryDeviceStore(make_devices(10)), push, scheduler,
        ).dispatch(campaign.id)

        assert result.error == "token endpoint unavailable"
        assert result.status is CampaignStatus.PROCESSING
        assert scheduler.scheduled == []
        state = campaigns.campaigns[campaign.id]
        assert state.status is CampaignStatus.PROCESSING
        assert state.last_error == "token endpoint unavailable"
        assert state.cursor_offset == 0
