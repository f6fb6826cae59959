"""
Campaign Continuation Worker
============================

Background asyncio worker that consumes campaign continuations from the
Redis stream ``stream:campaigns:continue`` and runs the next bounded
dispatch for each.

Lifecycle:
    1. ``start()`` is called during the FastAPI lifespan startup.
    2. The worker creates its consumer group (idempotent) and enters
       the read loop.
    3. ``stop()`` is called during shutdown and waits for the loop.

Retry / DLQ:
    - A failed dispatch leaves the entry pending; it is re-delivered
      through ``XAUTOCLAIM`` once idle for ``RECLAIM_IDLE_MS``.
    - After ``MAX_RETRIES`` deliveries the entry is copied to
      ``stream:campaigns:dlq`` and ACKed. The persisted cursor still lets
      the stalled-campaign sweep resume it.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional
import uuid

from redis.exceptions import RedisError, ResponseError

from entitlement_core.core.errors import CampaignNotFoundError
from entitlement_core.db.session import get_session_factory
from entitlement_core.services.cache import get_redis
from entitlement_core.services.dispatcher import (
    CONTINUATION_STREAM,
    DispatchResult,
    build_dispatcher,
)

logger = logging.getLogger(__name__)

DLQ_STREAM = "stream:campaigns:dlq"
CONSUMER_GROUP = "campaign-dispatchers"
CONSUMER_NAME = "dispatcher-1"
MAX_RETRIES = 5
BLOCK_MS = 2000
BATCH_SIZE = 10
RECLAIM_IDLE_MS = 60_000

DispatchRunner = Callable[[uuid.UUID, int], Awaitable[DispatchResult]]


async def run_dispatch(campaign_id: uuid.UUID, offset: int) -> DispatchResult:
    """Run one dispatch in its own database session."""
    session_factory = get_session_factory()
    async with session_factory() as session:
        try:
            result = await build_dispatcher(session).dispatch(campaign_id, offset)
            await session.commit()
            return result
        except Exception:
            await session.rollback()
            raise


class CampaignContinuationWorker:
    """Drains the continuation stream into dispatcher runs."""

    def __init__(self, runner: DispatchRunner = run_dispatch, redis_client: Any = None) -> None:
        self.runner = runner
        self._client = redis_client
        self._running = False
        self._task: Optional[asyncio.Task] = None

    async def _redis(self) -> Any:
        if self._client is None:
            self._client = await get_redis()
        return self._client

    # -- lifecycle ---------------------------------------------------------

    async def start(self) -> None:
        """Create consumer group and start the processing loop."""
        try:
            client = await self._redis()
            try:
                await client.xgroup_create(
                    CONTINUATION_STREAM, CONSUMER_GROUP, id="0", mkstream=True,
                )
                logger.info("Created consumer group '%s'", CONSUMER_GROUP)
            except ResponseError:
                # BUSYGROUP: already exists
                pass

            self._running = True
            self._task = asyncio.create_task(self._process_loop())
            logger.info("CampaignContinuationWorker started")
        except RedisError as exc:
            logger.error("CampaignContinuationWorker failed to start: %s", exc)

    async def stop(self) -> None:
        """Signal the loop to stop and wait for it to finish."""
        self._running = False
        if self._task is not None:
            try:
                await asyncio.wait_for(self._task, timeout=10)
            except asyncio.TimeoutError:
                logger.warning("CampaignContinuationWorker did not stop in time; cancelling")
                self._task.cancel()
        logger.info("CampaignContinuationWorker stopped")

    # -- main loop ---------------------------------------------------------

    async def _process_loop(self) -> None:
        while self._running:
            try:
                await self.reclaim_pending()
                await self.read_and_process()
            except asyncio.CancelledError:
                break
            except Exception as exc:
                logger.error("CampaignContinuationWorker loop error: %s", exc)
                await asyncio.sleep(1)

    async def read_and_process(self) -> None:
        """Read a batch of new entries and process them."""
        client = await self._redis()
        messages = await client.xreadgroup(
            CONSUMER_GROUP,
            CONSUMER_NAME,
            {CONTINUATION_STREAM: ">"},
            count=BATCH_SIZE,
            block=BLOCK_MS,
        )
        if not messages:
            return

        for _stream_name, entries in messages:
            for msg_id, fields in entries:
                await self.handle_message(msg_id, fields)

    async def reclaim_pending(self) -> None:
        """
        Dead-letter entries delivered ``MAX_RETRIES`` times, then
        re-run entries that have been idle too long.
        """
        client = await self._redis()
        pending = await client.xpending_range(
            CONTINUATION_STREAM, CONSUMER_GROUP, "-", "+", count=BATCH_SIZE,
        )

        for entry in pending:
            msg_id = entry["message_id"]
            times_delivered = entry["times_delivered"]
            if times_delivered < MAX_RETRIES:
                continue

            raw_msgs = await client.xrange(CONTINUATION_STREAM, msg_id, msg_id)
            if raw_msgs:
                _, fields = raw_msgs[0]
                fields = dict(fields)
                fields["original_id"] = msg_id
                fields["retries"] = str(times_delivered)
                await client.xadd(DLQ_STREAM, fields, maxlen=5000, approximate=True)
            await client.xack(CONTINUATION_STREAM, CONSUMER_GROUP, msg_id)
            logger.warning(
                "Moved continuation %s to DLQ after %d deliveries", msg_id, times_delivered,
            )

        claimed = await client.xautoclaim(
            CONTINUATION_STREAM,
            CONSUMER_GROUP,
            CONSUMER_NAME,
            min_idle_time=RECLAIM_IDLE_MS,
            start_id="0-0",
            count=BATCH_SIZE,
        )
        # [next_start_id, [(id, fields), ...], deleted_ids?]
        for msg_id, fields in claimed[1]:
            if fields:
                await self.handle_message(msg_id, fields)

    # -- message handler ---------------------------------------------------

    async def handle_message(self, msg_id: str, fields: dict) -> None:
        """Run one continuation; ACK on success or on an unusable entry."""
        client = await self._redis()
        try:
            campaign_id = uuid.UUID(fields["campaign_id"])
            offset = int(fields.get("offset", 0))
        except (KeyError, ValueError):
            logger.error("Malformed continuation %s, ACKing to skip: %s", msg_id, fields)
            await client.xack(CONTINUATION_STREAM, CONSUMER_GROUP, msg_id)
            return

        try:
            result = await self.runner(campaign_id, offset)
        except CampaignNotFoundError:
            logger.warning("Continuation %s names unknown campaign %s, ACKing", msg_id, campaign_id)
            await client.xack(CONTINUATION_STREAM, CONSUMER_GROUP, msg_id)
            return
        except Exception as exc:
            # Left un-ACKed for redelivery
            logger.error(
                "Continuation %s failed (campaign=%s offset=%d): %s",
                msg_id, campaign_id, offset, exc,
            )
            return

        await client.xack(CONTINUATION_STREAM, CONSUMER_GROUP, msg_id)
        logger.info(
            "Continuation %s done: campaign=%s status=%s next_offset=%d",
            msg_id, campaign_id, result.status.value, result.next_offset,
        )
