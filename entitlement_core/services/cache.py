"""
Redis Client
============

Shared Redis connection plus the webhook message de-duplication keys.

Redis is never the source of truth here: de-duplication is best-effort
(the ledger's unique reference is what prevents double grants) and the
continuation stream is backed by the persisted campaign cursor.
"""

import logging
from typing import Optional

import redis.asyncio as redis
from redis.asyncio import Redis

from entitlement_core.config import settings

logger = logging.getLogger(__name__)

# Global Redis client instance
_redis_client: Optional[Redis] = None

_WEBHOOK_MESSAGE_PREFIX = "webhook:play:message:"
_WEBHOOK_MESSAGE_TTL = 86400 * 7  # 7 days


async def init_redis() -> Redis:
    """
    Initialize Redis connection pool and pre-warm a connection.

    Returns:
        Redis client instance
    """
    global _redis_client

    if _redis_client is None:
        _redis_client = await redis.from_url(
            settings.REDIS_URL,
            encoding="utf-8",
            decode_responses=True,
            max_connections=50,
            socket_keepalive=True,
            socket_connect_timeout=5,
            socket_timeout=5,
            retry_on_timeout=True,
            health_check_interval=30,
        )
        await _redis_client.ping()
        logger.info("Redis connection established")

    return _redis_client


async def get_redis() -> Redis:
    """Get Redis client, initializing if necessary."""
    if _redis_client is None:
        return await init_redis()
    return _redis_client


async def close_redis() -> None:
    """Close Redis connection."""
    global _redis_client

    if _redis_client is not None:
        await _redis_client.close()
        _redis_client = None
        logger.info("Redis connection closed")


async def is_message_processed(message_id: str) -> bool:
    """Check if a webhook delivery has already been handled."""
    try:
        client = await get_redis()
        return await client.exists(f"{_WEBHOOK_MESSAGE_PREFIX}{message_id}") > 0
    except Exception as exc:
        logger.warning("Redis de-duplication check failed: %s", exc)
        return False


async def mark_message_processed(message_id: str) -> None:
    """Remember a handled webhook delivery for a week."""
    try:
        client = await get_redis()
        await client.setex(f"{_WEBHOOK_MESSAGE_PREFIX}{message_id}", _WEBHOOK_MESSAGE_TTL, "1")
    except Exception as exc:
        logger.warning("Redis de-duplication set failed: %s", exc)
