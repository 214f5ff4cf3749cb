"""
Redis Cache Service
===================

Redis connection management and the processed-notification registry
used to acknowledge App Store redeliveries without reprocessing them.
"""

import logging
from typing import Optional

import redis.asyncio as redis
from redis.asyncio import Redis

from app.config import settings

logger = logging.getLogger(__name__)

# Global Redis client instance
_redis_client: Optional[Redis] = None


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
        # Pre-warm: force a real connection so the first webhook
        # doesn't pay the connection setup cost.
        await _redis_client.ping()
        logger.info("Redis connection established")

    return _redis_client


async def get_redis() -> Redis:
    """Get Redis client, initializing if necessary."""
    global _redis_client

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


class NotificationRegistry:
    """
    Processed App Store notifications, keyed by ``notificationUUID``.

    Redis failures read as "not processed": the store merge makes a
    reprocessed delivery harmless, a dropped one is not.
    """

    KEY_PREFIX = "webhook:appstore:notification:"

    def __init__(self, ttl_seconds: Optional[int] = None):
        self.ttl_seconds = ttl_seconds or settings.WEBHOOK_IDEMPOTENCY_TTL_SECONDS

    @classmethod
    def key(cls, notification_uuid: str) -> str:
        return f"{cls.KEY_PREFIX}{notification_uuid}"

    async def is_processed(self, notification_uuid: Optional[str]) -> bool:
        """Check if a notification has already been processed."""
        if not notification_uuid:
            return False
        try:
            client = await get_redis()
            return await client.exists(self.key(notification_uuid)) > 0
        except Exception as exc:
            logger.warning("Redis idempotency check failed: %s", exc)
            return False

    async def mark_processed(self, notification_uuid: Optional[str]) -> None:
        """Mark a notification as processed."""
        if not notification_uuid:
            return
        try:
            client = await get_redis()
            await client.setex(self.key(notification_uuid), self.ttl_seconds, "1")
        except Exception as exc:
            logger.warning("Redis idempotency set failed: %s", exc)
