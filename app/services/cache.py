"""
Redis Cache Service
===================

Redis connection management and the short-lived keys used by the
reconciliation path.
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
    Initialize the Redis connection pool and pre-warm a connection.

    Returns:
        Redis client instance
    """
    global _redis_client

    if _redis_client is None:
        _redis_client = redis.from_url(
            settings.REDIS_URL,
            encoding="utf-8",
            decode_responses=True,
            max_connections=20,
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
        await _redis_client.aclose()
        _redis_client = None
        logger.info("Redis connection closed")


class CacheKeys:
    """
    Key naming convention:
        sync:{user_id}  ->  log id of the reconciliation call in the window
    """

    @staticmethod
    def sync_window(user_id: int) -> str:
        return f"sync:{user_id}"


class SyncWindow:
    """
    Groups reconciliation calls for one user made within a few seconds onto a
    single webhook log row.

    Purely log hygiene: every Redis failure is logged and treated as "no
    window", never as an error.
    """

    def __init__(self, client: Optional[Redis], ttl_seconds: int):
        self.client = client
        self.ttl_seconds = ttl_seconds

    async def current_log_id(self, user_id: int) -> Optional[int]:
        if self.client is None:
            return None
        try:
            value = await self.client.get(CacheKeys.sync_window(user_id))
        except Exception as e:
            logger.warning("Sync window lookup failed for user=%s: %s", user_id, e)
            return None

        if value is None:
            return None
        try:
            return int(value)
        except (TypeError, ValueError):
            logger.warning("Ignoring malformed sync window value for user=%s", user_id)
            return None

    async def open(self, user_id: int, log_id: int) -> None:
        if self.client is None or self.ttl_seconds <= 0:
            return
        try:
            await self.client.setex(
                CacheKeys.sync_window(user_id),
                self.ttl_seconds,
                str(log_id),
            )
        except Exception as e:
            logger.warning("Sync window update failed for user=%s: %s", user_id, e)
