"""
Redis client with async support.

Used as the transport for campaign lifecycle notifications.
"""

from __future__ import annotations

import redis.asyncio as redis
from redis.asyncio import ConnectionPool, Redis

from thumbpilot.common.config import get_settings
from thumbpilot.common.logger import get_logger

logger = get_logger(__name__)


class RedisClient:
    """Async Redis client wrapper."""

    def __init__(self) -> None:
        self._pool: ConnectionPool | None = None
        self._client: Redis | None = None

    @property
    def client(self) -> Redis:
        """Get the Redis client."""
        if self._client is None:
            raise RuntimeError("Redis not initialized. Call connect() first.")
        return self._client

    @property
    def connected(self) -> bool:
        return self._client is not None

    async def connect(self) -> None:
        """Initialize Redis connection pool."""
        settings = get_settings()

        self._pool = ConnectionPool.from_url(
            settings.redis.url,
            max_connections=settings.redis.pool_size,
            decode_responses=True,
        )
        self._client = Redis(connection_pool=self._pool)

        await self._client.ping()

        logger.info(
            "Redis connected",
            host=settings.redis.host,
            port=settings.redis.port,
            db=settings.redis.db,
        )

    async def close(self) -> None:
        """Close Redis connection."""
        if self._client:
            await self._client.aclose()
            self._client = None
        if self._pool:
            await self._pool.disconnect()
            self._pool = None
        logger.info("Redis connection closed")

    async def health_check(self) -> bool:
        """Check Redis connection health."""
        try:
            await self.client.ping()
            return True
        except Exception as e:
            logger.error("Redis health check failed", error=str(e))
            return False

    async def publish(self, channel: str, message: str) -> int:
        """Publish message to channel."""
        return await self.client.publish(channel, message)


# Global Redis client instance
redis_client = RedisClient()


class CacheKeys:
    """Redis key / channel builders."""

    @staticmethod
    def campaign_channel(campaign_id: str) -> str:
        return f"campaign:{campaign_id}"

    @staticmethod
    def all_campaigns_channel() -> str:
        return "campaigns:all"
