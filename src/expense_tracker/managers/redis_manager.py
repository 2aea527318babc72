"""
Redis manager for handling Redis connections.

The connection is created lazily on first use so that importing the
application never requires a running Redis.

Logging:
    - Uses the centralized logging manager.
    - Logs connection attempts, successes, and failures.
"""

from typing import Optional

from fastapi import HTTPException, status
import redis.asyncio as redis_async
from redis.exceptions import RedisError

from expense_tracker.config import settings
from expense_tracker.managers.logging_manager import get_logger

logger = get_logger(prefix="[RedisManager]")

REDIS_UNAVAILABLE_MSG: str = "Rate limiting service unavailable. Please try again later."


class RedisManager:
    """
    Manages a single Redis connection for the application.

    Attributes:
        redis_url: The Redis connection URL.
        _redis: The cached Redis connection instance.
    """

    def __init__(self, redis_url: Optional[str] = None) -> None:
        self.redis_url = redis_url or settings.REDIS_URL
        self._redis: Optional[redis_async.Redis] = None
        self.logger = logger

    async def get_redis(self) -> redis_async.Redis:
        """
        Get or create the Redis connection.

        Raises:
            HTTPException: If Redis is unavailable.
        """
        if self._redis is None:
            try:
                self.logger.info("Connecting to Redis at %s", self.redis_url)
                client = redis_async.from_url(self.redis_url, decode_responses=True)
                await client.ping()
                self._redis = client
                self.logger.info("Connected to Redis at %s", self.redis_url)
            except (RedisError, OSError) as conn_exc:
                self.logger.error("Failed to create async Redis connection: %s", conn_exc, exc_info=True)
                raise HTTPException(
                    status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                    detail=REDIS_UNAVAILABLE_MSG,
                ) from conn_exc
        return self._redis

    async def close(self) -> None:
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None
            self.logger.info("Redis connection closed")


redis_manager = RedisManager()
