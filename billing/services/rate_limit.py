"""Fixed-window request throttling backed by Redis.

Counters live in Redis so every worker process shares them. When Redis is not
configured or not reachable the limiter lets requests through and logs it.
"""

import logging

from fastapi import Depends, HTTPException
from redis.asyncio import Redis as AsyncRedis
from redis.exceptions import RedisError

from billing.config import get_settings
from billing.constants import CONFIRM_RATE_LIMIT, CONFIRM_RATE_WINDOW
from billing.models.user import User
from billing.services.auth_service import get_current_user

logger = logging.getLogger(__name__)

_redis: AsyncRedis | None = None


async def init_redis() -> None:
    global _redis
    settings = get_settings()
    if settings.redis_url:
        _redis = AsyncRedis.from_url(settings.redis_url)


async def close_redis() -> None:
    global _redis
    if _redis:
        await _redis.aclose()
        _redis = None


def get_redis() -> AsyncRedis | None:
    return _redis


async def hit(key: str, limit: int, window: int) -> bool:
    """Count one request against ``key``. Returns False once the window's limit is exceeded."""
    redis = get_redis()
    if redis is None:
        return True
    try:
        # The key is created with its TTL in the same transaction, so a counter never outlives its window
        async with redis.pipeline(transaction=True) as pipe:
            pipe.set(key, 0, ex=window, nx=True)
            pipe.incr(key)
            _, count = await pipe.execute()
    except RedisError as e:
        logger.warning("Rate limiter unavailable, allowing request: %s", e)
        return True
    return count <= limit


def rate_limited(action: str, limit: int = CONFIRM_RATE_LIMIT, window: int = CONFIRM_RATE_WINDOW):
    """Build a FastAPI dependency that throttles ``action`` per authenticated user."""

    async def dependency(user: User = Depends(get_current_user)) -> User:
        if not await hit(f"ratelimit:{action}:{user.id}", limit, window):
            logger.warning("User %s exceeded %s rate limit", user.id, action)
            raise HTTPException(status_code=429, detail="Too many requests, try again later")
        return user

    return dependency
