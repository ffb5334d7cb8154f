"""Redis connection management.

Mirrors engine.py: when REDIS_URL is configured (and DATABASE_URL is not),
OAuth state lives in Redis through RedisOAuthStorage; when it is unset,
redis_pool is None and nothing here connects.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import redis.asyncio as aioredis

from oauth2_server.core.config import SETTINGS

logger = logging.getLogger(__name__)

if SETTINGS.redis_url:
    redis_pool: aioredis.Redis | None = aioredis.from_url(  # type: ignore[type-arg]
        SETTINGS.redis_url,
        decode_responses=True,
        max_connections=20,
    )
else:
    redis_pool = None


@asynccontextmanager
async def lifespan_redis() -> AsyncIterator[None]:
    """Startup/shutdown hook for Redis.

    Fails startup when Redis is configured but unreachable: falling back to
    per-process memory would silently lose every issued token on restart.
    """
    if redis_pool is None:
        logger.info("No REDIS_URL configured, Redis storage disabled")
        yield
        return

    await redis_pool.ping()  # type: ignore[misc]
    logger.info("Redis connected")

    yield

    await redis_pool.aclose()
    logger.info("Redis connection pool closed")
