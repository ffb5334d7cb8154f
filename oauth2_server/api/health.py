"""Health and readiness endpoints.

  /health  liveness: the process answers; reports per-backend status
  /ready   readiness: 503 while the configured token store is unreachable

Only the backend actually holding OAuth state is critical.  With neither
DATABASE_URL nor REDIS_URL set, tokens live in process memory and the
instance is always ready.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Response, status
from sqlalchemy import text

from oauth2_server.db import engine as db_engine
from oauth2_server.db.redis import redis_pool

logger = logging.getLogger(__name__)

router = APIRouter(tags=["health"])


async def _check_database() -> str:
    if db_engine.engine is None:
        return "not_configured"
    try:
        async with db_engine.engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
    except Exception:
        logger.exception("Database health check failed")
        return "degraded"
    return "ok"


async def _check_redis() -> str:
    if redis_pool is None:
        return "not_configured"
    try:
        await redis_pool.ping()  # type: ignore[misc]
    except Exception:
        logger.exception("Redis health check failed")
        return "degraded"
    return "ok"


async def _checks() -> dict[str, str]:
    return {"database": await _check_database(), "redis": await _check_redis()}


@router.get("/health")
async def health() -> dict:
    """Liveness probe plus dependency status.

    Returns 200 even when degraded; the status field tells the story.
    """
    checks = await _checks()
    overall = "degraded" if "degraded" in checks.values() else "ok"
    return {"status": overall, "checks": checks}


@router.get("/ready")
async def ready() -> Response:
    """Readiness probe: can this instance issue and validate tokens?"""
    checks = await _checks()
    if db_engine.engine is not None:
        critical = checks["database"]
    else:
        critical = checks["redis"]
    if critical == "degraded":
        return Response(status_code=status.HTTP_503_SERVICE_UNAVAILABLE)
    return Response(status_code=status.HTTP_200_OK)
