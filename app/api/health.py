"""Liveness and readiness probes.

  /health  process is up; reports each backing service for dashboards.
           Always 200: a restart does not fix a database outage.
  /ready   503 while the progress store is unreachable, so the load
           balancer drains this instance.  Redis only carries locks and
           is reported but not required.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Response, status
from redis.exceptions import RedisError
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from app.db.engine import engine
from app.db.redis import redis_pool

logger = logging.getLogger(__name__)

router = APIRouter(tags=["health"])

OK = "ok"
DEGRADED = "degraded"
NOT_CONFIGURED = "not_configured"


async def _check_database() -> str:
    if engine is None:
        return NOT_CONFIGURED
    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
    except (SQLAlchemyError, OSError) as exc:
        logger.warning("Database health check failed: %s", exc)
        return DEGRADED
    return OK


async def _check_redis() -> str:
    if redis_pool is None:
        return NOT_CONFIGURED
    try:
        await redis_pool.ping()  # type: ignore[misc]
    except (RedisError, OSError) as exc:
        logger.warning("Redis health check failed: %s", exc)
        return DEGRADED
    return OK


@router.get("/health")
async def health() -> dict:
    checks = {
        "database": await _check_database(),
        "redis": await _check_redis(),
    }
    overall = DEGRADED if DEGRADED in checks.values() else OK
    return {"status": overall, "checks": checks}


@router.get("/ready")
async def ready() -> Response:
    if await _check_database() == DEGRADED:
        return Response(status_code=status.HTTP_503_SERVICE_UNAVAILABLE)
    return Response(status_code=status.HTTP_200_OK)
