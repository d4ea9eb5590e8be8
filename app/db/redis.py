"""Redis connection management.

This module mirrors engine.py: when REDIS_URL is configured we create a
connection pool, and when it is unset (local dev, tests) redis_pool is
None and app.main falls back to the in-process InMemoryKeyLock.

WHAT REDIS IS FOR HERE
----------------------
Nothing durable.  Progress rows live in Postgres.  Redis only carries
the short-lived locks that serialize updates to one (student, module)
progress row across API processes:

  lock:module-progress:<student_id>:<module_id>   TTL a few seconds

Two tabs of the same lesson can post "content viewed" at the same
moment, possibly to different API replicas.  An asyncio.Lock only
orders requests inside one process; the Redis lock orders them across
all of them, so the completion check and the unlock report happen once.

If Redis restarts, held locks vanish.  That is acceptable: the store's
writes are themselves idempotent (set-add of content ids, completion
stamped only while completed_at is null), so the lock narrows races
rather than being the only guard.

CONNECTION POOLING
------------------
The pool is shared by all requests of a process.  max_connections caps
how many lock round-trips can be in flight at once.  Past that the pool
raises a connection error, which RedisKeyLock reports as
StoreUnavailable, so the request degrades instead of hanging.

STARTUP
-------
lifespan_redis() pings once and logs the result.  A failed ping does
not stop the service: reads do not need Redis at all, and view tracking
already degrades to "tracked: false" when the lock cannot be taken.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

import redis.asyncio as aioredis

from app.core.config import SETTINGS

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
async def lifespan_redis():
    """Startup/shutdown hook for Redis, mirrors lifespan_db()."""
    if redis_pool is None:
        logger.info("No REDIS_URL configured, progress locks are per-process")
        yield
        return

    try:
        await redis_pool.ping()  # type: ignore[misc]
        logger.info("Redis connected: %s", SETTINGS.redis_url)
    except Exception:
        # Keep serving; lock acquisition will surface StoreUnavailable per call.
        logger.exception("Redis connection failed on startup")

    yield

    await redis_pool.aclose()
    logger.info("Redis connection pool closed")
