from __future__ import annotations

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from app.api.health import router as health_router
from app.api.metrics_endpoint import router as metrics_router
from app.api.modules import router as modules_router
from app.core.config import SETTINGS
from app.core.logging import setup_logging
from app.db.engine import lifespan_db
from app.db.redis import lifespan_redis, redis_pool
from app.middleware.metrics import MetricsMiddleware
from app.middleware.request_context import RequestContextMiddleware
from app.repos.enrollment_roster import InMemoryEnrollmentRoster
from app.repos.module_catalog import InMemoryModuleCatalog
from app.repos.progress_store import InMemoryProgressStore
from app.repos.submission_ledger import InMemorySubmissionLedger
from app.services.key_lock import InMemoryKeyLock, KeyLock, RedisKeyLock

# Configure logging before anything else runs.
setup_logging(SETTINGS.log_level, json_format=SETTINGS.log_json)

logger = logging.getLogger(__name__)


def _build_key_lock() -> KeyLock:
    if redis_pool is not None:
        return RedisKeyLock(
            redis_pool,
            timeout_seconds=SETTINGS.progress_lock_timeout_seconds,
            blocking_timeout_seconds=SETTINGS.progress_lock_timeout_seconds,
        )
    return InMemoryKeyLock(timeout_seconds=SETTINGS.progress_lock_timeout_seconds)


@asynccontextmanager
async def lifespan(_app: FastAPI) -> AsyncGenerator[None, None]:
    # Nested so Redis closes before the database engine is disposed.
    async with lifespan_db():
        async with lifespan_redis():
            yield


app = FastAPI(
    title="module-progress-service",
    lifespan=lifespan,
    docs_url="/docs" if SETTINGS.is_dev else None,
    redoc_url="/redoc" if SETTINGS.is_dev else None,
)

# In-memory repos back the service when DATABASE_URL is unset (dev, tests).
# Catalog and ledger share state so assignment ownership resolves.
app.state.module_catalog = InMemoryModuleCatalog()
app.state.submission_ledger = InMemorySubmissionLedger(app.state.module_catalog)
app.state.progress_store = InMemoryProgressStore()
app.state.enrollments = InMemoryEnrollmentRoster()
app.state.key_lock = _build_key_lock()

app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:5173"],
    allow_credentials=True,
    allow_methods=["GET", "POST"],
    allow_headers=["*"],
)

# Last-added runs first: RequestContext -> Metrics -> CORS -> route.
app.add_middleware(MetricsMiddleware)
app.add_middleware(RequestContextMiddleware)

app.include_router(metrics_router)
app.include_router(health_router)
app.include_router(modules_router)

logger.info(
    "module-progress-service started  env=%s log_level=%s port=%d locks=%s docs=%s",
    SETTINGS.app_env,
    SETTINGS.log_level,
    SETTINGS.port,
    "redis" if redis_pool is not None else "in-process",
    "on" if SETTINGS.is_dev else "off",
)
