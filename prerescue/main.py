"""PreRescue FastAPI application entry point.

Creates the FastAPI app, includes routers, and manages the lifecycle of
the emergency engine (stores, GeoMatcher, StatusReconciler, registries,
AffectedQuery, briefing service).
"""

from __future__ import annotations

import time
from contextlib import asynccontextmanager
from typing import AsyncIterator

import structlog
from fastapi import FastAPI
from fastapi.responses import ORJSONResponse

from config.settings import settings
from prerescue.api.router import api_router

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)


# ---------------------------------------------------------------------------
# Structured logging configuration
# ---------------------------------------------------------------------------


def _configure_logging() -> None:
    """Set up structlog with JSON or console rendering based on settings."""
    processors: list = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.StackInfoRenderer(),
        structlog.dev.set_exc_info,
        structlog.processors.TimeStamper(fmt="iso"),
    ]

    if settings.log_format == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            settings.log_level,
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


# ---------------------------------------------------------------------------
# Application lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Manage startup and shutdown of the emergency engine.

    On startup:
      1. Build the emergency, location and status stores
      2. Build the shared GeoMatcher
      3. Build the StatusReconciler and registries around it
      4. Build AffectedQuery and the agent briefing service
      5. Store everything on ``app.state``

    On shutdown:
      - Close the Redis connection pool when the redis backend is used.
    """
    _configure_logging()
    logger.info("app.startup", env=settings.env, store_backend=settings.store_backend)

    app.state.start_time = time.time()

    # -- 1. Stores ----------------------------------------------------------
    redis_conn = None
    if settings.store_backend == "redis":
        from prerescue.services.redis_stores import (
            RedisConnection,
            RedisEmergencyStore,
            RedisLocationStore,
            RedisStatusStore,
        )

        redis_conn = RedisConnection(settings.redis_url, namespace=settings.store_namespace)
        if not await redis_conn.ping():
            logger.warning("app.redis_unreachable", redis_url=settings.redis_url)
        emergency_store = RedisEmergencyStore(redis_conn)
        location_store = RedisLocationStore(redis_conn)
        status_store = RedisStatusStore(redis_conn)
    else:
        from prerescue.services.stores import (
            InMemoryEmergencyStore,
            InMemoryLocationStore,
            InMemoryStatusStore,
        )

        emergency_store = InMemoryEmergencyStore()
        location_store = InMemoryLocationStore()
        status_store = InMemoryStatusStore()

    app.state.store_backend = settings.store_backend
    app.state.status_store = status_store
    logger.info("app.stores_initialised", backend=settings.store_backend)

    # -- 2. GeoMatcher ------------------------------------------------------
    from prerescue.services.geo_matcher import GeoMatcher

    matcher = GeoMatcher(
        miles_per_postal_unit=settings.heuristic_miles_per_postal_unit,
        region_penalty_miles=settings.heuristic_region_penalty_miles,
        max_heuristic_miles=settings.heuristic_max_miles,
        postal_digits=settings.heuristic_postal_digits,
    )

    # -- 3. Reconciler and registries ----------------------------------------
    from prerescue.services.reconciler import StatusReconciler
    from prerescue.services.registry import EmergencyRegistry, LocationRegistry

    reconciler = StatusReconciler(
        emergencies=emergency_store,
        locations=location_store,
        statuses=status_store,
        matcher=matcher,
        max_concurrency=settings.reconcile_max_concurrency,
    )
    app.state.reconciler = reconciler
    app.state.reconcile_in_background = settings.reconcile_in_background
    app.state.emergency_registry = EmergencyRegistry(
        emergency_store,
        reconciler,
        default_radius_miles=settings.default_radius_miles,
    )
    app.state.location_registry = LocationRegistry(location_store)
    logger.info(
        "app.reconciler_initialised",
        max_concurrency=settings.reconcile_max_concurrency,
        background=settings.reconcile_in_background,
    )

    # -- 4. Read side ---------------------------------------------------------
    from prerescue.services.affected import AffectedQuery
    from prerescue.services.briefing import EmergencyBriefingService

    affected_query = AffectedQuery(
        emergencies=emergency_store,
        locations=location_store,
        matcher=matcher,
    )
    app.state.affected_query = affected_query
    app.state.briefing = EmergencyBriefingService(
        affected=affected_query,
        emergencies=emergency_store,
        statuses=status_store,
    )

    logger.info("app.startup_complete")

    yield

    # -- Shutdown -----------------------------------------------------------
    logger.info("app.shutdown_start")
    if redis_conn is not None:
        await redis_conn.close()
    logger.info("app.shutdown_complete")


# ---------------------------------------------------------------------------
# FastAPI application
# ---------------------------------------------------------------------------

app = FastAPI(
    title="PreRescue API",
    description=(
        "Proximity-based emergency matching and safety-status reconciliation "
        "for personal emergency-preparedness records."
    ),
    version="0.1.0",
    lifespan=lifespan,
    default_response_class=ORJSONResponse,
    docs_url="/docs" if not settings.is_production else None,
    redoc_url="/redoc" if not settings.is_production else None,
)

app.include_router(api_router)


@app.get("/api", response_class=ORJSONResponse)
async def api_info() -> dict:
    """API information endpoint."""
    return {
        "name": "PreRescue API",
        "version": app.version,
        "docs": "/docs",
        "health": "/api/v1/health",
        "endpoints": {
            "emergencies": "/api/v1/emergencies",
            "locations": "/api/v1/locations",
            "user_status": "/api/v1/users/{user_id}/emergencies/{emergency_id}/status",
            "affected": "/api/v1/users/{user_id}/affected",
            "briefing": "/api/v1/users/{user_id}/briefing",
        },
    }


def run() -> None:
    """Console entry point: serve the app with uvicorn."""
    import uvicorn

    uvicorn.run(
        "prerescue.main:app",
        host=settings.api_host,
        port=settings.api_port,
    )
