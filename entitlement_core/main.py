"""
Entitlement Core API - Main Application
=======================================

FastAPI application entry point with middleware configuration
and route registration.
"""

import logging
import time
from contextlib import asynccontextmanager
from typing import AsyncGenerator

import newrelic.agent

# Root logger defaults to WARNING
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from entitlement_core import __version__
from entitlement_core.config import settings
from entitlement_core.core.errors import setup_exception_handlers
from entitlement_core.db.session import close_db, init_db
from entitlement_core.schemas.common import ErrorResponse
from entitlement_core.services.cache import close_redis, init_redis
from entitlement_core.services.continuation_worker import CampaignContinuationWorker

logger = logging.getLogger(__name__)


# =============================================================================
# New Relic Transaction Enrichment Middleware (Raw ASGI)
# =============================================================================

class NewRelicTransactionMiddleware:
    """
    Raw ASGI middleware that adds custom attributes to the current
    New Relic transaction: method, route pattern, status, latency,
    client address and, once authenticated, the caller's user id.

    Raw ASGI keeps the route handler in the same task, so child spans
    (database, Redis, outbound HTTP) stay attached to the transaction.
    """

    def __init__(self, app):
        self.app = app

    async def __call__(self, scope, receive, send):
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        start = time.perf_counter()
        status_code = 500

        async def send_wrapper(message):
            nonlocal status_code
            if message["type"] == "http.response.start":
                status_code = message["status"]
            await send(message)

        try:
            await self.app(scope, receive, send_wrapper)
        finally:
            txn = newrelic.agent.current_transaction()
            if txn:
                route = scope.get("route")
                route_path = route.path if route else scope.get("path", "unknown")
                client = scope.get("client")

                newrelic.agent.add_custom_attributes([
                    ("http.method", scope.get("method", "")),
                    ("http.route", route_path),
                    ("http.status_code", status_code),
                    ("http.duration_ms", round((time.perf_counter() - start) * 1000, 2)),
                    ("http.client_ip", client[0] if client else "unknown"),
                    ("environment", settings.ENVIRONMENT),
                ])

                # Set by get_current_user_id
                state = scope.get("state")
                user_id = state.get("user_id") if isinstance(state, dict) else getattr(state, "user_id", None)
                if user_id:
                    newrelic.agent.add_custom_attribute("enduser.id", str(user_id))


_continuation_worker: CampaignContinuationWorker | None = None


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """
    Application lifespan manager.

    Handles startup and shutdown of:
    - Database connection
    - Redis connection
    - Campaign continuation worker
    """
    global _continuation_worker

    logger.info("Starting Entitlement Core API (%s)", settings.ENVIRONMENT)

    # Continue startup even if a backend is down, so /health still answers
    try:
        await init_db()
    except Exception as e:
        logger.error("Database connection failed: %s", e)

    try:
        await init_redis()
    except Exception as e:
        logger.error("Redis connection failed: %s", e)

    if settings.CONTINUATION_WORKER_ENABLED:
        try:
            _continuation_worker = CampaignContinuationWorker()
            await _continuation_worker.start()
        except Exception as e:
            logger.error("Campaign continuation worker failed to start: %s", e)
            _continuation_worker = None

    yield

    logger.info("Shutting down Entitlement Core API")
    if _continuation_worker is not None:
        await _continuation_worker.stop()
        _continuation_worker = None
    await close_db()
    await close_redis()


app = FastAPI(
    title="Entitlement Core API",
    description="""
## Storefront entitlements and push delivery

- **Mobile subscription**: verify, check and restore App Store / Google Play purchases
- **Webhooks**: Google Play real-time developer notifications
- **Devices**: FCM token registration
- **Campaigns**: batched, resumable push campaigns (internal)
- **Notifications**: transactional push to one user (internal)
    """,
    version=__version__,
    docs_url="/docs" if settings.is_development else None,
    redoc_url="/redoc" if settings.is_development else None,
    openapi_url="/openapi.json" if settings.is_development else None,
    lifespan=lifespan,
    responses={
        401: {"model": ErrorResponse, "description": "Not authenticated"},
        403: {"model": ErrorResponse, "description": "Invalid internal key"},
        404: {"model": ErrorResponse, "description": "Resource not found"},
        409: {"model": ErrorResponse, "description": "Concurrent update"},
        422: {"model": ErrorResponse, "description": "Validation error"},
        503: {"model": ErrorResponse, "description": "Storefront unavailable"},
    },
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allowed_origins_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.add_middleware(NewRelicTransactionMiddleware)

setup_exception_handlers(app)


# =============================================================================
# Health Check Endpoints
# =============================================================================

@app.get("/health", tags=["Health"])
async def health_check() -> dict:
    """Liveness check; does not touch the database or Redis."""
    return {
        "status": "healthy",
        "version": __version__,
        "environment": settings.ENVIRONMENT,
    }


@app.get("/", tags=["Health"])
async def root() -> dict:
    return {
        "name": "Entitlement Core API",
        "version": __version__,
        "docs": "/docs" if settings.is_development else "Disabled in production",
    }


# =============================================================================
# API Routes
# =============================================================================

from entitlement_core.api.v1 import subscription, webhooks
app.include_router(subscription.router, prefix="/api/v1/mobile-subscription", tags=["Subscription"])
app.include_router(webhooks.router, prefix="/api/v1/webhooks", tags=["Webhooks"])

from entitlement_core.api.v1 import devices
app.include_router(devices.router, prefix="/api/v1/devices", tags=["Devices"])

from entitlement_core.api.v1 import campaigns, notifications, jobs
app.include_router(campaigns.router, prefix="/api/v1/campaigns", tags=["Campaigns"])
app.include_router(notifications.router, prefix="/api/v1/notifications", tags=["Notifications"])
app.include_router(jobs.router, prefix="/api/v1/jobs", tags=["Jobs"])
