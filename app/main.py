"""
Subscription Entitlement API - Main Application
===============================================

FastAPI application entry point with middleware configuration
and route registration.
"""

import logging
import time
from contextlib import asynccontextmanager
from typing import AsyncGenerator

import newrelic.agent

# Configure logging for the application (root logger defaults to WARNING)
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from app.config import settings
from app.core.errors import setup_exception_handlers
from app.db.session import close_db, init_db
from app.dependencies import get_app_store_gateway
from app.services.cache import close_redis, init_redis

logger = logging.getLogger(__name__)

API_NAME = "Subscription Entitlement API"
API_VERSION = "1.0.0"


# =============================================================================
# New Relic Transaction Enrichment Middleware (Raw ASGI)
# =============================================================================

class NewRelicTransactionMiddleware:
    """
    Raw ASGI middleware that enriches every New Relic transaction with
    custom attributes for filtering, alerting and dashboarding.

    Uses raw ASGI instead of BaseHTTPMiddleware to preserve the async
    context chain. BaseHTTPMiddleware's ``call_next()`` runs the route
    handler in a separate task, which breaks New Relic's contextvars-based
    span propagation, so database and App Store spans would drop out of
    traces.

    Captures: response status, latency, HTTP method, route pattern, and
    user ID (when authenticated).
    """

    def __init__(self, app):
        self.app = app

    async def __call__(self, scope, receive, send):
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        start = time.perf_counter()
        status_code = 500  # default until we capture the real one

        async def send_wrapper(message):
            nonlocal status_code
            if message["type"] == "http.response.start":
                status_code = message["status"]
            await send(message)

        try:
            await self.app(scope, receive, send_wrapper)
        finally:
            duration_ms = (time.perf_counter() - start) * 1000

            txn = newrelic.agent.current_transaction()
            if txn:
                # Route pattern (e.g. "/api/v1/subscription/status") for grouping
                route = scope.get("route")
                route_path = route.path if route else scope.get("path", "unknown")

                client = scope.get("client")
                client_ip = client[0] if client else "unknown"

                newrelic.agent.add_custom_attributes([
                    ("http.method", scope.get("method", "")),
                    ("http.route", route_path),
                    ("http.status_code", status_code),
                    ("http.duration_ms", round(duration_ms, 2)),
                    ("http.client_ip", client_ip),
                    ("environment", settings.ENVIRONMENT),
                    ("appstore.environment", settings.APPSTORE_ENVIRONMENT),
                ])

                # Attach user_id if present (set by auth dependency)
                state = scope.get("state")
                user_id = state.get("user_id") if isinstance(state, dict) else getattr(state, "user_id", None)
                if user_id:
                    newrelic.agent.add_custom_attribute("enduser.id", str(user_id))


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """
    Application lifespan manager.

    Handles startup and shutdown events for:
    - Database connection
    - Redis connection (notification idempotency)
    - App Store Server API client
    """
    # Startup
    logger.info("Starting %s (%s)...", API_NAME, settings.ENVIRONMENT)

    if settings.auth_disabled:
        logger.warning("Authentication is DISABLED (DEV_AUTH_DISABLED=true)")
        logger.warning("All requests will use the development test user.")

    # Initialize database
    try:
        await init_db()
    except Exception as e:
        logger.error("Database connection failed: %s", e)
        # Continue startup even if DB fails (for health checks)

    # Initialize Redis
    try:
        await init_redis()
    except Exception as e:
        logger.error("Redis connection failed: %s", e)

    # Build the App Store client and verifier once
    get_app_store_gateway()

    yield

    # Shutdown
    logger.info("Shutting down %s...", API_NAME)
    await get_app_store_gateway().close()
    await close_db()
    await close_redis()


# Create FastAPI application
app = FastAPI(
    title=API_NAME,
    description="""
## App Store Subscription Entitlement Backend

Resolves each user's entitlement (free / trial / premium) from App Store
server notifications, client-submitted StoreKit transactions and the
App Store Server API.

### Endpoints
- **Status**: cached subscription status with on-demand refresh
- **Sync**: verify and apply a StoreKit 2 signed transaction
- **Webhooks**: App Store Server Notifications V2
    """,
    version=API_VERSION,
    docs_url="/docs" if settings.is_development else None,
    redoc_url="/redoc" if settings.is_development else None,
    openapi_url="/openapi.json" if settings.is_development else None,
    lifespan=lifespan,
    responses={
        400: {"description": "Invalid argument"},
        401: {"description": "Not authenticated"},
        405: {"description": "Method not allowed"},
        500: {"description": "Internal server error"},
    },
)

# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allowed_origins_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# New Relic transaction enrichment (adds custom attrs to every transaction)
app.add_middleware(NewRelicTransactionMiddleware)

# Setup exception handlers
setup_exception_handlers(app)


# =============================================================================
# Health Check Endpoints
# =============================================================================

@app.get("/health", tags=["Health"])
async def health_check() -> dict:
    """
    Health check endpoint.

    Returns the current status of the API and its dependencies.
    """
    return {
        "status": "healthy",
        "version": API_VERSION,
        "environment": settings.ENVIRONMENT,
        "appstore_environment": settings.APPSTORE_ENVIRONMENT,
    }


@app.get("/", tags=["Health"])
async def root() -> dict:
    """Root endpoint with API information."""
    return {
        "name": API_NAME,
        "version": API_VERSION,
        "docs": "/docs" if settings.is_development else "Disabled in production",
    }


# =============================================================================
# API Routes
# =============================================================================

from app.api.v1 import subscription, webhooks
app.include_router(subscription.router, prefix="/api/v1/subscription", tags=["Subscription"])
app.include_router(webhooks.router, prefix="/api/v1/webhooks", tags=["Webhooks"])
