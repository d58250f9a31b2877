"""FastAPI application entrypoint.

Configures CORS, includes routers, and exposes a healthcheck endpoint.
"""

import logging
import os

from fastapi import Depends, FastAPI
from fastapi.middleware.cors import CORSMiddleware
from uvicorn.middleware.proxy_headers import ProxyHeadersMiddleware

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

from .deps import get_metrics_reporter
from .routers import account as account_router
from .routers import admin as admin_router
from .routers import billing_webhooks as billing_webhooks_router
from .routers import clerk_webhooks as clerk_webhooks_router
from .services.metrics_reporter import MetricsReporter
from .telemetry import init_sentry
from . import schemas

# Import models so Alembic can discover metadata
from . import models  # noqa: F401


def create_app() -> FastAPI:
    init_sentry()

    app = FastAPI(
        title="accountsync API",
        description="""
        Account lifecycle service: trials, paid access, protection and
        deletion of customer accounts.

        This API provides endpoints for:
        - The signed-in user's access status
        - Identity (Clerk) and billing (Stripe) webhooks
        - Administrative protection overrides, metrics and manual runs

        ## Authentication

        `/account/*` requires a session JWT (Authorization header or
        `access_token` cookie). `/admin/*` requires the `X-Admin-Secret` header.
        Webhooks are verified by provider signature.
        """,
        version="1.0.0",
    )

    # Trust X-Forwarded-Proto headers from load balancers
    app.add_middleware(ProxyHeadersMiddleware, trusted_hosts="*")

    # BACKEND_CORS_ORIGINS can be a comma-separated list
    cors_origins_str = os.getenv("BACKEND_CORS_ORIGINS", "http://localhost:3000")
    allowed_origins = [origin.strip() for origin in cors_origins_str.split(",") if origin.strip()]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=allowed_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(account_router.router)
    app.include_router(admin_router.router)
    app.include_router(billing_webhooks_router.router)
    app.include_router(clerk_webhooks_router.router)

    @app.get(
        "/health",
        response_model=schemas.HealthResponse,
        tags=["Health"],
        summary="Health check",
        description="""
        Health check for load balancers and uptime monitors.

        This endpoint:
        - Does not require authentication
        - Reports "degraded" when the database is unreachable, deletions are
          stuck, or billing rows reference missing users
        """
    )
    def health(reporter: MetricsReporter = Depends(get_metrics_reporter)):
        return schemas.HealthResponse(**reporter.check_health())

    return app


app = create_app()
