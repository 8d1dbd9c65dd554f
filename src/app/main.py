"""FastAPI application factory.

Creates the app with tenant middleware, logging middleware, metrics middleware,
CORS, Sentry, lifespan events for database initialization, and the v1 API router.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from collections.abc import AsyncGenerator

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.requests import Request
from fastapi.responses import Response

from src.app.config import get_settings
from src.app.core.database import close_db, get_tenant_session, init_db
from src.app.core.identifiers import InvalidIdError, invalid_id_handler
from src.app.core.monitoring import MetricsMiddleware, get_metrics_response, init_sentry
from src.app.core.redis import close_redis, get_redis_pool, get_tenant_redis
from src.app.api.middleware import LoggingMiddleware, TenantAuthMiddleware, configure_structlog
from src.app.api.v1.router import router as v1_router
from src.app.deals.momentum import MomentumNudgeService
from src.app.deals.repository import DealRepository
from src.app.deals.scheduler import MomentumScheduler
from src.app.reconciliation.repository import ReconciliationRepository
from src.app.services.slack import SlackClient
from src.app.services.slack_settings import SlackSettingsRepository
from src.app.services.team import TeamRepository
from src.app.services.tenant_provisioning import get_tenant_by_id, list_tenants


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan: init DB, Sentry and the nudge scheduler on startup."""
    log = structlog.get_logger(__name__)
    settings = get_settings()
    configure_structlog()
    await init_db()

    # Initialize Sentry if DSN is configured
    if settings.SENTRY_DSN:
        init_sentry(dsn=settings.SENTRY_DSN, environment=settings.ENVIRONMENT.value)

    # ── Repositories (tenant-scoped sessions) ───────────────────────────
    deal_repository = DealRepository(session_factory=get_tenant_session)
    slack_settings_repository = SlackSettingsRepository(session_factory=get_tenant_session)
    app.state.deal_repository = deal_repository
    app.state.reconciliation_repository = ReconciliationRepository(session_factory=get_tenant_session)
    app.state.slack_settings_repository = slack_settings_repository
    app.state.team_repository = TeamRepository(session_factory=get_tenant_session)
    app.state.list_tenants = list_tenants
    app.state.tenant_lookup = get_tenant_by_id

    # ── Momentum nudges ─────────────────────────────────────────────────
    momentum_service = MomentumNudgeService(
        deal_repository=deal_repository,
        slack_settings=slack_settings_repository,
        dedupe_store=get_tenant_redis(),
        slack_client_factory=lambda token: SlackClient(
            token,
            base_url=settings.SLACK_API_BASE_URL,
            timeout=settings.SLACK_TIMEOUT,
        ),
        app_url=settings.APP_URL,
        cooldown_hours=settings.MOMENTUM_NUDGE_COOLDOWN_HOURS,
        default_clarity_threshold=settings.MOMENTUM_CLARITY_THRESHOLD,
        default_confidence_threshold=settings.MOMENTUM_CONFIDENCE_THRESHOLD,
    )
    app.state.momentum_service = momentum_service

    momentum_scheduler = None
    if settings.MOMENTUM_SCHEDULER_ENABLED:
        momentum_scheduler = MomentumScheduler(
            momentum_service, list_tenants, hour=settings.MOMENTUM_NUDGE_HOUR
        )
        if momentum_scheduler.start():
            app.state.momentum_scheduler = momentum_scheduler
        else:
            momentum_scheduler = None

    log.info("app.started", environment=settings.ENVIRONMENT.value)

    yield

    if momentum_scheduler is not None:
        momentum_scheduler.stop()

    await close_db()
    await close_redis()
    log.info("app.stopped")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = get_settings()

    app = FastAPI(
        title="Dealflow CRM API",
        version="0.1.0",
        description="Multi-tenant sales CRM: deal health, reconciliation and Slack nudges",
        lifespan=lifespan,
    )

    # Middleware is added in reverse order (last added = outermost)

    # Tenant middleware (inner -- resolves tenant context from JWT/header)
    redis_client = get_redis_pool()
    app.add_middleware(TenantAuthMiddleware, redis_client=redis_client)

    # CORS middleware
    if settings.CORS_ALLOWED_ORIGINS == "*":
        origins = ["*"]
    else:
        origins = [o.strip() for o in settings.CORS_ALLOWED_ORIGINS.split(",")]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Logging middleware (logs every request with timing)
    app.add_middleware(LoggingMiddleware)

    # Metrics middleware (outermost -- records Prometheus metrics for all requests)
    app.add_middleware(MetricsMiddleware)

    # Include v1 API router (health, tenants, auth, deals, reconciliation, ...)
    app.include_router(v1_router)

    # Malformed row ids in paths or payloads answer 422
    app.add_exception_handler(InvalidIdError, invalid_id_handler)

    # Prometheus metrics endpoint (infrastructure route, outside v1 router)
    @app.get("/metrics", include_in_schema=False)
    async def metrics(request: Request) -> Response:
        """Prometheus metrics endpoint."""
        return get_metrics_response()

    return app


# Module-level app for uvicorn
app = create_app()
