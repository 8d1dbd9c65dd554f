"""Prometheus metrics, Sentry integration, and domain counters.

Provides:
- MetricsMiddleware: ASGI middleware for HTTP request metrics
- init_sentry(): Initialize Sentry with tenant-aware before_send callback
- Domain counters: clarity recalculations, health alerts, reconciliation
  actions, Slack nudges
- get_metrics_response(): Prometheus exposition for /metrics
"""

from __future__ import annotations

import time

import sentry_sdk
from prometheus_client import (
    REGISTRY,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)
from sentry_sdk.integrations.fastapi import FastApiIntegration
from sentry_sdk.integrations.starlette import StarletteIntegration
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

# ── HTTP Metrics ─────────────────────────────────────────────────────────────

http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "endpoint", "status_code", "tenant_id"],
)

http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "endpoint", "tenant_id"],
    buckets=(0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
)

# ── Domain Metrics ───────────────────────────────────────────────────────────

deal_clarity_recalculations_total = Counter(
    "deal_clarity_recalculations_total",
    "Clarity and momentum score recalculations",
    ["tenant_id"],
)

deal_health_alerts_generated_total = Counter(
    "deal_health_alerts_generated_total",
    "Deal health alerts created",
    ["tenant_id", "alert_type", "severity"],
)

reconciliation_actions_total = Counter(
    "reconciliation_actions_total",
    "Reconciliation actions executed",
    ["tenant_id", "action", "status"],
)

slack_nudges_sent_total = Counter(
    "slack_nudges_sent_total",
    "Deal momentum nudges delivered to Slack",
    ["tenant_id", "status"],
)

# ── Platform Metrics ─────────────────────────────────────────────────────────

active_tenants = Gauge(
    "active_tenants",
    "Number of active tenants",
)


# ── Metrics Middleware ───────────────────────────────────────────────────────


class MetricsMiddleware(BaseHTTPMiddleware):
    """Records request count and duration per method, route and tenant.

    Route and tenant are read after the request has been handled: the
    router fills ``scope["route"]`` and TenantAuthMiddleware sets
    ``request.state.tenant_id``. /metrics itself is not counted.
    """

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        if request.url.path == "/metrics":
            return await call_next(request)

        start_time = time.perf_counter()
        response = await call_next(request)
        duration = time.perf_counter() - start_time

        tenant_id = getattr(request.state, "tenant_id", None) or "unknown"
        # Route pattern keeps label cardinality bounded; fall back to raw path
        route = request.scope.get("route")
        endpoint = getattr(route, "path", None) or request.url.path

        http_requests_total.labels(
            method=request.method,
            endpoint=endpoint,
            status_code=str(response.status_code),
            tenant_id=tenant_id,
        ).inc()

        http_request_duration_seconds.labels(
            method=request.method,
            endpoint=endpoint,
            tenant_id=tenant_id,
        ).observe(duration)

        return response


# ── Sentry Integration ───────────────────────────────────────────────────────


def init_sentry(dsn: str, environment: str) -> None:
    """Initialize Sentry SDK with tenant-aware event tagging.

    Args:
        dsn: Sentry DSN string.
        environment: Deployment environment (development, staging, production).
    """
    traces_sample_rate = 0.1 if environment == "production" else 1.0

    def before_send(event: dict, hint: dict) -> dict:
        """Add tenant context to Sentry events."""
        try:
            from src.app.core.tenant import get_current_tenant

            ctx = get_current_tenant()
            event.setdefault("tags", {})
            event["tags"]["tenant_id"] = ctx.tenant_id
            event["tags"]["tenant_slug"] = ctx.tenant_slug
        except (RuntimeError, LookupError):
            pass
        return event

    sentry_sdk.init(
        dsn=dsn,
        environment=environment,
        traces_sample_rate=traces_sample_rate,
        integrations=[
            StarletteIntegration(),
            FastApiIntegration(),
        ],
        before_send=before_send,
    )


# ── Metrics Endpoint ─────────────────────────────────────────────────────────


def get_metrics_response() -> Response:
    """Generate Prometheus exposition format response."""
    return Response(
        content=generate_latest(REGISTRY),
        media_type="text/plain; version=0.0.4; charset=utf-8",
    )
