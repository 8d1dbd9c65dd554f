"""Tenant context propagation via Python contextvars.

This module is the foundation of multi-tenant isolation. The TenantContext
is set by TenantAuthMiddleware at the start of each request, or by
tenant_scope() inside background jobs, and is accessible anywhere in the
call stack via get_current_tenant(). Every database session and Redis key
uses this context to scope operations to the correct tenant.
"""

from __future__ import annotations

import contextvars
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass

# ── Tenant Context ──────────────────────────────────────────────────────────


@dataclass(frozen=True)
class TenantContext:
    """Immutable tenant context for the current request."""

    tenant_id: str
    tenant_slug: str
    schema_name: str  # e.g., "tenant_acme"


_tenant_context: contextvars.ContextVar[TenantContext] = contextvars.ContextVar("tenant_context")


def schema_name_for(slug: str) -> str:
    """Postgres schema name for a tenant slug."""
    return f"tenant_{slug.replace('-', '_')}"


def get_current_tenant() -> TenantContext:
    """Get the tenant context for the current request.

    Raises RuntimeError if no tenant context has been set (i.e., the call
    is not within a tenant-scoped request).
    """
    try:
        return _tenant_context.get()
    except LookupError:
        raise RuntimeError("No tenant context set -- request is not tenant-scoped")


def set_tenant_context(ctx: TenantContext) -> contextvars.Token[TenantContext]:
    """Set the tenant context for the current request. Returns a token for reset."""
    return _tenant_context.set(ctx)


@contextmanager
def tenant_scope(ctx: TenantContext) -> Iterator[TenantContext]:
    """Run a block under a tenant context (used by scheduled jobs)."""
    token = set_tenant_context(ctx)
    try:
        yield ctx
    finally:
        _tenant_context.reset(token)


# ── Paths that skip tenant resolution ───────────────────────────────────────

SKIP_TENANT_PATHS = (
    "/health",
    "/metrics",
    "/docs",
    "/openapi.json",
    "/redoc",
    "/api/v1/tenants",
    "/api/v1/slack/momentum/run",
)


def tenant_cache_key(tenant_id: str) -> str:
    """Redis key for TenantAuthMiddleware's cached tenant lookup."""
    return f"tenant:lookup:{tenant_id}"
