"""Resolve which tenant (CRM workspace) a request belongs to.

Order of precedence:
1. JWT claims in the Authorization header (signed-in team members)
2. X-API-Key (integration keys; the key row names its tenant)
3. X-Tenant-ID header (login, refresh, service callers)

The resolved TenantContext is set in contextvars for the request, its id
is stored on ``request.state.tenant_id`` for the access log, and it is
bound to structlog's context so deal, reconciliation and Slack log lines
carry it. Paths in SKIP_TENANT_PATHS (health, metrics, tenant admin, the
momentum cron) are left unscoped.
"""

from __future__ import annotations

import json

import redis.asyncio as aioredis
import structlog
from fastapi import Request, Response, status
from fastapi.responses import JSONResponse
from jose import JWTError, jwt
from sqlalchemy import text
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from src.app.config import get_settings
from src.app.core.tenant import (
    SKIP_TENANT_PATHS,
    TenantContext,
    _tenant_context,
    set_tenant_context,
    tenant_cache_key,
)

logger = structlog.get_logger(__name__)

TENANT_CACHE_TTL = 300


class TenantAuthMiddleware(BaseHTTPMiddleware):
    """Sets the tenant context for every tenant-scoped request.

    Requests with no resolvable tenant get a 400 before reaching a router.
    Active tenants are cached in Redis for TENANT_CACHE_TTL seconds.
    """

    def __init__(self, app, redis_client: aioredis.Redis | None = None):
        super().__init__(app)
        self._redis = redis_client

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        path = request.url.path
        if any(path.startswith(skip) for skip in SKIP_TENANT_PATHS):
            return await call_next(request)

        tenant_ctx = (
            await self._resolve_from_jwt(request)
            or await self._resolve_from_api_key(request)
            or await self._resolve_from_header(request)
        )
        if not tenant_ctx:
            return JSONResponse(
                status_code=status.HTTP_400_BAD_REQUEST,
                content={
                    "detail": "Missing tenant context. Provide Authorization header with JWT, "
                    "X-API-Key, or X-Tenant-ID header."
                },
            )

        request.state.tenant_id = tenant_ctx.tenant_id
        structlog.contextvars.bind_contextvars(tenant_id=tenant_ctx.tenant_id)
        token = set_tenant_context(tenant_ctx)
        try:
            return await call_next(request)
        finally:
            _tenant_context.reset(token)
            structlog.contextvars.unbind_contextvars("tenant_id")

    async def _resolve_from_jwt(self, request: Request) -> TenantContext | None:
        """Tenant named by a valid JWT, provided it still exists, is active and the slug agrees."""
        auth_header = request.headers.get("Authorization")
        if not auth_header or not auth_header.startswith("Bearer "):
            return None

        settings = get_settings()
        try:
            payload = jwt.decode(
                auth_header[7:],
                settings.JWT_SECRET_KEY,
                algorithms=[settings.JWT_ALGORITHM],
            )
        except JWTError:
            return None

        tenant_id = payload.get("tenant_id")
        if not tenant_id or not payload.get("tenant_slug"):
            return None

        ctx = await self._resolve_tenant_by_id(tenant_id)
        if ctx is None or ctx.tenant_slug != payload["tenant_slug"]:
            return None
        return ctx

    async def _resolve_from_api_key(self, request: Request) -> TenantContext | None:
        api_key = request.headers.get("X-API-Key")
        if not api_key:
            return None

        from src.app.core.security import validate_api_key

        try:
            result = await validate_api_key(api_key)
        except Exception as e:
            logger.warning("tenant.api_key_lookup_failed", error=str(e))
            return None

        if not result:
            return None
        return await self._resolve_tenant_by_id(result["tenant_id"])

    async def _resolve_from_header(self, request: Request) -> TenantContext | None:
        tenant_id = request.headers.get("X-Tenant-ID")
        if not tenant_id:
            return None
        return await self._resolve_tenant_by_id(tenant_id)

    async def _resolve_tenant_by_id(self, tenant_id: str) -> TenantContext | None:
        """Look up an active tenant, Redis first, then shared.tenants."""
        if self._redis:
            try:
                cached = await self._redis.get(tenant_cache_key(tenant_id))
                if cached:
                    return TenantContext(**json.loads(cached))
            except Exception as e:
                logger.warning("tenant.cache_get_failed", tenant_id=tenant_id, error=str(e))

        from src.app.core.database import get_engine

        async with get_engine().connect() as conn:
            result = await conn.execute(
                text("SELECT id, slug, schema_name FROM shared.tenants WHERE id::text = :tid AND is_active = true"),
                {"tid": tenant_id},
            )
            row = result.first()
        if not row:
            return None

        ctx = TenantContext(
            tenant_id=str(row.id),
            tenant_slug=row.slug,
            schema_name=row.schema_name,
        )
        if self._redis:
            try:
                await self._redis.set(
                    tenant_cache_key(tenant_id),
                    json.dumps({"tenant_id": ctx.tenant_id, "tenant_slug": ctx.tenant_slug, "schema_name": ctx.schema_name}),
                    ex=TENANT_CACHE_TTL,
                )
            except Exception as e:
                logger.warning("tenant.cache_set_failed", tenant_id=tenant_id, error=str(e))
        return ctx
