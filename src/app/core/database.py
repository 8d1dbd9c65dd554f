"""Async SQLAlchemy engine and sessions for the CRM's schema-per-tenant layout.

- SharedBase: the tenant registry in schema "shared"
- TenantBase: users, deals, reconciliation and Slack tables under the
  placeholder schema "tenant", remapped per request
- get_tenant_session(): session bound to the current tenant's schema, with
  ``app.current_tenant_id`` set so RLS policies admit only that tenant's rows
- A pool checkout hook runs RESET ALL so no tenant setting outlives its request
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from typing import Any

from sqlalchemy import MetaData, event, text
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from src.app.config import get_settings
from src.app.core.tenant import TenantContext, get_current_tenant

_engine: AsyncEngine | None = None


def get_engine() -> AsyncEngine:
    global _engine
    if _engine is None:
        settings = get_settings()
        _engine = create_async_engine(
            settings.DATABASE_URL,
            pool_size=settings.DB_POOL_SIZE,
            max_overflow=settings.DB_MAX_OVERFLOW,
            pool_pre_ping=True,
        )

        @event.listens_for(_engine.sync_engine, "checkout")
        def reset_tenant_context(dbapi_conn: Any, connection_record: Any, connection_proxy: Any) -> None:
            cursor = dbapi_conn.cursor()
            cursor.execute("RESET ALL")
            cursor.close()

    return _engine


# ── Declarative Bases ───────────────────────────────────────────────────────

shared_metadata = MetaData(schema="shared")
tenant_metadata = MetaData(schema="tenant")


class SharedBase(DeclarativeBase):
    metadata = shared_metadata


class TenantBase(DeclarativeBase):
    """Per-tenant tables. "tenant" becomes e.g. "tenant_northwind" at runtime."""

    metadata = tenant_metadata


# ── Session Factories ───────────────────────────────────────────────────────


async def get_tenant_session(tenant: TenantContext | None = None) -> AsyncGenerator[AsyncSession, None]:
    """Session scoped to ``tenant`` (default: the request's tenant context).

    Scheduled jobs run under ``tenant_scope`` and so reach the same
    default. Every query is remapped to the tenant schema and filtered by
    the tenant_isolation RLS policy.
    """
    tenant = tenant or get_current_tenant()

    async with get_engine().connect() as conn:
        conn = await conn.execution_options(
            schema_translate_map={"tenant": tenant.schema_name}
        )
        await conn.execute(
            text("SELECT set_config('app.current_tenant_id', :tid, false)"),
            {"tid": tenant.tenant_id},
        )
        # Session-level setting survives this commit; the session then owns its transactions
        await conn.commit()

        async with AsyncSession(bind=conn, expire_on_commit=False) as session:
            yield session


# ── Lifecycle ───────────────────────────────────────────────────────────────


async def init_db() -> None:
    """Create the shared schema and the tenant registry if missing."""
    import src.app.models.shared  # noqa: F401

    async with get_engine().begin() as conn:
        await conn.execute(text("CREATE SCHEMA IF NOT EXISTS shared"))
        await conn.run_sync(SharedBase.metadata.create_all)


async def close_db() -> None:
    global _engine
    if _engine:
        await _engine.dispose()
        _engine = None
