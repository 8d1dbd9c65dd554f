"""Tenant provisioning service.

Handles creating new tenants with isolated PostgreSQL schemas,
RLS policies, and Redis namespaces. This is the core of the
multi-tenant onboarding flow.
"""

from __future__ import annotations

import json
import logging
import re
import uuid

from fastapi import HTTPException
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncConnection

# Model modules register their tables on TenantBase.metadata
import src.app.deals.models  # noqa: F401
import src.app.models.slack  # noqa: F401
import src.app.models.tenant  # noqa: F401
import src.app.reconciliation.models  # noqa: F401
from src.app.core.database import TenantBase, get_engine
from src.app.core.redis import get_redis_pool
from src.app.core.tenant import schema_name_for, tenant_cache_key

logger = logging.getLogger(__name__)

# Slug validation: lowercase alphanumeric + hyphens, 3-50 chars
SLUG_PATTERN = re.compile(r"^[a-z0-9][a-z0-9-]{1,48}[a-z0-9]$")

_TENANT_COLUMNS = "id, slug, name, schema_name, currency_code, is_active, created_at"


def _registry_cache_key(tenant_id: str) -> str:
    return f"tenant:id:{tenant_id}"


def _row_to_tenant(row) -> dict:
    return {
        "id": str(row.id),
        "slug": row.slug,
        "name": row.name,
        "schema_name": row.schema_name,
        "currency_code": row.currency_code,
        "is_active": row.is_active,
        "created_at": row.created_at.isoformat() if row.created_at else None,
    }


async def create_tenant_tables(conn: AsyncConnection, schema_name: str) -> list[str]:
    """Create every tenant table in ``schema_name`` and lock it down with RLS.

    Each table gets ENABLE + FORCE row level security, a tenant_isolation
    policy keyed on app.current_tenant_id, and a tenant_id index.

    Returns:
        The table names that were created or verified.
    """
    await conn.run_sync(
        lambda sync_conn: TenantBase.metadata.create_all(
            sync_conn.execution_options(schema_translate_map={"tenant": schema_name})
        )
    )

    tables = [table.name for table in TenantBase.metadata.sorted_tables]
    for table in tables:
        qualified = f'"{schema_name}".{table}'
        await conn.execute(text(f"ALTER TABLE {qualified} ENABLE ROW LEVEL SECURITY"))
        await conn.execute(text(f"ALTER TABLE {qualified} FORCE ROW LEVEL SECURITY"))
        await conn.execute(text(f"DROP POLICY IF EXISTS tenant_isolation ON {qualified}"))
        await conn.execute(text(f"""
            CREATE POLICY tenant_isolation ON {qualified}
            FOR ALL
            USING (tenant_id::text = current_setting('app.current_tenant_id', true))
            WITH CHECK (tenant_id::text = current_setting('app.current_tenant_id', true))
        """))
        await conn.execute(text(
            f"CREATE INDEX IF NOT EXISTS idx_{table}_tenant ON {qualified}(tenant_id)"
        ))

    await conn.execute(text(
        f'CREATE UNIQUE INDEX IF NOT EXISTS idx_users_email_tenant ON "{schema_name}".users(tenant_id, lower(email))'
    ))
    return tables


async def provision_tenant(slug: str, name: str, currency_code: str = "GBP") -> dict:
    """Provision a new tenant with isolated schema, RLS, and Redis namespace.

    Steps:
    1. Validate slug format
    2. Compute schema_name
    3. Check for duplicate slug
    4. Create PostgreSQL schema
    5. Create tables and enable RLS
    6. Insert tenant record in shared.tenants
    7. Initialize Redis namespace
    8. Return tenant data

    Raises:
        HTTPException(400): Invalid slug format
        HTTPException(409): Tenant with slug already exists
    """
    # 1. Validate slug
    if not SLUG_PATTERN.match(slug):
        raise HTTPException(
            status_code=400,
            detail="Slug must be 3-50 chars, lowercase alphanumeric and hyphens only, "
                   "must start and end with alphanumeric character.",
        )

    # 2. Compute schema name
    schema_name = schema_name_for(slug)

    engine = get_engine()
    async with engine.begin() as conn:
        # 3. Check for duplicate
        result = await conn.execute(
            text("SELECT id FROM shared.tenants WHERE slug = :slug"),
            {"slug": slug},
        )
        if result.first():
            raise HTTPException(status_code=409, detail=f"Tenant with slug '{slug}' already exists")

        # 4. Create PostgreSQL schema
        await conn.execute(text(f'CREATE SCHEMA IF NOT EXISTS "{schema_name}"'))

        # 5. Create tenant tables with RLS
        tables = await create_tenant_tables(conn, schema_name)
        logger.info("Created %d tables in schema %s", len(tables), schema_name)

        # 6. Insert tenant record
        tenant_id = uuid.uuid4()
        await conn.execute(
            text("""
                INSERT INTO shared.tenants (id, slug, name, schema_name, currency_code, is_active, created_at)
                VALUES (:id, :slug, :name, :schema_name, :currency_code, true, now())
            """),
            {
                "id": tenant_id,
                "slug": slug,
                "name": name,
                "schema_name": schema_name,
                "currency_code": currency_code,
            },
        )

    # 7. Initialize Redis namespace
    try:
        redis = get_redis_pool()
        await redis.set(f"t:{tenant_id}:initialized", "true")
    except Exception:
        logger.warning("Failed to initialize Redis namespace for tenant %s", slug)

    # 8. Return tenant data
    return {
        "tenant_id": str(tenant_id),
        "slug": slug,
        "name": name,
        "schema_name": schema_name,
        "currency_code": currency_code,
    }


async def list_tenants() -> list[dict]:
    """List all active tenants."""
    engine = get_engine()
    async with engine.connect() as conn:
        result = await conn.execute(
            text(f"SELECT {_TENANT_COLUMNS} FROM shared.tenants WHERE is_active = true ORDER BY created_at")
        )
        return [_row_to_tenant(row) for row in result.fetchall()]


async def get_tenant_by_id(tenant_id: str) -> dict | None:
    """Look up an active tenant by id. Caches result in Redis for 5 minutes."""
    redis = get_redis_pool()
    cache_key = _registry_cache_key(tenant_id)

    try:
        cached = await redis.get(cache_key)
        if cached:
            return json.loads(cached)
    except Exception:
        logger.warning("Tenant cache read failed for %s", tenant_id)

    engine = get_engine()
    async with engine.connect() as conn:
        result = await conn.execute(
            text(f"SELECT {_TENANT_COLUMNS} FROM shared.tenants WHERE id = :id AND is_active = true"),
            {"id": uuid.UUID(tenant_id)},
        )
        row = result.first()
        if not row:
            return None
        tenant_data = _row_to_tenant(row)

    try:
        await redis.set(cache_key, json.dumps(tenant_data), ex=300)
    except Exception:
        logger.warning("Tenant cache write failed for %s", tenant_id)

    return tenant_data


async def deactivate_tenant(tenant_id: str) -> dict | None:
    """Switch a workspace off. Its schema and data are kept.

    Deactivated tenants drop out of request resolution, API key lookup
    and the nudge cron at once: both tenant caches are cleared.

    Returns the updated tenant, or None if no active tenant has this id.
    """
    try:
        tenant_uuid = uuid.UUID(tenant_id)
    except ValueError:
        return None

    async with get_engine().begin() as conn:
        result = await conn.execute(
            text(f"""
                UPDATE shared.tenants SET is_active = false, updated_at = now()
                WHERE id = :id AND is_active = true
                RETURNING {_TENANT_COLUMNS}
            """),
            {"id": tenant_uuid},
        )
        row = result.first()
    if not row:
        return None

    try:
        await get_redis_pool().delete(_registry_cache_key(tenant_id), tenant_cache_key(tenant_id))
    except Exception:
        logger.warning("Tenant cache invalidation failed for %s", tenant_id)
    logger.info("Deactivated tenant %s (%s)", row.slug, tenant_id)
    return _row_to_tenant(row)
