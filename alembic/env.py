"""Alembic environment for multi-tenant schema migrations.

Two targets, chosen with -x:
  alembic -x schema=shared upgrade head          -- the tenant registry
  alembic -x schema=tenant_northwind upgrade head -- one CRM workspace

Tenant targets get users, deals, reconciliation and Slack tables, each
with RLS. Each schema keeps its own alembic_version table.
"""

from logging.config import fileConfig

from alembic import context
from sqlalchemy import create_engine, pool, text

# Model modules register their tables on the two metadata objects
import src.app.deals.models  # noqa: F401
import src.app.models.shared  # noqa: F401
import src.app.models.slack  # noqa: F401
import src.app.models.tenant  # noqa: F401
import src.app.reconciliation.models  # noqa: F401
from src.app.core.database import SharedBase, TenantBase
from src.app.config import get_settings

# Alembic Config object
config = context.config

# Interpret the config file for Python logging
if config.config_file_name is not None:
    fileConfig(config.config_file_name)

# Get schema from -x args
cmd_kwargs = context.get_x_argument(as_dictionary=True)
target_schema = cmd_kwargs.get("schema", "shared")

if target_schema == "shared":
    target_metadata = SharedBase.metadata
elif target_schema.startswith("tenant_"):
    target_metadata = TenantBase.metadata
else:
    raise ValueError(f"Unknown migration target {target_schema!r}: use shared or tenant_<slug>")


def _sync_url() -> str:
    """Alembic runs on psycopg2; the app URL names asyncpg."""
    return get_settings().DATABASE_URL.replace("+asyncpg", "")


def run_migrations_offline() -> None:
    """Run migrations in 'offline' mode."""
    context.configure(
        url=_sync_url(),
        target_metadata=target_metadata,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
        version_table_schema=target_schema,
    )

    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    """Run migrations in 'online' mode."""
    connectable = create_engine(_sync_url(), poolclass=pool.NullPool)

    with connectable.connect() as connection:
        # Ensure the target schema exists before Alembic tries to create
        # its version table there
        connection.execute(text(f'CREATE SCHEMA IF NOT EXISTS "{target_schema}"'))
        connection.commit()

        # For tenant schemas, apply schema_translate_map
        if target_schema != "shared":
            schema_translate_map = {"tenant": target_schema}
        else:
            schema_translate_map = None

        context.configure(
            connection=connection,
            target_metadata=target_metadata,
            version_table_schema=target_schema,
            include_schemas=True,
            schema_translate_map=schema_translate_map,
        )

        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
