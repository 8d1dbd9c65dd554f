#!/usr/bin/env python3
"""CLI script to provision a new tenant.

Usage:
    uv run python scripts/provision_tenant.py --slug northwind --name "Northwind Traders"
    uv run python scripts/provision_tenant.py --slug northwind --name "Northwind Traders" \
        --currency USD --owner-email owner@northwind.example --owner-password changeme

Connects directly to the database using DATABASE_URL from environment or .env file.
Provisions schema, creates tables with RLS, registers tenant in shared.tenants.
Optionally creates the workspace owner.
"""

from __future__ import annotations

import argparse
import asyncio
import os
import sys
import uuid

# Ensure project root is on sys.path so we can import src.app
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from dotenv import load_dotenv  # noqa: E402

# Load .env from project root
load_dotenv(os.path.join(os.path.dirname(__file__), "..", ".env"))


async def provision(
    slug: str,
    name: str,
    currency: str,
    owner_email: str | None,
    owner_password: str | None,
) -> None:
    """Provision a tenant by calling the provisioning service directly."""
    from sqlalchemy import text

    from src.app.core.database import get_engine, init_db
    from src.app.services.tenant_provisioning import provision_tenant

    # Initialize shared schema if needed
    await init_db()

    print(f"Provisioning tenant: slug={slug}, name={name}, currency={currency}")
    result = await provision_tenant(slug=slug, name=name, currency_code=currency)
    print("Tenant provisioned successfully:")
    print(f"  ID:       {result['tenant_id']}")
    print(f"  Slug:     {result['slug']}")
    print(f"  Schema:   {result['schema_name']}")
    print(f"  Currency: {result['currency_code']}")

    engine = get_engine()
    if owner_email and owner_password:
        from src.app.core.security import hash_password

        schema_name = result["schema_name"]
        tenant_id = result["tenant_id"]

        async with engine.begin() as conn:
            # RLS is forced on users, so the insert runs under the tenant setting
            await conn.execute(
                text("SELECT set_config('app.current_tenant_id', :tid, true)"),
                {"tid": tenant_id},
            )
            await conn.execute(
                text(f"""
                    INSERT INTO "{schema_name}".users
                        (id, tenant_id, email, name, role, is_active, hashed_password, created_at)
                    VALUES (:id, :tenant_id, :email, :name, 'owner', true, :hashed_password, now())
                """),
                {
                    "id": uuid.uuid4(),
                    "tenant_id": tenant_id,
                    "email": owner_email,
                    "name": f"Owner ({name})",
                    "hashed_password": hash_password(owner_password),
                },
            )
        print(f"  Owner created: {owner_email}")

    await engine.dispose()


def main() -> None:
    parser = argparse.ArgumentParser(description="Provision a new tenant")
    parser.add_argument("--slug", required=True, help="Tenant slug (e.g., northwind)")
    parser.add_argument("--name", required=True, help="Tenant display name")
    parser.add_argument("--currency", default="GBP", help="ISO 4217 currency code (default GBP)")
    parser.add_argument("--owner-email", default=None, help="Workspace owner email")
    parser.add_argument("--owner-password", default=None, help="Workspace owner password")
    args = parser.parse_args()

    if bool(args.owner_email) != bool(args.owner_password):
        parser.error("--owner-email and --owner-password must be provided together")

    asyncio.run(
        provision(args.slug, args.name, args.currency.upper(), args.owner_email, args.owner_password)
    )


if __name__ == "__main__":
    main()
