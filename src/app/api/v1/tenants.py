"""Workspace (tenant) administration.

These routes sit outside tenant resolution (see SKIP_TENANT_PATHS):
they create, inspect and switch off whole CRM workspaces.
"""

from __future__ import annotations

import uuid

from fastapi import APIRouter, HTTPException, status

from src.app.schemas.tenant import TenantCreate, TenantResponse
from src.app.services.tenant_provisioning import (
    deactivate_tenant,
    get_tenant_by_id,
    list_tenants,
    provision_tenant,
)

router = APIRouter(prefix="/api/v1/tenants", tags=["tenants"])


def _not_found(tenant_id: uuid.UUID) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_404_NOT_FOUND,
        detail=f"Active tenant not found: {tenant_id}",
    )


@router.post("", response_model=TenantResponse, status_code=status.HTTP_201_CREATED)
async def create_tenant(body: TenantCreate):
    """Provision a workspace: schema, every CRM table with RLS, registry row."""
    result = await provision_tenant(
        slug=body.slug, name=body.name, currency_code=body.currency_code
    )
    return TenantResponse(
        id=result["tenant_id"],
        slug=result["slug"],
        name=result["name"],
        schema_name=result["schema_name"],
        currency_code=result["currency_code"],
    )


@router.get("", response_model=list[TenantResponse])
async def get_tenants():
    return [TenantResponse(**t) for t in await list_tenants()]


@router.get("/{tenant_id}", response_model=TenantResponse)
async def get_tenant(tenant_id: uuid.UUID):
    tenant = await get_tenant_by_id(str(tenant_id))
    if tenant is None:
        raise _not_found(tenant_id)
    return TenantResponse(**tenant)


@router.post("/{tenant_id}/deactivate", response_model=TenantResponse)
async def deactivate(tenant_id: uuid.UUID):
    """Switch a workspace off; its data is kept but no request resolves to it."""
    tenant = await deactivate_tenant(str(tenant_id))
    if tenant is None:
        raise _not_found(tenant_id)
    return TenantResponse(**tenant)
