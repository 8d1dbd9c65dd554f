"""Companies and contacts that deals resolve to.

Migration reviews link a deal to one company and one contact, so both
must exist here first.
"""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from sqlalchemy.exc import IntegrityError

from src.app.api.deps import WRITE_ROLES, get_current_user, get_tenant, require_role
from src.app.core.tenant import TenantContext
from src.app.deals.schemas import CompanyCreate, CompanyRead, ContactCreate, ContactRead
from src.app.models.tenant import User

router = APIRouter(tags=["companies"])

require_writer = require_role(*WRITE_ROLES)


def _get_deal_repository(request: Request) -> Any:
    repo = getattr(request.app.state, "deal_repository", None)
    if repo is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Deal management not initialized",
        )
    return repo


@router.get("/companies", response_model=list[CompanyRead])
async def list_companies(
    request: Request,
    user: User = Depends(get_current_user),
    tenant: TenantContext = Depends(get_tenant),
) -> list[CompanyRead]:
    repo = _get_deal_repository(request)
    return await repo.list_companies(tenant.tenant_id)


@router.post("/companies", response_model=CompanyRead, status_code=201)
async def create_company(
    body: CompanyCreate,
    request: Request,
    user: User = Depends(require_writer),
    tenant: TenantContext = Depends(get_tenant),
) -> CompanyRead:
    repo = _get_deal_repository(request)
    try:
        return await repo.create_company(tenant.tenant_id, body)
    except IntegrityError:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Company already exists: {body.name}",
        )


@router.get("/companies/{company_id}", response_model=CompanyRead)
async def get_company(
    company_id: str,
    request: Request,
    user: User = Depends(get_current_user),
    tenant: TenantContext = Depends(get_tenant),
) -> CompanyRead:
    repo = _get_deal_repository(request)
    company = await repo.get_company(tenant.tenant_id, company_id)
    if company is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Company not found: {company_id}",
        )
    return company


@router.get("/contacts", response_model=list[ContactRead])
async def list_contacts(
    request: Request,
    company_id: str | None = Query(default=None),
    user: User = Depends(get_current_user),
    tenant: TenantContext = Depends(get_tenant),
) -> list[ContactRead]:
    repo = _get_deal_repository(request)
    return await repo.list_contacts(tenant.tenant_id, company_id=company_id)


@router.post("/contacts", response_model=ContactRead, status_code=201)
async def create_contact(
    body: ContactCreate,
    request: Request,
    user: User = Depends(require_writer),
    tenant: TenantContext = Depends(get_tenant),
) -> ContactRead:
    repo = _get_deal_repository(request)
    if body.company_id and await repo.get_company(tenant.tenant_id, body.company_id) is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Company not found: {body.company_id}",
        )
    return await repo.create_contact(tenant.tenant_id, body)
