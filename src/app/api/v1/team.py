"""Team membership endpoints.

Anyone in the tenant can list members. Owners and admins can change a
member's role or deactivate them, subject to the team rules in
src.app.services.team.
"""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from pydantic import BaseModel

from src.app.api.deps import ADMIN_ROLES, get_current_user, get_tenant, require_role
from src.app.core.tenant import TenantContext
from src.app.models.tenant import User
from src.app.services.team import TeamMember, TeamRole, TeamRuleError, check_member_change

router = APIRouter(prefix="/team", tags=["team"])

require_admin = require_role(*ADMIN_ROLES)


class RoleUpdateRequest(BaseModel):
    role: TeamRole


def _get_team_repository(request: Request) -> Any:
    repo = getattr(request.app.state, "team_repository", None)
    if repo is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Team management not initialized",
        )
    return repo


async def _checked_target(
    repo: Any,
    tenant_id: str,
    actor: User,
    user_id: str,
    new_role: str | None = None,
) -> TeamMember:
    target = await repo.get_member(tenant_id, user_id)
    if target is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Member not found: {user_id}",
        )
    try:
        check_member_change(str(actor.id), target, new_role)
    except TeamRuleError as exc:
        raise HTTPException(status_code=exc.status_code, detail=exc.message)
    return target


@router.get("/members", response_model=list[TeamMember])
async def list_members(
    request: Request,
    include_inactive: bool = Query(default=False),
    user: User = Depends(get_current_user),
    tenant: TenantContext = Depends(get_tenant),
) -> list[TeamMember]:
    repo = _get_team_repository(request)
    return await repo.list_members(tenant.tenant_id, include_inactive=include_inactive)


@router.patch("/members/{user_id}/role", response_model=TeamMember)
async def change_member_role(
    user_id: str,
    body: RoleUpdateRequest,
    request: Request,
    user: User = Depends(require_admin),
    tenant: TenantContext = Depends(get_tenant),
) -> TeamMember:
    repo = _get_team_repository(request)
    await _checked_target(repo, tenant.tenant_id, user, user_id, body.role.value)
    return await repo.update_member(tenant.tenant_id, user_id, role=body.role.value)


@router.post("/members/{user_id}/deactivate", response_model=TeamMember)
async def deactivate_member(
    user_id: str,
    request: Request,
    user: User = Depends(require_admin),
    tenant: TenantContext = Depends(get_tenant),
) -> TeamMember:
    repo = _get_team_repository(request)
    await _checked_target(repo, tenant.tenant_id, user, user_id)
    return await repo.update_member(tenant.tenant_id, user_id, is_active=False)
