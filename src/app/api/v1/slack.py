"""Slack settings and momentum nudge endpoints.

Settings are per tenant and admin-only; the bot token is write-only.
``/slack/momentum/run`` is called by an external cron with the
``X-Cron-Secret`` header and runs outside any tenant context, scanning
every active tenant. Admins can push a single deal's nudge on demand.
"""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Header, HTTPException, Request, status

from src.app.api.deps import ADMIN_ROLES, get_current_user, get_tenant, require_role
from src.app.core.security import verify_cron_secret
from src.app.core.tenant import TenantContext
from src.app.deals.momentum import run_momentum_for_tenants
from src.app.models.tenant import User
from src.app.schemas.slack import (
    MomentumRunResult,
    SlackSettingsRead,
    SlackSettingsUpdate,
    SlackUserMappingRead,
    SlackUserMappingUpsert,
)
from src.app.services.tenant_provisioning import get_tenant_by_id, list_tenants

router = APIRouter(prefix="/slack", tags=["slack"])

require_admin = require_role(*ADMIN_ROLES)


def _get_slack_settings_repository(request: Request) -> Any:
    repo = getattr(request.app.state, "slack_settings_repository", None)
    if repo is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Slack settings not initialized",
        )
    return repo


def _get_momentum_service(request: Request) -> Any:
    service = getattr(request.app.state, "momentum_service", None)
    if service is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Momentum nudges not initialized",
        )
    return service


# ── Settings ─────────────────────────────────────────────────────────────────


@router.get("/settings", response_model=SlackSettingsRead)
async def get_slack_settings(
    request: Request,
    user: User = Depends(require_admin),
    tenant: TenantContext = Depends(get_tenant),
) -> SlackSettingsRead:
    repo = _get_slack_settings_repository(request)
    return await repo.get_settings(tenant.tenant_id)


@router.put("/settings", response_model=SlackSettingsRead)
async def update_slack_settings(
    body: SlackSettingsUpdate,
    request: Request,
    user: User = Depends(require_admin),
    tenant: TenantContext = Depends(get_tenant),
) -> SlackSettingsRead:
    """Create or patch the tenant's Slack settings. Omitted fields are kept."""
    repo = _get_slack_settings_repository(request)
    return await repo.update_settings(tenant.tenant_id, body)


@router.put("/users/{user_id}/mapping", response_model=SlackUserMappingRead)
async def upsert_user_mapping(
    user_id: str,
    body: SlackUserMappingUpsert,
    request: Request,
    user: User = Depends(get_current_user),
    tenant: TenantContext = Depends(get_tenant),
) -> SlackUserMappingRead:
    """Map a CRM user to their Slack member id. Users map themselves; admins map anyone."""
    if user_id != str(user.id) and user.role not in ADMIN_ROLES:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Only admins can map other users",
        )
    repo = _get_slack_settings_repository(request)
    return await repo.upsert_user_mapping(tenant.tenant_id, user_id, body)


# ── Momentum nudges ──────────────────────────────────────────────────────────


@router.post("/momentum/run", response_model=MomentumRunResult)
async def run_momentum_nudges(
    request: Request,
    x_cron_secret: str | None = Header(default=None),
) -> MomentumRunResult:
    """Cron entry point: nudge deal owners across every active tenant."""
    verify_cron_secret(x_cron_secret)
    service = _get_momentum_service(request)
    tenant_source = getattr(request.app.state, "list_tenants", None) or list_tenants
    tenants = await tenant_source()
    return await run_momentum_for_tenants(service, tenants)


@router.post("/momentum/deals/{deal_id}", response_model=MomentumRunResult)
async def run_deal_momentum_nudge(
    deal_id: str,
    request: Request,
    user: User = Depends(require_admin),
    tenant: TenantContext = Depends(get_tenant),
) -> MomentumRunResult:
    """Send one deal's nudge now, ignoring the cooldown and the enabled flag."""
    service = _get_momentum_service(request)
    tenant_lookup = getattr(request.app.state, "tenant_lookup", None) or get_tenant_by_id
    tenant_row = await tenant_lookup(tenant.tenant_id)
    currency_code = (tenant_row or {}).get("currency_code") or "GBP"
    return await service.run(tenant.tenant_id, deal_id=deal_id, currency_code=currency_code)
