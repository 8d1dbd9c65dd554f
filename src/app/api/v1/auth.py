"""Sign-in and integration keys for team members.

Login and refresh need tenant context (X-Tenant-ID) and only admit active
members; the issued tokens carry the member's role. Members with write
access can mint API keys for integrations such as activity importers;
keys act with the owner's role and die with the owner's membership.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone

import structlog
from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from src.app.api.deps import ADMIN_ROLES, WRITE_ROLES, get_current_user, get_db, require_role
from src.app.core.security import (
    build_token_claims,
    create_access_token,
    create_refresh_token,
    generate_api_key,
    verify_password,
    verify_token,
)
from src.app.core.tenant import TenantContext, get_current_tenant
from src.app.models.tenant import ApiKey, User
from src.app.schemas.auth import (
    ApiKeyCreate,
    ApiKeyRead,
    ApiKeyResponse,
    LoginRequest,
    TokenRefreshRequest,
    TokenResponse,
    UserResponse,
)

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/api/v1/auth", tags=["auth"])

require_writer = require_role(*WRITE_ROLES)

_INVALID_LOGIN = HTTPException(
    status_code=status.HTTP_401_UNAUTHORIZED,
    detail="Invalid email or password",
)


def _issue_tokens(user: User, tenant: TenantContext) -> TokenResponse:
    claims = build_token_claims(user, tenant.tenant_slug)
    return TokenResponse(
        access_token=create_access_token(claims),
        refresh_token=create_refresh_token(claims),
    )


async def _active_member(db: AsyncSession, tenant: TenantContext, **match) -> User | None:
    stmt = select(User).where(
        User.tenant_id == uuid.UUID(tenant.tenant_id),
        User.is_active == True,  # noqa: E712
    )
    for column, value in match.items():
        stmt = stmt.where(getattr(User, column) == value)
    result = await db.execute(stmt)
    return result.scalar_one_or_none()


# ── Tokens ───────────────────────────────────────────────────────────────────


@router.post("/login", response_model=TokenResponse)
async def login(body: LoginRequest, db: AsyncSession = Depends(get_db)):
    """Exchange email and password for tokens. Deactivated members get 401."""
    tenant = get_current_tenant()
    user = await _active_member(db, tenant, email=body.email)

    if not user or not user.hashed_password:
        raise _INVALID_LOGIN
    if not verify_password(body.password, user.hashed_password):
        raise _INVALID_LOGIN

    user.last_login_at = datetime.now(timezone.utc)
    await db.commit()
    logger.info("auth.login", tenant_id=tenant.tenant_id, user_id=str(user.id), role=user.role)

    return _issue_tokens(user, tenant)


@router.post("/refresh", response_model=TokenResponse)
async def refresh_token(body: TokenRefreshRequest, db: AsyncSession = Depends(get_db)):
    """Re-issue tokens. The role is re-read, so role changes apply on refresh."""
    payload = verify_token(body.refresh_token, token_type="refresh")
    tenant = get_current_tenant()
    if payload.get("tenant_id") != tenant.tenant_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Refresh token belongs to another tenant",
        )

    user = await _active_member(db, tenant, id=uuid.UUID(payload["sub"]))
    if not user:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="User not found or inactive",
        )
    return _issue_tokens(user, tenant)


@router.get("/me", response_model=UserResponse)
async def get_me(current_user: User = Depends(get_current_user)):
    tenant = get_current_tenant()
    return UserResponse(
        id=str(current_user.id),
        email=current_user.email,
        name=current_user.name,
        role=current_user.role,
        tenant_id=str(current_user.tenant_id),
        tenant_slug=tenant.tenant_slug,
        last_login_at=current_user.last_login_at,
    )


# ── API Keys ─────────────────────────────────────────────────────────────────


@router.post("/api-keys", response_model=ApiKeyResponse, status_code=status.HTTP_201_CREATED)
async def create_api_key(
    body: ApiKeyCreate,
    current_user: User = Depends(require_writer),
    db: AsyncSession = Depends(get_db),
):
    """Mint an API key for the caller. The raw key is returned only here."""
    tenant = get_current_tenant()
    raw_key, key_hash = generate_api_key()

    api_key = ApiKey(
        tenant_id=uuid.UUID(tenant.tenant_id),
        user_id=current_user.id,
        key_hash=key_hash,
        name=body.name,
    )
    db.add(api_key)
    await db.commit()
    await db.refresh(api_key)
    logger.info("auth.api_key_created", tenant_id=tenant.tenant_id, user_id=str(current_user.id))

    return ApiKeyResponse(
        id=str(api_key.id),
        name=api_key.name,
        key=raw_key,
        created_at=api_key.created_at,
    )


@router.get("/api-keys", response_model=list[ApiKeyRead])
async def list_api_keys(
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """The caller's active keys, newest first. Hashes are never returned."""
    result = await db.execute(
        select(ApiKey)
        .where(ApiKey.user_id == current_user.id, ApiKey.is_active == True)  # noqa: E712
        .order_by(ApiKey.created_at.desc())
    )
    return [
        ApiKeyRead(
            id=str(key.id),
            name=key.name,
            last_used_at=key.last_used_at,
            created_at=key.created_at,
        )
        for key in result.scalars().all()
    ]


@router.delete("/api-keys/{key_id}", status_code=status.HTTP_204_NO_CONTENT)
async def revoke_api_key(
    key_id: uuid.UUID,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Revoke one of the caller's keys. Admins may revoke anyone's."""
    result = await db.execute(select(ApiKey).where(ApiKey.id == key_id, ApiKey.is_active == True))  # noqa: E712
    key = result.scalar_one_or_none()
    if key is None or (key.user_id != current_user.id and current_user.role not in ADMIN_ROLES):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="API key not found")

    key.is_active = False
    key.revoked_at = datetime.now(timezone.utc)
    await db.commit()
    logger.info("auth.api_key_revoked", key_id=str(key_id), revoked_by=str(current_user.id))
