"""Request dependencies: tenant context, tenant session, the caller and role guards.

Roles, from most to least privileged: owner and admin manage the
workspace (settings, team, reconciliation across reps), member works
their own deals and activities, readonly can only look.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator

from fastapi import Depends, HTTPException, Request, status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from src.app.core.database import get_tenant_session
from src.app.core.security import validate_api_key, verify_token
from src.app.core.tenant import TenantContext, get_current_tenant
from src.app.models.tenant import User

ADMIN_ROLES = ("owner", "admin")
WRITE_ROLES = ("owner", "admin", "member")


async def get_tenant() -> TenantContext:
    """The tenant resolved by TenantAuthMiddleware."""
    return get_current_tenant()


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    async for session in get_tenant_session():
        yield session


async def _load_active_user(db: AsyncSession, tenant: TenantContext, user_id: str, detail: str) -> User:
    result = await db.execute(
        select(User).where(
            User.id == user_id,
            User.tenant_id == tenant.tenant_id,
            User.is_active == True,  # noqa: E712
        )
    )
    user = result.scalar_one_or_none()
    if not user:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=detail)
    return user


def _check_same_tenant(credential_tenant_id: str | None, tenant: TenantContext, credential: str) -> None:
    if credential_tenant_id and credential_tenant_id != tenant.tenant_id:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail=f"{credential} tenant does not match request tenant context",
        )


async def get_current_user(
    request: Request,
    db: AsyncSession = Depends(get_db),
) -> User:
    """The active team member behind the request's Bearer JWT or X-API-Key.

    Raises:
        HTTPException(401): No valid credential, or the member is inactive.
        HTTPException(403): The credential belongs to another tenant.
    """
    tenant = get_current_tenant()

    auth_header = request.headers.get("Authorization")
    if auth_header and auth_header.startswith("Bearer "):
        payload = verify_token(auth_header[7:], token_type="access")
        _check_same_tenant(payload.get("tenant_id"), tenant, "Token")
        return await _load_active_user(db, tenant, payload["sub"], "User not found or inactive")

    api_key = request.headers.get("X-API-Key")
    if api_key:
        key_info = await validate_api_key(api_key)
        if not key_info:
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Invalid API key",
            )
        _check_same_tenant(key_info["tenant_id"], tenant, "API key")
        return await _load_active_user(db, tenant, key_info["user_id"], "API key user not found or inactive")

    raise HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Not authenticated",
        headers={"WWW-Authenticate": "Bearer"},
    )


def require_role(*roles: str):
    """Dependency factory: the authenticated user must hold one of ``roles``.

    Raises:
        HTTPException(403): If the user's role is not allowed.
    """

    async def _check_role(user: User = Depends(get_current_user)) -> User:
        if user.role not in roles:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Requires role: {', '.join(roles)}",
            )
        return user

    return _check_role
