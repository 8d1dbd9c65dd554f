"""Team membership -- list tenant users and change their role or active flag."""

from __future__ import annotations

from collections.abc import AsyncGenerator, Callable
from datetime import datetime, timezone
from enum import Enum

import structlog
from pydantic import BaseModel
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from src.app.core.identifiers import parse_id
from src.app.models.tenant import ApiKey, User

logger = structlog.get_logger(__name__)


class TeamRole(str, Enum):
    OWNER = "owner"
    ADMIN = "admin"
    MEMBER = "member"
    READONLY = "readonly"


class TeamMember(BaseModel):
    id: str
    email: str
    name: str | None = None
    role: str = TeamRole.MEMBER.value
    is_active: bool = True
    last_login_at: datetime | None = None
    created_at: datetime | None = None


class TeamRuleError(Exception):
    """A membership change broke one of the team rules."""

    def __init__(self, message: str, status_code: int = 400) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code


def check_member_change(actor_id: str, target: TeamMember, new_role: str | None = None) -> None:
    """Validate a role change or deactivation of ``target`` by ``actor_id``.

    The owner is never changed, nobody changes themselves, and the owner
    role cannot be granted.

    Raises:
        TeamRuleError: When the change is not allowed.
    """
    if target.id == actor_id:
        raise TeamRuleError("You cannot change your own membership")
    if target.role == TeamRole.OWNER.value:
        raise TeamRuleError("The workspace owner cannot be changed", 403)
    if new_role == TeamRole.OWNER.value:
        raise TeamRuleError("The owner role cannot be granted")


def _model_to_member(model: User) -> TeamMember:
    return TeamMember(
        id=str(model.id),
        email=model.email,
        name=model.name,
        role=model.role,
        is_active=model.is_active,
        last_login_at=model.last_login_at,
        created_at=model.created_at,
    )


class TeamRepository:
    """Async access to the tenant's users table for team administration.

    Args:
        session_factory: Async callable that yields AsyncSession instances.
    """

    def __init__(
        self, session_factory: Callable[..., AsyncGenerator[AsyncSession, None]]
    ) -> None:
        self._session_factory = session_factory

    async def list_members(self, tenant_id: str, include_inactive: bool = False) -> list[TeamMember]:
        async for session in self._session_factory():
            stmt = select(User).where(User.tenant_id == parse_id(tenant_id))
            if not include_inactive:
                stmt = stmt.where(User.is_active == True)  # noqa: E712
            result = await session.execute(stmt.order_by(User.created_at))
            return [_model_to_member(m) for m in result.scalars().all()]

    async def get_member(self, tenant_id: str, user_id: str) -> TeamMember | None:
        async for session in self._session_factory():
            result = await session.execute(
                select(User).where(
                    User.tenant_id == parse_id(tenant_id),
                    User.id == parse_id(user_id),
                )
            )
            model = result.scalar_one_or_none()
            return _model_to_member(model) if model is not None else None

    async def update_member(
        self,
        tenant_id: str,
        user_id: str,
        role: str | None = None,
        is_active: bool | None = None,
    ) -> TeamMember:
        """Change a member's role or active flag.

        Deactivating a member also revokes their API keys.

        Raises ValueError if the user does not exist.
        """
        async for session in self._session_factory():
            result = await session.execute(
                select(User).where(
                    User.tenant_id == parse_id(tenant_id),
                    User.id == parse_id(user_id),
                )
            )
            model = result.scalar_one_or_none()
            if model is None:
                raise ValueError(f"User not found: tenant={tenant_id}, id={user_id}")

            if role is not None:
                model.role = role
            now = datetime.now(timezone.utc)
            if is_active is not None:
                model.is_active = is_active
                if not is_active:
                    await session.execute(
                        update(ApiKey)
                        .where(ApiKey.user_id == model.id, ApiKey.is_active == True)  # noqa: E712
                        .values(is_active=False, revoked_at=now)
                    )
            model.updated_at = now

            await session.commit()
            await session.refresh(model)
            logger.info(
                "team.member_updated",
                tenant_id=tenant_id,
                user_id=user_id,
                role=model.role,
                is_active=model.is_active,
            )
            return _model_to_member(model)
