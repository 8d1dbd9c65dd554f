"""Repository for per-tenant Slack settings and user mappings."""

from __future__ import annotations

from collections.abc import AsyncGenerator, Callable
from datetime import datetime, timezone

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from src.app.core.identifiers import parse_id
from src.app.models.slack import SlackOrgSettingsModel, SlackUserMappingModel
from src.app.schemas.slack import (
    SlackConnection,
    SlackSettingsRead,
    SlackSettingsUpdate,
    SlackUserMappingRead,
    SlackUserMappingUpsert,
)


def _model_to_settings(model: SlackOrgSettingsModel | None) -> SlackSettingsRead:
    if model is None:
        return SlackSettingsRead()
    return SlackSettingsRead(
        slack_team_id=model.slack_team_id,
        is_connected=model.is_connected,
        has_bot_token=bool(model.bot_access_token),
        momentum_nudges_enabled=model.momentum_nudges_enabled,
        clarity_threshold=model.clarity_threshold,
        confidence_threshold=model.confidence_threshold,
    )


class SlackSettingsRepository:
    """Async access to slack_org_settings and slack_user_mappings.

    Args:
        session_factory: Async callable that yields AsyncSession instances.
    """

    def __init__(
        self, session_factory: Callable[..., AsyncGenerator[AsyncSession, None]]
    ) -> None:
        self._session_factory = session_factory

    async def _get_model(
        self, session: AsyncSession, tenant_id: str
    ) -> SlackOrgSettingsModel | None:
        result = await session.execute(
            select(SlackOrgSettingsModel).where(
                SlackOrgSettingsModel.tenant_id == parse_id(tenant_id)
            )
        )
        return result.scalar_one_or_none()

    async def get_settings(self, tenant_id: str) -> SlackSettingsRead:
        async for session in self._session_factory():
            return _model_to_settings(await self._get_model(session, tenant_id))

    async def update_settings(
        self, tenant_id: str, data: SlackSettingsUpdate
    ) -> SlackSettingsRead:
        """Create or patch the tenant's Slack settings row."""
        async for session in self._session_factory():
            model = await self._get_model(session, tenant_id)
            if model is None:
                model = SlackOrgSettingsModel(tenant_id=parse_id(tenant_id))
                session.add(model)

            for key, value in data.model_dump(exclude_none=True).items():
                setattr(model, key, value)
            model.updated_at = datetime.now(timezone.utc)

            await session.commit()
            await session.refresh(model)
            return _model_to_settings(model)

    async def get_connection(self, tenant_id: str) -> SlackConnection | None:
        """Bot token and nudge preferences, or None when Slack is not connected."""
        async for session in self._session_factory():
            model = await self._get_model(session, tenant_id)
            if model is None or not model.is_connected or not model.bot_access_token:
                return None
            return SlackConnection(
                tenant_id=tenant_id,
                bot_access_token=model.bot_access_token,
                momentum_nudges_enabled=model.momentum_nudges_enabled,
                clarity_threshold=model.clarity_threshold,
                confidence_threshold=model.confidence_threshold,
            )

    async def get_slack_user_id(self, tenant_id: str, user_id: str) -> str | None:
        async for session in self._session_factory():
            result = await session.execute(
                select(SlackUserMappingModel.slack_user_id).where(
                    SlackUserMappingModel.tenant_id == parse_id(tenant_id),
                    SlackUserMappingModel.user_id == parse_id(user_id),
                )
            )
            return result.scalar_one_or_none()

    async def upsert_user_mapping(
        self, tenant_id: str, user_id: str, data: SlackUserMappingUpsert
    ) -> SlackUserMappingRead:
        async for session in self._session_factory():
            result = await session.execute(
                select(SlackUserMappingModel).where(
                    SlackUserMappingModel.tenant_id == parse_id(tenant_id),
                    SlackUserMappingModel.user_id == parse_id(user_id),
                )
            )
            model = result.scalar_one_or_none()
            if model is None:
                model = SlackUserMappingModel(
                    tenant_id=parse_id(tenant_id),
                    user_id=parse_id(user_id),
                )
                session.add(model)
            model.slack_user_id = data.slack_user_id
            model.slack_email = data.slack_email

            await session.commit()
            return SlackUserMappingRead(
                user_id=user_id,
                slack_user_id=model.slack_user_id,
                slack_email=model.slack_email,
            )
