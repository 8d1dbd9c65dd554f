"""Per-tenant Slack connection models.

SlackOrgSettings holds the tenant's bot token and momentum nudge
preferences (one row per tenant). SlackUserMapping links platform users
to their Slack member ids so nudges can be sent as direct messages.
"""

from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import Boolean, DateTime, Float, Integer, String, UniqueConstraint, func, text
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from src.app.core.database import TenantBase


class SlackOrgSettingsModel(TenantBase):
    __tablename__ = "slack_org_settings"
    __table_args__ = (
        UniqueConstraint("tenant_id", name="uq_slack_org_settings_tenant"),
        {"schema": "tenant"},
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        server_default=text("gen_random_uuid()"),
    )
    tenant_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    bot_access_token: Mapped[str | None] = mapped_column(String(255), nullable=True)
    slack_team_id: Mapped[str | None] = mapped_column(String(50), nullable=True)
    is_connected: Mapped[bool] = mapped_column(Boolean, default=False, server_default=text("false"))
    momentum_nudges_enabled: Mapped[bool] = mapped_column(
        Boolean, default=True, server_default=text("true")
    )
    clarity_threshold: Mapped[int | None] = mapped_column(Integer, nullable=True)
    confidence_threshold: Mapped[float | None] = mapped_column(Float, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )
    updated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        onupdate=func.now(),
        nullable=True,
    )


class SlackUserMappingModel(TenantBase):
    __tablename__ = "slack_user_mappings"
    __table_args__ = (
        UniqueConstraint("tenant_id", "user_id", name="uq_slack_user_mappings_tenant_user"),
        {"schema": "tenant"},
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        server_default=text("gen_random_uuid()"),
    )
    tenant_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    user_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    slack_user_id: Mapped[str] = mapped_column(String(50), nullable=False)
    slack_email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )
