"""Pydantic schemas for Slack settings and momentum nudge endpoints."""

from __future__ import annotations

from pydantic import BaseModel, Field


class SlackSettingsRead(BaseModel):
    """Slack connection state. The bot token is never returned."""

    slack_team_id: str | None = None
    is_connected: bool = False
    has_bot_token: bool = False
    momentum_nudges_enabled: bool = True
    clarity_threshold: int | None = None
    confidence_threshold: float | None = None


class SlackSettingsUpdate(BaseModel):
    bot_access_token: str | None = Field(default=None, description="Write-only bot token")
    slack_team_id: str | None = None
    is_connected: bool | None = None
    momentum_nudges_enabled: bool | None = None
    clarity_threshold: int | None = Field(default=None, ge=0, le=100)
    confidence_threshold: float | None = Field(default=None, ge=0.0, le=1.0)


class SlackConnection(BaseModel):
    """Internal view used by the nudge job (includes the token)."""

    tenant_id: str
    bot_access_token: str
    momentum_nudges_enabled: bool = True
    clarity_threshold: int | None = None
    confidence_threshold: float | None = None


class SlackUserMappingUpsert(BaseModel):
    slack_user_id: str = Field(..., min_length=1, max_length=50)
    slack_email: str | None = None


class SlackUserMappingRead(BaseModel):
    user_id: str
    slack_user_id: str
    slack_email: str | None = None


class MomentumRunResult(BaseModel):
    nudges_sent: int = 0
    deals_evaluated: int = 0
    errors: list[str] = Field(default_factory=list)
