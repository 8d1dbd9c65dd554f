"""Request and response bodies for sign-in and API key endpoints."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, EmailStr, Field


class LoginRequest(BaseModel):
    email: EmailStr = Field(..., description="Team member email address")
    password: str = Field(..., min_length=1)


class TokenResponse(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str = "bearer"


class TokenRefreshRequest(BaseModel):
    refresh_token: str = Field(..., description="Valid refresh token")


class ApiKeyCreate(BaseModel):
    name: str = Field(
        ...,
        min_length=1,
        max_length=200,
        description="What the key is for, e.g. 'Activity importer'",
    )


class ApiKeyResponse(BaseModel):
    """A newly minted key. ``key`` is shown once and cannot be retrieved later."""

    id: str
    name: str
    key: str
    created_at: datetime | None = None


class ApiKeyRead(BaseModel):
    id: str
    name: str
    last_used_at: datetime | None = None
    created_at: datetime | None = None


class UserResponse(BaseModel):
    """The signed-in team member."""

    id: str
    email: str
    name: str | None = None
    role: str
    tenant_id: str
    tenant_slug: str
    last_login_at: datetime | None = None
