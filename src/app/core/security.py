"""Credentials for the CRM: passwords, JWTs, API keys and the cron secret.

Access and refresh tokens carry the tenant and the user's team role, so
route guards can check ``role`` without another lookup. API keys belong
to a team member and stop working once that member is deactivated.

Uses bcrypt directly (not passlib) for Python 3.13 compatibility.
"""

from __future__ import annotations

import logging
import secrets
from datetime import datetime, timedelta, timezone
from typing import Any

import bcrypt
from fastapi import HTTPException, status
from jose import JWTError, jwt
from sqlalchemy import text

from src.app.config import get_settings

logger = logging.getLogger(__name__)

API_KEY_BYTES = 32

# ── Password Hashing ──────────────────────────────────────────────────────────


def hash_password(password: str) -> str:
    """Hash a plaintext password (or raw API key) using bcrypt."""
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))


def generate_api_key() -> tuple[str, str]:
    """Return ``(raw_key, key_hash)``. Only the hash is ever stored."""
    raw_key = secrets.token_urlsafe(API_KEY_BYTES)
    return raw_key, hash_password(raw_key)


# ── JWT Tokens ────────────────────────────────────────────────────────────────


def build_token_claims(user: Any, tenant_slug: str) -> dict[str, str]:
    """Claims shared by access and refresh tokens for a team member."""
    return {
        "sub": str(user.id),
        "tenant_id": str(user.tenant_id),
        "tenant_slug": tenant_slug,
        "email": user.email,
        "role": user.role,
    }


def _encode(data: dict, token_type: str, lifetime: timedelta) -> str:
    settings = get_settings()
    now = datetime.now(timezone.utc)
    to_encode = {**data, "exp": now + lifetime, "iat": now, "type": token_type}
    return jwt.encode(to_encode, settings.JWT_SECRET_KEY, algorithm=settings.JWT_ALGORITHM)


def create_access_token(data: dict, expires_delta: timedelta | None = None) -> str:
    """Create a short-lived access token.

    ``data`` is normally the output of :func:`build_token_claims`: sub,
    tenant_id, tenant_slug, email and role.
    """
    settings = get_settings()
    lifetime = expires_delta or timedelta(minutes=settings.JWT_ACCESS_TOKEN_EXPIRE_MINUTES)
    return _encode(data, "access", lifetime)


def create_refresh_token(data: dict) -> str:
    """Create a refresh token. The role claim is re-read from the database on refresh."""
    settings = get_settings()
    return _encode(data, "refresh", timedelta(days=settings.JWT_REFRESH_TOKEN_EXPIRE_DAYS))


def verify_token(token: str, token_type: str = "access") -> dict:
    """Decode and validate a JWT.

    Raises:
        HTTPException(401): If the token is invalid, expired, of the wrong
            type, or missing its subject.
    """
    settings = get_settings()
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )
    try:
        payload = jwt.decode(
            token,
            settings.JWT_SECRET_KEY,
            algorithms=[settings.JWT_ALGORITHM],
        )
    except JWTError:
        raise credentials_exception
    if payload.get("type") != token_type or not payload.get("sub"):
        raise credentials_exception
    return payload


# ── Cron Secret ───────────────────────────────────────────────────────────────


def verify_cron_secret(provided: str | None) -> None:
    """Check the X-Cron-Secret header sent by scheduled callers.

    Raises:
        HTTPException(503): CRON_SECRET is not configured.
        HTTPException(401): The header is missing or wrong.
    """
    expected = get_settings().CRON_SECRET
    if not expected:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Cron secret not configured",
        )
    if not provided or not secrets.compare_digest(provided, expected):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid cron secret",
        )


# ── API Key Validation ────────────────────────────────────────────────────────


async def validate_api_key(api_key: str) -> dict | None:
    """Find the tenant and team member owning ``api_key``.

    Keys are stored as bcrypt hashes, so each active tenant's active keys
    are checked in turn under that tenant's RLS context. Keys of
    deactivated members are ignored.

    Returns a dict with tenant_id, tenant_slug, user_id, user_email and
    user_role, or None when no key matches.
    """
    from src.app.core.database import get_engine

    engine = get_engine()

    async with engine.connect() as conn:
        result = await conn.execute(
            text("SELECT schema_name, slug, id::text AS tenant_id FROM shared.tenants WHERE is_active = true")
        )
        tenants = result.fetchall()

        for tenant_row in tenants:
            schema = tenant_row.schema_name
            try:
                await conn.execute(text(f"SET app.current_tenant_id = '{tenant_row.tenant_id}'"))
                await conn.commit()

                key_result = await conn.execute(
                    text(f"""
                        SELECT ak.id::text AS key_id, ak.key_hash, ak.user_id::text,
                               u.email, u.role
                        FROM {schema}.api_keys ak
                        JOIN {schema}.users u ON ak.user_id = u.id
                        WHERE ak.is_active = true AND u.is_active = true
                    """)
                )
                for key_row in key_result.fetchall():
                    if not verify_password(api_key, key_row.key_hash):
                        continue
                    await conn.execute(
                        text(f"UPDATE {schema}.api_keys SET last_used_at = NOW() WHERE id::text = :key_id"),
                        {"key_id": key_row.key_id},
                    )
                    await conn.commit()
                    return {
                        "tenant_id": tenant_row.tenant_id,
                        "tenant_slug": tenant_row.slug,
                        "user_id": key_row.user_id,
                        "user_email": key_row.email,
                        "user_role": key_row.role,
                    }
            except Exception as e:
                # Tenant schema not migrated yet
                logger.warning("API key lookup failed for schema %s: %s", schema, e)
                await conn.rollback()

    return None
