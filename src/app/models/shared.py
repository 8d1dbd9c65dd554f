"""The tenant registry, stored once in the "shared" schema.

Each row is one CRM workspace with its own Postgres schema
(``tenant_<slug>``). ``currency_code`` is the workspace's reporting
currency, used when formatting deal values in Slack nudges.
"""

from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import Boolean, CheckConstraint, DateTime, String, func, text
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from src.app.core.database import SharedBase


class Tenant(SharedBase):
    __tablename__ = "tenants"
    __table_args__ = (
        CheckConstraint("currency_code ~ '^[A-Z]{3}$'", name="ck_tenants_currency_code"),
        {"schema": "shared"},
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        server_default=text("gen_random_uuid()"),
    )
    slug: Mapped[str] = mapped_column(String(50), unique=True, nullable=False)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    schema_name: Mapped[str] = mapped_column(String(100), unique=True, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, server_default=text("true"))
    currency_code: Mapped[str] = mapped_column(String(3), default="GBP", server_default=text("'GBP'"))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )
    updated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        onupdate=func.now(),
        nullable=True,
    )
