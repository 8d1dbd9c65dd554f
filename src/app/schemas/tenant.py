"""Bodies for workspace (tenant) administration."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field


class TenantCreate(BaseModel):
    """A new CRM workspace. The slug also names its schema (tenant_<slug>)."""

    slug: str = Field(
        ...,
        min_length=3,
        max_length=50,
        pattern=r"^[a-z0-9][a-z0-9-]*[a-z0-9]$",
        description="Workspace identifier, lowercase letters, digits and hyphens",
        examples=["northwind", "acme-sales"],
    )
    name: str = Field(
        ...,
        min_length=1,
        max_length=200,
        description="Display name of the sales organisation",
        examples=["Northwind", "Acme Sales"],
    )
    currency_code: str = Field(
        default="GBP",
        pattern=r"^[A-Z]{3}$",
        description="ISO 4217 currency used to display deal values",
    )


class TenantResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    slug: str
    name: str
    schema_name: str
    currency_code: str = "GBP"
    is_active: bool = True
    created_at: datetime | None = None
