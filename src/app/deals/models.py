"""Deal management persistence models -- tenant-scoped tables for the deal lifecycle.

SQLAlchemy models using TenantBase for schema_translate_map isolation:
- CompanyModel / ContactModel: Organizations and people deals are sold to
- DealModel: Pipeline deals (also read by reconciliation)
- DealTruthFieldModel: The six truth fields, one row per deal and key
- DealClosePlanItemModel: Close plan milestones, one row per deal and milestone
- DealClarityScoreModel: Denormalized clarity/close plan/momentum scores
- DealHealthScoreModel: Latest health signals and risk level per deal
- DealHealthRuleModel / DealHealthAlertModel: Alert rules and raised alerts
- DealMigrationReviewModel: Deals queued for manual entity-resolution review

All models use the "tenant" placeholder schema, remapped at runtime to the
actual tenant schema (e.g., "tenant_acme") via schema_translate_map.
Referential integrity between these tables is application-level.
"""

from __future__ import annotations

import uuid
from datetime import date, datetime

from sqlalchemy import (
    Boolean,
    Date,
    DateTime,
    Float,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
    text,
)
from sqlalchemy.dialects.postgresql import JSON, UUID
from sqlalchemy.orm import Mapped, mapped_column

from src.app.core.database import TenantBase


class CompanyModel(TenantBase):
    """Customer organization."""

    __tablename__ = "companies"
    __table_args__ = (
        UniqueConstraint("tenant_id", "name", name="uq_company_tenant_name"),
        {"schema": "tenant"},
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        server_default=text("gen_random_uuid()"),
    )
    tenant_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    name: Mapped[str] = mapped_column(String(300), nullable=False)
    domain: Mapped[str | None] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )


class ContactModel(TenantBase):
    """Person at a customer organization."""

    __tablename__ = "contacts"
    __table_args__ = ({"schema": "tenant"},)

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        server_default=text("gen_random_uuid()"),
    )
    tenant_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    company_id: Mapped[uuid.UUID | None] = mapped_column(UUID(as_uuid=True), nullable=True)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    title: Mapped[str | None] = mapped_column(String(200), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )


class DealModel(TenantBase):
    """Pipeline deal.

    ``company`` is the free-text company name captured at entry time;
    ``company_id`` / ``contact_id`` link to resolved entities once a
    migration review has been completed. Reconciliation flags and merge
    markers live on the same row.
    """

    __tablename__ = "deals"
    __table_args__ = ({"schema": "tenant"},)

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        server_default=text("gen_random_uuid()"),
    )
    tenant_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    name: Mapped[str] = mapped_column(String(300), nullable=False)
    company: Mapped[str | None] = mapped_column(String(300), nullable=True)
    company_id: Mapped[uuid.UUID | None] = mapped_column(UUID(as_uuid=True), nullable=True)
    contact_id: Mapped[uuid.UUID | None] = mapped_column(UUID(as_uuid=True), nullable=True)
    value: Mapped[float | None] = mapped_column(Float, nullable=True)
    one_off_revenue: Mapped[float | None] = mapped_column(Float, nullable=True)
    monthly_mrr: Mapped[float | None] = mapped_column(Float, nullable=True)
    stage: Mapped[str] = mapped_column(
        String(50), default="lead", server_default=text("'lead'")
    )
    status: Mapped[str] = mapped_column(
        String(50), default="active", server_default=text("'active'")
    )
    owner_id: Mapped[uuid.UUID | None] = mapped_column(UUID(as_uuid=True), nullable=True)
    expected_close_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    stage_changed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    source: Mapped[str | None] = mapped_column(String(100), nullable=True)
    is_duplicate: Mapped[bool] = mapped_column(
        Boolean, default=False, server_default=text("false")
    )
    duplicate_of: Mapped[uuid.UUID | None] = mapped_column(UUID(as_uuid=True), nullable=True)
    merged_into: Mapped[uuid.UUID | None] = mapped_column(UUID(as_uuid=True), nullable=True)
    merged_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )
    updated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        onupdate=func.now(),
        nullable=True,
    )


class DealTruthFieldModel(TenantBase):
    """One of the six truth fields for a deal, with confidence and provenance."""

    __tablename__ = "deal_truth_fields"
    __table_args__ = (
        UniqueConstraint(
            "tenant_id",
            "deal_id",
            "field_key",
            name="uq_truth_field_tenant_deal_key",
        ),
        {"schema": "tenant"},
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        server_default=text("gen_random_uuid()"),
    )
    tenant_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    deal_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    field_key: Mapped[str] = mapped_column(String(50), nullable=False)
    value: Mapped[str | None] = mapped_column(Text, nullable=True)
    confidence: Mapped[float] = mapped_column(
        Float, default=0.5, server_default=text("0.5")
    )
    source: Mapped[str | None] = mapped_column(String(50), nullable=True)
    source_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    contact_id: Mapped[uuid.UUID | None] = mapped_column(UUID(as_uuid=True), nullable=True)
    champion_strength: Mapped[str | None] = mapped_column(String(20), nullable=True)
    next_step_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    last_updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )


class DealClosePlanItemModel(TenantBase):
    """Close plan milestone (six standard milestones per deal)."""

    __tablename__ = "deal_close_plan_items"
    __table_args__ = (
        UniqueConstraint(
            "tenant_id",
            "deal_id",
            "milestone_key",
            name="uq_close_plan_tenant_deal_milestone",
        ),
        {"schema": "tenant"},
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        server_default=text("gen_random_uuid()"),
    )
    tenant_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    deal_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    milestone_key: Mapped[str] = mapped_column(String(50), nullable=False)
    title: Mapped[str] = mapped_column(String(200), nullable=False)
    owner_id: Mapped[uuid.UUID | None] = mapped_column(UUID(as_uuid=True), nullable=True)
    due_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    status: Mapped[str] = mapped_column(
        String(20), default="pending", server_default=text("'pending'")
    )
    blocker_note: Mapped[str | None] = mapped_column(Text, nullable=True)
    sort_order: Mapped[int] = mapped_column(Integer, default=0, server_default=text("0"))
    completed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    completed_by: Mapped[uuid.UUID | None] = mapped_column(UUID(as_uuid=True), nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )
    updated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        onupdate=func.now(),
        nullable=True,
    )


class DealClarityScoreModel(TenantBase):
    """Denormalized clarity and momentum scores, one row per deal."""

    __tablename__ = "deal_clarity_scores"
    __table_args__ = (
        UniqueConstraint("tenant_id", "deal_id", name="uq_clarity_score_tenant_deal"),
        {"schema": "tenant"},
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        server_default=text("gen_random_uuid()"),
    )
    tenant_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    deal_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    clarity_score: Mapped[int] = mapped_column(Integer, default=0, server_default=text("0"))
    next_step_score: Mapped[int] = mapped_column(Integer, default=0, server_default=text("0"))
    economic_buyer_score: Mapped[int] = mapped_column(
        Integer, default=0, server_default=text("0")
    )
    champion_score: Mapped[int] = mapped_column(Integer, default=0, server_default=text("0"))
    success_metric_score: Mapped[int] = mapped_column(
        Integer, default=0, server_default=text("0")
    )
    risks_score: Mapped[int] = mapped_column(Integer, default=0, server_default=text("0"))
    close_plan_completed: Mapped[int] = mapped_column(
        Integer, default=0, server_default=text("0")
    )
    close_plan_total: Mapped[int] = mapped_column(Integer, default=6, server_default=text("6"))
    close_plan_overdue: Mapped[int] = mapped_column(
        Integer, default=0, server_default=text("0")
    )
    momentum_score: Mapped[int] = mapped_column(Integer, default=50, server_default=text("50"))
    last_calculated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )


class DealHealthScoreModel(TenantBase):
    """Latest health signals for a deal, including the aggregated risk level."""

    __tablename__ = "deal_health_scores"
    __table_args__ = (
        UniqueConstraint("tenant_id", "deal_id", name="uq_health_score_tenant_deal"),
        {"schema": "tenant"},
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        server_default=text("gen_random_uuid()"),
    )
    tenant_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    deal_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    overall_health_score: Mapped[int] = mapped_column(
        Integer, default=50, server_default=text("50")
    )
    health_status: Mapped[str] = mapped_column(
        String(20), default="unknown", server_default=text("'unknown'")
    )
    risk_level: Mapped[str] = mapped_column(
        String(20), default="unknown", server_default=text("'unknown'")
    )
    risk_score: Mapped[int | None] = mapped_column(Integer, nullable=True)
    days_in_current_stage: Mapped[int] = mapped_column(
        Integer, default=0, server_default=text("0")
    )
    days_since_last_activity: Mapped[int | None] = mapped_column(Integer, nullable=True)
    sentiment_trend: Mapped[str | None] = mapped_column(String(20), nullable=True)
    avg_sentiment_last_3_meetings: Mapped[float | None] = mapped_column(Float, nullable=True)
    meeting_count_last_30_days: Mapped[int] = mapped_column(
        Integer, default=0, server_default=text("0")
    )
    avg_response_time_hours: Mapped[float | None] = mapped_column(Float, nullable=True)
    calculated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )


class DealHealthRuleModel(TenantBase):
    """Threshold rule that raises a health alert when a deal signal crosses it."""

    __tablename__ = "deal_health_rules"
    __table_args__ = ({"schema": "tenant"},)

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        server_default=text("gen_random_uuid()"),
    )
    tenant_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    rule_name: Mapped[str] = mapped_column(String(200), nullable=False)
    rule_type: Mapped[str] = mapped_column(String(50), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    threshold_value: Mapped[float] = mapped_column(Float, nullable=False)
    threshold_operator: Mapped[str] = mapped_column(String(2), nullable=False)
    threshold_unit: Mapped[str | None] = mapped_column(String(50), nullable=True)
    alert_severity: Mapped[str] = mapped_column(
        String(20), default="warning", server_default=text("'warning'")
    )
    alert_message_template: Mapped[str | None] = mapped_column(Text, nullable=True)
    suggested_action_template: Mapped[str | None] = mapped_column(Text, nullable=True)
    conditions: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, server_default=text("true"))
    is_system_rule: Mapped[bool] = mapped_column(
        Boolean, default=False, server_default=text("false")
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )


class DealHealthAlertModel(TenantBase):
    """Alert raised against a deal, with its lifecycle timestamps."""

    __tablename__ = "deal_health_alerts"
    __table_args__ = ({"schema": "tenant"},)

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        server_default=text("gen_random_uuid()"),
    )
    tenant_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    deal_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    user_id: Mapped[uuid.UUID | None] = mapped_column(UUID(as_uuid=True), nullable=True)
    alert_type: Mapped[str] = mapped_column(String(50), nullable=False)
    severity: Mapped[str] = mapped_column(String(20), nullable=False)
    title: Mapped[str] = mapped_column(String(300), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    suggested_actions: Mapped[list] = mapped_column(
        JSON, default=list, server_default=text("'[]'::json")
    )
    action_priority: Mapped[str] = mapped_column(
        String(20), default="medium", server_default=text("'medium'")
    )
    status: Mapped[str] = mapped_column(
        String(20), default="active", server_default=text("'active'")
    )
    acknowledged_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    acknowledged_by: Mapped[uuid.UUID | None] = mapped_column(UUID(as_uuid=True), nullable=True)
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    dismissed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    metadata_json: Mapped[dict] = mapped_column(
        JSON, default=dict, server_default=text("'{}'::json")
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )
    updated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        onupdate=func.now(),
        nullable=True,
    )


class DealMigrationReviewModel(TenantBase):
    """Deal flagged during company/contact entity resolution."""

    __tablename__ = "deal_migration_reviews"
    __table_args__ = ({"schema": "tenant"},)

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        server_default=text("gen_random_uuid()"),
    )
    tenant_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    deal_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    reason: Mapped[str] = mapped_column(String(200), nullable=False)
    status: Mapped[str] = mapped_column(
        String(20), default="pending", server_default=text("'pending'")
    )
    original_company: Mapped[str | None] = mapped_column(String(300), nullable=True)
    original_contact_name: Mapped[str | None] = mapped_column(String(200), nullable=True)
    original_contact_email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    suggested_company_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True), nullable=True
    )
    suggested_contact_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True), nullable=True
    )
    resolution_notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    flagged_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    resolved_by: Mapped[uuid.UUID | None] = mapped_column(UUID(as_uuid=True), nullable=True)
