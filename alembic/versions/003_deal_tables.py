"""Add deal management tables: companies, contacts, deals, truth and health.

Revision ID: 003_deal_tables
Revises: 002_initial_tenant
Create Date: 2026-03-02

Creates the tenant tables behind deal clarity, momentum and health:
- companies / contacts: Resolution targets for deals
- deals: Pipeline deals, also read by reconciliation
- deal_truth_fields: Six truth fields per deal
- deal_close_plan_items: Six close plan milestones per deal
- deal_clarity_scores / deal_health_scores: Denormalized scores, one row per deal
- deal_health_rules / deal_health_alerts: Alert rules and raised alerts
- deal_migration_reviews: Deals queued for manual entity resolution

All tables include RLS policies for tenant isolation. No foreign key
constraints (application-level referential integrity via repository).
"""

from typing import Sequence, Union

from alembic import context, op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import UUID

# revision identifiers, used by Alembic.
revision: str = "003_deal_tables"
down_revision: Union[str, None] = "002_initial_tenant"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

TABLES = (
    "companies",
    "contacts",
    "deals",
    "deal_truth_fields",
    "deal_close_plan_items",
    "deal_clarity_scores",
    "deal_health_scores",
    "deal_health_rules",
    "deal_health_alerts",
    "deal_migration_reviews",
)


def _id() -> sa.Column:
    return sa.Column("id", UUID(as_uuid=True), primary_key=True, server_default=sa.text("gen_random_uuid()"))


def _tenant_id() -> sa.Column:
    return sa.Column("tenant_id", UUID(as_uuid=True), nullable=False)


def _created_at() -> sa.Column:
    return sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False)


def _enable_rls(schema: str, table: str) -> None:
    op.execute(f'ALTER TABLE "{schema}".{table} ENABLE ROW LEVEL SECURITY')
    op.execute(f'ALTER TABLE "{schema}".{table} FORCE ROW LEVEL SECURITY')
    op.execute(f"""
        CREATE POLICY tenant_isolation ON "{schema}".{table}
        FOR ALL
        USING (tenant_id::text = current_setting('app.current_tenant_id', true))
        WITH CHECK (tenant_id::text = current_setting('app.current_tenant_id', true))
    """)


def upgrade() -> None:
    cmd_kwargs = context.get_x_argument(as_dictionary=True)
    schema = cmd_kwargs.get("schema", "tenant")

    # ── companies / contacts ────────────────────────────────────────────

    op.create_table(
        "companies",
        _id(),
        _tenant_id(),
        sa.Column("name", sa.String(300), nullable=False),
        sa.Column("domain", sa.String(255), nullable=True),
        _created_at(),
        sa.UniqueConstraint("tenant_id", "name", name="uq_company_tenant_name"),
        schema="tenant",
    )

    op.create_table(
        "contacts",
        _id(),
        _tenant_id(),
        sa.Column("company_id", UUID(as_uuid=True), nullable=True),
        sa.Column("name", sa.String(200), nullable=False),
        sa.Column("email", sa.String(255), nullable=True),
        sa.Column("title", sa.String(200), nullable=True),
        _created_at(),
        schema="tenant",
    )

    # ── deals ───────────────────────────────────────────────────────────

    op.create_table(
        "deals",
        _id(),
        _tenant_id(),
        sa.Column("name", sa.String(300), nullable=False),
        sa.Column("company", sa.String(300), nullable=True),
        sa.Column("company_id", UUID(as_uuid=True), nullable=True),
        sa.Column("contact_id", UUID(as_uuid=True), nullable=True),
        sa.Column("value", sa.Float(), nullable=True),
        sa.Column("one_off_revenue", sa.Float(), nullable=True),
        sa.Column("monthly_mrr", sa.Float(), nullable=True),
        sa.Column("stage", sa.String(50), server_default=sa.text("'lead'"), nullable=False),
        sa.Column("status", sa.String(50), server_default=sa.text("'active'"), nullable=False),
        sa.Column("owner_id", UUID(as_uuid=True), nullable=True),
        sa.Column("expected_close_date", sa.Date(), nullable=True),
        sa.Column("stage_changed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("source", sa.String(100), nullable=True),
        sa.Column("is_duplicate", sa.Boolean(), server_default=sa.text("false"), nullable=False),
        sa.Column("duplicate_of", UUID(as_uuid=True), nullable=True),
        sa.Column("merged_into", UUID(as_uuid=True), nullable=True),
        sa.Column("merged_at", sa.DateTime(timezone=True), nullable=True),
        _created_at(),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        schema="tenant",
    )

    # ── truth fields and close plan ─────────────────────────────────────

    op.create_table(
        "deal_truth_fields",
        _id(),
        _tenant_id(),
        sa.Column("deal_id", UUID(as_uuid=True), nullable=False),
        sa.Column("field_key", sa.String(50), nullable=False),
        sa.Column("value", sa.Text(), nullable=True),
        sa.Column("confidence", sa.Float(), server_default=sa.text("0.5"), nullable=False),
        sa.Column("source", sa.String(50), nullable=True),
        sa.Column("source_id", sa.String(100), nullable=True),
        sa.Column("contact_id", UUID(as_uuid=True), nullable=True),
        sa.Column("champion_strength", sa.String(20), nullable=True),
        sa.Column("next_step_date", sa.Date(), nullable=True),
        sa.Column("last_updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        _created_at(),
        sa.UniqueConstraint("tenant_id", "deal_id", "field_key", name="uq_truth_field_tenant_deal_key"),
        schema="tenant",
    )

    op.create_table(
        "deal_close_plan_items",
        _id(),
        _tenant_id(),
        sa.Column("deal_id", UUID(as_uuid=True), nullable=False),
        sa.Column("milestone_key", sa.String(50), nullable=False),
        sa.Column("title", sa.String(200), nullable=False),
        sa.Column("owner_id", UUID(as_uuid=True), nullable=True),
        sa.Column("due_date", sa.Date(), nullable=True),
        sa.Column("status", sa.String(20), server_default=sa.text("'pending'"), nullable=False),
        sa.Column("blocker_note", sa.Text(), nullable=True),
        sa.Column("sort_order", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_by", UUID(as_uuid=True), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        _created_at(),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint(
            "tenant_id", "deal_id", "milestone_key", name="uq_close_plan_tenant_deal_milestone"
        ),
        schema="tenant",
    )

    # ── scores ──────────────────────────────────────────────────────────

    op.create_table(
        "deal_clarity_scores",
        _id(),
        _tenant_id(),
        sa.Column("deal_id", UUID(as_uuid=True), nullable=False),
        sa.Column("clarity_score", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("next_step_score", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("economic_buyer_score", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("champion_score", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("success_metric_score", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("risks_score", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("close_plan_completed", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("close_plan_total", sa.Integer(), server_default=sa.text("6"), nullable=False),
        sa.Column("close_plan_overdue", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("momentum_score", sa.Integer(), server_default=sa.text("50"), nullable=False),
        sa.Column("last_calculated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.UniqueConstraint("tenant_id", "deal_id", name="uq_clarity_score_tenant_deal"),
        schema="tenant",
    )

    op.create_table(
        "deal_health_scores",
        _id(),
        _tenant_id(),
        sa.Column("deal_id", UUID(as_uuid=True), nullable=False),
        sa.Column("overall_health_score", sa.Integer(), server_default=sa.text("50"), nullable=False),
        sa.Column("health_status", sa.String(20), server_default=sa.text("'unknown'"), nullable=False),
        sa.Column("risk_level", sa.String(20), server_default=sa.text("'unknown'"), nullable=False),
        sa.Column("risk_score", sa.Integer(), nullable=True),
        sa.Column("days_in_current_stage", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("days_since_last_activity", sa.Integer(), nullable=True),
        sa.Column("sentiment_trend", sa.String(20), nullable=True),
        sa.Column("avg_sentiment_last_3_meetings", sa.Float(), nullable=True),
        sa.Column("meeting_count_last_30_days", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("avg_response_time_hours", sa.Float(), nullable=True),
        sa.Column("calculated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.UniqueConstraint("tenant_id", "deal_id", name="uq_health_score_tenant_deal"),
        schema="tenant",
    )

    # ── health rules and alerts ─────────────────────────────────────────

    op.create_table(
        "deal_health_rules",
        _id(),
        _tenant_id(),
        sa.Column("rule_name", sa.String(200), nullable=False),
        sa.Column("rule_type", sa.String(50), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("threshold_value", sa.Float(), nullable=False),
        sa.Column("threshold_operator", sa.String(2), nullable=False),
        sa.Column("threshold_unit", sa.String(50), nullable=True),
        sa.Column("alert_severity", sa.String(20), server_default=sa.text("'warning'"), nullable=False),
        sa.Column("alert_message_template", sa.Text(), nullable=True),
        sa.Column("suggested_action_template", sa.Text(), nullable=True),
        sa.Column("conditions", sa.JSON(), nullable=True),
        sa.Column("is_active", sa.Boolean(), server_default=sa.text("true"), nullable=False),
        sa.Column("is_system_rule", sa.Boolean(), server_default=sa.text("false"), nullable=False),
        _created_at(),
        schema="tenant",
    )

    op.create_table(
        "deal_health_alerts",
        _id(),
        _tenant_id(),
        sa.Column("deal_id", UUID(as_uuid=True), nullable=False),
        sa.Column("user_id", UUID(as_uuid=True), nullable=True),
        sa.Column("alert_type", sa.String(50), nullable=False),
        sa.Column("severity", sa.String(20), nullable=False),
        sa.Column("title", sa.String(300), nullable=False),
        sa.Column("message", sa.Text(), nullable=False),
        sa.Column("suggested_actions", sa.JSON(), server_default=sa.text("'[]'::json"), nullable=False),
        sa.Column("action_priority", sa.String(20), server_default=sa.text("'medium'"), nullable=False),
        sa.Column("status", sa.String(20), server_default=sa.text("'active'"), nullable=False),
        sa.Column("acknowledged_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("acknowledged_by", UUID(as_uuid=True), nullable=True),
        sa.Column("resolved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("dismissed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("metadata_json", sa.JSON(), server_default=sa.text("'{}'::json"), nullable=False),
        _created_at(),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        schema="tenant",
    )

    # ── migration review queue ──────────────────────────────────────────

    op.create_table(
        "deal_migration_reviews",
        _id(),
        _tenant_id(),
        sa.Column("deal_id", UUID(as_uuid=True), nullable=False),
        sa.Column("reason", sa.String(200), nullable=False),
        sa.Column("status", sa.String(20), server_default=sa.text("'pending'"), nullable=False),
        sa.Column("original_company", sa.String(300), nullable=True),
        sa.Column("original_contact_name", sa.String(200), nullable=True),
        sa.Column("original_contact_email", sa.String(255), nullable=True),
        sa.Column("suggested_company_id", UUID(as_uuid=True), nullable=True),
        sa.Column("suggested_contact_id", UUID(as_uuid=True), nullable=True),
        sa.Column("resolution_notes", sa.Text(), nullable=True),
        sa.Column("flagged_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("resolved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("resolved_by", UUID(as_uuid=True), nullable=True),
        schema="tenant",
    )

    for table in TABLES:
        _enable_rls(schema, table)

    # Query-pattern indexes
    op.execute(f'CREATE INDEX idx_deals_tenant_stage ON "{schema}".deals(tenant_id, stage)')
    op.execute(f'CREATE INDEX idx_deals_tenant_owner ON "{schema}".deals(tenant_id, owner_id)')
    op.execute(f'CREATE INDEX idx_contacts_tenant_company ON "{schema}".contacts(tenant_id, company_id)')
    op.execute(
        f'CREATE INDEX idx_deal_health_alerts_tenant_status '
        f'ON "{schema}".deal_health_alerts(tenant_id, status, deal_id)'
    )
    op.execute(
        f'CREATE INDEX idx_deal_migration_reviews_tenant_status '
        f'ON "{schema}".deal_migration_reviews(tenant_id, status)'
    )


def downgrade() -> None:
    cmd_kwargs = context.get_x_argument(as_dictionary=True)
    schema = cmd_kwargs.get("schema", "tenant")

    for table in reversed(TABLES):
        op.execute(f'DROP POLICY IF EXISTS tenant_isolation ON "{schema}".{table}')
        op.drop_table(table, schema="tenant")
