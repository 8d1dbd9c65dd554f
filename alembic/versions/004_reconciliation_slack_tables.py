"""Add reconciliation and Slack tables.

Revision ID: 004_reconciliation_slack
Revises: 003_deal_tables
Create Date: 2026-03-09

- sales_activities: Rep-logged revenue events linked to won deals
- reconciliation_audit_log: Every manual reconciliation action
- slack_org_settings: Bot token and nudge preferences, one row per tenant
- slack_user_mappings: Platform user -> Slack member id
"""

from typing import Sequence, Union

from alembic import context, op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import UUID

# revision identifiers, used by Alembic.
revision: str = "004_reconciliation_slack"
down_revision: Union[str, None] = "003_deal_tables"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

TABLES = (
    "sales_activities",
    "reconciliation_audit_log",
    "slack_org_settings",
    "slack_user_mappings",
)


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

    op.create_table(
        "sales_activities",
        sa.Column("id", UUID(as_uuid=True), primary_key=True, server_default=sa.text("gen_random_uuid()")),
        sa.Column("tenant_id", UUID(as_uuid=True), nullable=False),
        sa.Column("user_id", UUID(as_uuid=True), nullable=True),
        sa.Column("type", sa.String(50), server_default=sa.text("'sale'"), nullable=False),
        sa.Column("status", sa.String(50), server_default=sa.text("'completed'"), nullable=False),
        sa.Column("client_name", sa.String(300), nullable=True),
        sa.Column("amount", sa.Float(), nullable=True),
        sa.Column("date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("sales_rep", sa.String(200), nullable=True),
        sa.Column("details", sa.Text(), nullable=True),
        sa.Column("deal_id", UUID(as_uuid=True), nullable=True),
        sa.Column("source", sa.String(100), nullable=True),
        sa.Column("is_duplicate", sa.Boolean(), server_default=sa.text("false"), nullable=False),
        sa.Column("duplicate_of", UUID(as_uuid=True), nullable=True),
        sa.Column("merged_into", UUID(as_uuid=True), nullable=True),
        sa.Column("merged_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        schema="tenant",
    )

    op.create_table(
        "reconciliation_audit_log",
        sa.Column("id", UUID(as_uuid=True), primary_key=True, server_default=sa.text("gen_random_uuid()")),
        sa.Column("tenant_id", UUID(as_uuid=True), nullable=False),
        sa.Column("action_type", sa.String(100), nullable=False),
        sa.Column("source_table", sa.String(50), nullable=False),
        sa.Column("source_id", sa.String(100), nullable=False),
        sa.Column("target_table", sa.String(50), nullable=True),
        sa.Column("target_id", sa.String(100), nullable=True),
        sa.Column("confidence_score", sa.Float(), nullable=True),
        sa.Column("metadata", sa.JSON(), nullable=True),
        sa.Column("user_id", UUID(as_uuid=True), nullable=True),
        sa.Column("executed_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        schema="tenant",
    )

    op.create_table(
        "slack_org_settings",
        sa.Column("id", UUID(as_uuid=True), primary_key=True, server_default=sa.text("gen_random_uuid()")),
        sa.Column("tenant_id", UUID(as_uuid=True), nullable=False),
        sa.Column("bot_access_token", sa.String(255), nullable=True),
        sa.Column("slack_team_id", sa.String(50), nullable=True),
        sa.Column("is_connected", sa.Boolean(), server_default=sa.text("false"), nullable=False),
        sa.Column("momentum_nudges_enabled", sa.Boolean(), server_default=sa.text("true"), nullable=False),
        sa.Column("clarity_threshold", sa.Integer(), nullable=True),
        sa.Column("confidence_threshold", sa.Float(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint("tenant_id", name="uq_slack_org_settings_tenant"),
        schema="tenant",
    )

    op.create_table(
        "slack_user_mappings",
        sa.Column("id", UUID(as_uuid=True), primary_key=True, server_default=sa.text("gen_random_uuid()")),
        sa.Column("tenant_id", UUID(as_uuid=True), nullable=False),
        sa.Column("user_id", UUID(as_uuid=True), nullable=False),
        sa.Column("slack_user_id", sa.String(50), nullable=False),
        sa.Column("slack_email", sa.String(255), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.UniqueConstraint("tenant_id", "user_id", name="uq_slack_user_mappings_tenant_user"),
        schema="tenant",
    )

    for table in TABLES:
        _enable_rls(schema, table)

    op.execute(
        f'CREATE INDEX idx_sales_activities_tenant_user_date '
        f'ON "{schema}".sales_activities(tenant_id, user_id, date)'
    )
    op.execute(
        f'CREATE INDEX idx_sales_activities_tenant_deal '
        f'ON "{schema}".sales_activities(tenant_id, deal_id)'
    )
    op.execute(
        f'CREATE INDEX idx_reconciliation_audit_log_tenant_executed '
        f'ON "{schema}".reconciliation_audit_log(tenant_id, executed_at DESC)'
    )


def downgrade() -> None:
    cmd_kwargs = context.get_x_argument(as_dictionary=True)
    schema = cmd_kwargs.get("schema", "tenant")

    for table in reversed(TABLES):
        op.execute(f'DROP POLICY IF EXISTS tenant_isolation ON "{schema}".{table}')
        op.drop_table(table, schema="tenant")
