"""Deal management repository -- async CRUD for all deal entities.

Provides DealRepository with the session_factory callable pattern. Handles
serialization between Pydantic schemas and SQLAlchemy models for deals,
companies, contacts, truth fields, close plan items, clarity and health
scores, health rules and alerts, and migration reviews.

All methods take tenant_id as first argument for tenant-scoped queries.
Missing rows are reported as None on reads and as ValueError on writes.
Closing a migration review that is no longer pending raises
MigrationReviewClosedError.
"""

from __future__ import annotations

import uuid
from collections.abc import AsyncGenerator, Callable, Iterable
from datetime import datetime, timezone
from enum import Enum
from typing import Any

import structlog
from sqlalchemy import delete, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from src.app.core.identifiers import parse_id
from src.app.deals.models import (
    CompanyModel,
    ContactModel,
    DealClarityScoreModel,
    DealClosePlanItemModel,
    DealHealthAlertModel,
    DealHealthRuleModel,
    DealHealthScoreModel,
    DealMigrationReviewModel,
    DealModel,
    DealTruthFieldModel,
)
from src.app.deals.schemas import (
    AlertStatus,
    ClosePlanItem,
    ClosePlanItemUpdate,
    CompanyCreate,
    CompanyRead,
    ContactCreate,
    ContactRead,
    DealClarityScore,
    DealCreate,
    DealFilter,
    DealHealthAlert,
    DealHealthRule,
    DealHealthScore,
    DealRead,
    DealTruthField,
    DealUpdate,
    MigrationReviewCreate,
    MigrationReviewRead,
    MigrationReviewResolve,
    MigrationReviewStatus,
    MilestoneStatus,
    RuleConditions,
    TruthFieldSource,
    TruthFieldUpsert,
)
from src.app.models.tenant import User

logger = structlog.get_logger(__name__)

_UUID_COLUMNS = frozenset({"company_id", "contact_id", "owner_id"})


class MigrationReviewClosedError(Exception):
    """A migration review was already resolved or archived."""

    def __init__(self, review_id: str, status: str) -> None:
        super().__init__(f"Migration review is already {status}")
        self.review_id = review_id
        self.status = status


# ── Serialization Helpers ───────────────────────────────────────────────────


def _plain(value: Any) -> Any:
    return value.value if isinstance(value, Enum) else value


def _uuid_or_none(value: str | None) -> uuid.UUID | None:
    return parse_id(value) if value else None


def _str_or_none(value: uuid.UUID | None) -> str | None:
    return str(value) if value is not None else None


def _model_to_deal(model: DealModel) -> DealRead:
    return DealRead(
        id=str(model.id),
        tenant_id=str(model.tenant_id),
        name=model.name,
        company=model.company,
        company_id=_str_or_none(model.company_id),
        contact_id=_str_or_none(model.contact_id),
        value=model.value,
        one_off_revenue=model.one_off_revenue,
        monthly_mrr=model.monthly_mrr,
        stage=model.stage,
        status=model.status,
        owner_id=_str_or_none(model.owner_id),
        expected_close_date=model.expected_close_date,
        stage_changed_at=model.stage_changed_at,
        source=model.source,
        created_at=model.created_at,
        updated_at=model.updated_at,
    )


def _model_to_company(model: CompanyModel) -> CompanyRead:
    return CompanyRead(
        id=str(model.id),
        name=model.name,
        domain=model.domain,
        created_at=model.created_at,
    )


def _model_to_contact(model: ContactModel) -> ContactRead:
    return ContactRead(
        id=str(model.id),
        name=model.name,
        email=model.email,
        title=model.title,
        company_id=_str_or_none(model.company_id),
        created_at=model.created_at,
    )


def _model_to_truth_field(model: DealTruthFieldModel) -> DealTruthField:
    return DealTruthField(
        id=str(model.id),
        deal_id=str(model.deal_id),
        field_key=model.field_key,
        value=model.value,
        confidence=model.confidence,
        source=model.source,
        source_id=model.source_id,
        contact_id=_str_or_none(model.contact_id),
        champion_strength=model.champion_strength,
        next_step_date=model.next_step_date,
        last_updated_at=model.last_updated_at,
        created_at=model.created_at,
    )


def _model_to_close_plan_item(model: DealClosePlanItemModel) -> ClosePlanItem:
    return ClosePlanItem(
        id=str(model.id),
        deal_id=str(model.deal_id),
        milestone_key=model.milestone_key,
        title=model.title,
        owner_id=_str_or_none(model.owner_id),
        due_date=model.due_date,
        status=model.status,
        blocker_note=model.blocker_note,
        sort_order=model.sort_order,
        completed_at=model.completed_at,
        completed_by=_str_or_none(model.completed_by),
        notes=model.notes,
        created_at=model.created_at,
        updated_at=model.updated_at,
    )


def _model_to_clarity_score(model: DealClarityScoreModel) -> DealClarityScore:
    return DealClarityScore(
        deal_id=str(model.deal_id),
        clarity_score=model.clarity_score,
        next_step_score=model.next_step_score,
        economic_buyer_score=model.economic_buyer_score,
        champion_score=model.champion_score,
        success_metric_score=model.success_metric_score,
        risks_score=model.risks_score,
        close_plan_completed=model.close_plan_completed,
        close_plan_total=model.close_plan_total,
        close_plan_overdue=model.close_plan_overdue,
        momentum_score=model.momentum_score,
        last_calculated_at=model.last_calculated_at,
    )


def _model_to_health_score(model: DealHealthScoreModel) -> DealHealthScore:
    return DealHealthScore(
        id=str(model.id),
        deal_id=str(model.deal_id),
        overall_health_score=model.overall_health_score,
        health_status=model.health_status,
        risk_level=model.risk_level,
        risk_score=model.risk_score,
        days_in_current_stage=model.days_in_current_stage,
        days_since_last_activity=model.days_since_last_activity,
        sentiment_trend=model.sentiment_trend,
        avg_sentiment_last_3_meetings=model.avg_sentiment_last_3_meetings,
        meeting_count_last_30_days=model.meeting_count_last_30_days,
        avg_response_time_hours=model.avg_response_time_hours,
        calculated_at=model.calculated_at,
    )


def _model_to_rule(model: DealHealthRuleModel) -> DealHealthRule:
    return DealHealthRule(
        id=str(model.id),
        rule_name=model.rule_name,
        rule_type=model.rule_type,
        description=model.description,
        threshold_value=model.threshold_value,
        threshold_operator=model.threshold_operator,
        threshold_unit=model.threshold_unit,
        alert_severity=model.alert_severity,
        alert_message_template=model.alert_message_template,
        suggested_action_template=model.suggested_action_template,
        conditions=RuleConditions.model_validate(model.conditions) if model.conditions else None,
        is_active=model.is_active,
        is_system_rule=model.is_system_rule,
    )


def _model_to_alert(model: DealHealthAlertModel) -> DealHealthAlert:
    return DealHealthAlert(
        id=str(model.id),
        deal_id=str(model.deal_id),
        user_id=_str_or_none(model.user_id),
        alert_type=model.alert_type,
        severity=model.severity,
        title=model.title,
        message=model.message,
        suggested_actions=model.suggested_actions or [],
        action_priority=model.action_priority,
        status=model.status,
        acknowledged_at=model.acknowledged_at,
        acknowledged_by=_str_or_none(model.acknowledged_by),
        resolved_at=model.resolved_at,
        dismissed_at=model.dismissed_at,
        metadata=model.metadata_json or {},
        created_at=model.created_at,
    )


def _model_to_review(
    model: DealMigrationReviewModel, deal: DealModel | None = None
) -> MigrationReviewRead:
    return MigrationReviewRead(
        id=str(model.id),
        deal_id=str(model.deal_id),
        reason=model.reason,
        status=model.status,
        original_company=model.original_company,
        original_contact_name=model.original_contact_name,
        original_contact_email=model.original_contact_email,
        suggested_company_id=_str_or_none(model.suggested_company_id),
        suggested_contact_id=_str_or_none(model.suggested_contact_id),
        resolution_notes=model.resolution_notes,
        flagged_at=model.flagged_at,
        resolved_at=model.resolved_at,
        resolved_by=_str_or_none(model.resolved_by),
        deal_name=deal.name if deal is not None else None,
        deal_value=deal.value if deal is not None else None,
        deal_owner_id=_str_or_none(deal.owner_id) if deal is not None else None,
    )


async def _lock_pending_review(
    session: AsyncSession, tenant_id: uuid.UUID, review_id: str
) -> DealMigrationReviewModel:
    """Row-lock a review and check it is still pending; concurrent closers wait here."""
    result = await session.execute(
        select(DealMigrationReviewModel)
        .where(
            DealMigrationReviewModel.tenant_id == tenant_id,
            DealMigrationReviewModel.id == parse_id(review_id),
        )
        .with_for_update()
    )
    review = result.scalar_one_or_none()
    if review is None:
        raise ValueError(f"Migration review not found: id={review_id}")
    if review.status != MigrationReviewStatus.PENDING.value:
        raise MigrationReviewClosedError(review_id, review.status)
    return review


class DealRepository:
    """Async CRUD operations for all deal management entities.

    All methods take tenant_id as first argument for tenant-scoped queries.

    Args:
        session_factory: Async callable that yields AsyncSession instances.
    """

    def __init__(
        self, session_factory: Callable[..., AsyncGenerator[AsyncSession, None]]
    ) -> None:
        self._session_factory = session_factory

    # ── Deals ───────────────────────────────────────────────────────────────

    async def create_deal(self, tenant_id: str, data: DealCreate) -> DealRead:
        """Create a new deal.

        Args:
            tenant_id: Tenant UUID string.
            data: DealCreate schema with deal details.

        Returns:
            DealRead with all persisted fields.
        """
        async for session in self._session_factory():
            model = DealModel(
                tenant_id=parse_id(tenant_id),
                name=data.name,
                company=data.company,
                company_id=_uuid_or_none(data.company_id),
                contact_id=_uuid_or_none(data.contact_id),
                value=data.value,
                one_off_revenue=data.one_off_revenue,
                monthly_mrr=data.monthly_mrr,
                stage=_plain(data.stage),
                status=_plain(data.status),
                owner_id=_uuid_or_none(data.owner_id),
                expected_close_date=data.expected_close_date,
                stage_changed_at=data.stage_changed_at or datetime.now(timezone.utc),
                source=data.source,
            )
            session.add(model)
            await session.commit()
            await session.refresh(model)
            return _model_to_deal(model)

    async def get_deal(self, tenant_id: str, deal_id: str) -> DealRead | None:
        """Get a deal by ID.

        Returns:
            DealRead if found, None otherwise.
        """
        async for session in self._session_factory():
            stmt = select(DealModel).where(
                DealModel.tenant_id == parse_id(tenant_id),
                DealModel.id == parse_id(deal_id),
            )
            result = await session.execute(stmt)
            model = result.scalar_one_or_none()
            if model is None:
                return None
            return _model_to_deal(model)

    async def list_deals(
        self, tenant_id: str, filters: DealFilter | None = None
    ) -> list[DealRead]:
        """List deals for a tenant with optional filters."""
        async for session in self._session_factory():
            stmt = select(DealModel).where(
                DealModel.tenant_id == parse_id(tenant_id),
            )
            if filters is not None:
                if filters.stage is not None:
                    stmt = stmt.where(DealModel.stage == _plain(filters.stage))
                if filters.status is not None:
                    stmt = stmt.where(DealModel.status == _plain(filters.status))
                if filters.owner_id is not None:
                    stmt = stmt.where(DealModel.owner_id == parse_id(filters.owner_id))

            stmt = stmt.order_by(DealModel.created_at.desc())
            result = await session.execute(stmt)
            return [_model_to_deal(m) for m in result.scalars().all()]

    async def update_deal(
        self, tenant_id: str, deal_id: str, data: DealUpdate
    ) -> DealRead:
        """Update an existing deal. A stage change stamps stage_changed_at.

        Raises:
            ValueError: If deal not found.
        """
        async for session in self._session_factory():
            stmt = select(DealModel).where(
                DealModel.tenant_id == parse_id(tenant_id),
                DealModel.id == parse_id(deal_id),
            )
            result = await session.execute(stmt)
            model = result.scalar_one_or_none()
            if model is None:
                raise ValueError(f"Deal not found: tenant={tenant_id}, id={deal_id}")

            now = datetime.now(timezone.utc)
            for key, value in data.model_dump(exclude_none=True).items():
                value = _plain(value)
                if key in _UUID_COLUMNS:
                    value = parse_id(value)
                if key == "stage" and value != model.stage:
                    model.stage_changed_at = now
                setattr(model, key, value)

            model.updated_at = now
            await session.commit()
            await session.refresh(model)
            return _model_to_deal(model)

    async def delete_deal(self, tenant_id: str, deal_id: str) -> bool:
        """Delete a deal and its truth, close plan and score rows.

        Returns:
            True if the deal existed.
        """
        async for session in self._session_factory():
            tid, did = parse_id(tenant_id), parse_id(deal_id)
            for child in (
                DealTruthFieldModel,
                DealClosePlanItemModel,
                DealClarityScoreModel,
                DealHealthScoreModel,
                DealHealthAlertModel,
                DealMigrationReviewModel,
            ):
                await session.execute(
                    delete(child).where(child.tenant_id == tid, child.deal_id == did)
                )
            result = await session.execute(
                delete(DealModel).where(DealModel.tenant_id == tid, DealModel.id == did)
            )
            await session.commit()
            return result.rowcount > 0

    async def list_deal_score_rows(
        self,
        tenant_id: str,
        stages: Iterable[str] | None = None,
        deal_id: str | None = None,
        require_owner: bool = False,
    ) -> list[dict[str, Any]]:
        """Deals joined with their clarity, health and company rows.

        Feeds the attention list and the momentum nudge job. Missing score
        rows surface as None.
        """
        async for session in self._session_factory():
            tid = parse_id(tenant_id)
            stmt = (
                select(
                    DealModel,
                    DealClarityScoreModel,
                    DealHealthScoreModel,
                    CompanyModel.name.label("company_name"),
                )
                .outerjoin(
                    DealClarityScoreModel,
                    (DealClarityScoreModel.deal_id == DealModel.id)
                    & (DealClarityScoreModel.tenant_id == tid),
                )
                .outerjoin(
                    DealHealthScoreModel,
                    (DealHealthScoreModel.deal_id == DealModel.id)
                    & (DealHealthScoreModel.tenant_id == tid),
                )
                .outerjoin(CompanyModel, CompanyModel.id == DealModel.company_id)
                .where(DealModel.tenant_id == tid)
            )
            if stages is not None:
                stmt = stmt.where(DealModel.stage.in_(list(stages)))
            if deal_id is not None:
                stmt = stmt.where(DealModel.id == parse_id(deal_id))
            if require_owner:
                stmt = stmt.where(DealModel.owner_id.is_not(None))

            result = await session.execute(stmt)
            rows: list[dict[str, Any]] = []
            for deal, clarity, health, company_name in result.all():
                rows.append(
                    {
                        "deal_id": str(deal.id),
                        "deal_name": deal.name,
                        "company_name": company_name or deal.company,
                        "deal_value": deal.value,
                        "deal_stage": deal.stage,
                        "deal_status": deal.status,
                        "owner_user_id": _str_or_none(deal.owner_id),
                        "clarity_score": clarity.clarity_score if clarity else None,
                        "momentum_score": clarity.momentum_score if clarity else None,
                        "close_plan_completed": clarity.close_plan_completed if clarity else 0,
                        "close_plan_total": clarity.close_plan_total if clarity else 0,
                        "health_score": health.overall_health_score if health else None,
                        "health_status": health.health_status if health else None,
                        "risk_level": health.risk_level if health else None,
                        "risk_score": health.risk_score if health else None,
                    }
                )
            return rows

    # ── Companies & Contacts ────────────────────────────────────────────────

    async def create_company(self, tenant_id: str, data: CompanyCreate) -> CompanyRead:
        async for session in self._session_factory():
            model = CompanyModel(
                tenant_id=parse_id(tenant_id),
                name=data.name,
                domain=data.domain,
            )
            session.add(model)
            await session.commit()
            await session.refresh(model)
            return _model_to_company(model)

    async def list_companies(self, tenant_id: str) -> list[CompanyRead]:
        async for session in self._session_factory():
            stmt = (
                select(CompanyModel)
                .where(CompanyModel.tenant_id == parse_id(tenant_id))
                .order_by(CompanyModel.name)
            )
            result = await session.execute(stmt)
            return [_model_to_company(m) for m in result.scalars().all()]

    async def get_company(self, tenant_id: str, company_id: str) -> CompanyRead | None:
        async for session in self._session_factory():
            stmt = select(CompanyModel).where(
                CompanyModel.tenant_id == parse_id(tenant_id),
                CompanyModel.id == parse_id(company_id),
            )
            result = await session.execute(stmt)
            model = result.scalar_one_or_none()
            return _model_to_company(model) if model is not None else None

    async def create_contact(self, tenant_id: str, data: ContactCreate) -> ContactRead:
        async for session in self._session_factory():
            model = ContactModel(
                tenant_id=parse_id(tenant_id),
                name=data.name,
                email=data.email,
                title=data.title,
                company_id=_uuid_or_none(data.company_id),
            )
            session.add(model)
            await session.commit()
            await session.refresh(model)
            return _model_to_contact(model)

    async def list_contacts(
        self, tenant_id: str, company_id: str | None = None
    ) -> list[ContactRead]:
        async for session in self._session_factory():
            stmt = select(ContactModel).where(ContactModel.tenant_id == parse_id(tenant_id))
            if company_id is not None:
                stmt = stmt.where(ContactModel.company_id == parse_id(company_id))
            result = await session.execute(stmt.order_by(ContactModel.name))
            return [_model_to_contact(m) for m in result.scalars().all()]

    async def get_contact(self, tenant_id: str, contact_id: str) -> ContactRead | None:
        async for session in self._session_factory():
            stmt = select(ContactModel).where(
                ContactModel.tenant_id == parse_id(tenant_id),
                ContactModel.id == parse_id(contact_id),
            )
            result = await session.execute(stmt)
            model = result.scalar_one_or_none()
            return _model_to_contact(model) if model is not None else None

    async def get_contact_names(
        self, tenant_id: str, contact_ids: Iterable[str]
    ) -> dict[str, str]:
        """Map contact id -> display name for the given ids."""
        ids = [parse_id(c) for c in set(contact_ids) if c]
        if not ids:
            return {}
        async for session in self._session_factory():
            stmt = select(ContactModel.id, ContactModel.name).where(
                ContactModel.tenant_id == parse_id(tenant_id),
                ContactModel.id.in_(ids),
            )
            result = await session.execute(stmt)
            return {str(row.id): row.name for row in result.all()}

    async def get_user_names(
        self, tenant_id: str, user_ids: Iterable[str]
    ) -> dict[str, str]:
        """Map user id -> display name (falls back to email)."""
        ids = [parse_id(u) for u in set(user_ids) if u]
        if not ids:
            return {}
        async for session in self._session_factory():
            stmt = select(User.id, User.name, User.email).where(
                User.tenant_id == parse_id(tenant_id),
                User.id.in_(ids),
            )
            result = await session.execute(stmt)
            return {str(row.id): row.name or row.email for row in result.all()}

    # ── Truth Fields ────────────────────────────────────────────────────────

    async def list_truth_fields(
        self, tenant_id: str, deal_id: str
    ) -> list[DealTruthField]:
        """Get all truth fields for a deal, ordered by key."""
        async for session in self._session_factory():
            stmt = (
                select(DealTruthFieldModel)
                .where(
                    DealTruthFieldModel.tenant_id == parse_id(tenant_id),
                    DealTruthFieldModel.deal_id == parse_id(deal_id),
                )
                .order_by(DealTruthFieldModel.field_key)
            )
            result = await session.execute(stmt)
            return [_model_to_truth_field(m) for m in result.scalars().all()]

    async def get_truth_field(
        self, tenant_id: str, deal_id: str, field_key: str
    ) -> DealTruthField | None:
        async for session in self._session_factory():
            stmt = select(DealTruthFieldModel).where(
                DealTruthFieldModel.tenant_id == parse_id(tenant_id),
                DealTruthFieldModel.deal_id == parse_id(deal_id),
                DealTruthFieldModel.field_key == field_key,
            )
            result = await session.execute(stmt)
            model = result.scalar_one_or_none()
            return _model_to_truth_field(model) if model is not None else None

    async def upsert_truth_field(
        self,
        tenant_id: str,
        deal_id: str,
        field_key: str,
        data: TruthFieldUpsert,
    ) -> DealTruthField:
        """Create or replace the truth field for (deal, key).

        Args:
            tenant_id: Tenant UUID string.
            deal_id: Deal UUID string.
            field_key: One of the six truth field keys.
            data: Value, confidence and provenance.

        Returns:
            The persisted DealTruthField.
        """
        async for session in self._session_factory():
            stmt = select(DealTruthFieldModel).where(
                DealTruthFieldModel.tenant_id == parse_id(tenant_id),
                DealTruthFieldModel.deal_id == parse_id(deal_id),
                DealTruthFieldModel.field_key == field_key,
            )
            result = await session.execute(stmt)
            model = result.scalar_one_or_none()

            if model is None:
                model = DealTruthFieldModel(
                    tenant_id=parse_id(tenant_id),
                    deal_id=parse_id(deal_id),
                    field_key=field_key,
                )
                session.add(model)

            model.value = data.value
            model.confidence = data.confidence
            model.source = _plain(data.source)
            model.source_id = data.source_id
            model.contact_id = _uuid_or_none(data.contact_id)
            model.champion_strength = _plain(data.champion_strength)
            model.next_step_date = data.next_step_date
            model.last_updated_at = datetime.now(timezone.utc)

            await session.commit()
            await session.refresh(model)
            logger.info(
                "deal_truth.field_upserted",
                tenant_id=tenant_id,
                deal_id=deal_id,
                field_key=field_key,
                confidence=data.confidence,
            )
            return _model_to_truth_field(model)

    async def update_truth_field_confidence(
        self,
        tenant_id: str,
        deal_id: str,
        field_key: str,
        confidence: float,
        source: TruthFieldSource = TruthFieldSource.MANUAL,
    ) -> DealTruthField:
        """Set confidence (clamped to 0-1) and source on an existing field.

        Raises:
            ValueError: If the field does not exist.
        """
        async for session in self._session_factory():
            stmt = select(DealTruthFieldModel).where(
                DealTruthFieldModel.tenant_id == parse_id(tenant_id),
                DealTruthFieldModel.deal_id == parse_id(deal_id),
                DealTruthFieldModel.field_key == field_key,
            )
            result = await session.execute(stmt)
            model = result.scalar_one_or_none()
            if model is None:
                raise ValueError(
                    f"Truth field not found: deal={deal_id}, field_key={field_key}"
                )

            model.confidence = max(0.0, min(1.0, confidence))
            model.source = _plain(source)
            model.last_updated_at = datetime.now(timezone.utc)
            await session.commit()
            await session.refresh(model)
            return _model_to_truth_field(model)

    async def delete_truth_field(
        self, tenant_id: str, deal_id: str, field_key: str
    ) -> bool:
        async for session in self._session_factory():
            result = await session.execute(
                delete(DealTruthFieldModel).where(
                    DealTruthFieldModel.tenant_id == parse_id(tenant_id),
                    DealTruthFieldModel.deal_id == parse_id(deal_id),
                    DealTruthFieldModel.field_key == field_key,
                )
            )
            await session.commit()
            return result.rowcount > 0

    # ── Close Plan ──────────────────────────────────────────────────────────

    async def list_close_plan(
        self, tenant_id: str, deal_id: str
    ) -> list[ClosePlanItem]:
        """Close plan milestones in sort order."""
        async for session in self._session_factory():
            stmt = (
                select(DealClosePlanItemModel)
                .where(
                    DealClosePlanItemModel.tenant_id == parse_id(tenant_id),
                    DealClosePlanItemModel.deal_id == parse_id(deal_id),
                )
                .order_by(DealClosePlanItemModel.sort_order)
            )
            result = await session.execute(stmt)
            return [_model_to_close_plan_item(m) for m in result.scalars().all()]

    async def add_close_plan_items(
        self, tenant_id: str, deal_id: str, items: list[ClosePlanItem]
    ) -> list[ClosePlanItem]:
        """Insert milestones that the deal does not have yet.

        Existing milestones are left untouched, so repeated calls are safe.

        Returns:
            The full close plan after insertion.
        """
        async for session in self._session_factory():
            tid, did = parse_id(tenant_id), parse_id(deal_id)
            existing = await session.execute(
                select(DealClosePlanItemModel.milestone_key).where(
                    DealClosePlanItemModel.tenant_id == tid,
                    DealClosePlanItemModel.deal_id == did,
                )
            )
            present = set(existing.scalars().all())

            for item in items:
                key = _plain(item.milestone_key)
                if key in present:
                    continue
                session.add(
                    DealClosePlanItemModel(
                        tenant_id=tid,
                        deal_id=did,
                        milestone_key=key,
                        title=item.title,
                        owner_id=_uuid_or_none(item.owner_id),
                        due_date=item.due_date,
                        status=_plain(item.status),
                        sort_order=item.sort_order,
                    )
                )
            await session.commit()

        return await self.list_close_plan(tenant_id, deal_id)

    async def update_close_plan_item(
        self,
        tenant_id: str,
        deal_id: str,
        milestone_key: str,
        data: ClosePlanItemUpdate,
        user_id: str | None = None,
    ) -> ClosePlanItem:
        """Update a milestone. Completing it stamps completed_at/completed_by;
        any other status clears them.

        Raises:
            ValueError: If the milestone does not exist.
        """
        async for session in self._session_factory():
            stmt = select(DealClosePlanItemModel).where(
                DealClosePlanItemModel.tenant_id == parse_id(tenant_id),
                DealClosePlanItemModel.deal_id == parse_id(deal_id),
                DealClosePlanItemModel.milestone_key == milestone_key,
            )
            result = await session.execute(stmt)
            model = result.scalar_one_or_none()
            if model is None:
                raise ValueError(
                    f"Close plan item not found: deal={deal_id}, milestone={milestone_key}"
                )

            now = datetime.now(timezone.utc)
            for key, value in data.model_dump(exclude_none=True).items():
                value = _plain(value)
                if key == "owner_id":
                    value = parse_id(value)
                setattr(model, key, value)

            if data.status is not None:
                if data.status == MilestoneStatus.COMPLETED:
                    model.completed_at = now
                    model.completed_by = _uuid_or_none(user_id)
                else:
                    model.completed_at = None
                    model.completed_by = None

            model.updated_at = now
            await session.commit()
            await session.refresh(model)
            return _model_to_close_plan_item(model)

    # ── Scores ──────────────────────────────────────────────────────────────

    async def get_clarity_score(
        self, tenant_id: str, deal_id: str
    ) -> DealClarityScore | None:
        async for session in self._session_factory():
            stmt = select(DealClarityScoreModel).where(
                DealClarityScoreModel.tenant_id == parse_id(tenant_id),
                DealClarityScoreModel.deal_id == parse_id(deal_id),
            )
            result = await session.execute(stmt)
            model = result.scalar_one_or_none()
            return _model_to_clarity_score(model) if model is not None else None

    async def upsert_clarity_score(
        self, tenant_id: str, score: DealClarityScore
    ) -> DealClarityScore:
        """Insert or overwrite the single clarity score row for a deal."""
        async for session in self._session_factory():
            stmt = select(DealClarityScoreModel).where(
                DealClarityScoreModel.tenant_id == parse_id(tenant_id),
                DealClarityScoreModel.deal_id == parse_id(score.deal_id),
            )
            result = await session.execute(stmt)
            model = result.scalar_one_or_none()
            if model is None:
                model = DealClarityScoreModel(
                    tenant_id=parse_id(tenant_id),
                    deal_id=parse_id(score.deal_id),
                )
                session.add(model)

            for key, value in score.model_dump(exclude={"deal_id", "last_calculated_at"}).items():
                setattr(model, key, value)
            model.last_calculated_at = datetime.now(timezone.utc)

            await session.commit()
            await session.refresh(model)
            return _model_to_clarity_score(model)

    async def get_health_score(
        self, tenant_id: str, deal_id: str
    ) -> DealHealthScore | None:
        async for session in self._session_factory():
            stmt = select(DealHealthScoreModel).where(
                DealHealthScoreModel.tenant_id == parse_id(tenant_id),
                DealHealthScoreModel.deal_id == parse_id(deal_id),
            )
            result = await session.execute(stmt)
            model = result.scalar_one_or_none()
            return _model_to_health_score(model) if model is not None else None

    async def upsert_health_score(
        self, tenant_id: str, score: DealHealthScore
    ) -> DealHealthScore:
        """Insert or overwrite the health signals row for a deal."""
        async for session in self._session_factory():
            stmt = select(DealHealthScoreModel).where(
                DealHealthScoreModel.tenant_id == parse_id(tenant_id),
                DealHealthScoreModel.deal_id == parse_id(score.deal_id),
            )
            result = await session.execute(stmt)
            model = result.scalar_one_or_none()
            if model is None:
                model = DealHealthScoreModel(
                    tenant_id=parse_id(tenant_id),
                    deal_id=parse_id(score.deal_id),
                )
                session.add(model)

            for key, value in score.model_dump(
                exclude={"id", "deal_id", "calculated_at"}
            ).items():
                setattr(model, key, _plain(value))
            model.calculated_at = datetime.now(timezone.utc)

            await session.commit()
            await session.refresh(model)
            return _model_to_health_score(model)

    # ── Health Rules & Alerts ───────────────────────────────────────────────

    async def list_health_rules(
        self, tenant_id: str, active_only: bool = True
    ) -> list[DealHealthRule]:
        """Health rules ordered by rule type."""
        async for session in self._session_factory():
            stmt = select(DealHealthRuleModel).where(
                DealHealthRuleModel.tenant_id == parse_id(tenant_id),
            )
            if active_only:
                stmt = stmt.where(DealHealthRuleModel.is_active.is_(True))
            result = await session.execute(stmt.order_by(DealHealthRuleModel.rule_type))
            return [_model_to_rule(m) for m in result.scalars().all()]

    async def create_health_rule(
        self, tenant_id: str, rule: DealHealthRule
    ) -> DealHealthRule:
        async for session in self._session_factory():
            model = DealHealthRuleModel(
                tenant_id=parse_id(tenant_id),
                rule_name=rule.rule_name,
                rule_type=_plain(rule.rule_type),
                description=rule.description,
                threshold_value=rule.threshold_value,
                threshold_operator=_plain(rule.threshold_operator),
                threshold_unit=rule.threshold_unit,
                alert_severity=_plain(rule.alert_severity),
                alert_message_template=rule.alert_message_template,
                suggested_action_template=rule.suggested_action_template,
                conditions=rule.conditions.model_dump() if rule.conditions else None,
                is_active=rule.is_active,
                is_system_rule=rule.is_system_rule,
            )
            session.add(model)
            await session.commit()
            await session.refresh(model)
            return _model_to_rule(model)

    async def get_active_alert(
        self, tenant_id: str, deal_id: str, alert_type: str
    ) -> DealHealthAlert | None:
        """The active alert of this type for the deal, if any."""
        async for session in self._session_factory():
            stmt = select(DealHealthAlertModel).where(
                DealHealthAlertModel.tenant_id == parse_id(tenant_id),
                DealHealthAlertModel.deal_id == parse_id(deal_id),
                DealHealthAlertModel.alert_type == alert_type,
                DealHealthAlertModel.status == AlertStatus.ACTIVE.value,
            )
            result = await session.execute(stmt.limit(1))
            model = result.scalar_one_or_none()
            return _model_to_alert(model) if model is not None else None

    async def create_alert(
        self, tenant_id: str, alert: DealHealthAlert
    ) -> DealHealthAlert:
        async for session in self._session_factory():
            model = DealHealthAlertModel(
                tenant_id=parse_id(tenant_id),
                deal_id=parse_id(alert.deal_id),
                user_id=_uuid_or_none(alert.user_id),
                alert_type=_plain(alert.alert_type),
                severity=_plain(alert.severity),
                title=alert.title,
                message=alert.message,
                suggested_actions=list(alert.suggested_actions),
                action_priority=_plain(alert.action_priority),
                status=_plain(alert.status),
                metadata_json=alert.metadata,
            )
            session.add(model)
            await session.commit()
            await session.refresh(model)
            return _model_to_alert(model)

    async def get_alert(self, tenant_id: str, alert_id: str) -> DealHealthAlert | None:
        async for session in self._session_factory():
            stmt = select(DealHealthAlertModel).where(
                DealHealthAlertModel.tenant_id == parse_id(tenant_id),
                DealHealthAlertModel.id == parse_id(alert_id),
            )
            result = await session.execute(stmt)
            model = result.scalar_one_or_none()
            return _model_to_alert(model) if model is not None else None

    async def list_alerts(
        self,
        tenant_id: str,
        deal_id: str | None = None,
        user_id: str | None = None,
        status: str | None = None,
    ) -> list[DealHealthAlert]:
        """Alerts newest first, optionally narrowed by deal, owner and status."""
        async for session in self._session_factory():
            stmt = select(DealHealthAlertModel).where(
                DealHealthAlertModel.tenant_id == parse_id(tenant_id),
            )
            if deal_id is not None:
                stmt = stmt.where(DealHealthAlertModel.deal_id == parse_id(deal_id))
            if user_id is not None:
                stmt = stmt.where(DealHealthAlertModel.user_id == parse_id(user_id))
            if status is not None:
                stmt = stmt.where(DealHealthAlertModel.status == status)
            result = await session.execute(stmt.order_by(DealHealthAlertModel.created_at.desc()))
            return [_model_to_alert(m) for m in result.scalars().all()]

    async def update_alert_status(
        self,
        tenant_id: str,
        alert_id: str,
        status: AlertStatus,
        user_id: str | None = None,
    ) -> DealHealthAlert:
        """Move an alert to acknowledged, resolved or dismissed.

        Raises:
            ValueError: If alert not found.
        """
        async for session in self._session_factory():
            stmt = select(DealHealthAlertModel).where(
                DealHealthAlertModel.tenant_id == parse_id(tenant_id),
                DealHealthAlertModel.id == parse_id(alert_id),
            )
            result = await session.execute(stmt)
            model = result.scalar_one_or_none()
            if model is None:
                raise ValueError(f"Alert not found: tenant={tenant_id}, id={alert_id}")

            now = datetime.now(timezone.utc)
            model.status = status.value
            if status == AlertStatus.ACKNOWLEDGED:
                model.acknowledged_at = now
                model.acknowledged_by = _uuid_or_none(user_id)
            elif status == AlertStatus.RESOLVED:
                model.resolved_at = now
            elif status == AlertStatus.DISMISSED:
                model.dismissed_at = now
            model.updated_at = now

            await session.commit()
            await session.refresh(model)
            return _model_to_alert(model)

    # ── Migration Reviews ───────────────────────────────────────────────────

    async def flag_migration_review(
        self, tenant_id: str, data: MigrationReviewCreate
    ) -> MigrationReviewRead:
        """Queue a deal for manual company/contact resolution."""
        async for session in self._session_factory():
            model = DealMigrationReviewModel(
                tenant_id=parse_id(tenant_id),
                deal_id=parse_id(data.deal_id),
                reason=data.reason,
                status=MigrationReviewStatus.PENDING.value,
                original_company=data.original_company,
                original_contact_name=data.original_contact_name,
                original_contact_email=data.original_contact_email,
                suggested_company_id=_uuid_or_none(data.suggested_company_id),
                suggested_contact_id=_uuid_or_none(data.suggested_contact_id),
            )
            session.add(model)
            await session.commit()
            await session.refresh(model)
            logger.info(
                "deal_migration.flagged",
                tenant_id=tenant_id,
                deal_id=data.deal_id,
                reason=data.reason,
            )
            return _model_to_review(model)

    async def list_migration_reviews(
        self,
        tenant_id: str,
        status: str | None = MigrationReviewStatus.PENDING.value,
        search: str | None = None,
    ) -> list[MigrationReviewRead]:
        """Reviews joined with their deal, newest first.

        ``search`` is a case-insensitive substring match on deal name,
        original company, contact name and contact email.
        """
        async for session in self._session_factory():
            tid = parse_id(tenant_id)
            stmt = (
                select(DealMigrationReviewModel, DealModel)
                .outerjoin(
                    DealModel,
                    (DealModel.id == DealMigrationReviewModel.deal_id)
                    & (DealModel.tenant_id == tid),
                )
                .where(DealMigrationReviewModel.tenant_id == tid)
            )
            if status is not None:
                stmt = stmt.where(DealMigrationReviewModel.status == status)
            if search:
                pattern = f"%{search.strip().lower()}%"
                stmt = stmt.where(
                    or_(
                        func.lower(DealModel.name).like(pattern),
                        func.lower(DealMigrationReviewModel.original_company).like(pattern),
                        func.lower(DealMigrationReviewModel.original_contact_name).like(pattern),
                        func.lower(DealMigrationReviewModel.original_contact_email).like(pattern),
                    )
                )
            stmt = stmt.order_by(DealMigrationReviewModel.flagged_at.desc())
            result = await session.execute(stmt)
            return [_model_to_review(review, deal) for review, deal in result.all()]

    async def get_migration_review(
        self, tenant_id: str, review_id: str
    ) -> MigrationReviewRead | None:
        async for session in self._session_factory():
            stmt = select(DealMigrationReviewModel).where(
                DealMigrationReviewModel.tenant_id == parse_id(tenant_id),
                DealMigrationReviewModel.id == parse_id(review_id),
            )
            result = await session.execute(stmt)
            model = result.scalar_one_or_none()
            return _model_to_review(model) if model is not None else None

    async def resolve_migration_review(
        self,
        tenant_id: str,
        review_id: str,
        data: MigrationReviewResolve,
        resolved_by: str | None = None,
    ) -> MigrationReviewRead:
        """Link the deal to the chosen company and contact and close the review.

        Raises:
            ValueError: If the review or its deal does not exist.
            MigrationReviewClosedError: If the review is no longer pending.
        """
        async for session in self._session_factory():
            tid = parse_id(tenant_id)
            review = await _lock_pending_review(session, tid, review_id)

            result = await session.execute(
                select(DealModel).where(DealModel.tenant_id == tid, DealModel.id == review.deal_id)
            )
            deal = result.scalar_one_or_none()
            if deal is None:
                raise ValueError(f"Deal not found: id={review.deal_id}")

            now = datetime.now(timezone.utc)
            deal.company_id = parse_id(data.company_id)
            deal.contact_id = parse_id(data.contact_id)
            deal.updated_at = now

            review.status = MigrationReviewStatus.RESOLVED.value
            review.resolved_at = now
            review.resolved_by = _uuid_or_none(resolved_by)
            review.resolution_notes = data.notes

            await session.commit()
            await session.refresh(review)
            logger.info(
                "deal_migration.resolved",
                tenant_id=tenant_id,
                review_id=review_id,
                deal_id=str(review.deal_id),
            )
            return _model_to_review(review, deal)

    async def archive_migration_review(
        self, tenant_id: str, review_id: str
    ) -> MigrationReviewRead:
        """Raises ValueError if the review does not exist, MigrationReviewClosedError if not pending."""
        async for session in self._session_factory():
            review = await _lock_pending_review(session, parse_id(tenant_id), review_id)
            review.status = MigrationReviewStatus.ARCHIVED.value
            await session.commit()
            await session.refresh(review)
            return _model_to_review(review)
