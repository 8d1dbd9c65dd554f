"""REST API endpoints for deal management.

Provides deal CRUD and a pipeline view, truth fields and clarity scoring,
close plans, momentum data, health alerts and rules, and the migration
review queue. All endpoints require authentication and tenant context.
Write endpoints are closed to readonly users; rule and migration review
administration is limited to owners and admins.
"""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response, status
from pydantic import BaseModel, Field

from src.app.api.deps import ADMIN_ROLES, WRITE_ROLES, get_current_user, get_tenant, require_role
from src.app.core.tenant import TenantContext
from src.app.deals.alerts import AlertService
from src.app.deals.schemas import (
    AlertStats,
    ChampionStrength,
    ClarificationQuestion,
    ClarityBreakdown,
    ClosePlanItem,
    ClosePlanItemUpdate,
    DealClarityScore,
    DealCreate,
    DealFilter,
    DealHealthAlert,
    DealHealthRule,
    DealHealthScore,
    DealMomentumData,
    DealNeedingAttention,
    DealRead,
    DealStage,
    DealStatus,
    DealTruthField,
    DealUpdate,
    ExtractedTruthFields,
    HealthStatus,
    MigrationReviewCreate,
    MigrationReviewRead,
    MigrationReviewResolve,
    MigrationReviewStatus,
    MilestoneKey,
    RiskLevel,
    TruthFieldKey,
    TruthFieldSource,
    TruthFieldUpsert,
    TruthSnapshotItem,
)
from src.app.deals.repository import MigrationReviewClosedError
from src.app.deals.service import DealTruthService
from src.app.deals.truth import calculate_clarity_score
from src.app.models.tenant import User

router = APIRouter(prefix="/deals", tags=["deals"])

require_writer = require_role(*WRITE_ROLES)
require_admin = require_role(*ADMIN_ROLES)


# ── Request / Response Schemas ───────────────────────────────────────────────


class PipelineResponse(BaseModel):
    """Pipeline view grouping deals by stage."""

    stages: dict[str, list[DealRead]] = Field(default_factory=dict)
    stage_counts: dict[str, int] = Field(default_factory=dict)
    total_value: float = 0.0


class ConfidenceUpdateRequest(BaseModel):
    confidence: float = Field(ge=0.0, le=1.0)


class BulkTruthRequest(BaseModel):
    fields: dict[TruthFieldKey, TruthFieldUpsert]


class ExtractedTruthRequest(BaseModel):
    """Fields extracted from a meeting or email, merged by source priority."""

    fields: ExtractedTruthFields
    source: TruthFieldSource = TruthFieldSource.MEETING_TRANSCRIPT
    source_id: str | None = None


class BulkTruthResponse(BaseModel):
    success: int = 0
    failed: int = 0
    skipped: list[str] = Field(default_factory=list)


class HealthSignalsRequest(BaseModel):
    """Health signals computed upstream for one deal."""

    overall_health_score: int = Field(default=50, ge=0, le=100)
    health_status: HealthStatus = HealthStatus.UNKNOWN
    risk_level: RiskLevel = RiskLevel.UNKNOWN
    risk_score: int | None = Field(default=None, ge=0, le=100)
    days_in_current_stage: int = Field(default=0, ge=0)
    days_since_last_activity: int | None = Field(default=None, ge=0)
    sentiment_trend: str | None = None
    avg_sentiment_last_3_meetings: float | None = None
    meeting_count_last_30_days: int = Field(default=0, ge=0)
    avg_response_time_hours: float | None = None


class ClarityPreviewField(BaseModel):
    field_key: TruthFieldKey
    value: str | None = None
    confidence: float = Field(default=0.5, ge=0.0, le=1.0)
    champion_strength: ChampionStrength | None = None


class ClarityPreviewRequest(BaseModel):
    """Unsaved truth field values to score before they are stored."""

    fields: list[ClarityPreviewField] = Field(default_factory=list)


# ── Dependency Injection Helpers ─────────────────────────────────────────────


def _get_deal_repository(request: Request) -> Any:
    """Retrieve DealRepository from app.state, 503 if not available."""
    repo = getattr(request.app.state, "deal_repository", None)
    if repo is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Deal management not initialized",
        )
    return repo


def _get_truth_service(request: Request) -> DealTruthService:
    return DealTruthService(_get_deal_repository(request))


def _get_alert_service(request: Request) -> AlertService:
    return AlertService(_get_deal_repository(request))


async def _require_deal(repo: Any, tenant_id: str, deal_id: str) -> DealRead:
    deal = await repo.get_deal(tenant_id, deal_id)
    if deal is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Deal not found: {deal_id}",
        )
    return deal


def _not_found(exc: ValueError) -> HTTPException:
    return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))


# ── Deal Endpoints ───────────────────────────────────────────────────────────


@router.post("", response_model=DealRead, status_code=201)
async def create_deal(
    body: DealCreate,
    request: Request,
    user: User = Depends(require_writer),
    tenant: TenantContext = Depends(get_tenant),
) -> DealRead:
    """Create a deal. The caller owns it unless owner_id is given."""
    repo = _get_deal_repository(request)
    if body.owner_id is None:
        body = body.model_copy(update={"owner_id": str(user.id)})
    return await repo.create_deal(tenant.tenant_id, body)


@router.get("", response_model=list[DealRead])
async def list_deals(
    request: Request,
    stage: DealStage | None = Query(default=None, description="Filter by stage"),
    deal_status: DealStatus | None = Query(default=None, alias="status"),
    owner_id: str | None = Query(default=None, description="Filter by owner"),
    user: User = Depends(get_current_user),
    tenant: TenantContext = Depends(get_tenant),
) -> list[DealRead]:
    """List deals with optional filters."""
    repo = _get_deal_repository(request)
    filters = None
    if stage or deal_status or owner_id:
        filters = DealFilter(stage=stage, status=deal_status, owner_id=owner_id)
    return await repo.list_deals(tenant.tenant_id, filters)


@router.get("/pipeline", response_model=PipelineResponse)
async def get_pipeline(
    request: Request,
    user: User = Depends(get_current_user),
    tenant: TenantContext = Depends(get_tenant),
) -> PipelineResponse:
    """Pipeline view: active deals grouped by stage with counts and totals."""
    repo = _get_deal_repository(request)
    deals = await repo.list_deals(tenant.tenant_id, DealFilter(status=DealStatus.ACTIVE))

    stages: dict[str, list[DealRead]] = {}
    total_value = 0.0
    for deal in deals:
        stages.setdefault(deal.stage, []).append(deal)
        if deal.value is not None:
            total_value += deal.value

    return PipelineResponse(
        stages=stages,
        stage_counts={stage: len(items) for stage, items in stages.items()},
        total_value=total_value,
    )


@router.get("/attention", response_model=list[DealNeedingAttention])
async def deals_needing_attention(
    request: Request,
    min_clarity: int = Query(default=50, ge=0, le=100),
    mine: bool = Query(default=False, description="Only the caller's deals"),
    limit: int = Query(default=10, ge=1, le=100),
    user: User = Depends(get_current_user),
    tenant: TenantContext = Depends(get_tenant),
) -> list[DealNeedingAttention]:
    """Deals with low clarity or worrying health, lowest momentum first."""
    service = _get_truth_service(request)
    return await service.deals_needing_attention(
        tenant.tenant_id,
        min_clarity=min_clarity,
        owner_id=str(user.id) if mine else None,
        limit=limit,
    )


@router.post("/clarity/preview", response_model=ClarityBreakdown)
async def preview_clarity(
    body: ClarityPreviewRequest,
    user: User = Depends(get_current_user),
) -> ClarityBreakdown:
    """Score unsaved truth field values without touching stored data."""
    fields = [
        DealTruthField(
            deal_id="preview",
            field_key=f.field_key,
            value=f.value,
            confidence=f.confidence,
            champion_strength=f.champion_strength,
        )
        for f in body.fields
    ]
    return calculate_clarity_score(fields)


# ── Alerts ───────────────────────────────────────────────────────────────────


@router.get("/alerts", response_model=list[DealHealthAlert])
async def list_alerts(
    request: Request,
    alert_status: str | None = Query(default="active", alias="status"),
    deal_id: str | None = Query(default=None),
    mine: bool = Query(default=False),
    user: User = Depends(get_current_user),
    tenant: TenantContext = Depends(get_tenant),
) -> list[DealHealthAlert]:
    repo = _get_deal_repository(request)
    return await repo.list_alerts(
        tenant.tenant_id,
        deal_id=deal_id,
        user_id=str(user.id) if mine else None,
        status=alert_status,
    )


@router.get("/alerts/stats", response_model=AlertStats)
async def alert_stats(
    request: Request,
    mine: bool = Query(default=False),
    user: User = Depends(get_current_user),
    tenant: TenantContext = Depends(get_tenant),
) -> AlertStats:
    """Counts of active alerts by severity and type."""
    service = _get_alert_service(request)
    return await service.alert_stats(tenant.tenant_id, str(user.id) if mine else None)


@router.post("/alerts/{alert_id}/acknowledge", response_model=DealHealthAlert)
async def acknowledge_alert(
    alert_id: str,
    request: Request,
    user: User = Depends(require_writer),
    tenant: TenantContext = Depends(get_tenant),
) -> DealHealthAlert:
    service = _get_alert_service(request)
    try:
        return await service.acknowledge(tenant.tenant_id, alert_id, str(user.id))
    except ValueError as exc:
        raise _not_found(exc)


@router.post("/alerts/{alert_id}/resolve", response_model=DealHealthAlert)
async def resolve_alert(
    alert_id: str,
    request: Request,
    user: User = Depends(require_writer),
    tenant: TenantContext = Depends(get_tenant),
) -> DealHealthAlert:
    service = _get_alert_service(request)
    try:
        return await service.resolve(tenant.tenant_id, alert_id)
    except ValueError as exc:
        raise _not_found(exc)


@router.post("/alerts/{alert_id}/dismiss", response_model=DealHealthAlert)
async def dismiss_alert(
    alert_id: str,
    request: Request,
    user: User = Depends(require_writer),
    tenant: TenantContext = Depends(get_tenant),
) -> DealHealthAlert:
    service = _get_alert_service(request)
    try:
        return await service.dismiss(tenant.tenant_id, alert_id)
    except ValueError as exc:
        raise _not_found(exc)


@router.get("/health-rules", response_model=list[DealHealthRule])
async def list_health_rules(
    request: Request,
    active_only: bool = Query(default=True),
    user: User = Depends(get_current_user),
    tenant: TenantContext = Depends(get_tenant),
) -> list[DealHealthRule]:
    repo = _get_deal_repository(request)
    return await repo.list_health_rules(tenant.tenant_id, active_only=active_only)


@router.post("/health-rules", response_model=DealHealthRule, status_code=201)
async def create_health_rule(
    body: DealHealthRule,
    request: Request,
    user: User = Depends(require_admin),
    tenant: TenantContext = Depends(get_tenant),
) -> DealHealthRule:
    repo = _get_deal_repository(request)
    return await repo.create_health_rule(tenant.tenant_id, body)


# ── Migration Reviews ────────────────────────────────────────────────────────


@router.get("/migration-reviews", response_model=list[MigrationReviewRead])
async def list_migration_reviews(
    request: Request,
    review_status: str = Query(
        default=MigrationReviewStatus.PENDING.value,
        alias="status",
        description="pending, resolved, archived or all",
    ),
    search: str | None = Query(default=None, max_length=200),
    user: User = Depends(require_admin),
    tenant: TenantContext = Depends(get_tenant),
) -> list[MigrationReviewRead]:
    """Deals queued for manual company/contact resolution."""
    repo = _get_deal_repository(request)
    return await repo.list_migration_reviews(
        tenant.tenant_id,
        status=None if review_status == "all" else review_status,
        search=search,
    )


@router.post("/migration-reviews", response_model=MigrationReviewRead, status_code=201)
async def flag_migration_review(
    body: MigrationReviewCreate,
    request: Request,
    user: User = Depends(require_admin),
    tenant: TenantContext = Depends(get_tenant),
) -> MigrationReviewRead:
    repo = _get_deal_repository(request)
    await _require_deal(repo, tenant.tenant_id, body.deal_id)
    return await repo.flag_migration_review(tenant.tenant_id, body)


def _review_closed(exc: MigrationReviewClosedError) -> HTTPException:
    return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc))


async def _pending_review(repo: Any, tenant_id: str, review_id: str) -> MigrationReviewRead:
    review = await repo.get_migration_review(tenant_id, review_id)
    if review is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Migration review not found: {review_id}",
        )
    if review.status != MigrationReviewStatus.PENDING:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Migration review is already {review.status.value}",
        )
    return review


@router.post("/migration-reviews/{review_id}/resolve", response_model=MigrationReviewRead)
async def resolve_migration_review(
    review_id: str,
    body: MigrationReviewResolve,
    request: Request,
    user: User = Depends(require_admin),
    tenant: TenantContext = Depends(get_tenant),
) -> MigrationReviewRead:
    """Link the deal to a company and contact and close the review."""
    repo = _get_deal_repository(request)
    await _pending_review(repo, tenant.tenant_id, review_id)
    if await repo.get_company(tenant.tenant_id, body.company_id) is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Company not found: {body.company_id}",
        )
    if await repo.get_contact(tenant.tenant_id, body.contact_id) is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Contact not found: {body.contact_id}",
        )
    try:
        return await repo.resolve_migration_review(
            tenant.tenant_id, review_id, body, resolved_by=str(user.id)
        )
    except ValueError as exc:
        raise _not_found(exc)
    except MigrationReviewClosedError as exc:
        raise _review_closed(exc)


@router.post("/migration-reviews/{review_id}/archive", response_model=MigrationReviewRead)
async def archive_migration_review(
    review_id: str,
    request: Request,
    user: User = Depends(require_admin),
    tenant: TenantContext = Depends(get_tenant),
) -> MigrationReviewRead:
    repo = _get_deal_repository(request)
    await _pending_review(repo, tenant.tenant_id, review_id)
    try:
        return await repo.archive_migration_review(tenant.tenant_id, review_id)
    except ValueError as exc:
        raise _not_found(exc)
    except MigrationReviewClosedError as exc:
        raise _review_closed(exc)


# ── Single Deal ──────────────────────────────────────────────────────────────


@router.get("/{deal_id}", response_model=DealRead)
async def get_deal(
    deal_id: str,
    request: Request,
    user: User = Depends(get_current_user),
    tenant: TenantContext = Depends(get_tenant),
) -> DealRead:
    repo = _get_deal_repository(request)
    return await _require_deal(repo, tenant.tenant_id, deal_id)


@router.patch("/{deal_id}", response_model=DealRead)
async def update_deal(
    deal_id: str,
    body: DealUpdate,
    request: Request,
    user: User = Depends(require_writer),
    tenant: TenantContext = Depends(get_tenant),
) -> DealRead:
    """Update a deal. Changing the stage stamps stage_changed_at."""
    repo = _get_deal_repository(request)
    try:
        return await repo.update_deal(tenant.tenant_id, deal_id, body)
    except ValueError as exc:
        raise _not_found(exc)


@router.delete("/{deal_id}", status_code=204)
async def delete_deal(
    deal_id: str,
    request: Request,
    user: User = Depends(require_writer),
    tenant: TenantContext = Depends(get_tenant),
) -> Response:
    repo = _get_deal_repository(request)
    if not await repo.delete_deal(tenant.tenant_id, deal_id):
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Deal not found: {deal_id}",
        )
    return Response(status_code=204)


# ── Truth Fields ─────────────────────────────────────────────────────────────


@router.get("/{deal_id}/truth", response_model=list[DealTruthField])
async def list_truth_fields(
    deal_id: str,
    request: Request,
    user: User = Depends(get_current_user),
    tenant: TenantContext = Depends(get_tenant),
) -> list[DealTruthField]:
    repo = _get_deal_repository(request)
    await _require_deal(repo, tenant.tenant_id, deal_id)
    return await repo.list_truth_fields(tenant.tenant_id, deal_id)


@router.put("/{deal_id}/truth/{field_key}", response_model=DealTruthField)
async def upsert_truth_field(
    deal_id: str,
    field_key: TruthFieldKey,
    body: TruthFieldUpsert,
    request: Request,
    user: User = Depends(require_writer),
    tenant: TenantContext = Depends(get_tenant),
) -> DealTruthField:
    """Create or replace a truth field and recalculate the deal's scores."""
    service = _get_truth_service(request)
    await _require_deal(_get_deal_repository(request), tenant.tenant_id, deal_id)
    return await service.upsert_truth_field(tenant.tenant_id, deal_id, field_key.value, body)


@router.patch("/{deal_id}/truth/{field_key}/confidence", response_model=DealTruthField)
async def update_truth_confidence(
    deal_id: str,
    field_key: TruthFieldKey,
    body: ConfidenceUpdateRequest,
    request: Request,
    user: User = Depends(require_writer),
    tenant: TenantContext = Depends(get_tenant),
) -> DealTruthField:
    service = _get_truth_service(request)
    try:
        return await service.update_confidence(
            tenant.tenant_id, deal_id, field_key.value, body.confidence
        )
    except ValueError as exc:
        raise _not_found(exc)


@router.delete("/{deal_id}/truth/{field_key}", status_code=204)
async def delete_truth_field(
    deal_id: str,
    field_key: TruthFieldKey,
    request: Request,
    user: User = Depends(require_writer),
    tenant: TenantContext = Depends(get_tenant),
) -> Response:
    service = _get_truth_service(request)
    if not await service.delete_truth_field(tenant.tenant_id, deal_id, field_key.value):
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Truth field not found: {field_key.value}",
        )
    return Response(status_code=204)


@router.post("/{deal_id}/truth/bulk", response_model=BulkTruthResponse)
async def bulk_upsert_truth_fields(
    deal_id: str,
    body: BulkTruthRequest,
    request: Request,
    user: User = Depends(require_writer),
    tenant: TenantContext = Depends(get_tenant),
) -> BulkTruthResponse:
    service = _get_truth_service(request)
    await _require_deal(_get_deal_repository(request), tenant.tenant_id, deal_id)
    result = await service.bulk_upsert_truth_fields(
        tenant.tenant_id,
        deal_id,
        [(key.value, data) for key, data in body.fields.items()],
    )
    return BulkTruthResponse(**result)


@router.post("/{deal_id}/truth/extracted", response_model=BulkTruthResponse)
async def save_extracted_truth(
    deal_id: str,
    body: ExtractedTruthRequest,
    request: Request,
    user: User = Depends(require_writer),
    tenant: TenantContext = Depends(get_tenant),
) -> BulkTruthResponse:
    """Merge extracted values without overwriting better-sourced ones."""
    service = _get_truth_service(request)
    await _require_deal(_get_deal_repository(request), tenant.tenant_id, deal_id)
    result = await service.save_extracted_fields(
        tenant.tenant_id, deal_id, body.fields, body.source, body.source_id
    )
    return BulkTruthResponse(**result)


@router.get("/{deal_id}/snapshot", response_model=list[TruthSnapshotItem])
async def get_truth_snapshot(
    deal_id: str,
    request: Request,
    user: User = Depends(get_current_user),
    tenant: TenantContext = Depends(get_tenant),
) -> list[TruthSnapshotItem]:
    """Recorded truth fields in priority order, with contact names resolved."""
    service = _get_truth_service(request)
    await _require_deal(_get_deal_repository(request), tenant.tenant_id, deal_id)
    return await service.get_snapshot(tenant.tenant_id, deal_id)


@router.get("/{deal_id}/questions", response_model=list[ClarificationQuestion])
async def get_clarification_questions(
    deal_id: str,
    request: Request,
    user: User = Depends(get_current_user),
    tenant: TenantContext = Depends(get_tenant),
) -> list[ClarificationQuestion]:
    service = _get_truth_service(request)
    deal = await _require_deal(_get_deal_repository(request), tenant.tenant_id, deal_id)
    return await service.get_clarification_questions(tenant.tenant_id, deal_id, deal.name)


# ── Scores ───────────────────────────────────────────────────────────────────


@router.get("/{deal_id}/clarity", response_model=DealClarityScore)
async def get_clarity_score(
    deal_id: str,
    request: Request,
    user: User = Depends(get_current_user),
    tenant: TenantContext = Depends(get_tenant),
) -> DealClarityScore:
    """Stored clarity score, calculated on first read."""
    repo = _get_deal_repository(request)
    await _require_deal(repo, tenant.tenant_id, deal_id)
    score = await repo.get_clarity_score(tenant.tenant_id, deal_id)
    if score is None:
        score = await _get_truth_service(request).recalculate_scores(tenant.tenant_id, deal_id)
    return score


@router.post("/{deal_id}/clarity/recalculate", response_model=DealClarityScore)
async def recalculate_clarity_score(
    deal_id: str,
    request: Request,
    user: User = Depends(require_writer),
    tenant: TenantContext = Depends(get_tenant),
) -> DealClarityScore:
    await _require_deal(_get_deal_repository(request), tenant.tenant_id, deal_id)
    return await _get_truth_service(request).recalculate_scores(tenant.tenant_id, deal_id)


@router.get("/{deal_id}/momentum", response_model=DealMomentumData)
async def get_momentum(
    deal_id: str,
    request: Request,
    user: User = Depends(get_current_user),
    tenant: TenantContext = Depends(get_tenant),
) -> DealMomentumData:
    await _require_deal(_get_deal_repository(request), tenant.tenant_id, deal_id)
    return await _get_truth_service(request).get_momentum_data(tenant.tenant_id, deal_id)


@router.put("/{deal_id}/health", response_model=DealHealthScore)
async def upsert_health_score(
    deal_id: str,
    body: HealthSignalsRequest,
    request: Request,
    user: User = Depends(require_writer),
    tenant: TenantContext = Depends(get_tenant),
) -> DealHealthScore:
    """Store the latest health signals for a deal and refresh its momentum."""
    repo = _get_deal_repository(request)
    await _require_deal(repo, tenant.tenant_id, deal_id)
    saved = await repo.upsert_health_score(
        tenant.tenant_id, DealHealthScore(deal_id=deal_id, **body.model_dump())
    )
    await _get_truth_service(request).recalculate_scores(tenant.tenant_id, deal_id)
    return saved


# ── Close Plan ───────────────────────────────────────────────────────────────


@router.get("/{deal_id}/close-plan", response_model=list[ClosePlanItem])
async def get_close_plan(
    deal_id: str,
    request: Request,
    user: User = Depends(get_current_user),
    tenant: TenantContext = Depends(get_tenant),
) -> list[ClosePlanItem]:
    repo = _get_deal_repository(request)
    await _require_deal(repo, tenant.tenant_id, deal_id)
    return await repo.list_close_plan(tenant.tenant_id, deal_id)


@router.post("/{deal_id}/close-plan", response_model=list[ClosePlanItem], status_code=201)
async def initialize_close_plan(
    deal_id: str,
    request: Request,
    user: User = Depends(require_writer),
    tenant: TenantContext = Depends(get_tenant),
) -> list[ClosePlanItem]:
    """Create the six standard milestones (existing ones are kept)."""
    deal = await _require_deal(_get_deal_repository(request), tenant.tenant_id, deal_id)
    return await _get_truth_service(request).initialize_close_plan(
        tenant.tenant_id, deal_id, deal.owner_id
    )


@router.patch("/{deal_id}/close-plan/{milestone_key}", response_model=ClosePlanItem)
async def update_close_plan_item(
    deal_id: str,
    milestone_key: MilestoneKey,
    body: ClosePlanItemUpdate,
    request: Request,
    user: User = Depends(require_writer),
    tenant: TenantContext = Depends(get_tenant),
) -> ClosePlanItem:
    service = _get_truth_service(request)
    try:
        return await service.update_close_plan_item(
            tenant.tenant_id, deal_id, milestone_key.value, body, str(user.id)
        )
    except ValueError as exc:
        raise _not_found(exc)


# ── Deal Alerts ──────────────────────────────────────────────────────────────


@router.post("/{deal_id}/alerts/generate", response_model=list[DealHealthAlert])
async def generate_alerts(
    deal_id: str,
    request: Request,
    user: User = Depends(require_writer),
    tenant: TenantContext = Depends(get_tenant),
) -> list[DealHealthAlert]:
    """Evaluate active health rules against the deal's stored health score."""
    service = _get_alert_service(request)
    try:
        return await service.generate_alerts_for_deal(tenant.tenant_id, deal_id)
    except ValueError as exc:
        raise _not_found(exc)
