"""REST API endpoints for sales reconciliation.

Analysis (overview, orphans, duplicates, matching, statistics), manual
actions with an audit trail, CSV export, and a single-pair confidence
preview. Owners and admins see and act on the whole tenant; other users
are limited to their own activities and deals.
"""

from __future__ import annotations

from datetime import date, datetime
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response, status
from pydantic import BaseModel, ValidationError

from src.app.api.deps import ADMIN_ROLES, WRITE_ROLES, get_current_user, get_tenant, require_role
from src.app.config import get_settings
from src.app.core.tenant import TenantContext
from src.app.models.tenant import User
from src.app.reconciliation.actions import ReconciliationActions, ReconciliationError
from src.app.reconciliation.analysis import (
    ReconciliationAnalyzer,
    export_rows,
    resolve_export_dataset,
)
from src.app.reconciliation.matching import (
    calculate_confidence_score,
    generate_match_analysis,
    to_csv,
)
from src.app.reconciliation.schemas import (
    ActionResult,
    AnalysisFilter,
    AnalysisType,
    AuditLogEntry,
    ConfidenceScore,
    CreateActivityFromDealRequest,
    CreateDealFromActivityRequest,
    LinkManualRequest,
    MarkDuplicateRequest,
    MatchAnalysis,
    MergeRecordsRequest,
    UndoActionRequest,
)

router = APIRouter(prefix="/reconciliation", tags=["reconciliation"])

require_writer = require_role(*WRITE_ROLES)

ACTION_PAYLOADS: dict[str, type[BaseModel]] = {
    "link_manual": LinkManualRequest,
    "create_deal_from_activity": CreateDealFromActivityRequest,
    "create_activity_from_deal": CreateActivityFromDealRequest,
    "mark_duplicate": MarkDuplicateRequest,
    "merge_records": MergeRecordsRequest,
    "undo_action": UndoActionRequest,
}


# ── Request / Response Schemas ───────────────────────────────────────────────


class ActionRequest(BaseModel):
    """An action name and its payload."""

    action: str
    payload: dict[str, Any]


class ConfidencePreviewRequest(BaseModel):
    activity_client_name: str | None = None
    deal_company: str | None = None
    activity_date: datetime | None = None
    deal_date: datetime | None = None
    activity_amount: float | None = None
    deal_amount: float | None = None


class ConfidencePreviewResponse(BaseModel):
    score: ConfidenceScore
    analysis: MatchAnalysis


# ── Dependency Injection Helpers ─────────────────────────────────────────────


def _get_reconciliation_repository(request: Request) -> Any:
    """Retrieve ReconciliationRepository from app.state, 503 if not available."""
    repo = getattr(request.app.state, "reconciliation_repository", None)
    if repo is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Reconciliation not initialized",
        )
    return repo


def _get_analyzer(request: Request) -> ReconciliationAnalyzer:
    settings = get_settings()
    deal_repo = getattr(request.app.state, "deal_repository", None)
    return ReconciliationAnalyzer(
        _get_reconciliation_repository(request),
        confidence_threshold=settings.RECONCILIATION_CONFIDENCE_THRESHOLD,
        date_window_days=settings.RECONCILIATION_DATE_WINDOW_DAYS,
        user_names=deal_repo.get_user_names if deal_repo is not None else None,
    )


def _is_admin(user: User) -> bool:
    return user.role in ADMIN_ROLES


def _analysis_filter(
    user: User,
    user_id: str | None,
    start_date: date | None,
    end_date: date | None,
) -> AnalysisFilter:
    if start_date and end_date and start_date > end_date:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="start_date must not be after end_date",
        )
    if not _is_admin(user):
        user_id = str(user.id)
    return AnalysisFilter(user_id=user_id, start_date=start_date, end_date=end_date)


# ── Analysis ─────────────────────────────────────────────────────────────────


@router.get("/analysis")
async def run_analysis(
    request: Request,
    analysis_type: AnalysisType = Query(default=AnalysisType.OVERVIEW),
    user_id: str | None = Query(default=None, description="Owner filter (admins only)"),
    start_date: date | None = Query(default=None),
    end_date: date | None = Query(default=None),
    confidence_threshold: int | None = Query(default=None, ge=0, le=100),
    user: User = Depends(get_current_user),
    tenant: TenantContext = Depends(get_tenant),
) -> dict[str, Any]:
    """Run one reconciliation analysis over the tenant's activities and deals."""
    filters = _analysis_filter(user, user_id, start_date, end_date)
    analyzer = _get_analyzer(request)
    return await analyzer.run(
        tenant.tenant_id, analysis_type, filters, confidence_threshold=confidence_threshold
    )


@router.get("/export")
async def export_analysis(
    request: Request,
    analysis_type: AnalysisType = Query(default=AnalysisType.ORPHANS),
    dataset: str | None = Query(
        default=None, description="Result list to export, e.g. orphan_deals"
    ),
    user_id: str | None = Query(default=None),
    start_date: date | None = Query(default=None),
    end_date: date | None = Query(default=None),
    user: User = Depends(get_current_user),
    tenant: TenantContext = Depends(get_tenant),
) -> Response:
    """Analysis result as a CSV download."""
    try:
        dataset = resolve_export_dataset(analysis_type, dataset)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
    filters = _analysis_filter(user, user_id, start_date, end_date)
    result = await _get_analyzer(request).run(tenant.tenant_id, analysis_type, filters)
    body = to_csv(export_rows(analysis_type, result["data"], dataset))
    filename = f"reconciliation_{analysis_type.value}_{date.today().isoformat()}.csv"
    return Response(
        content=body,
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@router.post("/confidence", response_model=ConfidencePreviewResponse)
async def preview_confidence(
    body: ConfidencePreviewRequest,
    user: User = Depends(get_current_user),
) -> ConfidencePreviewResponse:
    """Score a single activity/deal pairing without touching stored data."""
    args = (
        body.activity_client_name,
        body.deal_company,
        body.activity_date,
        body.deal_date,
        body.activity_amount,
        body.deal_amount,
    )
    return ConfidencePreviewResponse(
        score=calculate_confidence_score(*args),
        analysis=generate_match_analysis(*args),
    )


# ── Actions ──────────────────────────────────────────────────────────────────


@router.post("/actions", response_model=ActionResult)
async def execute_action(
    body: ActionRequest,
    request: Request,
    user: User = Depends(require_writer),
    tenant: TenantContext = Depends(get_tenant),
) -> ActionResult:
    """Execute a manual reconciliation action and record it in the audit log."""
    model = ACTION_PAYLOADS.get(body.action)
    if model is None:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Unknown action: {body.action}",
        )
    try:
        payload = model.model_validate(body.payload)
    except ValidationError as exc:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=exc.errors(include_url=False, include_context=False),
        )

    actions = ReconciliationActions(_get_reconciliation_repository(request))
    try:
        return await actions.execute(
            tenant.tenant_id,
            body.action,
            payload,
            user_id=str(user.id),
            restrict_to_owner=not _is_admin(user),
        )
    except ReconciliationError as exc:
        raise HTTPException(status_code=exc.status_code, detail=exc.message)


@router.get("/audit", response_model=list[AuditLogEntry])
async def list_audit_log(
    request: Request,
    action_type: str | None = Query(default=None),
    limit: int = Query(default=100, ge=1, le=500),
    user: User = Depends(get_current_user),
    tenant: TenantContext = Depends(get_tenant),
) -> list[AuditLogEntry]:
    """Reconciliation audit log, newest first."""
    repo = _get_reconciliation_repository(request)
    return await repo.list_audit_log(
        tenant.tenant_id,
        user_id=None if _is_admin(user) else str(user.id),
        action_type=action_type,
        limit=limit,
    )
