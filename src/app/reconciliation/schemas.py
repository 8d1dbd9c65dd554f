"""Pydantic schemas for sales reconciliation -- matching results, analysis, actions.

Defines the structured types passed between the matching utilities, the
analysis engine, the action handlers, and the REST layer:
- Enums: MatchConfidence, MatchType, ConfidenceLevel, AnalysisType,
  ReconciliationActionType, RecordType
- Matching results: FuzzyMatchResult, DateProximityResult,
  AmountSimilarityResult, ConfidenceScore, MatchAnalysis
- Rows: SalesActivityRead, ReconciliationDealRead, AuditLogEntry
- Action payloads: LinkManualRequest, CreateDealFromActivityRequest,
  CreateActivityFromDealRequest, MarkDuplicateRequest, MergeRecordsRequest,
  ActionResult
"""

from __future__ import annotations

from datetime import date, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


# ── Enums ───────────────────────────────────────────────────────────────────


class MatchConfidence(str, Enum):
    """Coarse confidence bucket for a single matching component."""

    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class MatchType(str, Enum):
    """How two company names were judged to match."""

    EXACT = "exact"
    FUZZY = "fuzzy"
    VARIATION = "variation"


class ConfidenceLevel(str, Enum):
    """Overall confidence level of an activity/deal pairing."""

    HIGH = "high_confidence"
    MEDIUM = "medium_confidence"
    LOW = "low_confidence"


class AnalysisType(str, Enum):
    OVERVIEW = "overview"
    ORPHANS = "orphans"
    DUPLICATES = "duplicates"
    MATCHING = "matching"
    STATISTICS = "statistics"


class ReconciliationActionType(str, Enum):
    """Audit log action types. UNDO_<type> rows are written for reversals."""

    MANUAL_LINK = "MANUAL_LINK"
    CREATE_DEAL_FROM_ACTIVITY_MANUAL = "CREATE_DEAL_FROM_ACTIVITY_MANUAL"
    CREATE_ACTIVITY_FROM_DEAL_MANUAL = "CREATE_ACTIVITY_FROM_DEAL_MANUAL"
    MARK_DUPLICATE_MANUAL = "MARK_DUPLICATE_MANUAL"
    MERGE_BACKUP = "MERGE_BACKUP"
    MERGE_RECORDS_MANUAL = "MERGE_RECORDS_MANUAL"


UNDOABLE_ACTIONS = frozenset({
    ReconciliationActionType.MANUAL_LINK.value,
    ReconciliationActionType.CREATE_DEAL_FROM_ACTIVITY_MANUAL.value,
    ReconciliationActionType.CREATE_ACTIVITY_FROM_DEAL_MANUAL.value,
    ReconciliationActionType.MARK_DUPLICATE_MANUAL.value,
})


class RecordType(str, Enum):
    """Tables a reconciliation action can target."""

    SALES_ACTIVITIES = "sales_activities"
    DEALS = "deals"


# ── Matching Results ────────────────────────────────────────────────────────


class FuzzyMatchResult(BaseModel):
    similarity: float = 0.0
    is_match: bool = False
    confidence: MatchConfidence = MatchConfidence.LOW
    match_type: MatchType = MatchType.EXACT


class DateProximityResult(BaseModel):
    """Day gap between two dates; days_difference is inf for unparseable input."""

    days_difference: float
    is_within_threshold: bool = False
    proximity_score: int = 0
    confidence: MatchConfidence = MatchConfidence.LOW


class AmountSimilarityResult(BaseModel):
    percentage_difference: float = 100.0
    is_similar: bool = False
    similarity_score: int = 0
    confidence: MatchConfidence = MatchConfidence.LOW


class ConfidenceScore(BaseModel):
    """Composite 0-100 confidence that an activity and a deal are the same sale."""

    name_score: int = 0
    date_score: int = 0
    amount_score: int = 0
    total_score: int = 0
    level: ConfidenceLevel = ConfidenceLevel.LOW
    is_recommended: bool = False


class MatchAnalysis(BaseModel):
    reasons: list[str] = Field(default_factory=list)
    risks: list[str] = Field(default_factory=list)


class ValidationResult(BaseModel):
    is_valid: bool
    errors: list[str] = Field(default_factory=list)


# ── Rows ────────────────────────────────────────────────────────────────────


class SalesActivityRead(BaseModel):
    """A logged sales activity (type "sale" rows carry revenue)."""

    id: str
    tenant_id: str
    user_id: str | None = None
    type: str = "sale"
    status: str = "completed"
    client_name: str | None = None
    amount: float | None = None
    date: datetime | None = None
    sales_rep: str | None = None
    details: str | None = None
    deal_id: str | None = None
    source: str | None = None
    is_duplicate: bool = False
    duplicate_of: str | None = None
    merged_into: str | None = None
    merged_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


class ReconciliationDealRead(BaseModel):
    """The subset of deal columns reconciliation reads and writes."""

    id: str
    tenant_id: str
    name: str
    company: str | None = None
    value: float | None = None
    one_off_revenue: float | None = None
    monthly_mrr: float | None = None
    stage: str = "lead"
    status: str = "active"
    owner_id: str | None = None
    stage_changed_at: datetime | None = None
    source: str | None = None
    is_duplicate: bool = False
    duplicate_of: str | None = None
    merged_into: str | None = None
    created_at: datetime | None = None


class AuditLogEntry(BaseModel):
    id: str
    tenant_id: str
    action_type: str
    source_table: str
    source_id: str
    target_table: str | None = None
    target_id: str | None = None
    confidence_score: float | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    user_id: str | None = None
    executed_at: datetime | None = None


class AnalysisFilter(BaseModel):
    """Optional narrowing applied before any analysis runs."""

    user_id: str | None = None
    start_date: date | None = None
    end_date: date | None = None


# ── Action Payloads ─────────────────────────────────────────────────────────


class LinkManualRequest(BaseModel):
    activity_id: str
    deal_id: str
    confidence: float | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class CreateDealFromActivityRequest(BaseModel):
    activity_id: str
    company: str | None = None
    value: float | None = None
    stage: str | None = None
    stage_changed_at: datetime | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class CreateActivityFromDealRequest(BaseModel):
    deal_id: str
    client_name: str | None = None
    amount: float | None = None
    date: datetime | None = None
    details: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class MarkDuplicateRequest(BaseModel):
    record_type: RecordType
    record_id: str
    keep_record_id: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class MergeRecordsRequest(BaseModel):
    record_type: RecordType
    record_ids: list[str] = Field(..., min_length=2, max_length=50)
    merge_into: str | None = None
    merge_data: dict[str, Any] = Field(default_factory=dict)
    metadata: dict[str, Any] = Field(default_factory=dict)


class UndoActionRequest(BaseModel):
    audit_log_id: str
    metadata: dict[str, Any] = Field(default_factory=dict)


class ActionResult(BaseModel):
    """Outcome of a reconciliation action, echoed back to the caller."""

    success: bool = True
    action: str
    message: str
    audit_log_id: str | None = None
    details: dict[str, Any] = Field(default_factory=dict)
