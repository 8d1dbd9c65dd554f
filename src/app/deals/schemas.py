"""Pydantic schemas for deal management -- deals, truth fields, close plans, health.

Defines all structured types for the deal lifecycle:
- Enums: DealStage, DealStatus, TruthFieldKey, TruthFieldSource, ChampionStrength,
  MilestoneKey, MilestoneStatus, HealthStatus, RiskLevel, AlertType, AlertSeverity,
  AlertStatus, ActionPriority, RuleType, ThresholdOperator, MigrationReviewStatus
- Deals: DealCreate/Update/Read/Filter
- Deal truth: DealTruthField, TruthFieldUpsert, ExtractedTruthValue,
  ExtractedTruthFields, ClarityBreakdown, TruthSnapshotItem, ClarificationQuestion
- Close plan: ClosePlanItem, ClosePlanItemUpdate, ClosePlanProgress
- Scores: DealClarityScore, DealMomentumData, DealNeedingAttention
- Health: DealHealthScore, DealHealthRule, RuleConditions, DealHealthAlert,
  AlertStats
- Migration review: MigrationReviewCreate, MigrationReviewRead, MigrationReviewResolve
- Companies and contacts: CompanyCreate/Read, ContactCreate/Read
"""

from __future__ import annotations

from datetime import date, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


# ── Enums ───────────────────────────────────────────────────────────────────


class DealStage(str, Enum):
    """Pipeline stages in order of progression."""

    LEAD = "lead"
    SQL = "sql"
    OPPORTUNITY = "opportunity"
    PROPOSAL = "proposal"
    NEGOTIATION = "negotiation"
    VERBAL = "verbal"
    CLOSED_WON = "closed_won"
    CLOSED_LOST = "closed_lost"


STAGE_NAMES: dict[str, str] = {
    "lead": "Lead",
    "sql": "SQL",
    "opportunity": "Opportunity",
    "proposal": "Proposal",
    "negotiation": "Negotiation",
    "verbal": "Verbal Commit",
    "closed_won": "Closed Won",
    "closed_lost": "Closed Lost",
}

ACTIVE_PIPELINE_STAGES: tuple[str, ...] = (
    "sql",
    "opportunity",
    "verbal",
    "proposal",
    "negotiation",
)


class DealStatus(str, Enum):
    ACTIVE = "active"
    WON = "won"
    LOST = "lost"
    MERGED = "merged"


class TruthFieldKey(str, Enum):
    """The six fields that answer "do we actually know this deal?"."""

    PAIN = "pain"
    SUCCESS_METRIC = "success_metric"
    CHAMPION = "champion"
    ECONOMIC_BUYER = "economic_buyer"
    NEXT_STEP = "next_step"
    TOP_RISKS = "top_risks"


class TruthFieldSource(str, Enum):
    """Provenance of a truth field value."""

    MEETING_TRANSCRIPT = "meeting_transcript"
    EMAIL = "email"
    CRM_SYNC = "crm_sync"
    MANUAL = "manual"
    AI_INFERRED = "ai_inferred"


class ChampionStrength(str, Enum):
    STRONG = "strong"
    MODERATE = "moderate"
    WEAK = "weak"
    UNKNOWN = "unknown"


class MilestoneKey(str, Enum):
    """The six standard close plan milestones."""

    SUCCESS_CRITERIA = "success_criteria"
    STAKEHOLDERS_MAPPED = "stakeholders_mapped"
    SOLUTION_FIT = "solution_fit"
    COMMERCIALS_ALIGNED = "commercials_aligned"
    LEGAL_PROCUREMENT = "legal_procurement"
    SIGNATURE_KICKOFF = "signature_kickoff"


class MilestoneStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    BLOCKED = "blocked"
    SKIPPED = "skipped"


class HealthStatus(str, Enum):
    HEALTHY = "healthy"
    WARNING = "warning"
    CRITICAL = "critical"
    STALLED = "stalled"
    UNKNOWN = "unknown"


class RiskLevel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"
    UNKNOWN = "unknown"


class AlertType(str, Enum):
    STAGE_STALL = "stage_stall"
    SENTIMENT_DROP = "sentiment_drop"
    ENGAGEMENT_DECLINE = "engagement_decline"
    NO_ACTIVITY = "no_activity"
    MISSED_FOLLOW_UP = "missed_follow_up"
    CLOSE_DATE_APPROACHING = "close_date_approaching"
    HIGH_RISK = "high_risk"


class AlertSeverity(str, Enum):
    INFO = "info"
    WARNING = "warning"
    CRITICAL = "critical"


class AlertStatus(str, Enum):
    ACTIVE = "active"
    ACKNOWLEDGED = "acknowledged"
    RESOLVED = "resolved"
    DISMISSED = "dismissed"


class ActionPriority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"


class RuleType(str, Enum):
    STAGE_VELOCITY = "stage_velocity"
    SENTIMENT = "sentiment"
    ENGAGEMENT = "engagement"
    ACTIVITY = "activity"
    RESPONSE_TIME = "response_time"


class ThresholdOperator(str, Enum):
    GT = ">"
    LT = "<"
    GTE = ">="
    LTE = "<="
    EQ = "="


class MigrationReviewStatus(str, Enum):
    PENDING = "pending"
    RESOLVED = "resolved"
    ARCHIVED = "archived"


# ── Deals ───────────────────────────────────────────────────────────────────


class DealCreate(BaseModel):
    """Schema for creating a deal."""

    name: str
    company: str | None = None
    company_id: str | None = None
    contact_id: str | None = None
    value: float | None = None
    one_off_revenue: float | None = None
    monthly_mrr: float | None = None
    stage: DealStage = DealStage.LEAD
    status: DealStatus = DealStatus.ACTIVE
    owner_id: str | None = None
    expected_close_date: date | None = None
    stage_changed_at: datetime | None = None
    source: str | None = None


class DealUpdate(BaseModel):
    """Partial update; only non-None fields are applied."""

    name: str | None = None
    company: str | None = None
    company_id: str | None = None
    contact_id: str | None = None
    value: float | None = None
    one_off_revenue: float | None = None
    monthly_mrr: float | None = None
    stage: DealStage | None = None
    status: DealStatus | None = None
    owner_id: str | None = None
    expected_close_date: date | None = None


class DealRead(BaseModel):
    id: str
    tenant_id: str
    name: str
    company: str | None = None
    company_id: str | None = None
    contact_id: str | None = None
    value: float | None = None
    one_off_revenue: float | None = None
    monthly_mrr: float | None = None
    stage: str = DealStage.LEAD.value
    status: str = DealStatus.ACTIVE.value
    owner_id: str | None = None
    expected_close_date: date | None = None
    stage_changed_at: datetime | None = None
    source: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


class DealFilter(BaseModel):
    stage: DealStage | None = None
    status: DealStatus | None = None
    owner_id: str | None = None


# ── Deal Truth ──────────────────────────────────────────────────────────────


class DealTruthField(BaseModel):
    """A single persisted truth field (one per deal and key)."""

    id: str | None = None
    deal_id: str
    field_key: TruthFieldKey
    value: str | None = None
    confidence: float = Field(default=0.5, ge=0.0, le=1.0)
    source: TruthFieldSource | None = None
    source_id: str | None = None
    contact_id: str | None = None
    champion_strength: ChampionStrength | None = None
    next_step_date: date | None = None
    last_updated_at: datetime | None = None
    created_at: datetime | None = None


class TruthFieldUpsert(BaseModel):
    """Body for creating or replacing a truth field."""

    value: str
    confidence: float = Field(default=0.5, ge=0.0, le=1.0)
    source: TruthFieldSource = TruthFieldSource.MANUAL
    source_id: str | None = None
    contact_id: str | None = None
    champion_strength: ChampionStrength | None = None
    next_step_date: date | None = None


class ExtractedTruthValue(BaseModel):
    """One field extracted from a meeting transcript or email."""

    value: str
    confidence: float = Field(ge=0.0, le=1.0)
    contact_name: str | None = None
    due_date: date | None = None


class ExtractedTruthFields(BaseModel):
    pain: ExtractedTruthValue | None = None
    success_metric: ExtractedTruthValue | None = None
    champion: ExtractedTruthValue | None = None
    economic_buyer: ExtractedTruthValue | None = None
    next_step: ExtractedTruthValue | None = None
    top_risks: ExtractedTruthValue | None = None


class ClarityBreakdown(BaseModel):
    """Clarity score total (0-100) with the per-field points."""

    total: int = 0
    breakdown: dict[str, int] = Field(default_factory=dict)


class TruthSnapshotItem(BaseModel):
    field_key: TruthFieldKey
    value: str | None = None
    confidence: float = 0.0
    source: TruthFieldSource | None = None
    contact_name: str | None = None
    champion_strength: ChampionStrength | None = None
    next_step_date: date | None = None


class ClarificationQuestion(BaseModel):
    field_key: TruthFieldKey
    question: str
    current_value: str | None = None
    confidence: float = 0.0
    suggested_options: list[str] | None = None


# ── Close Plan ──────────────────────────────────────────────────────────────


class ClosePlanItem(BaseModel):
    id: str | None = None
    deal_id: str
    milestone_key: MilestoneKey
    title: str
    owner_id: str | None = None
    due_date: date | None = None
    status: MilestoneStatus = MilestoneStatus.PENDING
    blocker_note: str | None = None
    sort_order: int = 0
    completed_at: datetime | None = None
    completed_by: str | None = None
    notes: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


class ClosePlanItemUpdate(BaseModel):
    status: MilestoneStatus | None = None
    owner_id: str | None = None
    due_date: date | None = None
    blocker_note: str | None = None
    notes: str | None = None


class ClosePlanProgress(BaseModel):
    completed: int = 0
    total: int = 1
    overdue: int = 0
    progress_pct: int = 0


# ── Scores ──────────────────────────────────────────────────────────────────


class DealClarityScore(BaseModel):
    """Denormalized clarity and momentum score row (one per deal)."""

    deal_id: str
    clarity_score: int = 0
    next_step_score: int = 0
    economic_buyer_score: int = 0
    champion_score: int = 0
    success_metric_score: int = 0
    risks_score: int = 0
    close_plan_completed: int = 0
    close_plan_total: int = 6
    close_plan_overdue: int = 0
    momentum_score: int = 50
    last_calculated_at: datetime | None = None


class DealMomentumData(BaseModel):
    momentum_score: int = 50
    clarity_score: int = 0
    health_score: int | None = None
    risk_score: int | None = None
    close_plan_completed: int = 0
    close_plan_total: int = 6
    close_plan_overdue: int = 0


class DealNeedingAttention(BaseModel):
    deal_id: str
    deal_name: str
    company_name: str | None = None
    deal_value: float | None = None
    deal_stage: str | None = None
    clarity_score: int = 0
    momentum_score: int = 50
    health_status: str = HealthStatus.UNKNOWN.value
    risk_level: str = RiskLevel.UNKNOWN.value
    close_plan_progress: int = 0
    owner_user_id: str | None = None


# ── Health & Alerts ─────────────────────────────────────────────────────────


class DealHealthScore(BaseModel):
    """Latest computed health signals for a deal."""

    id: str | None = None
    deal_id: str
    overall_health_score: int = 50
    health_status: HealthStatus = HealthStatus.UNKNOWN
    risk_level: RiskLevel = RiskLevel.UNKNOWN
    risk_score: int | None = None
    days_in_current_stage: int = 0
    days_since_last_activity: int | None = None
    sentiment_trend: str | None = None
    avg_sentiment_last_3_meetings: float | None = None
    meeting_count_last_30_days: int = 0
    avg_response_time_hours: float | None = None
    calculated_at: datetime | None = None


class RuleConditions(BaseModel):
    """Optional gates a deal must pass before a rule is evaluated."""

    stage: str | None = None
    deal_value_min: float | None = None
    deal_value_max: float | None = None
    has_close_date: bool = False


class DealHealthRule(BaseModel):
    id: str | None = None
    rule_name: str
    rule_type: RuleType
    description: str | None = None
    threshold_value: float
    threshold_operator: ThresholdOperator
    threshold_unit: str | None = None
    alert_severity: AlertSeverity = AlertSeverity.WARNING
    alert_message_template: str | None = None
    suggested_action_template: str | None = None
    conditions: RuleConditions | None = None
    is_active: bool = True
    is_system_rule: bool = False


class DealHealthAlert(BaseModel):
    id: str | None = None
    deal_id: str
    user_id: str | None = None
    alert_type: AlertType
    severity: AlertSeverity
    title: str
    message: str
    suggested_actions: list[str] = Field(default_factory=list)
    action_priority: ActionPriority = ActionPriority.MEDIUM
    status: AlertStatus = AlertStatus.ACTIVE
    acknowledged_at: datetime | None = None
    acknowledged_by: str | None = None
    resolved_at: datetime | None = None
    dismissed_at: datetime | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime | None = None


class AlertStats(BaseModel):
    total: int = 0
    critical: int = 0
    warning: int = 0
    info: int = 0
    by_type: dict[str, int] = Field(default_factory=dict)


# ── Migration Review ────────────────────────────────────────────────────────


class MigrationReviewCreate(BaseModel):
    deal_id: str
    reason: str
    original_company: str | None = None
    original_contact_name: str | None = None
    original_contact_email: str | None = None
    suggested_company_id: str | None = None
    suggested_contact_id: str | None = None


class MigrationReviewRead(BaseModel):
    id: str
    deal_id: str
    reason: str
    status: MigrationReviewStatus = MigrationReviewStatus.PENDING
    original_company: str | None = None
    original_contact_name: str | None = None
    original_contact_email: str | None = None
    suggested_company_id: str | None = None
    suggested_contact_id: str | None = None
    resolution_notes: str | None = None
    flagged_at: datetime | None = None
    resolved_at: datetime | None = None
    resolved_by: str | None = None
    deal_name: str | None = None
    deal_value: float | None = None
    deal_owner_id: str | None = None


class MigrationReviewResolve(BaseModel):
    company_id: str
    contact_id: str
    notes: str | None = None


# ── Companies & Contacts ────────────────────────────────────────────────────


class CompanyCreate(BaseModel):
    name: str
    domain: str | None = None


class CompanyRead(BaseModel):
    id: str
    name: str
    domain: str | None = None
    created_at: datetime | None = None


class ContactCreate(BaseModel):
    name: str
    email: str | None = None
    title: str | None = None
    company_id: str | None = None


class ContactRead(BaseModel):
    id: str
    name: str
    email: str | None = None
    title: str | None = None
    company_id: str | None = None
    created_at: datetime | None = None
