"""Deal truth scoring: clarity, close plan progress, momentum, attention triage.

The six truth fields (pain, success_metric, champion, economic_buyer,
next_step, top_risks) answer "do we actually know this deal?". This module
turns fetched truth field and close plan rows into scores; it never touches
the database. DealTruthService persists the results.

Clarity points (total = 100):
    next_step:       30 with a date, 15 without
    economic_buyer:  25 linked to a contact, else 20 / 12 / 5 by confidence
    champion:        20 / 15 / 10 / 8 by strength when linked, else 5
    success_metric:  15 / 10 / 5 by confidence
    top_risks:       10 when documented
    pain:             0 (tracked for context only)

Momentum:
    round(clarity * 0.55 + (100 - risk) * 0.25 + health * 0.20)
    minus 5 per overdue milestone (max 20), clamped to 0-100.
    Missing health and risk scores default to 50.

Exports:
    TRUTH_FIELD_METADATA, CRITICAL_FIELDS, DEFAULT_CLOSE_PLAN,
    calculate_clarity_score, calculate_close_plan_progress,
    calculate_momentum_score, build_truth_snapshot, missing_critical_fields,
    low_confidence_fields, generate_clarification_questions,
    plan_extracted_truth_updates, default_close_plan, deal_needs_attention,
    select_deals_needing_attention
"""

from __future__ import annotations

import math
from collections.abc import Iterable, Mapping
from datetime import date
from typing import Any

from src.app.deals.schemas import (
    ClarificationQuestion,
    ClarityBreakdown,
    ClosePlanItem,
    ClosePlanProgress,
    DealNeedingAttention,
    DealTruthField,
    ExtractedTruthFields,
    MilestoneKey,
    MilestoneStatus,
    TruthFieldKey,
    TruthFieldSource,
    TruthFieldUpsert,
    TruthSnapshotItem,
)

# ── Field Metadata ──────────────────────────────────────────────────────────

TRUTH_FIELD_METADATA: dict[str, dict[str, Any]] = {
    TruthFieldKey.NEXT_STEP.value: {
        "label": "Next Step",
        "description": "What is the next concrete, dated action?",
        "max_points": 30,
        "priority": 1,
    },
    TruthFieldKey.ECONOMIC_BUYER.value: {
        "label": "Economic Buyer",
        "description": "Who controls the budget and can approve the purchase?",
        "max_points": 25,
        "priority": 2,
    },
    TruthFieldKey.CHAMPION.value: {
        "label": "Champion",
        "description": "Who is advocating for this solution internally?",
        "max_points": 20,
        "priority": 3,
    },
    TruthFieldKey.SUCCESS_METRIC.value: {
        "label": "Success Metric",
        "description": "How will the customer measure if the solution is working?",
        "max_points": 15,
        "priority": 4,
    },
    TruthFieldKey.PAIN.value: {
        "label": "Pain Point",
        "description": "What problem is the customer trying to solve?",
        "max_points": 0,
        "priority": 5,
    },
    TruthFieldKey.TOP_RISKS.value: {
        "label": "Top Risks",
        "description": "What could prevent this deal from closing?",
        "max_points": 10,
        "priority": 6,
    },
}

CRITICAL_FIELDS: tuple[str, ...] = (
    TruthFieldKey.NEXT_STEP.value,
    TruthFieldKey.ECONOMIC_BUYER.value,
    TruthFieldKey.CHAMPION.value,
    TruthFieldKey.SUCCESS_METRIC.value,
)

DEFAULT_CLOSE_PLAN: tuple[tuple[MilestoneKey, str], ...] = (
    (MilestoneKey.SUCCESS_CRITERIA, "Success criteria confirmed"),
    (MilestoneKey.STAKEHOLDERS_MAPPED, "Stakeholders mapped"),
    (MilestoneKey.SOLUTION_FIT, "Solution fit confirmed"),
    (MilestoneKey.COMMERCIALS_ALIGNED, "Commercials aligned"),
    (MilestoneKey.LEGAL_PROCUREMENT, "Legal/procurement progressing"),
    (MilestoneKey.SIGNATURE_KICKOFF, "Signature + kickoff scheduled"),
)

LOW_CONFIDENCE_THRESHOLD = 0.6
ATTENTION_HEALTH_STATUSES = frozenset({"warning", "critical", "stalled"})
ATTENTION_RISK_LEVELS = frozenset({"high", "critical"})

_CHAMPION_POINTS = {"strong": 20, "moderate": 15, "weak": 10}


def _key(field: DealTruthField) -> str:
    return field.field_key.value if hasattr(field.field_key, "value") else str(field.field_key)


def _has_value(field: DealTruthField | None) -> bool:
    return field is not None and bool(field.value and field.value.strip())


def _by_key(fields: Iterable[DealTruthField]) -> dict[str, DealTruthField]:
    return {_key(f): f for f in fields}


# ── Clarity ─────────────────────────────────────────────────────────────────


def _score_field(field: DealTruthField) -> int:
    key = _key(field)
    if key == TruthFieldKey.NEXT_STEP.value:
        return 30 if field.next_step_date else 15
    if key == TruthFieldKey.ECONOMIC_BUYER.value:
        if field.contact_id:
            return 25
        if field.confidence >= 0.8:
            return 20
        if field.confidence >= 0.5:
            return 12
        return 5
    if key == TruthFieldKey.CHAMPION.value:
        if not field.contact_id:
            return 5
        strength = field.champion_strength.value if field.champion_strength else None
        return _CHAMPION_POINTS.get(strength, 8)
    if key == TruthFieldKey.SUCCESS_METRIC.value:
        if field.confidence >= 0.7:
            return 15
        if field.confidence >= 0.4:
            return 10
        return 5
    if key == TruthFieldKey.TOP_RISKS.value:
        return 10
    return 0


def calculate_clarity_score(fields: Iterable[DealTruthField]) -> ClarityBreakdown:
    """Score truth field completeness (0-100) with a per-field breakdown.

    Fields with an empty or whitespace-only value score 0.
    """
    breakdown = {key.value: 0 for key in TruthFieldKey}
    for field in fields:
        if not _has_value(field):
            continue
        breakdown[_key(field)] = _score_field(field)
    return ClarityBreakdown(total=sum(breakdown.values()), breakdown=breakdown)


# ── Close Plan ──────────────────────────────────────────────────────────────


def _status(item: ClosePlanItem) -> str:
    return item.status.value if hasattr(item.status, "value") else str(item.status)


def calculate_close_plan_progress(
    items: Iterable[ClosePlanItem],
    today: date | None = None,
) -> ClosePlanProgress:
    """Count completed, remaining and overdue milestones.

    Skipped milestones are excluded from the total. The reported total is
    floored at 1; progress_pct is 0 when nothing is tracked.
    """
    today = today or date.today()
    completed = total = overdue = 0
    for item in items:
        status = _status(item)
        if status == MilestoneStatus.COMPLETED.value:
            completed += 1
        if status != MilestoneStatus.SKIPPED.value:
            total += 1
        if (
            status not in (MilestoneStatus.COMPLETED.value, MilestoneStatus.SKIPPED.value)
            and item.due_date is not None
            and item.due_date < today
        ):
            overdue += 1

    return ClosePlanProgress(
        completed=completed,
        total=max(total, 1),
        overdue=overdue,
        progress_pct=(completed * 100) // total if total > 0 else 0,
    )


def default_close_plan(deal_id: str, owner_id: str | None = None) -> list[ClosePlanItem]:
    """The six standard milestones, sort_order 1-6."""
    return [
        ClosePlanItem(
            deal_id=deal_id,
            milestone_key=key,
            title=title,
            owner_id=owner_id,
            sort_order=position,
        )
        for position, (key, title) in enumerate(DEFAULT_CLOSE_PLAN, start=1)
    ]


# ── Momentum ────────────────────────────────────────────────────────────────


def calculate_momentum_score(
    clarity_score: int,
    health_score: int | None = None,
    risk_score: int | None = None,
    overdue_milestones: int = 0,
) -> int:
    """Blend clarity, inverted risk and health into a 0-100 momentum score."""
    health = 50 if health_score is None else health_score
    inverted_risk = 100 - (50 if risk_score is None else risk_score)
    weighted = clarity_score * 0.55 + inverted_risk * 0.25 + health * 0.20
    penalty = min(overdue_milestones * 5, 20)
    momentum = int(math.floor(weighted + 0.5)) - penalty
    return max(0, min(100, momentum))


# ── Snapshots & Gaps ────────────────────────────────────────────────────────


def build_truth_snapshot(
    fields: Iterable[DealTruthField],
    contact_names: Mapping[str, str] | None = None,
) -> list[TruthSnapshotItem]:
    """Truth fields in display priority order, with linked contact names."""
    contact_names = contact_names or {}
    ordered = sorted(fields, key=lambda f: TRUTH_FIELD_METADATA[_key(f)]["priority"])
    return [
        TruthSnapshotItem(
            field_key=f.field_key,
            value=f.value,
            confidence=f.confidence,
            source=f.source,
            contact_name=contact_names.get(f.contact_id) if f.contact_id else None,
            champion_strength=f.champion_strength,
            next_step_date=f.next_step_date,
        )
        for f in ordered
    ]


def missing_critical_fields(fields: Iterable[DealTruthField]) -> list[str]:
    """Critical keys with no value recorded."""
    present = {_key(f) for f in fields if f.value is not None}
    return [key for key in CRITICAL_FIELDS if key not in present]


def low_confidence_fields(
    fields: Iterable[DealTruthField],
    threshold: float = LOW_CONFIDENCE_THRESHOLD,
) -> list[DealTruthField]:
    """Valued fields below the threshold, least confident first."""
    flagged = [f for f in fields if f.value is not None and f.confidence < threshold]
    return sorted(flagged, key=lambda f: f.confidence)


def generate_clarification_questions(
    fields: Iterable[DealTruthField],
    deal_name: str,
    contacts: list[dict[str, str]] | None = None,
) -> list[ClarificationQuestion]:
    """Questions for a rep about missing or shaky economic buyer, champion and next step."""
    by_key = _by_key(fields)
    options = [c["name"] for c in contacts] if contacts else None
    questions: list[ClarificationQuestion] = []

    eb = by_key.get(TruthFieldKey.ECONOMIC_BUYER.value)
    if eb is None or (eb.value and eb.confidence < LOW_CONFIDENCE_THRESHOLD):
        if contacts:
            text = f"Who is the economic buyer for {deal_name}?"
        else:
            who = (eb.value if eb else None) or "this person"
            text = f"Is {who} the economic buyer for {deal_name}?"
        questions.append(
            ClarificationQuestion(
                field_key=TruthFieldKey.ECONOMIC_BUYER,
                question=text,
                current_value=(eb.value if eb else None) or None,
                confidence=eb.confidence if eb else 0.0,
                suggested_options=options,
            )
        )

    champion = by_key.get(TruthFieldKey.CHAMPION.value)
    if champion is None or (champion.value and champion.confidence < LOW_CONFIDENCE_THRESHOLD):
        questions.append(
            ClarificationQuestion(
                field_key=TruthFieldKey.CHAMPION,
                question=f"Who is the champion for {deal_name}?",
                current_value=(champion.value if champion else None) or None,
                confidence=champion.confidence if champion else 0.0,
                suggested_options=options,
            )
        )

    next_step = by_key.get(TruthFieldKey.NEXT_STEP.value)
    if next_step is None or not next_step.value or not next_step.next_step_date:
        if next_step is not None and next_step.value:
            text = f"What date is the next step for {deal_name}?"
        else:
            text = f"What's the next step for {deal_name}?"
        questions.append(
            ClarificationQuestion(
                field_key=TruthFieldKey.NEXT_STEP,
                question=text,
                current_value=(next_step.value if next_step else None) or None,
                confidence=next_step.confidence if next_step else 0.0,
            )
        )

    return questions


# ── Extraction Merge ────────────────────────────────────────────────────────


def plan_extracted_truth_updates(
    existing: Iterable[DealTruthField],
    extracted: ExtractedTruthFields,
    source: TruthFieldSource,
    source_id: str | None = None,
) -> tuple[list[tuple[str, TruthFieldUpsert]], list[str]]:
    """Decide which extracted values overwrite the stored ones.

    An existing field is kept when it is at least as confident as the new
    value and was not itself AI-inferred.

    Returns:
        (upserts, skipped) where upserts is a list of (field_key, payload).
    """
    current = _by_key(existing)
    upserts: list[tuple[str, TruthFieldUpsert]] = []
    skipped: list[str] = []

    for key in TruthFieldKey:
        extraction = getattr(extracted, key.value)
        if extraction is None:
            continue
        stored = current.get(key.value)
        if (
            stored is not None
            and stored.confidence >= extraction.confidence
            and stored.source != TruthFieldSource.AI_INFERRED
        ):
            skipped.append(key.value)
            continue

        payload = TruthFieldUpsert(
            value=extraction.value,
            confidence=extraction.confidence,
            source=source,
            source_id=source_id,
        )
        if key == TruthFieldKey.NEXT_STEP and extraction.due_date:
            payload.next_step_date = extraction.due_date
        upserts.append((key.value, payload))

    return upserts, skipped


# ── Attention Triage ────────────────────────────────────────────────────────


def deal_needs_attention(
    clarity_score: int | None,
    health_status: str | None,
    risk_level: str | None,
    min_clarity: int = 50,
) -> bool:
    """Low clarity, an unhealthy status, or an elevated risk level."""
    return (
        (clarity_score or 0) < min_clarity
        or health_status in ATTENTION_HEALTH_STATUSES
        or risk_level in ATTENTION_RISK_LEVELS
    )


def select_deals_needing_attention(
    rows: Iterable[Mapping[str, Any]],
    min_clarity: int = 50,
    owner_id: str | None = None,
    limit: int = 10,
) -> list[DealNeedingAttention]:
    """Filter and rank active deals for the attention list.

    Each row carries deal columns (deal_id, deal_name, company_name,
    deal_value, deal_stage, deal_status, owner_user_id) joined with its
    optional clarity, health and risk columns. Rows are ranked by momentum
    ascending (missing counts as 0), then by value descending with missing
    values last.
    """
    selected = [
        row
        for row in rows
        if row.get("deal_status", "active") == "active"
        and (owner_id is None or row.get("owner_user_id") == owner_id)
        and deal_needs_attention(
            row.get("clarity_score"),
            row.get("health_status"),
            row.get("risk_level"),
            min_clarity,
        )
    ]
    selected.sort(
        key=lambda r: (
            r.get("momentum_score") or 0,
            r.get("deal_value") is None,
            -(r.get("deal_value") or 0),
        )
    )

    results: list[DealNeedingAttention] = []
    for row in selected[:limit]:
        plan_total = row.get("close_plan_total") or 0
        plan_completed = row.get("close_plan_completed") or 0
        results.append(
            DealNeedingAttention(
                deal_id=row["deal_id"],
                deal_name=row.get("deal_name") or "",
                company_name=row.get("company_name"),
                deal_value=row.get("deal_value"),
                deal_stage=row.get("deal_stage"),
                clarity_score=row.get("clarity_score") or 0,
                momentum_score=(
                    50 if row.get("momentum_score") is None else row["momentum_score"]
                ),
                health_status=row.get("health_status") or "unknown",
                risk_level=row.get("risk_level") or "unknown",
                close_plan_progress=(plan_completed * 100 // plan_total) if plan_total else 0,
                owner_user_id=row.get("owner_user_id"),
            )
        )
    return results
