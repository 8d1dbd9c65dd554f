"""Reconciliation analysis -- overview, orphans, duplicates, matching, statistics.

Each analysis is a pure function over already-fetched sales activities and
deals. ReconciliationAnalyzer fetches the rows for a tenant (with optional
owner and date filters) and dispatches to the requested analysis.

Revenue-bearing activities are completed activities of type "sale". Won
deals are deals in the closed_won stage. A won deal is orphaned when no
completed sale activity links to it.
"""

from __future__ import annotations

from collections import defaultdict
from collections.abc import Sequence
from datetime import datetime
from typing import Any

import structlog

from src.app.reconciliation.matching import (
    calculate_confidence_score,
    check_company_variations,
    generate_match_analysis,
    parse_datetime,
)
from src.app.reconciliation.repository import ReconciliationRepository
from src.app.reconciliation.schemas import (
    AnalysisFilter,
    AnalysisType,
    ConfidenceLevel,
    ReconciliationDealRead,
    SalesActivityRead,
)

logger = structlog.get_logger(__name__)

WON_STAGE = "closed_won"
MIN_NAME_SIMILARITY = 0.5
MAX_MATCHES = 100


def _is_revenue_activity(activity: SalesActivityRead) -> bool:
    return activity.type == "sale" and activity.status == "completed"


def _is_won(deal: ReconciliationDealRead) -> bool:
    return deal.stage == WON_STAGE


def _round2(value: float) -> float:
    return round(value, 2)


def _pct(part: int, whole: int) -> float:
    return _round2(part * 100 / whole) if whole else 0.0


def _amount(value: float | None) -> float:
    return value or 0.0


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def _linked_deal_ids(activities: Sequence[SalesActivityRead]) -> set[str]:
    return {a.deal_id for a in activities if a.deal_id and _is_revenue_activity(a)}


def _orphan_activities(activities: Sequence[SalesActivityRead]) -> list[SalesActivityRead]:
    return [a for a in activities if _is_revenue_activity(a) and not a.deal_id]


def _orphan_deals(
    activities: Sequence[SalesActivityRead], deals: Sequence[ReconciliationDealRead]
) -> list[ReconciliationDealRead]:
    linked = _linked_deal_ids(activities)
    return [d for d in deals if _is_won(d) and d.id not in linked]


def _desc_key(amount: float | None, when: datetime | None) -> tuple:
    # amount desc with missing amounts last, then most recent first
    ts = parse_datetime(when)
    return (
        amount is None,
        -(amount or 0.0),
        -(ts.timestamp()) if ts is not None else float("inf"),
    )


# ── Overview ────────────────────────────────────────────────────────────────


def analyze_overview(
    activities: Sequence[SalesActivityRead], deals: Sequence[ReconciliationDealRead]
) -> dict[str, Any]:
    """Headline counts, revenue totals, linkage rates and a data quality score."""
    sales = [a for a in activities if _is_revenue_activity(a)]
    won = [d for d in deals if _is_won(d)]
    orphan_acts = _orphan_activities(activities)
    orphan_deals = _orphan_deals(activities, deals)

    total_acts, total_deals = len(sales), len(won)
    linked_acts = total_acts - len(orphan_acts)
    linked_deals = total_deals - len(orphan_deals)

    quality = _pct(linked_acts + linked_deals, total_acts + total_deals)

    return {
        "total_sales_activities": total_acts,
        "total_won_deals": total_deals,
        "orphan_activities": len(orphan_acts),
        "orphan_deals": len(orphan_deals),
        "linked_activities": linked_acts,
        "linked_deals": linked_deals,
        "total_activity_revenue": _round2(sum(_amount(a.amount) for a in sales)),
        "total_deal_revenue": _round2(sum(_amount(d.value) for d in won)),
        "orphan_activity_revenue": _round2(sum(_amount(a.amount) for a in orphan_acts)),
        "orphan_deal_revenue": _round2(sum(_amount(d.value) for d in orphan_deals)),
        "activity_linkage_rate": _pct(linked_acts, total_acts),
        "deal_linkage_rate": _pct(linked_deals, total_deals),
        "overall_data_quality_score": quality,
    }


# ── Orphans ─────────────────────────────────────────────────────────────────


def analyze_orphans(
    activities: Sequence[SalesActivityRead], deals: Sequence[ReconciliationDealRead]
) -> dict[str, Any]:
    """Unlinked revenue activities and won deals, largest amounts first."""
    orphan_acts = sorted(
        _orphan_activities(activities), key=lambda a: _desc_key(a.amount, a.date)
    )
    orphan_deals = sorted(
        _orphan_deals(activities, deals),
        key=lambda d: _desc_key(d.value, d.stage_changed_at),
    )

    activity_rows = [
        {
            "id": a.id,
            "client_name": a.client_name,
            "amount": a.amount,
            "date": _iso(a.date),
            "sales_rep": a.sales_rep,
            "user_id": a.user_id,
            "details": a.details,
            "issue_type": "orphan_activity",
            "priority_level": "revenue_risk" if _amount(a.amount) > 0 else "data_integrity",
        }
        for a in orphan_acts
    ]
    deal_rows = [
        {
            "id": d.id,
            "name": d.name,
            "company": d.company,
            "value": d.value,
            "stage_changed_at": _iso(d.stage_changed_at),
            "owner_id": d.owner_id,
            "issue_type": "orphan_deal",
            "priority_level": "revenue_tracking" if _amount(d.value) > 0 else "data_integrity",
        }
        for d in orphan_deals
    ]

    return {
        "orphan_activities": activity_rows,
        "orphan_deals": deal_rows,
        "summary": {
            "total_orphan_activities": len(activity_rows),
            "total_orphan_deals": len(deal_rows),
            "total_orphan_activity_revenue": _round2(
                sum(_amount(a.amount) for a in orphan_acts)
            ),
            "total_orphan_deal_revenue": _round2(sum(_amount(d.value) for d in orphan_deals)),
        },
    }


# ── Duplicates ──────────────────────────────────────────────────────────────


def analyze_duplicates(activities: Sequence[SalesActivityRead]) -> dict[str, Any]:
    """Linked revenue activities sharing a client name and calendar day."""
    groups: dict[tuple[str, str], list[SalesActivityRead]] = defaultdict(list)
    for activity in activities:
        if not (_is_revenue_activity(activity) and activity.deal_id):
            continue
        day = parse_datetime(activity.date)
        if day is None:
            continue
        name = (activity.client_name or "").strip().lower()
        groups[(name, day.date().isoformat())].append(activity)

    duplicate_groups: list[dict[str, Any]] = []
    for (name, day), members in groups.items():
        if len(members) < 2:
            continue
        members.sort(key=lambda a: parse_datetime(a.created_at) or datetime.min)
        deal_ids = list(dict.fromkeys(a.deal_id for a in members))
        duplicate_groups.append({
            "client_name": members[0].client_name or name,
            "normalized_client_name": name,
            "date": day,
            "activity_count": len(members),
            "unique_deals": len(deal_ids),
            "activity_ids": [a.id for a in members],
            "deal_ids": deal_ids,
            "amounts": [a.amount for a in members],
            "sales_reps": list(dict.fromkeys(a.sales_rep for a in members if a.sales_rep)),
            "total_amount": _round2(sum(_amount(a.amount) for a in members)),
            "issue_type": "same_day_multiple_activities",
        })

    duplicate_groups.sort(key=lambda g: (-g["activity_count"], -g["total_amount"]))

    return {
        "duplicate_groups": duplicate_groups,
        "summary": {
            "total_duplicate_groups": len(duplicate_groups),
            "total_duplicate_activities": sum(g["activity_count"] for g in duplicate_groups),
            "total_revenue_affected": _round2(sum(g["total_amount"] for g in duplicate_groups)),
        },
    }


# ── Matching ────────────────────────────────────────────────────────────────


def analyze_matching(
    activities: Sequence[SalesActivityRead],
    deals: Sequence[ReconciliationDealRead],
    confidence_threshold: int = 50,
    date_window_days: int = 30,
) -> dict[str, Any]:
    """Suggest links between orphan activities and orphan won deals.

    Candidate pairs must fall within the date window and share at least a
    0.5 company-name similarity. Pairs scoring below the threshold are
    dropped, then each activity keeps only its best-scoring deal.
    """
    orphan_acts = _orphan_activities(activities)
    orphan_deals = _orphan_deals(activities, deals)

    candidates: list[dict[str, Any]] = []
    for activity in orphan_acts:
        activity_date = parse_datetime(activity.date)
        if activity_date is None:
            continue
        for deal in orphan_deals:
            deal_date = parse_datetime(deal.stage_changed_at)
            if deal_date is None:
                continue
            days = abs(activity_date - deal_date).days
            if days > date_window_days:
                continue
            similarity = check_company_variations(activity.client_name, deal.company).similarity
            if similarity < MIN_NAME_SIMILARITY:
                continue

            score = calculate_confidence_score(
                activity.client_name,
                deal.company,
                activity.date,
                deal.stage_changed_at,
                activity.amount,
                deal.value,
            )
            if score.total_score < confidence_threshold:
                continue

            analysis = generate_match_analysis(
                activity.client_name,
                deal.company,
                activity.date,
                deal.stage_changed_at,
                activity.amount,
                deal.value,
            )
            candidates.append({
                "activity_id": activity.id,
                "deal_id": deal.id,
                "activity_client_name": activity.client_name,
                "deal_company": deal.company,
                "deal_name": deal.name,
                "activity_amount": activity.amount,
                "deal_value": deal.value,
                "activity_date": _iso(activity.date),
                "deal_date": _iso(deal.stage_changed_at),
                "days_difference": days,
                "name_similarity": _round2(similarity),
                "confidence_score": score.total_score,
                "name_score": score.name_score,
                "date_score": score.date_score,
                "amount_score": score.amount_score,
                "confidence_level": score.level.value,
                "is_recommended": score.is_recommended,
                "reasons": analysis.reasons,
                "risks": analysis.risks,
            })

    candidates.sort(key=lambda m: (-m["confidence_score"], m["days_difference"]))

    best: list[dict[str, Any]] = []
    seen: set[str] = set()
    for match in candidates:
        if match["activity_id"] in seen:
            continue
        seen.add(match["activity_id"])
        best.append(match)
        if len(best) >= MAX_MATCHES:
            break

    by_level = {
        level.value: [m for m in best if m["confidence_level"] == level.value]
        for level in ConfidenceLevel
    }

    return {
        **by_level,
        "all_matches": best,
        "summary": {
            "total_matches": len(best),
            "high_confidence_matches": len(by_level[ConfidenceLevel.HIGH.value]),
            "medium_confidence_matches": len(by_level[ConfidenceLevel.MEDIUM.value]),
            "low_confidence_matches": len(by_level[ConfidenceLevel.LOW.value]),
            "confidence_threshold": confidence_threshold,
            "date_window_days": date_window_days,
        },
    }


# ── Statistics ──────────────────────────────────────────────────────────────


def analyze_statistics(
    activities: Sequence[SalesActivityRead],
    deals: Sequence[ReconciliationDealRead],
    user_names: dict[str, str] | None = None,
) -> dict[str, Any]:
    """Per-owner linkage statistics, highest activity revenue first."""
    user_names = user_names or {}
    linked = _linked_deal_ids(activities)
    rows: dict[str, dict[str, Any]] = {}

    def _row(user_id: str) -> dict[str, Any]:
        if user_id not in rows:
            rows[user_id] = {
                "user_id": user_id,
                "user_name": user_names.get(user_id),
                "total_sales_activities": 0,
                "total_won_deals": 0,
                "orphan_activities": 0,
                "orphan_deals": 0,
                "activity_revenue": 0.0,
                "deal_revenue": 0.0,
            }
        return rows[user_id]

    for activity in activities:
        if not (_is_revenue_activity(activity) and activity.user_id):
            continue
        row = _row(activity.user_id)
        row["total_sales_activities"] += 1
        row["activity_revenue"] += _amount(activity.amount)
        if not activity.deal_id:
            row["orphan_activities"] += 1

    for deal in deals:
        if not (_is_won(deal) and deal.owner_id):
            continue
        row = _row(deal.owner_id)
        row["total_won_deals"] += 1
        row["deal_revenue"] += _amount(deal.value)
        if deal.id not in linked:
            row["orphan_deals"] += 1

    users = [r for r in rows.values() if r["total_sales_activities"] > 0]
    for row in users:
        acts = row["total_sales_activities"]
        row["user_linkage_rate"] = _pct(acts - row["orphan_activities"], acts)
        row["activity_revenue"] = _round2(row["activity_revenue"])
        row["deal_revenue"] = _round2(row["deal_revenue"])
    users.sort(key=lambda r: -r["activity_revenue"])

    average = (
        _round2(sum(r["user_linkage_rate"] for r in users) / len(users)) if users else 0.0
    )

    return {
        "user_statistics": users,
        "summary": {
            "total_users_analyzed": len(users),
            "total_combined_revenue": _round2(
                sum(r["activity_revenue"] + r["deal_revenue"] for r in users)
            ),
            "average_linkage_rate": average,
        },
    }


# ── Analyzer ────────────────────────────────────────────────────────────────


class ReconciliationAnalyzer:
    """Fetches rows for a tenant and runs one analysis over them.

    Args:
        repository: ReconciliationRepository (or a compatible test double).
        confidence_threshold: Default minimum score for suggested matches.
        date_window_days: Default window for candidate pairs.
        user_names: Optional async callable resolving user ids to display names.
    """

    def __init__(
        self,
        repository: ReconciliationRepository,
        confidence_threshold: int = 50,
        date_window_days: int = 30,
        user_names: Any = None,
    ) -> None:
        self._repository = repository
        self._confidence_threshold = confidence_threshold
        self._date_window_days = date_window_days
        self._user_names = user_names

    async def run(
        self,
        tenant_id: str,
        analysis_type: AnalysisType,
        filters: AnalysisFilter | None = None,
        confidence_threshold: int | None = None,
    ) -> dict[str, Any]:
        activities = await self._repository.list_activities(tenant_id, filters)
        deals = await self._repository.list_deals(tenant_id, filters)

        logger.info(
            "reconciliation.analysis_started",
            tenant_id=tenant_id,
            analysis_type=analysis_type.value,
            activities=len(activities),
            deals=len(deals),
        )

        if analysis_type == AnalysisType.OVERVIEW:
            data = analyze_overview(activities, deals)
        elif analysis_type == AnalysisType.ORPHANS:
            data = analyze_orphans(activities, deals)
        elif analysis_type == AnalysisType.DUPLICATES:
            data = analyze_duplicates(activities)
        elif analysis_type == AnalysisType.MATCHING:
            threshold = (
                confidence_threshold
                if confidence_threshold is not None
                else self._confidence_threshold
            )
            data = analyze_matching(activities, deals, threshold, self._date_window_days)
        else:
            names: dict[str, str] = {}
            if self._user_names is not None:
                ids = {a.user_id for a in activities if a.user_id}
                ids |= {d.owner_id for d in deals if d.owner_id}
                names = await self._user_names(tenant_id, sorted(ids))
            data = analyze_statistics(activities, deals, names)

        return {
            "analysis_type": analysis_type.value,
            "filters": filters.model_dump(mode="json") if filters else {},
            "data": data,
        }


EXPORT_DATASETS: dict[AnalysisType, tuple[str, ...]] = {
    AnalysisType.ORPHANS: ("orphan_activities", "orphan_deals"),
    AnalysisType.DUPLICATES: ("duplicate_groups",),
    AnalysisType.MATCHING: (
        "all_matches",
        *(level.value for level in ConfidenceLevel),
    ),
    AnalysisType.STATISTICS: ("user_statistics",),
}


def resolve_export_dataset(analysis_type: AnalysisType, dataset: str | None) -> str | None:
    """The row list to export; the first listed dataset when none is named.

    Overview has no row lists and exports its counts as one row (None).

    Raises:
        ValueError: ``dataset`` is not a row list of this analysis type.
    """
    allowed = EXPORT_DATASETS.get(analysis_type, ())
    if dataset is None:
        return allowed[0] if allowed else None
    if dataset not in allowed:
        raise ValueError(
            f"Unknown dataset {dataset!r} for {analysis_type.value}; "
            f"expected one of: {', '.join(allowed) or 'none'}"
        )
    return dataset


def export_rows(
    analysis_type: AnalysisType, data: dict[str, Any], dataset: str | None = None
) -> list[dict[str, Any]]:
    """Flat rows for CSV export of one analysis result."""
    key = resolve_export_dataset(analysis_type, dataset)
    if key is None:
        return [data]
    return data.get(key, [])
