"""Tests for the reconciliation analyses and ReconciliationAnalyzer dispatch."""

from __future__ import annotations

from datetime import datetime

import pytest

from src.app.reconciliation.analysis import (
    ReconciliationAnalyzer,
    analyze_duplicates,
    analyze_matching,
    analyze_orphans,
    analyze_overview,
    analyze_statistics,
    export_rows,
)
from src.app.reconciliation.schemas import (
    AnalysisFilter,
    AnalysisType,
    ReconciliationDealRead,
    SalesActivityRead,
)

TENANT = "tenant-1"


def _activity(id: str, **kwargs) -> SalesActivityRead:
    return SalesActivityRead(id=id, tenant_id=TENANT, **kwargs)


def _deal(id: str, **kwargs) -> ReconciliationDealRead:
    kwargs.setdefault("name", f"Deal {id}")
    return ReconciliationDealRead(id=id, tenant_id=TENANT, **kwargs)


@pytest.fixture
def activities() -> list[SalesActivityRead]:
    return [
        _activity(
            "a1",
            client_name="Acme Ltd",
            amount=1000,
            date=datetime(2024, 3, 1, 9),
            deal_id="d1",
            user_id="u1",
            created_at=datetime(2024, 3, 1, 9),
        ),
        _activity(
            "a2",
            client_name="Globex",
            amount=500,
            date=datetime(2024, 3, 5, 12),
            user_id="u1",
        ),
        _activity("a3", type="call", client_name="Initech", date=datetime(2024, 3, 2)),
    ]


@pytest.fixture
def deals() -> list[ReconciliationDealRead]:
    return [
        _deal(
            "d1",
            company="Acme",
            value=1000,
            stage="closed_won",
            stage_changed_at=datetime(2024, 3, 1),
            owner_id="u1",
        ),
        _deal(
            "d2",
            company="Globex Corporation",
            value=480,
            stage="closed_won",
            stage_changed_at=datetime(2024, 3, 6),
            owner_id="u2",
        ),
        _deal("d3", company="Initech", value=900, stage="proposal"),
    ]


# ── Overview ──────────────────────────────────────────────────────────────────


class TestOverview:
    def test_counts_and_revenue(self, activities, deals) -> None:
        data = analyze_overview(activities, deals)
        assert data["total_sales_activities"] == 2
        assert data["total_won_deals"] == 2
        assert data["orphan_activities"] == 1
        assert data["orphan_deals"] == 1
        assert data["total_activity_revenue"] == 1500.0
        assert data["total_deal_revenue"] == 1480.0
        assert data["orphan_activity_revenue"] == 500.0
        assert data["orphan_deal_revenue"] == 480.0
        assert data["activity_linkage_rate"] == 50.0
        assert data["overall_data_quality_score"] == 50.0

    def test_empty_data(self) -> None:
        data = analyze_overview([], [])
        assert data["overall_data_quality_score"] == 0.0
        assert data["deal_linkage_rate"] == 0.0


# ── Orphans ───────────────────────────────────────────────────────────────────


class TestOrphans:
    def test_orphans_and_priorities(self, activities, deals) -> None:
        data = analyze_orphans(activities, deals)
        assert [a["id"] for a in data["orphan_activities"]] == ["a2"]
        assert data["orphan_activities"][0]["priority_level"] == "revenue_risk"
        assert [d["id"] for d in data["orphan_deals"]] == ["d2"]
        assert data["orphan_deals"][0]["priority_level"] == "revenue_tracking"
        assert data["summary"]["total_orphan_deal_revenue"] == 480.0

    def test_sorted_by_amount_with_missing_last(self) -> None:
        acts = [
            _activity("small", amount=100, date=datetime(2024, 1, 1)),
            _activity("none", amount=None, date=datetime(2024, 1, 2)),
            _activity("large", amount=300, date=datetime(2024, 1, 3)),
        ]
        data = analyze_orphans(acts, [])
        assert [a["id"] for a in data["orphan_activities"]] == ["large", "small", "none"]
        assert data["orphan_activities"][2]["priority_level"] == "data_integrity"


# ── Duplicates ────────────────────────────────────────────────────────────────


class TestDuplicates:
    def test_same_client_same_day_grouped(self, activities) -> None:
        activities.append(
            _activity(
                "a4",
                client_name=" acme ltd ",
                amount=200,
                date=datetime(2024, 3, 1, 15),
                deal_id="d1",
                created_at=datetime(2024, 3, 2),
            )
        )
        data = analyze_duplicates(activities)
        assert data["summary"]["total_duplicate_groups"] == 1
        group = data["duplicate_groups"][0]
        assert group["client_name"] == "Acme Ltd"
        assert group["date"] == "2024-03-01"
        assert group["activity_ids"] == ["a1", "a4"]
        assert group["unique_deals"] == 1
        assert group["total_amount"] == 1200.0

    def test_unlinked_activities_ignored(self) -> None:
        acts = [
            _activity("x", client_name="Acme", date=datetime(2024, 3, 1)),
            _activity("y", client_name="Acme", date=datetime(2024, 3, 1)),
        ]
        assert analyze_duplicates(acts)["duplicate_groups"] == []


# ── Matching ──────────────────────────────────────────────────────────────────


class TestMatching:
    def test_suggests_orphan_pair(self, activities, deals) -> None:
        data = analyze_matching(activities, deals)
        assert data["summary"]["total_matches"] == 1
        match = data["all_matches"][0]
        assert (match["activity_id"], match["deal_id"]) == ("a2", "d2")
        assert match["days_difference"] == 0
        assert match["name_similarity"] == 0.95
        assert match["confidence_score"] == 38 + 30 + 30
        assert match["confidence_level"] == "high_confidence"
        assert data["high_confidence"] == [match]

    def test_keeps_best_deal_per_activity(self, activities, deals) -> None:
        deals.append(
            _deal(
                "d4",
                company="Globex",
                value=500,
                stage="closed_won",
                stage_changed_at=datetime(2024, 3, 5),
            )
        )
        data = analyze_matching(activities, deals)
        assert [m["deal_id"] for m in data["all_matches"]] == ["d4"]
        assert data["all_matches"][0]["confidence_score"] == 100

    def test_date_window_excludes_pairs(self, activities, deals) -> None:
        activities[1] = activities[1].model_copy(update={"date": datetime(2024, 5, 1)})
        assert analyze_matching(activities, deals)["all_matches"] == []

    def test_threshold_filters(self, activities, deals) -> None:
        data = analyze_matching(activities, deals, confidence_threshold=99)
        assert data["summary"]["total_matches"] == 0
        assert data["summary"]["confidence_threshold"] == 99


# ── Statistics ────────────────────────────────────────────────────────────────


class TestStatistics:
    def test_per_owner_rows(self, activities, deals) -> None:
        data = analyze_statistics(activities, deals, {"u1": "Ada"})
        assert len(data["user_statistics"]) == 1
        row = data["user_statistics"][0]
        assert row["user_name"] == "Ada"
        assert row["total_sales_activities"] == 2
        assert row["orphan_activities"] == 1
        assert row["total_won_deals"] == 1
        assert row["user_linkage_rate"] == 50.0
        assert data["summary"]["total_combined_revenue"] == 2500.0
        assert data["summary"]["average_linkage_rate"] == 50.0


# ── Analyzer ──────────────────────────────────────────────────────────────────


class FakeReconciliationRepository:
    def __init__(self, activities, deals) -> None:
        self.activities = activities
        self.deals = deals
        self.filters: list[AnalysisFilter | None] = []

    async def list_activities(self, tenant_id, filters=None):
        self.filters.append(filters)
        return self.activities

    async def list_deals(self, tenant_id, filters=None):
        return self.deals


class TestReconciliationAnalyzer:
    @pytest.mark.asyncio
    async def test_statistics_resolves_user_names(self, activities, deals) -> None:
        requested: list[list[str]] = []

        async def user_names(tenant_id, ids):
            requested.append(ids)
            return {"u1": "Ada"}

        analyzer = ReconciliationAnalyzer(
            FakeReconciliationRepository(activities, deals), user_names=user_names
        )
        result = await analyzer.run(TENANT, AnalysisType.STATISTICS)
        assert requested == [["u1", "u2"]]
        assert result["analysis_type"] == "statistics"
        assert result["filters"] == {}
        assert result["data"]["user_statistics"][0]["user_name"] == "Ada"

    @pytest.mark.asyncio
    async def test_filters_passed_and_echoed(self, activities, deals) -> None:
        repo = FakeReconciliationRepository(activities, deals)
        filters = AnalysisFilter(user_id="u1")
        result = await ReconciliationAnalyzer(repo).run(TENANT, AnalysisType.OVERVIEW, filters)
        assert repo.filters == [filters]
        assert result["filters"]["user_id"] == "u1"

    @pytest.mark.asyncio
    async def test_threshold_override(self, activities, deals) -> None:
        analyzer = ReconciliationAnalyzer(FakeReconciliationRepository(activities, deals))
        result = await analyzer.run(TENANT, AnalysisType.MATCHING, confidence_threshold=99)
        assert result["data"]["summary"]["confidence_threshold"] == 99
        assert result["data"]["all_matches"] == []


def test_export_rows_selects_dataset(activities, deals) -> None:
    data = analyze_orphans(activities, deals)
    rows = export_rows(AnalysisType.ORPHANS, data, "orphan_deals")
    assert [r["id"] for r in rows] == ["d2"]
    assert export_rows(AnalysisType.OVERVIEW, {"a": 1}) == [{"a": 1}]


def test_export_rows_matching_by_confidence_level(activities, deals) -> None:
    data = analyze_matching(activities, deals, 0, 30)
    rows = export_rows(AnalysisType.MATCHING, data, "high_confidence")
    assert rows == data["high_confidence"]


@pytest.mark.parametrize(
    ("analysis_type", "dataset"),
    [
        (AnalysisType.ORPHANS, "summary"),
        (AnalysisType.MATCHING, "summary"),
        (AnalysisType.DUPLICATES, "orphan_deals"),
        (AnalysisType.OVERVIEW, "orphan_activities"),
    ],
)
def test_export_rows_rejects_non_row_datasets(analysis_type, dataset) -> None:
    with pytest.raises(ValueError, match="Unknown dataset"):
        export_rows(analysis_type, {"summary": {"total": 1}}, dataset)
