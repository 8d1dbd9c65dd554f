"""Tests for deal momentum nudges.

Tests cover:
- extract_date_from_value, should_nudge
- build_truth_display / build_close_plan_display
- generate_recommended_actions ordering and cap
- build_deal_momentum_message Block Kit payload
- MomentumNudgeService.run: connection gating, dedupe, single-deal force,
  unmapped owners, Slack failures
- run_momentum_for_tenants: per-tenant context, currency, tenant failures
- MomentumScheduler.run_once and stop
"""

from __future__ import annotations

from datetime import date, datetime, timezone
from typing import Any

import pytest

from src.app.core.tenant import get_current_tenant
from src.app.deals.momentum import (
    DealMomentumCard,
    MomentumClosePlan,
    MomentumMilestone,
    MomentumNudgeService,
    MomentumScores,
    MomentumTruthField,
    build_close_plan_display,
    build_deal_momentum_message,
    build_truth_display,
    extract_date_from_value,
    generate_recommended_actions,
    run_momentum_for_tenants,
    should_nudge,
)
from src.app.deals.schemas import (
    ClosePlanItem,
    DealCreate,
    DealHealthScore,
    DealStage,
    DealTruthField,
    HealthStatus,
    MilestoneKey,
    MilestoneStatus,
    RiskLevel,
    TruthFieldUpsert,
)
from src.app.deals.scheduler import MomentumScheduler
from src.app.deals.service import DealTruthService
from src.app.schemas.slack import MomentumRunResult, SlackConnection
from src.app.services.slack import SlackAPIError

NOW = datetime(2026, 3, 10, 9, 0, tzinfo=timezone.utc)


# ── Test Doubles ────────────────────────────────────────────────────────────


class FakeSlackSettings:
    def __init__(self, connection: SlackConnection | None, mappings: dict[str, str] | None = None) -> None:
        self.connection = connection
        self.mappings = mappings or {}
        self.failing_tenants: set[str] = set()

    async def get_connection(self, tenant_id: str) -> SlackConnection | None:
        if tenant_id in self.failing_tenants:
            raise RuntimeError("settings unavailable")
        return self.connection

    async def get_slack_user_id(self, tenant_id: str, user_id: str) -> str | None:
        return self.mappings.get(user_id)


class FakeDedupeStore:
    def __init__(self) -> None:
        self.values: dict[str, str] = {}
        self.ttls: dict[str, int] = {}

    async def get(self, key: str) -> str | None:
        return self.values.get(key)

    async def set(self, key: str, value: str, ex: int | None = None) -> None:
        self.values[key] = value
        self.ttls[key] = ex


class FakeSlackClient:
    def __init__(self, failing_users: set[str] | None = None) -> None:
        self.sent: list[dict[str, Any]] = []
        self.failing_users = failing_users or set()

    async def send_direct_message(self, slack_user_id: str, text: str, blocks=None) -> dict[str, Any]:
        if slack_user_id in self.failing_users:
            raise SlackAPIError("chat.postMessage", "channel_not_found")
        self.sent.append({"user": slack_user_id, "text": text, "blocks": blocks})
        return {"channel": f"D{slack_user_id}", "ts": f"17000000{len(self.sent)}.0001"}


def _connection(**kwargs) -> SlackConnection:
    return SlackConnection(tenant_id="t", bot_access_token="xoxb-test", **kwargs)


# ── Pure Helpers ────────────────────────────────────────────────────────────


class TestHelpers:
    @pytest.mark.parametrize(
        ("text", "expected"),
        [
            ("Call on 3/14/2026", "3/14/2026"),
            ("Demo - Jan 15", "Jan 15"),
            ("Kickoff 15 Mar", "15 Mar"),
            ("Send the proposal", None),
            (None, None),
        ],
    )
    def test_extract_date_from_value(self, text, expected) -> None:
        assert extract_date_from_value(text) == expected

    def test_should_nudge(self) -> None:
        assert should_nudge(80, "healthy", "low") is False
        assert should_nudge(80, "stalled", "low") is True
        assert should_nudge(80, "healthy", "high") is True
        assert should_nudge(None, None, None) is True
        assert should_nudge(40, "healthy", "low", clarity_threshold=30) is False

    def test_truth_display_order_and_warnings(self) -> None:
        fields = [
            DealTruthField(deal_id="d", field_key="next_step", value="Demo - Jan 15", confidence=0.9),
            DealTruthField(deal_id="d", field_key="economic_buyer", value="CFO", confidence=0.5),
            DealTruthField(deal_id="d", field_key="champion", value="VP Ops", confidence=0.3),
        ]
        display = build_truth_display(fields)
        assert [f.field_key for f in display] == [
            "pain",
            "success_metric",
            "champion",
            "economic_buyer",
            "next_step",
            "top_risks",
        ]
        by_key = {f.field_key: f for f in display}
        assert by_key["pain"].value is None
        assert by_key["economic_buyer"].is_warning is True
        assert by_key["champion"].is_warning is False
        assert by_key["next_step"].is_warning is False
        assert by_key["next_step"].next_step_date == "Jan 15"
        assert by_key["next_step"].label == "Next Step"

    def test_truth_display_prefers_stored_date(self) -> None:
        fields = [
            DealTruthField(
                deal_id="d", field_key="next_step", value="Demo - Jan 15", next_step_date=date(2026, 3, 20)
            )
        ]
        assert build_truth_display(fields)[4].next_step_date == "2026-03-20"

    def test_close_plan_display(self) -> None:
        items = [
            ClosePlanItem(
                deal_id="d",
                milestone_key=MilestoneKey.SUCCESS_CRITERIA,
                title="Success criteria confirmed",
                status=MilestoneStatus.COMPLETED,
                due_date=date(2026, 3, 1),
                owner_id="u-1",
            ),
            ClosePlanItem(
                deal_id="d",
                milestone_key=MilestoneKey.SOLUTION_FIT,
                title="Solution fit confirmed",
                due_date=date(2026, 3, 5),
            ),
            ClosePlanItem(
                deal_id="d",
                milestone_key=MilestoneKey.LEGAL_PROCUREMENT,
                title="Legal/procurement progressing",
                status=MilestoneStatus.BLOCKED,
                blocker_note="Waiting on MSA redlines",
            ),
        ]
        plan = build_close_plan_display(items, {"u-1": "Robin Diaz"}, now=NOW)
        assert (plan.completed, plan.total, plan.overdue, plan.blocked) == (1, 3, 1, 1)
        assert plan.milestones[0].owner_name == "Robin Diaz"
        assert plan.milestones[0].is_overdue is False
        assert plan.milestones[1].is_overdue is True

    def test_empty_close_plan_defaults_to_six(self) -> None:
        assert build_close_plan_display([], now=NOW).total == 6


class TestRecommendedActions:
    def _known_truth(self) -> list[MomentumTruthField]:
        return [
            MomentumTruthField(field_key="economic_buyer", label="Economic Buyer", value="CFO", confidence=0.9),
            MomentumTruthField(
                field_key="next_step", label="Next Step", value="Demo", confidence=0.9, next_step_date="2026-03-20"
            ),
            MomentumTruthField(field_key="champion", label="Champion", value="VP Ops", confidence=0.8),
            MomentumTruthField(field_key="success_metric", label="Success Metric", value="NPS", confidence=0.5),
        ]

    def test_unknown_deal_gets_truth_actions_first(self) -> None:
        blocked = MomentumMilestone(milestone_key="solution_fit", title="Solution fit confirmed", status="blocked")
        result = generate_recommended_actions(build_truth_display([]), [blocked], "stalled", "critical")
        assert result == [
            "Identify and confirm economic buyer",
            "Set a dated next step",
            "Confirm or strengthen champion relationship",
            "Define success metrics with customer",
        ]

    def test_pipeline_actions_when_truth_is_known(self) -> None:
        milestones = [
            MomentumMilestone(milestone_key="legal_procurement", title="Legal", status="blocked"),
            MomentumMilestone(milestone_key="solution_fit", title="Solution fit", status="pending", is_overdue=True),
        ]
        result = generate_recommended_actions(self._known_truth(), milestones, "stalled", "critical")
        assert result == [
            "Resolve blocked milestone: Legal",
            "Complete overdue: Solution fit",
            "Re-engage key stakeholders",
            "Address critical risks immediately",
        ]

    def test_healthy_known_deal_has_no_actions(self) -> None:
        assert generate_recommended_actions(self._known_truth(), [], "healthy", "low") == []


def _card(**kwargs) -> DealMomentumCard:
    data = {
        "deal_id": "deal-42",
        "deal_name": "Initech Rollout",
        "company": "Initech",
        "value": 12500,
        "stage": "proposal",
        "stage_name": "Proposal",
        "scores": MomentumScores(momentum=31, clarity=20, health=45, risk=70),
        "truth_fields": build_truth_display([]),
        "close_plan": MomentumClosePlan(),
        "recommended_actions": ["Set a dated next step"],
        "app_url": "https://crm.example.com",
    }
    data.update(kwargs)
    return DealMomentumCard(**data)


class TestMomentumMessage:
    def test_message_structure(self) -> None:
        message = build_deal_momentum_message(_card())
        blocks = message["blocks"]
        assert blocks[0]["type"] == "header"
        assert "Initech Rollout" in blocks[0]["text"]["text"]
        field_texts = [f["text"] for f in blocks[1]["fields"]]
        assert "*Value*\n£12,500" in field_texts
        assert "*Momentum*\n31%" in field_texts
        assert message["text"] == "Initech Rollout needs attention: Momentum 31% | Clarity 20%"

        plan_block = next(b for b in blocks if b.get("text", {}).get("text", "").startswith("*Close Plan*"))
        assert "_No close plan yet_" in plan_block["text"]["text"]

        button = blocks[-1]["elements"][0]
        assert button["url"] == "https://crm.example.com/deals/deal-42"
        assert "value" not in button

    def test_currency_and_no_link(self) -> None:
        message = build_deal_momentum_message(_card(currency_code="USD", app_url=""))
        assert "*Value*\n$12,500" in [f["text"] for f in message["blocks"][1]["fields"]]
        assert message["blocks"][-1]["type"] != "actions"

    def test_long_deal_name_is_truncated(self) -> None:
        message = build_deal_momentum_message(_card(deal_name="x" * 400))
        assert len(message["blocks"][0]["text"]["text"]) <= 150


# ── MomentumNudgeService ────────────────────────────────────────────────────


async def _seed_deal(repo, tenant_id: str, owner: str = "owner-1", stage: DealStage = DealStage.PROPOSAL) -> str:
    deal = await repo.create_deal(
        tenant_id, DealCreate(name="Umbrella Upgrade", value=8000.0, stage=stage, owner_id=owner)
    )
    return deal.id


def _service(repo, settings, client, dedupe=None) -> MomentumNudgeService:
    return MomentumNudgeService(
        deal_repository=repo,
        slack_settings=settings,
        dedupe_store=dedupe or FakeDedupeStore(),
        slack_client_factory=lambda token: client,
        app_url="https://crm.example.com/",
        cooldown_hours=24,
    )


class TestMomentumNudgeService:
    @pytest.mark.asyncio
    async def test_no_connection_sends_nothing(self, deal_repo, tenant_id) -> None:
        await _seed_deal(deal_repo, tenant_id)
        client = FakeSlackClient()
        result = await _service(deal_repo, FakeSlackSettings(None), client).run(tenant_id)
        assert result.nudges_sent == 0
        assert result.deals_evaluated == 0
        assert client.sent == []

    @pytest.mark.asyncio
    async def test_sends_once_per_cooldown(self, deal_repo, tenant_id) -> None:
        deal_id = await _seed_deal(deal_repo, tenant_id)
        await _seed_deal(deal_repo, tenant_id, stage=DealStage.LEAD)
        client = FakeSlackClient()
        dedupe = FakeDedupeStore()
        service = _service(deal_repo, FakeSlackSettings(_connection(), {"owner-1": "U123"}), client, dedupe)

        first = await service.run(tenant_id)
        assert first.nudges_sent == 1
        assert first.deals_evaluated == 1
        assert client.sent[0]["user"] == "U123"
        assert dedupe.ttls[f"momentum_nudge:{deal_id}:U123"] == 24 * 3600

        second = await service.run(tenant_id)
        assert second.nudges_sent == 0
        assert len(client.sent) == 1

    @pytest.mark.asyncio
    async def test_healthy_deal_is_not_nudged(self, deal_repo, tenant_id) -> None:
        deal_id = await _seed_deal(deal_repo, tenant_id)
        for key, value in (
            ("next_step", TruthFieldUpsert(value="Demo", next_step_date=date(2026, 3, 20))),
            ("economic_buyer", TruthFieldUpsert(value="CFO", confidence=0.9)),
            ("champion", TruthFieldUpsert(value="VP Ops")),
        ):
            await deal_repo.upsert_truth_field(tenant_id, deal_id, key, value)
        await deal_repo.upsert_health_score(
            tenant_id,
            DealHealthScore(deal_id=deal_id, health_status=HealthStatus.HEALTHY, risk_level=RiskLevel.LOW),
        )
        await DealTruthService(deal_repo).recalculate_scores(tenant_id, deal_id)

        client = FakeSlackClient()
        service = _service(deal_repo, FakeSlackSettings(_connection(), {"owner-1": "U123"}), client)
        result = await service.run(tenant_id)
        assert result.deals_evaluated == 1
        assert result.nudges_sent == 0

    @pytest.mark.asyncio
    async def test_zero_threshold_falls_back_to_default(self, deal_repo, tenant_id) -> None:
        await _seed_deal(deal_repo, tenant_id)
        client = FakeSlackClient()
        settings = FakeSlackSettings(_connection(clarity_threshold=0), {"owner-1": "U123"})
        # a stored threshold of 0 means "use the default" (50)
        result = await _service(deal_repo, settings, client).run(tenant_id)
        assert result.nudges_sent == 1

    @pytest.mark.asyncio
    async def test_disabled_tenant_skips_scan_but_single_deal_forces(self, deal_repo, tenant_id) -> None:
        deal_id = await _seed_deal(deal_repo, tenant_id)
        client = FakeSlackClient()
        dedupe = FakeDedupeStore()
        dedupe.values[f"momentum_nudge:{deal_id}:U123"] = "recent"
        settings = FakeSlackSettings(_connection(momentum_nudges_enabled=False), {"owner-1": "U123"})
        service = _service(deal_repo, settings, client, dedupe)

        assert (await service.run(tenant_id)).nudges_sent == 0
        forced = await service.run(tenant_id, deal_id=deal_id, currency_code="EUR")
        assert forced.nudges_sent == 1
        fields = [f["text"] for f in client.sent[0]["blocks"][1]["fields"]]
        assert "*Value*\n€8,000" in fields

    @pytest.mark.asyncio
    async def test_unmapped_owner_and_slack_errors(self, deal_repo, tenant_id) -> None:
        await _seed_deal(deal_repo, tenant_id, owner="owner-1")
        failing_id = await _seed_deal(deal_repo, tenant_id, owner="owner-2")
        await _seed_deal(deal_repo, tenant_id, owner="owner-3")
        client = FakeSlackClient(failing_users={"U2"})
        settings = FakeSlackSettings(_connection(), {"owner-1": "U1", "owner-2": "U2"})

        result = await _service(deal_repo, settings, client).run(tenant_id)
        assert result.deals_evaluated == 3
        assert result.nudges_sent == 1
        assert len(result.errors) == 1
        assert result.errors[0].startswith(f"Deal {failing_id}:")
        assert "channel_not_found" in result.errors[0]


class TestRunForTenants:
    @pytest.mark.asyncio
    async def test_runs_each_tenant_in_its_context(self, deal_repo) -> None:
        seen: list[tuple[str, str, str]] = []

        class RecordingService:
            async def run(self, tenant_id: str, deal_id=None, currency_code="GBP"):
                ctx = get_current_tenant()
                seen.append((tenant_id, ctx.schema_name, currency_code))
                return MomentumRunResult(nudges_sent=1, deals_evaluated=2)

        tenants = [
            {"id": "t-1", "slug": "north", "schema_name": "tenant_north", "currency_code": "USD"},
            {"id": "t-2", "slug": "south", "schema_name": "tenant_south", "currency_code": None},
        ]
        totals = await run_momentum_for_tenants(RecordingService(), tenants)
        assert seen == [("t-1", "tenant_north", "USD"), ("t-2", "tenant_south", "GBP")]
        assert (totals.nudges_sent, totals.deals_evaluated) == (2, 4)

    @pytest.mark.asyncio
    async def test_failing_tenant_is_recorded(self, deal_repo, tenant_id) -> None:
        tenant_ok = tenant_id
        await _seed_deal(deal_repo, tenant_ok)
        settings = FakeSlackSettings(_connection(), {"owner-1": "U1"})
        settings.failing_tenants.add("broken")
        client = FakeSlackClient()
        tenants = [
            {"id": "broken", "slug": "broken", "schema_name": "tenant_broken"},
            {"id": tenant_ok, "slug": "ok", "schema_name": "tenant_ok"},
        ]
        totals = await run_momentum_for_tenants(_service(deal_repo, settings, client), tenants)
        assert totals.nudges_sent == 1
        assert totals.errors == ["Tenant broken: settings unavailable"]


# ── MomentumScheduler ───────────────────────────────────────────────────────


class TestMomentumScheduler:
    @pytest.mark.asyncio
    async def test_run_once_scans_listed_tenants(self) -> None:
        calls: list[str] = []

        class CountingService:
            async def run(self, tenant_id: str, deal_id=None, currency_code="GBP"):
                calls.append(tenant_id)
                return MomentumRunResult(nudges_sent=1)

        async def list_tenants():
            return [{"id": "t-1", "slug": "north", "schema_name": "tenant_north"}]

        scheduler = MomentumScheduler(CountingService(), list_tenants)
        await scheduler.run_once()
        assert calls == ["t-1"]

    @pytest.mark.asyncio
    async def test_run_once_survives_tenant_query_failure(self) -> None:
        async def list_tenants():
            raise ConnectionError("database unavailable")

        scheduler = MomentumScheduler(object(), list_tenants)
        await scheduler.run_once()
        assert scheduler.started is False

    def test_stop_before_start_is_noop(self) -> None:
        scheduler = MomentumScheduler(object(), list, hour=7)
        scheduler.stop()
        assert scheduler.started is False
