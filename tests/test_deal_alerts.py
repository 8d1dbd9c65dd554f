"""Unit tests for deal health alert rules and AlertService.

Tests cover:
- evaluate_threshold: every operator, unknown operators
- evaluate_rule_conditions: stage key/display name, value bounds, close date gate
- render_template: placeholder substitution and fallbacks
- evaluate_rule: each rule type, severity -> priority mapping
- AlertService: generation, de-duplication, status transitions, stats
"""

from __future__ import annotations

from datetime import date, datetime, timezone

import pytest

from src.app.deals.alerts import (
    DEFAULT_SUGGESTED_ACTION,
    AlertContext,
    AlertService,
    evaluate_rule,
    evaluate_rule_conditions,
    evaluate_threshold,
    render_template,
    summarize_alerts,
)
from src.app.deals.schemas import (
    ActionPriority,
    AlertSeverity,
    AlertStatus,
    AlertType,
    DealCreate,
    DealHealthAlert,
    DealHealthRule,
    DealHealthScore,
    DealRead,
    DealStage,
    RuleConditions,
    RuleType,
    ThresholdOperator,
)

NOW = datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)


def _deal(**kwargs) -> DealRead:
    data = {
        "id": "deal-1",
        "tenant_id": "t-1",
        "name": "Acme Renewal",
        "stage": "proposal",
        "value": 50000.0,
        "owner_id": "owner-1",
    }
    data.update(kwargs)
    return DealRead(**data)


def _health(**kwargs) -> DealHealthScore:
    return DealHealthScore(deal_id="deal-1", **kwargs)


def _rule(rule_type: RuleType, operator: str = ">", threshold: float = 14, unit: str | None = "days", **kwargs) -> DealHealthRule:
    return DealHealthRule(
        rule_name=f"{rule_type.value} rule",
        rule_type=rule_type,
        threshold_value=threshold,
        threshold_operator=ThresholdOperator(operator),
        threshold_unit=unit,
        **kwargs,
    )


def _ctx(deal: DealRead | None = None, **health) -> AlertContext:
    return AlertContext(deal=deal or _deal(), health=_health(**health), now=NOW)


# ── Thresholds ──────────────────────────────────────────────────────────────


class TestEvaluateThreshold:
    @pytest.mark.parametrize(
        ("value", "operator", "threshold", "expected"),
        [
            (15, ">", 14, True),
            (14, ">", 14, False),
            (3, "<", 5, True),
            (14, ">=", 14, True),
            (15, "<=", 14, False),
            (7, "=", 7, True),
            (7, "!=", 8, False),
        ],
    )
    def test_operators(self, value, operator, threshold, expected) -> None:
        assert evaluate_threshold(value, operator, threshold) is expected

    def test_accepts_enum_operator(self) -> None:
        assert evaluate_threshold(20, ThresholdOperator.GT, 14) is True


# ── Conditions ──────────────────────────────────────────────────────────────


class TestRuleConditions:
    def test_no_conditions_pass(self) -> None:
        assert evaluate_rule_conditions(_rule(RuleType.STAGE_VELOCITY), _ctx()) is True

    @pytest.mark.parametrize("stage", ["proposal", "Proposal"])
    def test_stage_matches_key_or_display_name(self, stage: str) -> None:
        rule = _rule(RuleType.STAGE_VELOCITY, conditions=RuleConditions(stage=stage))
        assert evaluate_rule_conditions(rule, _ctx()) is True

    def test_stage_mismatch_blocks(self) -> None:
        rule = _rule(RuleType.STAGE_VELOCITY, conditions=RuleConditions(stage="negotiation"))
        assert evaluate_rule_conditions(rule, _ctx()) is False

    def test_value_bounds(self) -> None:
        too_small = _rule(RuleType.ACTIVITY, conditions=RuleConditions(deal_value_min=100000))
        too_big = _rule(RuleType.ACTIVITY, conditions=RuleConditions(deal_value_max=10000))
        zero_bounds = _rule(RuleType.ACTIVITY, conditions=RuleConditions(deal_value_min=0, deal_value_max=0))
        assert evaluate_rule_conditions(too_small, _ctx()) is False
        assert evaluate_rule_conditions(too_big, _ctx()) is False
        assert evaluate_rule_conditions(zero_bounds, _ctx()) is True

    def test_close_date_gate(self) -> None:
        rule = _rule(RuleType.STAGE_VELOCITY, conditions=RuleConditions(has_close_date=True))
        assert evaluate_rule_conditions(rule, _ctx()) is False
        dated = _deal(expected_close_date=date(2026, 4, 1))
        assert evaluate_rule_conditions(rule, _ctx(dated)) is True


# ── Templates ───────────────────────────────────────────────────────────────


class TestRenderTemplate:
    def test_placeholders(self) -> None:
        ctx = _ctx(
            _deal(company="Acme Corp", expected_close_date=date(2026, 3, 15)),
            days_in_current_stage=21,
            days_since_last_activity=9,
            sentiment_trend="declining",
            avg_sentiment_last_3_meetings=0.42,
            meeting_count_last_30_days=3,
            avg_response_time_hours=36.5,
        )
        rendered = render_template(
            "{{deal_name}}|{{stage}}|{{days_in_stage}}|{{days_inactive}}|{{sentiment_change}}|"
            "{{current_sentiment}}|{{meeting_count}}|{{avg_response_hours}}|{{days_until_close}}|{{company}}",
            ctx,
        )
        assert rendered == "Acme Renewal|Proposal|21|9|20|42|3|36.5|5|Acme Corp"

    def test_fallbacks(self) -> None:
        rendered = render_template(
            "{{days_inactive}} {{current_sentiment}} {{days_until_close}} {{company}} {{sentiment_change}}",
            _ctx(),
        )
        assert rendered == "unknown unknown unknown Unknown Company 10"


# ── Rule Evaluation ─────────────────────────────────────────────────────────


class TestEvaluateRule:
    def test_stage_stall(self) -> None:
        rule = _rule(
            RuleType.STAGE_VELOCITY,
            alert_severity=AlertSeverity.CRITICAL,
            alert_message_template="{{deal_name}} stuck in {{stage}} for {{days_in_stage}} days",
            suggested_action_template="Book a call about {{company}}",
        )
        alert = evaluate_rule(rule, _ctx(days_in_current_stage=20))
        assert alert is not None
        assert alert.alert_type == AlertType.STAGE_STALL
        assert alert.title == "Acme Renewal stuck in Proposal for 20 days"
        assert alert.suggested_actions == ["Book a call about Unknown Company"]
        assert alert.action_priority == ActionPriority.URGENT
        assert alert.user_id == "owner-1"
        assert alert.metadata["rule_name"] == "stage_velocity rule"

    def test_stage_velocity_below_threshold(self) -> None:
        assert evaluate_rule(_rule(RuleType.STAGE_VELOCITY), _ctx(days_in_current_stage=5)) is None

    def test_close_date_approaching(self) -> None:
        rule = _rule(RuleType.STAGE_VELOCITY, operator="<=", threshold=7, unit="days_until_close")
        deal = _deal(expected_close_date=date(2026, 3, 15))
        alert = evaluate_rule(rule, _ctx(deal))
        assert alert.alert_type == AlertType.CLOSE_DATE_APPROACHING
        assert alert.action_priority == ActionPriority.MEDIUM
        assert alert.suggested_actions == [DEFAULT_SUGGESTED_ACTION]
        assert evaluate_rule(rule, _ctx()) is None

    def test_sentiment_drop_needs_declining_trend(self) -> None:
        rule = _rule(RuleType.SENTIMENT, threshold=0.2, unit=None)
        assert evaluate_rule(rule, _ctx(sentiment_trend="declining")).alert_type == AlertType.SENTIMENT_DROP
        assert evaluate_rule(rule, _ctx(sentiment_trend="stable")) is None

    def test_engagement_decline(self) -> None:
        rule = _rule(RuleType.ENGAGEMENT, operator="<", threshold=2, unit="meetings_per_month")
        assert evaluate_rule(rule, _ctx(meeting_count_last_30_days=1)).alert_type == AlertType.ENGAGEMENT_DECLINE
        assert evaluate_rule(rule, _ctx(meeting_count_last_30_days=4)) is None

    def test_no_activity_skips_unknown_days(self) -> None:
        rule = _rule(RuleType.ACTIVITY, threshold=10)
        assert evaluate_rule(rule, _ctx(days_since_last_activity=12)).alert_type == AlertType.NO_ACTIVITY
        assert evaluate_rule(rule, _ctx()) is None

    def test_missed_follow_up(self) -> None:
        rule = _rule(RuleType.RESPONSE_TIME, threshold=48, unit="hours")
        assert evaluate_rule(rule, _ctx(avg_response_time_hours=72)).alert_type == AlertType.MISSED_FOLLOW_UP

    def test_conditions_gate_evaluation(self) -> None:
        rule = _rule(RuleType.ACTIVITY, threshold=10, conditions=RuleConditions(stage="lead"))
        assert evaluate_rule(rule, _ctx(days_since_last_activity=30)) is None


def test_summarize_alerts_counts_active_only() -> None:
    def _alert(severity: AlertSeverity, alert_type: AlertType, status=AlertStatus.ACTIVE) -> DealHealthAlert:
        return DealHealthAlert(
            deal_id="deal-1", alert_type=alert_type, severity=severity, title="t", message="m", status=status
        )

    stats = summarize_alerts(
        [
            _alert(AlertSeverity.CRITICAL, AlertType.STAGE_STALL),
            _alert(AlertSeverity.WARNING, AlertType.NO_ACTIVITY),
            _alert(AlertSeverity.INFO, AlertType.NO_ACTIVITY),
            _alert(AlertSeverity.CRITICAL, AlertType.HIGH_RISK, AlertStatus.RESOLVED),
        ]
    )
    assert (stats.total, stats.critical, stats.warning, stats.info) == (3, 1, 1, 1)
    assert stats.by_type == {"stage_stall": 1, "no_activity": 2}


# ── AlertService ────────────────────────────────────────────────────────────


class TestAlertService:
    async def _seed(self, repo, tenant_id: str) -> str:
        deal = await repo.create_deal(
            tenant_id, DealCreate(name="Globex Expansion", stage=DealStage.NEGOTIATION, owner_id="owner-9")
        )
        await repo.upsert_health_score(
            tenant_id,
            DealHealthScore(deal_id=deal.id, days_in_current_stage=30, days_since_last_activity=15),
        )
        await repo.create_health_rule(tenant_id, _rule(RuleType.STAGE_VELOCITY))
        await repo.create_health_rule(tenant_id, _rule(RuleType.STAGE_VELOCITY, threshold=21))
        await repo.create_health_rule(tenant_id, _rule(RuleType.ACTIVITY, threshold=10))
        await repo.create_health_rule(tenant_id, _rule(RuleType.ACTIVITY, threshold=1, is_active=False))
        return deal.id

    @pytest.mark.asyncio
    async def test_generate_deduplicates_by_type(self, deal_repo, tenant_id) -> None:
        deal_id = await self._seed(deal_repo, tenant_id)
        service = AlertService(deal_repo)

        created = await service.generate_alerts_for_deal(tenant_id, deal_id)
        assert sorted(a.alert_type.value for a in created) == ["no_activity", "stage_stall"]
        assert all(a.user_id == "owner-9" for a in created)

        again = await service.generate_alerts_for_deal(tenant_id, deal_id)
        assert again == []
        assert len(deal_repo.alerts) == 2

    @pytest.mark.asyncio
    async def test_resolved_alert_can_fire_again(self, deal_repo, tenant_id) -> None:
        deal_id = await self._seed(deal_repo, tenant_id)
        service = AlertService(deal_repo)
        created = await service.generate_alerts_for_deal(tenant_id, deal_id)
        stall = next(a for a in created if a.alert_type == AlertType.STAGE_STALL)

        resolved = await service.resolve(tenant_id, stall.id)
        assert resolved.status == AlertStatus.RESOLVED
        assert resolved.resolved_at is not None

        refired = await service.generate_alerts_for_deal(tenant_id, deal_id)
        assert [a.alert_type for a in refired] == [AlertType.STAGE_STALL]

    @pytest.mark.asyncio
    async def test_missing_deal_or_health_raises(self, deal_repo, tenant_id) -> None:
        service = AlertService(deal_repo)
        with pytest.raises(ValueError, match="Deal not found"):
            await service.generate_alerts_for_deal(tenant_id, "00000000-0000-0000-0000-000000000000")

        deal = await deal_repo.create_deal(tenant_id, DealCreate(name="No Signals"))
        with pytest.raises(ValueError, match="No health score"):
            await service.generate_alerts_for_deal(tenant_id, deal.id)

    @pytest.mark.asyncio
    async def test_acknowledge_dismiss_and_stats(self, deal_repo, tenant_id) -> None:
        deal_id = await self._seed(deal_repo, tenant_id)
        service = AlertService(deal_repo)
        created = await service.generate_alerts_for_deal(tenant_id, deal_id)

        acked = await service.acknowledge(tenant_id, created[0].id, "user-1")
        assert acked.status == AlertStatus.ACKNOWLEDGED
        assert acked.acknowledged_by == "user-1"

        stats = await service.alert_stats(tenant_id)
        assert stats.total == 1

        dismissed = await service.dismiss(tenant_id, created[1].id)
        assert dismissed.status == AlertStatus.DISMISSED
        assert (await service.alert_stats(tenant_id)).total == 0

    @pytest.mark.asyncio
    async def test_transition_unknown_alert_raises(self, deal_repo, tenant_id) -> None:
        with pytest.raises(ValueError):
            await AlertService(deal_repo).resolve(tenant_id, "missing")
