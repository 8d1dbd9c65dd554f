"""Deal health alert rules -- threshold evaluation, templating, generation.

Health rules are per-tenant rows (DealHealthRule). Each rule inspects one
signal from the deal's latest DealHealthScore and, when its threshold
trips, produces a DealHealthAlert for the deal owner. Only one active
alert of a given type exists per deal at a time.

The pure functions (evaluate_threshold, evaluate_rule_conditions,
render_template, evaluate_rule) carry no I/O so they are tested directly.
AlertService wires them to the DealRepository.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import date, datetime, time, timezone
from typing import Any

import structlog

from src.app.core.monitoring import deal_health_alerts_generated_total
from src.app.deals.schemas import (
    STAGE_NAMES,
    ActionPriority,
    AlertSeverity,
    AlertStats,
    AlertStatus,
    AlertType,
    DealHealthAlert,
    DealHealthRule,
    DealHealthScore,
    DealRead,
    RuleType,
)

logger = structlog.get_logger(__name__)

DEFAULT_ALERT_TITLE = "Deal Alert"
DEFAULT_ALERT_MESSAGE = "This deal requires your attention."
DEFAULT_SUGGESTED_ACTION = "Review deal and take appropriate action."


@dataclass
class AlertContext:
    """Everything a rule may look at for one deal."""

    deal: DealRead
    health: DealHealthScore
    now: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def stage_name(self) -> str:
        return STAGE_NAMES.get(self.deal.stage, self.deal.stage)

    @property
    def deal_value(self) -> float:
        return self.deal.value or 0

    @property
    def expected_close_date(self) -> date | None:
        return self.deal.expected_close_date

    def days_until_close(self) -> int | None:
        """Whole days until the expected close date, rounded up."""
        if self.expected_close_date is None:
            return None
        close = datetime.combine(self.expected_close_date, time.min, tzinfo=timezone.utc)
        return math.ceil((close - self.now).total_seconds() / 86400)


# ── Rule Evaluation ─────────────────────────────────────────────────────────


def evaluate_threshold(value: float, operator: str, threshold: float) -> bool:
    """Compare a signal against a rule threshold. Unknown operators never trip."""
    operator = getattr(operator, "value", operator)
    if operator == ">":
        return value > threshold
    if operator == "<":
        return value < threshold
    if operator == ">=":
        return value >= threshold
    if operator == "<=":
        return value <= threshold
    if operator == "=":
        return value == threshold
    return False


def evaluate_rule_conditions(rule: DealHealthRule, ctx: AlertContext) -> bool:
    """Check the optional gates on a rule before its threshold is looked at.

    A stage condition matches either the stage key or its display name.
    Zero-valued value bounds are ignored.
    """
    conditions = rule.conditions
    if conditions is None:
        return True

    if conditions.stage and conditions.stage not in (ctx.deal.stage, ctx.stage_name):
        return False
    if conditions.deal_value_min and ctx.deal_value < conditions.deal_value_min:
        return False
    if conditions.deal_value_max and ctx.deal_value > conditions.deal_value_max:
        return False
    if conditions.has_close_date and ctx.expected_close_date is None:
        return False
    return True


def _unknown_if_falsy(value: Any) -> Any:
    return value if value else "unknown"


def render_template(template: str, ctx: AlertContext) -> str:
    """Fill ``{{placeholder}}`` tokens from the deal and its health score."""
    health = ctx.health
    days_until_close = ctx.days_until_close()
    sentiment = health.avg_sentiment_last_3_meetings

    replacements = {
        "{{deal_name}}": ctx.deal.name or "Untitled Deal",
        "{{stage}}": ctx.stage_name,
        "{{days_in_stage}}": health.days_in_current_stage,
        "{{days_inactive}}": _unknown_if_falsy(health.days_since_last_activity),
        "{{sentiment_change}}": "20" if health.sentiment_trend == "declining" else "10",
        "{{current_sentiment}}": f"{sentiment * 100:.0f}" if sentiment else "unknown",
        "{{meeting_count}}": health.meeting_count_last_30_days,
        "{{avg_response_hours}}": _unknown_if_falsy(health.avg_response_time_hours),
        "{{days_until_close}}": days_until_close if days_until_close is not None else "unknown",
        "{{company}}": ctx.deal.company or "Unknown Company",
    }

    rendered = template
    for token, value in replacements.items():
        rendered = rendered.replace(token, str(value))
    return rendered


def _triggered_alert_type(rule: DealHealthRule, ctx: AlertContext) -> AlertType | None:
    health = ctx.health
    rule_type = RuleType(rule.rule_type)
    op, threshold, unit = rule.threshold_operator, rule.threshold_value, rule.threshold_unit

    if rule_type == RuleType.STAGE_VELOCITY:
        if unit == "days":
            if evaluate_threshold(health.days_in_current_stage, op, threshold):
                return AlertType.STAGE_STALL
        elif unit == "days_until_close":
            days = ctx.days_until_close()
            if days is not None and evaluate_threshold(days, op, threshold):
                return AlertType.CLOSE_DATE_APPROACHING
    elif rule_type == RuleType.SENTIMENT:
        if health.sentiment_trend == "declining":
            return AlertType.SENTIMENT_DROP
    elif rule_type == RuleType.ENGAGEMENT:
        if unit == "meetings_per_month" and evaluate_threshold(
            health.meeting_count_last_30_days, op, threshold
        ):
            return AlertType.ENGAGEMENT_DECLINE
    elif rule_type == RuleType.ACTIVITY:
        if (
            unit == "days"
            and health.days_since_last_activity is not None
            and evaluate_threshold(health.days_since_last_activity, op, threshold)
        ):
            return AlertType.NO_ACTIVITY
    elif rule_type == RuleType.RESPONSE_TIME:
        if (
            unit == "hours"
            and health.avg_response_time_hours is not None
            and evaluate_threshold(health.avg_response_time_hours, op, threshold)
        ):
            return AlertType.MISSED_FOLLOW_UP
    return None


def evaluate_rule(rule: DealHealthRule, ctx: AlertContext) -> DealHealthAlert | None:
    """Evaluate one rule against a deal.

    Returns:
        An unsaved DealHealthAlert when the rule trips, else None.
    """
    if not evaluate_rule_conditions(rule, ctx):
        return None

    alert_type = _triggered_alert_type(rule, ctx)
    if alert_type is None:
        return None

    severity = AlertSeverity(rule.alert_severity)
    suggested = (
        render_template(rule.suggested_action_template, ctx)
        if rule.suggested_action_template
        else DEFAULT_SUGGESTED_ACTION
    )

    return DealHealthAlert(
        deal_id=ctx.deal.id,
        user_id=ctx.deal.owner_id,
        alert_type=alert_type,
        severity=severity,
        title=render_template(rule.alert_message_template or DEFAULT_ALERT_TITLE, ctx),
        message=render_template(rule.alert_message_template or DEFAULT_ALERT_MESSAGE, ctx),
        suggested_actions=[suggested],
        action_priority=(
            ActionPriority.URGENT if severity == AlertSeverity.CRITICAL else ActionPriority.MEDIUM
        ),
        metadata={
            "rule_id": rule.id,
            "rule_name": rule.rule_name,
            "health_score": ctx.health.overall_health_score,
            "risk_level": getattr(ctx.health.risk_level, "value", ctx.health.risk_level),
        },
    )


def summarize_alerts(alerts: list[DealHealthAlert]) -> AlertStats:
    """Counts by severity and type over the active alerts in ``alerts``."""
    stats = AlertStats()
    for alert in alerts:
        if alert.status != AlertStatus.ACTIVE:
            continue
        stats.total += 1
        severity = AlertSeverity(alert.severity)
        if severity == AlertSeverity.CRITICAL:
            stats.critical += 1
        elif severity == AlertSeverity.WARNING:
            stats.warning += 1
        else:
            stats.info += 1
        key = AlertType(alert.alert_type).value
        stats.by_type[key] = stats.by_type.get(key, 0) + 1
    return stats


# ── Alert Service ───────────────────────────────────────────────────────────


class AlertService:
    """Generates and transitions deal health alerts for one repository.

    Args:
        repository: DealRepository (or a test double with the same methods).
    """

    def __init__(self, repository: Any) -> None:
        self._repository = repository

    async def generate_alerts_for_deal(
        self,
        tenant_id: str,
        deal_id: str,
        health: DealHealthScore | None = None,
    ) -> list[DealHealthAlert]:
        """Evaluate every active rule for a deal and persist new alerts.

        Args:
            tenant_id: Tenant UUID string.
            deal_id: Deal UUID string.
            health: Health signals to evaluate. Defaults to the stored row.

        Returns:
            The alerts created by this call (existing active alerts of the
            same type are not duplicated).

        Raises:
            ValueError: If the deal does not exist or has no health score.
        """
        deal = await self._repository.get_deal(tenant_id, deal_id)
        if deal is None:
            raise ValueError(f"Deal not found: tenant={tenant_id}, id={deal_id}")

        if health is None:
            health = await self._repository.get_health_score(tenant_id, deal_id)
            if health is None:
                raise ValueError(f"No health score for deal: id={deal_id}")

        ctx = AlertContext(deal=deal, health=health)
        rules = await self._repository.list_health_rules(tenant_id, active_only=True)

        created: list[DealHealthAlert] = []
        seen_types: set[str] = set()
        for rule in rules:
            alert = evaluate_rule(rule, ctx)
            if alert is None:
                continue

            alert_type = AlertType(alert.alert_type).value
            if alert_type in seen_types:
                continue
            existing = await self._repository.get_active_alert(tenant_id, deal_id, alert_type)
            if existing is not None:
                continue

            saved = await self._repository.create_alert(tenant_id, alert)
            seen_types.add(alert_type)
            created.append(saved)
            deal_health_alerts_generated_total.labels(
                tenant_id=tenant_id,
                alert_type=alert_type,
                severity=AlertSeverity(alert.severity).value,
            ).inc()

        logger.info(
            "deal_alerts.generated",
            tenant_id=tenant_id,
            deal_id=deal_id,
            rules_evaluated=len(rules),
            alerts_created=len(created),
        )
        return created

    async def acknowledge(
        self, tenant_id: str, alert_id: str, user_id: str | None
    ) -> DealHealthAlert:
        return await self._repository.update_alert_status(
            tenant_id, alert_id, AlertStatus.ACKNOWLEDGED, user_id
        )

    async def resolve(self, tenant_id: str, alert_id: str) -> DealHealthAlert:
        return await self._repository.update_alert_status(
            tenant_id, alert_id, AlertStatus.RESOLVED
        )

    async def dismiss(self, tenant_id: str, alert_id: str) -> DealHealthAlert:
        return await self._repository.update_alert_status(
            tenant_id, alert_id, AlertStatus.DISMISSED
        )

    async def alert_stats(self, tenant_id: str, user_id: str | None = None) -> AlertStats:
        alerts = await self._repository.list_alerts(
            tenant_id, user_id=user_id, status=AlertStatus.ACTIVE.value
        )
        return summarize_alerts(alerts)
