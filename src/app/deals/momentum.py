"""Deal momentum nudges -- Slack cards for deals that are losing steam.

Once a day (or on demand for a single deal) every Slack-connected tenant
is scanned for active-pipeline deals whose health status, risk level or
clarity score says they need attention. The deal owner receives one
direct message per deal per cooldown window: a card with the deal's
scores, its truth fields, its close plan and up to four recommended
actions.
"""

from __future__ import annotations

import re
from datetime import date, datetime, time, timezone
from typing import Any, Callable

import httpx
import structlog
from pydantic import BaseModel, Field
from tenacity import RetryError

from src.app.core.monitoring import active_tenants, slack_nudges_sent_total
from src.app.core.tenant import TenantContext, tenant_scope
from src.app.deals.schemas import ACTIVE_PIPELINE_STAGES, STAGE_NAMES, ClosePlanItem, DealTruthField
from src.app.deals.truth import (
    ATTENTION_HEALTH_STATUSES,
    ATTENTION_RISK_LEVELS,
    LOW_CONFIDENCE_THRESHOLD,
    TRUTH_FIELD_METADATA,
)
from src.app.schemas.slack import MomentumRunResult
from src.app.services.slack import (
    SlackAPIError,
    SlackClient,
    actions,
    context,
    divider,
    format_money,
    header,
    section,
    section_with_fields,
)

logger = structlog.get_logger(__name__)

DEFAULT_CLARITY_THRESHOLD = 50
DEFAULT_CONFIDENCE_THRESHOLD = 0.6
MAX_RECOMMENDED_ACTIONS = 4
DEFAULT_MILESTONE_TOTAL = 6

TRUTH_DISPLAY_ORDER = (
    "pain",
    "success_metric",
    "champion",
    "economic_buyer",
    "next_step",
    "top_risks",
)

MILESTONE_TITLES = {
    "success_criteria": "Success criteria confirmed",
    "stakeholders_mapped": "Stakeholders mapped",
    "solution_fit": "Solution fit confirmed",
    "commercials_aligned": "Commercials aligned",
    "legal_procurement": "Legal/procurement progressing",
    "signature_kickoff": "Signature + kickoff scheduled",
}

_MILESTONE_ICONS = {
    "completed": "✅",
    "in_progress": "🔄",
    "blocked": "🚫",
    "skipped": "➖",
    "pending": "⬜",
}

_DATE_PATTERNS = (
    re.compile(r"(\d{1,2}[/\-]\d{1,2}[/\-]\d{2,4})"),
    re.compile(r"([A-Z][a-z]{2}\s+\d{1,2})"),
    re.compile(r"(\d{1,2}\s+[A-Z][a-z]{2})"),
)


# ── Card Data ───────────────────────────────────────────────────────────────


class MomentumTruthField(BaseModel):
    field_key: str
    label: str
    value: str | None = None
    confidence: float = 0.0
    is_warning: bool = False
    next_step_date: str | None = None


class MomentumMilestone(BaseModel):
    milestone_key: str
    title: str
    status: str
    owner_name: str | None = None
    due_date: date | None = None
    is_overdue: bool = False
    blocker_note: str | None = None


class MomentumClosePlan(BaseModel):
    completed: int = 0
    total: int = DEFAULT_MILESTONE_TOTAL
    overdue: int = 0
    blocked: int = 0
    milestones: list[MomentumMilestone] = Field(default_factory=list)


class MomentumScores(BaseModel):
    momentum: int = 0
    clarity: int = 0
    health: int = 0
    risk: int = 0


class DealMomentumCard(BaseModel):
    deal_id: str
    deal_name: str
    company: str | None = None
    value: float = 0
    stage: str
    stage_name: str
    scores: MomentumScores
    truth_fields: list[MomentumTruthField]
    close_plan: MomentumClosePlan
    recommended_actions: list[str] = Field(default_factory=list)
    currency_code: str = "GBP"
    app_url: str = ""


# ── Pure Helpers ────────────────────────────────────────────────────────────


def extract_date_from_value(value: str | None) -> str | None:
    """Pull a date-looking fragment out of free text ("Demo - Jan 15")."""
    if not value:
        return None
    for pattern in _DATE_PATTERNS:
        match = pattern.search(value)
        if match:
            return match.group(1)
    return None


def should_nudge(
    clarity_score: int | None,
    health_status: str | None,
    risk_level: str | None,
    clarity_threshold: int = DEFAULT_CLARITY_THRESHOLD,
) -> bool:
    return (
        health_status in ATTENTION_HEALTH_STATUSES
        or risk_level in ATTENTION_RISK_LEVELS
        or (clarity_score or 0) < clarity_threshold
    )


def _is_past(due: date | None, now: datetime) -> bool:
    if due is None:
        return False
    return datetime.combine(due, time.min, tzinfo=timezone.utc) < now


def build_truth_display(
    fields: list[DealTruthField],
    confidence_threshold: float = DEFAULT_CONFIDENCE_THRESHOLD,
) -> list[MomentumTruthField]:
    """All six truth fields in card order; missing ones have no value.

    Economic buyer and next step are flagged when below the threshold.
    """
    by_key = {getattr(f.field_key, "value", f.field_key): f for f in fields}
    display = []
    for key in TRUTH_DISPLAY_ORDER:
        field = by_key.get(key)
        confidence = field.confidence if field else 0.0
        next_step_date = None
        if key == "next_step" and field is not None:
            if field.next_step_date is not None:
                next_step_date = field.next_step_date.isoformat()
            else:
                next_step_date = extract_date_from_value(field.value)
        display.append(
            MomentumTruthField(
                field_key=key,
                label=TRUTH_FIELD_METADATA[key]["label"],
                value=(field.value if field else None) or None,
                confidence=confidence,
                is_warning=key in ("economic_buyer", "next_step") and confidence < confidence_threshold,
                next_step_date=next_step_date,
            )
        )
    return display


def build_close_plan_display(
    items: list[ClosePlanItem],
    owner_names: dict[str, str] | None = None,
    now: datetime | None = None,
) -> MomentumClosePlan:
    now = now or datetime.now(timezone.utc)
    owner_names = owner_names or {}
    milestones = []
    for item in items:
        key = getattr(item.milestone_key, "value", item.milestone_key)
        status = getattr(item.status, "value", item.status)
        milestones.append(
            MomentumMilestone(
                milestone_key=key,
                title=item.title or MILESTONE_TITLES.get(key, key),
                status=status,
                owner_name=owner_names.get(item.owner_id) if item.owner_id else None,
                due_date=item.due_date,
                is_overdue=status != "completed" and _is_past(item.due_date, now),
                blocker_note=item.blocker_note,
            )
        )
    return MomentumClosePlan(
        completed=sum(1 for m in milestones if m.status == "completed"),
        total=len(milestones) or DEFAULT_MILESTONE_TOTAL,
        overdue=sum(1 for m in milestones if m.is_overdue),
        blocked=sum(1 for m in milestones if m.status == "blocked"),
        milestones=milestones,
    )


def generate_recommended_actions(
    truth_fields: list[MomentumTruthField],
    milestones: list[MomentumMilestone],
    health_status: str | None = None,
    risk_level: str | None = None,
) -> list[str]:
    """Up to four next actions, most important first."""
    by_key = {f.field_key: f for f in truth_fields}
    eb = by_key.get("economic_buyer")
    next_step = by_key.get("next_step")
    champion = by_key.get("champion")
    success_metric = by_key.get("success_metric")

    recommended: list[str] = []
    if eb is None or not eb.value or eb.confidence < LOW_CONFIDENCE_THRESHOLD:
        recommended.append("Identify and confirm economic buyer")
    if next_step is None or not next_step.value or not next_step.next_step_date:
        recommended.append("Set a dated next step")
    if champion is None or not champion.value or champion.confidence < LOW_CONFIDENCE_THRESHOLD:
        recommended.append("Confirm or strengthen champion relationship")
    if success_metric is None or not success_metric.value:
        recommended.append("Define success metrics with customer")

    blocked = [m for m in milestones if m.status == "blocked"]
    if blocked:
        recommended.append(f"Resolve blocked milestone: {blocked[0].title}")

    overdue = [m for m in milestones if m.is_overdue]
    if overdue and len(recommended) < MAX_RECOMMENDED_ACTIONS:
        recommended.append(f"Complete overdue: {overdue[0].title}")
    if health_status == "stalled" and len(recommended) < MAX_RECOMMENDED_ACTIONS:
        recommended.append("Re-engage key stakeholders")
    if risk_level == "critical" and len(recommended) < MAX_RECOMMENDED_ACTIONS:
        recommended.append("Address critical risks immediately")

    return recommended[:MAX_RECOMMENDED_ACTIONS]


def _truth_line(field: MomentumTruthField) -> str:
    if not field.value:
        return f"❓ *{field.label}:* _Unknown_"
    icon = "⚠️" if field.is_warning else "✅"
    line = f"{icon} *{field.label}:* {field.value} ({round(field.confidence * 100)}%)"
    if field.field_key == "next_step" and field.next_step_date:
        line += f" 📅 {field.next_step_date}"
    return line


def _milestone_line(milestone: MomentumMilestone) -> str:
    icon = "🔴" if milestone.is_overdue else _MILESTONE_ICONS.get(milestone.status, "⬜")
    parts = [f"{icon} {milestone.title}"]
    if milestone.owner_name:
        parts.append(milestone.owner_name)
    if milestone.due_date:
        parts.append(f"due {milestone.due_date.day} {milestone.due_date.strftime('%b')}")
    line = " · ".join(parts)
    if milestone.status == "blocked" and milestone.blocker_note:
        line += f"\n    _Blocked: {milestone.blocker_note}_"
    return line


def build_deal_momentum_message(card: DealMomentumCard) -> dict[str, Any]:
    """Slack Block Kit payload for a momentum nudge.

    Returns:
        ``{"blocks": [...], "text": fallback}``
    """
    scores = card.scores
    plan = card.close_plan
    blocks: list[dict[str, Any]] = [
        header(f"⚡ {card.deal_name} needs attention"),
        section_with_fields(
            [
                ("Company", card.company or "Unknown"),
                ("Value", format_money(card.value, card.currency_code)),
                ("Stage", card.stage_name),
                ("Momentum", f"{scores.momentum}%"),
            ]
        ),
        context(
            [
                f"Clarity {scores.clarity}% • Health {scores.health}% • Risk {scores.risk}%",
            ]
        ),
        divider(),
        section("*Deal Truth*\n" + "\n".join(_truth_line(f) for f in card.truth_fields)),
        divider(),
    ]

    plan_summary = f"*Close Plan* {plan.completed}/{plan.total} complete"
    flags = []
    if plan.overdue:
        flags.append(f"{plan.overdue} overdue")
    if plan.blocked:
        flags.append(f"{plan.blocked} blocked")
    if flags:
        plan_summary += f" ({', '.join(flags)})"
    plan_lines = [_milestone_line(m) for m in plan.milestones] or ["_No close plan yet_"]
    blocks.append(section(plan_summary + "\n" + "\n".join(plan_lines)))

    if card.recommended_actions:
        blocks.append(
            section(
                "*Recommended Actions*\n"
                + "\n".join(f"• {action}" for action in card.recommended_actions)
            )
        )

    if card.app_url:
        blocks.append(
            actions(
                [
                    {
                        "text": "💼 View Deal",
                        "action_id": "view_deal",
                        "value": card.deal_id,
                        "url": f"{card.app_url}/deals/{card.deal_id}",
                    }
                ]
            )
        )

    return {
        "blocks": blocks,
        "text": f"{card.deal_name} needs attention: Momentum {scores.momentum}% | Clarity {scores.clarity}%",
    }


# ── Nudge Service ───────────────────────────────────────────────────────────


class MomentumNudgeService:
    """Sends momentum nudges for one tenant at a time.

    Must run inside a tenant context (request or tenant_scope()) because
    the repositories and the dedupe store are tenant-scoped.

    Args:
        deal_repository: DealRepository.
        slack_settings: SlackSettingsRepository.
        dedupe_store: TenantRedis-like object with async get/set.
        slack_client_factory: Builds a SlackClient from a bot token.
        app_url: Front-end base URL for deal links.
        cooldown_hours: Minimum hours between nudges for the same deal and user.
    """

    def __init__(
        self,
        deal_repository: Any,
        slack_settings: Any,
        dedupe_store: Any,
        slack_client_factory: Callable[[str], SlackClient],
        app_url: str = "",
        cooldown_hours: int = 24,
        default_clarity_threshold: int = DEFAULT_CLARITY_THRESHOLD,
        default_confidence_threshold: float = DEFAULT_CONFIDENCE_THRESHOLD,
    ) -> None:
        self._deals = deal_repository
        self._slack_settings = slack_settings
        self._dedupe = dedupe_store
        self._client_factory = slack_client_factory
        self._app_url = app_url.rstrip("/")
        self._cooldown_seconds = cooldown_hours * 3600
        self._default_clarity = default_clarity_threshold
        self._default_confidence = default_confidence_threshold

    @staticmethod
    def _dedupe_key(deal_id: str, slack_user_id: str) -> str:
        return f"momentum_nudge:{deal_id}:{slack_user_id}"

    async def build_card(
        self,
        tenant_id: str,
        row: dict[str, Any],
        confidence_threshold: float,
        currency_code: str = "GBP",
    ) -> DealMomentumCard:
        """Assemble the card for one deal score row."""
        deal_id = row["deal_id"]
        fields = await self._deals.list_truth_fields(tenant_id, deal_id)
        items = await self._deals.list_close_plan(tenant_id, deal_id)
        owner_names = await self._deals.get_user_names(
            tenant_id, [i.owner_id for i in items if i.owner_id]
        )

        truth = build_truth_display(fields, confidence_threshold)
        plan = build_close_plan_display(items, owner_names)
        stage = row.get("deal_stage") or ""

        return DealMomentumCard(
            deal_id=deal_id,
            deal_name=row.get("deal_name") or "Untitled Deal",
            company=row.get("company_name"),
            value=row.get("deal_value") or 0,
            stage=stage,
            stage_name=STAGE_NAMES.get(stage, stage),
            scores=MomentumScores(
                momentum=round(row.get("momentum_score") or 0),
                clarity=round(row.get("clarity_score") or 0),
                health=round(row.get("health_score") or 0),
                risk=round(row.get("risk_score") or 0),
            ),
            truth_fields=truth,
            close_plan=plan,
            recommended_actions=generate_recommended_actions(
                truth, plan.milestones, row.get("health_status"), row.get("risk_level")
            ),
            currency_code=currency_code,
            app_url=self._app_url,
        )

    async def run(
        self,
        tenant_id: str,
        deal_id: str | None = None,
        currency_code: str = "GBP",
    ) -> MomentumRunResult:
        """Scan a tenant's pipeline and send due nudges.

        Args:
            tenant_id: Tenant UUID string.
            deal_id: Restrict to one deal. A single-deal run ignores the
                tenant's enabled flag and the dedupe window.
            currency_code: Currency used to format deal values.

        Returns:
            MomentumRunResult with sent count and per-deal errors.
        """
        result = MomentumRunResult()
        connection = await self._slack_settings.get_connection(tenant_id)
        if connection is None:
            return result
        if not connection.momentum_nudges_enabled and deal_id is None:
            return result

        clarity_threshold = connection.clarity_threshold or self._default_clarity
        confidence_threshold = connection.confidence_threshold or self._default_confidence
        client = self._client_factory(connection.bot_access_token)

        rows = await self._deals.list_deal_score_rows(
            tenant_id,
            stages=ACTIVE_PIPELINE_STAGES,
            deal_id=deal_id,
            require_owner=True,
        )
        due = [
            r
            for r in rows
            if should_nudge(
                r.get("clarity_score"), r.get("health_status"), r.get("risk_level"), clarity_threshold
            )
        ]
        result.deals_evaluated = len(rows)

        for row in due:
            try:
                sent = await self._nudge_deal(
                    tenant_id, row, client, confidence_threshold, currency_code, force=deal_id is not None
                )
                if sent:
                    result.nudges_sent += 1
            except (SlackAPIError, RetryError, httpx.HTTPError, ValueError) as exc:
                slack_nudges_sent_total.labels(tenant_id=tenant_id, status="error").inc()
                result.errors.append(f"Deal {row['deal_id']}: {exc}")
                logger.warning(
                    "momentum.nudge_failed",
                    tenant_id=tenant_id,
                    deal_id=row["deal_id"],
                    error=str(exc),
                )

        logger.info(
            "momentum.run_complete",
            tenant_id=tenant_id,
            deals_evaluated=result.deals_evaluated,
            nudges_sent=result.nudges_sent,
            errors=len(result.errors),
        )
        return result

    async def _nudge_deal(
        self,
        tenant_id: str,
        row: dict[str, Any],
        client: SlackClient,
        confidence_threshold: float,
        currency_code: str,
        force: bool = False,
    ) -> bool:
        slack_user_id = await self._slack_settings.get_slack_user_id(
            tenant_id, row["owner_user_id"]
        )
        if not slack_user_id:
            return False

        key = self._dedupe_key(row["deal_id"], slack_user_id)
        if not force and await self._dedupe.get(key):
            return False

        card = await self.build_card(tenant_id, row, confidence_threshold, currency_code)
        message = build_deal_momentum_message(card)
        posted = await client.send_direct_message(slack_user_id, message["text"], message["blocks"])

        await self._dedupe.set(key, posted.get("ts") or "sent", ex=self._cooldown_seconds)
        slack_nudges_sent_total.labels(tenant_id=tenant_id, status="sent").inc()
        logger.info(
            "momentum.nudge_sent",
            tenant_id=tenant_id,
            deal_id=row["deal_id"],
            momentum=card.scores.momentum,
            priority="urgent" if card.scores.momentum < 40 else "high",
        )
        return True


async def run_momentum_for_tenants(
    service: MomentumNudgeService,
    tenants: list[dict[str, Any]],
) -> MomentumRunResult:
    """Run the nudge scan for each tenant under its own tenant context.

    Args:
        service: MomentumNudgeService wired to tenant-scoped repositories.
        tenants: Tenant rows with id, slug, schema_name and currency_code.

    Returns:
        Totals across all tenants. A failing tenant is recorded in errors.
    """
    totals = MomentumRunResult()
    active_tenants.set(len(tenants))
    for tenant in tenants:
        ctx = TenantContext(
            tenant_id=tenant["id"],
            tenant_slug=tenant["slug"],
            schema_name=tenant["schema_name"],
        )
        try:
            with tenant_scope(ctx):
                result = await service.run(
                    ctx.tenant_id, currency_code=tenant.get("currency_code") or "GBP"
                )
        except Exception as exc:
            logger.exception("momentum.tenant_failed", tenant_id=ctx.tenant_id)
            totals.errors.append(f"Tenant {ctx.tenant_slug}: {exc}")
            continue
        totals.nudges_sent += result.nudges_sent
        totals.deals_evaluated += result.deals_evaluated
        totals.errors.extend(result.errors)
    return totals
