"""DealTruthService -- truth field writes with clarity score upkeep.

Every write that can move a deal's clarity (truth field upserts, deletes,
confidence edits, close plan changes) ends with recalculate_scores(), which
recomputes clarity, close plan progress and momentum and stores them in the
deal's single clarity score row.
"""

from __future__ import annotations

from datetime import date
from typing import Any

import structlog

from src.app.core.monitoring import deal_clarity_recalculations_total
from src.app.deals.schemas import (
    ClarificationQuestion,
    ClosePlanItem,
    ClosePlanItemUpdate,
    DealClarityScore,
    DealMomentumData,
    DealNeedingAttention,
    DealTruthField,
    ExtractedTruthFields,
    TruthFieldSource,
    TruthFieldUpsert,
    TruthSnapshotItem,
)
from src.app.deals.truth import (
    calculate_clarity_score,
    calculate_close_plan_progress,
    calculate_momentum_score,
    build_truth_snapshot,
    default_close_plan,
    generate_clarification_questions,
    plan_extracted_truth_updates,
    select_deals_needing_attention,
)

logger = structlog.get_logger(__name__)


class DealTruthService:
    """Truth field and close plan operations over a DealRepository."""

    def __init__(self, repository: Any) -> None:
        self._repository = repository

    # ── Scores ──────────────────────────────────────────────────────────────

    async def recalculate_scores(
        self, tenant_id: str, deal_id: str, today: date | None = None
    ) -> DealClarityScore:
        """Recompute and store clarity, close plan counts and momentum."""
        fields = await self._repository.list_truth_fields(tenant_id, deal_id)
        items = await self._repository.list_close_plan(tenant_id, deal_id)
        health = await self._repository.get_health_score(tenant_id, deal_id)

        clarity = calculate_clarity_score(fields)
        progress = calculate_close_plan_progress(items, today=today)
        momentum = calculate_momentum_score(
            clarity.total,
            health_score=health.overall_health_score if health else None,
            risk_score=health.risk_score if health else None,
            overdue_milestones=progress.overdue,
        )

        points = clarity.breakdown
        score = DealClarityScore(
            deal_id=deal_id,
            clarity_score=clarity.total,
            next_step_score=points.get("next_step", 0),
            economic_buyer_score=points.get("economic_buyer", 0),
            champion_score=points.get("champion", 0),
            success_metric_score=points.get("success_metric", 0),
            risks_score=points.get("top_risks", 0),
            close_plan_completed=progress.completed,
            close_plan_total=progress.total,
            close_plan_overdue=progress.overdue,
            momentum_score=momentum,
        )
        saved = await self._repository.upsert_clarity_score(tenant_id, score)
        deal_clarity_recalculations_total.labels(tenant_id=tenant_id).inc()
        logger.debug(
            "deal_truth.scores_recalculated",
            tenant_id=tenant_id,
            deal_id=deal_id,
            clarity=clarity.total,
            momentum=momentum,
        )
        return saved

    async def get_momentum_data(self, tenant_id: str, deal_id: str) -> DealMomentumData:
        """Stored momentum inputs, with defaults when nothing is stored yet."""
        clarity = await self._repository.get_clarity_score(tenant_id, deal_id)
        health = await self._repository.get_health_score(tenant_id, deal_id)

        data = DealMomentumData()
        if clarity is not None:
            data.momentum_score = clarity.momentum_score
            data.clarity_score = clarity.clarity_score
            data.close_plan_completed = clarity.close_plan_completed
            data.close_plan_total = clarity.close_plan_total
            data.close_plan_overdue = clarity.close_plan_overdue
        if health is not None:
            data.health_score = health.overall_health_score
            data.risk_score = health.risk_score
        return data

    # ── Truth Fields ────────────────────────────────────────────────────────

    async def upsert_truth_field(
        self, tenant_id: str, deal_id: str, field_key: str, data: TruthFieldUpsert
    ) -> DealTruthField:
        field = await self._repository.upsert_truth_field(tenant_id, deal_id, field_key, data)
        await self.recalculate_scores(tenant_id, deal_id)
        return field

    async def bulk_upsert_truth_fields(
        self,
        tenant_id: str,
        deal_id: str,
        updates: list[tuple[str, TruthFieldUpsert]],
    ) -> dict[str, int]:
        """Apply several upserts; one failure does not stop the rest.

        Returns:
            ``{"success": n, "failed": m}``
        """
        success = failed = 0
        for field_key, data in updates:
            try:
                await self._repository.upsert_truth_field(tenant_id, deal_id, field_key, data)
                success += 1
            except Exception:
                failed += 1
                logger.exception(
                    "deal_truth.bulk_upsert_failed",
                    tenant_id=tenant_id,
                    deal_id=deal_id,
                    field_key=field_key,
                )
        if success:
            await self.recalculate_scores(tenant_id, deal_id)
        return {"success": success, "failed": failed}

    async def save_extracted_fields(
        self,
        tenant_id: str,
        deal_id: str,
        extracted: ExtractedTruthFields,
        source: TruthFieldSource,
        source_id: str | None = None,
    ) -> dict[str, Any]:
        """Merge extracted values, keeping better-sourced existing values."""
        existing = await self._repository.list_truth_fields(tenant_id, deal_id)
        upserts, skipped = plan_extracted_truth_updates(existing, extracted, source, source_id)
        result = await self.bulk_upsert_truth_fields(tenant_id, deal_id, upserts)
        result["skipped"] = skipped
        logger.info(
            "deal_truth.extracted_saved",
            tenant_id=tenant_id,
            deal_id=deal_id,
            source=source.value,
            updated=result["success"],
            skipped=len(skipped),
        )
        return result

    async def update_confidence(
        self, tenant_id: str, deal_id: str, field_key: str, confidence: float
    ) -> DealTruthField:
        field = await self._repository.update_truth_field_confidence(
            tenant_id, deal_id, field_key, confidence
        )
        await self.recalculate_scores(tenant_id, deal_id)
        return field

    async def delete_truth_field(self, tenant_id: str, deal_id: str, field_key: str) -> bool:
        deleted = await self._repository.delete_truth_field(tenant_id, deal_id, field_key)
        if deleted:
            await self.recalculate_scores(tenant_id, deal_id)
        return deleted

    async def get_snapshot(self, tenant_id: str, deal_id: str) -> list[TruthSnapshotItem]:
        fields = await self._repository.list_truth_fields(tenant_id, deal_id)
        names = await self._repository.get_contact_names(
            tenant_id, [f.contact_id for f in fields if f.contact_id]
        )
        return build_truth_snapshot(fields, names)

    async def get_clarification_questions(
        self, tenant_id: str, deal_id: str, deal_name: str
    ) -> list[ClarificationQuestion]:
        fields = await self._repository.list_truth_fields(tenant_id, deal_id)
        contacts = await self._repository.list_contacts(tenant_id)
        return generate_clarification_questions(
            fields,
            deal_name,
            [{"id": c.id, "name": c.name} for c in contacts],
        )

    # ── Close Plan ──────────────────────────────────────────────────────────

    async def initialize_close_plan(
        self, tenant_id: str, deal_id: str, owner_id: str | None = None
    ) -> list[ClosePlanItem]:
        items = await self._repository.add_close_plan_items(
            tenant_id, deal_id, default_close_plan(deal_id, owner_id)
        )
        await self.recalculate_scores(tenant_id, deal_id)
        return items

    async def update_close_plan_item(
        self,
        tenant_id: str,
        deal_id: str,
        milestone_key: str,
        data: ClosePlanItemUpdate,
        user_id: str | None = None,
    ) -> ClosePlanItem:
        item = await self._repository.update_close_plan_item(
            tenant_id, deal_id, milestone_key, data, user_id
        )
        await self.recalculate_scores(tenant_id, deal_id)
        return item

    # ── Attention ───────────────────────────────────────────────────────────

    async def deals_needing_attention(
        self,
        tenant_id: str,
        min_clarity: int = 50,
        owner_id: str | None = None,
        limit: int = 10,
    ) -> list[DealNeedingAttention]:
        rows = await self._repository.list_deal_score_rows(tenant_id)
        return select_deals_needing_attention(
            rows, min_clarity=min_clarity, owner_id=owner_id, limit=limit
        )
