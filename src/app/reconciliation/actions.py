"""Manual reconciliation actions with an audit trail.

Every action validates the rows it touches, then performs its writes and its
audit log row in one repository unit of work, so a failed step leaves nothing
behind. Links only claim unlinked activities; a concurrent link gets a 409.

Links, created records and duplicate flags can be undone from their audit
row; merges cannot, but a MERGE_BACKUP row keeps the pre-merge snapshot.

Exports:
    ReconciliationError: Rejected action, carries an HTTP-style status code.
    ReconciliationActions: Action handlers bound to a repository.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

import structlog

from src.app.core.monitoring import reconciliation_actions_total
from src.app.reconciliation.matching import parse_datetime
from src.app.reconciliation.repository import ReconciliationRepository, ReconciliationUnitOfWork
from src.app.reconciliation.schemas import (
    UNDOABLE_ACTIONS,
    ActionResult,
    AuditLogEntry,
    CreateActivityFromDealRequest,
    CreateDealFromActivityRequest,
    LinkManualRequest,
    MarkDuplicateRequest,
    MergeRecordsRequest,
    ReconciliationActionType,
    ReconciliationDealRead,
    RecordType,
    SalesActivityRead,
    UndoActionRequest,
)

logger = structlog.get_logger(__name__)

MANUAL_SOURCE = "manual_reconciliation"
ALREADY_LINKED = "Activity is already linked to a deal"

MERGEABLE_FIELDS: dict[RecordType, frozenset[str]] = {
    RecordType.SALES_ACTIVITIES: frozenset(
        {"client_name", "amount", "date", "sales_rep", "details", "deal_id"}
    ),
    RecordType.DEALS: frozenset(
        {"name", "company", "value", "one_off_revenue", "monthly_mrr", "stage", "stage_changed_at"}
    ),
}

_DATETIME_FIELDS = frozenset({"date", "stage_changed_at"})


class ReconciliationError(Exception):
    """A reconciliation action was rejected."""

    def __init__(self, message: str, status_code: int = 400) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code


def _aware(value: Any) -> datetime | None:
    parsed = parse_datetime(value)
    return parsed.replace(tzinfo=timezone.utc) if parsed is not None else None


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


class ReconciliationActions:
    """Manual link, create, duplicate, merge and undo operations.

    Args:
        repository: ReconciliationRepository (or a compatible test double).
    """

    def __init__(self, repository: ReconciliationRepository) -> None:
        self._repository = repository

    # ── Lookups ─────────────────────────────────────────────────────────────

    async def _activity(
        self, tenant_id: str, activity_id: str, owner_id: str | None
    ) -> SalesActivityRead:
        activity = await self._repository.get_activity(tenant_id, activity_id)
        if activity is None or (owner_id is not None and activity.user_id != owner_id):
            raise ReconciliationError(f"Activity {activity_id} not found", 404)
        return activity

    async def _deal(
        self, tenant_id: str, deal_id: str, owner_id: str | None
    ) -> ReconciliationDealRead:
        deal = await self._repository.get_deal(tenant_id, deal_id)
        if deal is None or (owner_id is not None and deal.owner_id != owner_id):
            raise ReconciliationError(f"Deal {deal_id} not found", 404)
        return deal

    def _record(self, tenant_id: str, action: str, status: str) -> None:
        reconciliation_actions_total.labels(
            tenant_id=tenant_id, action=action, status=status
        ).inc()

    async def execute(
        self,
        tenant_id: str,
        action: str,
        payload: Any,
        user_id: str,
        restrict_to_owner: bool = False,
    ) -> ActionResult:
        """Dispatch an action by name, counting successes and rejections."""
        handlers = {
            "link_manual": self.link_manual,
            "create_deal_from_activity": self.create_deal_from_activity,
            "create_activity_from_deal": self.create_activity_from_deal,
            "mark_duplicate": self.mark_duplicate,
            "merge_records": self.merge_records,
            "undo_action": self.undo_action,
        }
        handler = handlers.get(action)
        if handler is None:
            raise ReconciliationError(f"Unknown action: {action}")
        try:
            result = await handler(tenant_id, payload, user_id, restrict_to_owner)
        except ReconciliationError as exc:
            self._record(tenant_id, action, "rejected")
            logger.info(
                "reconciliation.action_rejected",
                tenant_id=tenant_id,
                action=action,
                reason=exc.message,
            )
            raise
        self._record(tenant_id, action, "success")
        logger.info(
            "reconciliation.action_executed",
            tenant_id=tenant_id,
            action=action,
            audit_log_id=result.audit_log_id,
        )
        return result

    # ── Actions ─────────────────────────────────────────────────────────────

    async def link_manual(
        self,
        tenant_id: str,
        request: LinkManualRequest,
        user_id: str,
        restrict_to_owner: bool = False,
    ) -> ActionResult:
        owner = user_id if restrict_to_owner else None
        activity = await self._activity(tenant_id, request.activity_id, owner)
        deal = await self._deal(tenant_id, request.deal_id, owner)
        if activity.deal_id:
            raise ReconciliationError(ALREADY_LINKED, 409)

        async with self._repository.unit_of_work() as uow:
            if not await uow.link_activity(tenant_id, activity.id, deal.id):
                raise ReconciliationError(ALREADY_LINKED, 409)
            entry = await uow.log_action(
                tenant_id,
                ReconciliationActionType.MANUAL_LINK.value,
                RecordType.SALES_ACTIVITIES.value,
                activity.id,
                RecordType.DEALS.value,
                deal.id,
                confidence_score=request.confidence if request.confidence is not None else 100,
                metadata={
                    **request.metadata,
                    "activity_company": activity.client_name,
                    "deal_company": deal.company,
                    "activity_amount": activity.amount,
                    "deal_value": deal.value,
                    "activity_date": _iso(activity.date),
                    "deal_date": _iso(deal.stage_changed_at),
                },
                user_id=user_id,
            )
        return ActionResult(
            action="link_manual",
            message=f"Linked activity {activity.id} to deal {deal.id}",
            audit_log_id=entry.id,
            details={"activity_id": activity.id, "deal_id": deal.id},
        )

    async def create_deal_from_activity(
        self,
        tenant_id: str,
        request: CreateDealFromActivityRequest,
        user_id: str,
        restrict_to_owner: bool = False,
    ) -> ActionResult:
        owner = user_id if restrict_to_owner else None
        activity = await self._activity(tenant_id, request.activity_id, owner)
        if activity.deal_id:
            raise ReconciliationError(ALREADY_LINKED, 409)

        company = request.company or activity.client_name or "Unknown company"
        value = request.value if request.value is not None else (activity.amount or 0)
        async with self._repository.unit_of_work() as uow:
            deal = await uow.create_deal(
                tenant_id,
                {
                    "name": company,
                    "company": company,
                    "value": value,
                    "stage": request.stage or "closed_won",
                    "status": "won",
                    "stage_changed_at": request.stage_changed_at or activity.date,
                    "owner_id": user_id,
                    "source": MANUAL_SOURCE,
                },
            )
            if not await uow.link_activity(tenant_id, activity.id, deal.id):
                raise ReconciliationError(ALREADY_LINKED, 409)
            entry = await uow.log_action(
                tenant_id,
                ReconciliationActionType.CREATE_DEAL_FROM_ACTIVITY_MANUAL.value,
                RecordType.SALES_ACTIVITIES.value,
                activity.id,
                RecordType.DEALS.value,
                deal.id,
                confidence_score=100,
                metadata={
                    **request.metadata,
                    "created_deal_company": company,
                    "created_deal_value": value,
                    "activity_amount": activity.amount,
                },
                user_id=user_id,
            )
        return ActionResult(
            action="create_deal_from_activity",
            message=f"Created deal {deal.id} from activity {activity.id}",
            audit_log_id=entry.id,
            details={"activity_id": activity.id, "deal_id": deal.id},
        )

    async def create_activity_from_deal(
        self,
        tenant_id: str,
        request: CreateActivityFromDealRequest,
        user_id: str,
        restrict_to_owner: bool = False,
    ) -> ActionResult:
        owner = user_id if restrict_to_owner else None
        deal = await self._deal(tenant_id, request.deal_id, owner)
        if await self._repository.deal_has_activities(tenant_id, deal.id):
            raise ReconciliationError("Deal already has linked activities", 409)

        client_name = request.client_name or deal.company or deal.name
        amount = request.amount if request.amount is not None else deal.value
        async with self._repository.unit_of_work() as uow:
            activity = await uow.create_activity(
                tenant_id,
                {
                    "user_id": user_id,
                    "type": "sale",
                    "status": "completed",
                    "client_name": client_name,
                    "amount": amount,
                    "date": request.date or deal.stage_changed_at,
                    "details": request.details or f"Created from deal: {deal.name}",
                    "deal_id": deal.id,
                    "source": MANUAL_SOURCE,
                },
            )
            entry = await uow.log_action(
                tenant_id,
                ReconciliationActionType.CREATE_ACTIVITY_FROM_DEAL_MANUAL.value,
                RecordType.DEALS.value,
                deal.id,
                RecordType.SALES_ACTIVITIES.value,
                activity.id,
                confidence_score=100,
                metadata={
                    **request.metadata,
                    "created_activity_client": client_name,
                    "created_activity_amount": amount,
                    "deal_value": deal.value,
                },
                user_id=user_id,
            )
        return ActionResult(
            action="create_activity_from_deal",
            message=f"Created activity {activity.id} from deal {deal.id}",
            audit_log_id=entry.id,
            details={"activity_id": activity.id, "deal_id": deal.id},
        )

    async def mark_duplicate(
        self,
        tenant_id: str,
        request: MarkDuplicateRequest,
        user_id: str,
        restrict_to_owner: bool = False,
    ) -> ActionResult:
        owner = user_id if restrict_to_owner else None
        if request.record_type == RecordType.SALES_ACTIVITIES:
            await self._activity(tenant_id, request.record_id, owner)
            if request.keep_record_id:
                await self._activity(tenant_id, request.keep_record_id, owner)
        else:
            await self._deal(tenant_id, request.record_id, owner)
            if request.keep_record_id:
                await self._deal(tenant_id, request.keep_record_id, owner)
        if request.keep_record_id == request.record_id:
            raise ReconciliationError("A record cannot be a duplicate of itself")

        async with self._repository.unit_of_work() as uow:
            await uow.set_duplicate_flag(
                tenant_id,
                request.record_type,
                request.record_id,
                True,
                request.keep_record_id,
            )
            entry = await uow.log_action(
                tenant_id,
                ReconciliationActionType.MARK_DUPLICATE_MANUAL.value,
                request.record_type.value,
                request.record_id,
                request.record_type.value if request.keep_record_id else None,
                request.keep_record_id,
                confidence_score=100,
                metadata={**request.metadata, "record_type": request.record_type.value},
                user_id=user_id,
            )
        return ActionResult(
            action="mark_duplicate",
            message=f"Marked {request.record_type.value} {request.record_id} as duplicate",
            audit_log_id=entry.id,
            details={
                "record_type": request.record_type.value,
                "record_id": request.record_id,
                "keep_record_id": request.keep_record_id,
            },
        )

    async def merge_records(
        self,
        tenant_id: str,
        request: MergeRecordsRequest,
        user_id: str,
        restrict_to_owner: bool = False,
    ) -> ActionResult:
        record_ids = list(dict.fromkeys(request.record_ids))
        if len(record_ids) < 2:
            raise ReconciliationError("At least two distinct records are required to merge")

        unknown = set(request.merge_data) - MERGEABLE_FIELDS[request.record_type]
        if unknown:
            raise ReconciliationError(f"Fields cannot be merged: {', '.join(sorted(unknown))}")

        records = await self._repository.get_records(tenant_id, request.record_type, record_ids)
        owner_key = "user_id" if request.record_type == RecordType.SALES_ACTIVITIES else "owner_id"
        if restrict_to_owner:
            records = [r for r in records if r.get(owner_key) == user_id]
        found = {r["id"] for r in records}
        missing = [r for r in record_ids if r not in found]
        if missing:
            raise ReconciliationError(f"Records not found: {', '.join(missing)}", 404)

        keep_id = request.merge_into or record_ids[0]
        if keep_id not in found:
            raise ReconciliationError("merge_into must be one of the records being merged")
        merged_ids = [r for r in record_ids if r != keep_id]

        merge_data = {
            key: _aware(value) if key in _DATETIME_FIELDS else value
            for key, value in request.merge_data.items()
        }

        async with self._repository.unit_of_work() as uow:
            await uow.log_action(
                tenant_id,
                ReconciliationActionType.MERGE_BACKUP.value,
                request.record_type.value,
                keep_id,
                metadata={"backup_records": records, "merge_request": request.model_dump(mode="json")},
                user_id=user_id,
            )
            await uow.merge_records(
                tenant_id, request.record_type, keep_id, merged_ids, merge_data
            )
            entry = await uow.log_action(
                tenant_id,
                ReconciliationActionType.MERGE_RECORDS_MANUAL.value,
                request.record_type.value,
                keep_id,
                request.record_type.value,
                keep_id,
                confidence_score=100,
                metadata={
                    **request.metadata,
                    "merged_from": merged_ids,
                    "keep_record": keep_id,
                    "merge_data": request.merge_data,
                },
                user_id=user_id,
            )
        return ActionResult(
            action="merge_records",
            message=f"Merged {len(merged_ids)} records into {keep_id}",
            audit_log_id=entry.id,
            details={"keep_record_id": keep_id, "merged_record_ids": merged_ids},
        )

    async def undo_action(
        self,
        tenant_id: str,
        request: UndoActionRequest,
        user_id: str,
        restrict_to_owner: bool = False,
    ) -> ActionResult:
        entry = await self._repository.get_audit_entry(tenant_id, request.audit_log_id)
        if entry is None or (restrict_to_owner and entry.user_id != user_id):
            raise ReconciliationError(f"Audit entry {request.audit_log_id} not found", 404)
        if entry.action_type not in UNDOABLE_ACTIONS:
            raise ReconciliationError(f"Action {entry.action_type} cannot be undone")
        if await self._repository.has_undo_entry(tenant_id, entry.id):
            raise ReconciliationError("Action has already been undone", 409)

        async with self._repository.unit_of_work() as uow:
            undo_result = await self._revert(uow, tenant_id, entry)
            undo_entry = await uow.log_action(
                tenant_id,
                f"UNDO_{entry.action_type}",
                entry.source_table,
                entry.source_id,
                entry.target_table,
                entry.target_id,
                metadata={
                    **request.metadata,
                    "original_audit_id": entry.id,
                    "undo_result": undo_result,
                },
                user_id=user_id,
            )
        return ActionResult(
            action="undo_action",
            message=f"Undid {entry.action_type}",
            audit_log_id=undo_entry.id,
            details={"original_audit_id": entry.id, **undo_result},
        )

    async def _revert(
        self, uow: ReconciliationUnitOfWork, tenant_id: str, entry: AuditLogEntry
    ) -> dict[str, Any]:
        action = entry.action_type

        if action == ReconciliationActionType.MANUAL_LINK.value:
            await uow.unlink_activity(tenant_id, entry.source_id)
            return {"unlinked_activity_id": entry.source_id}

        if action == ReconciliationActionType.CREATE_DEAL_FROM_ACTIVITY_MANUAL.value:
            await uow.unlink_activity(tenant_id, entry.source_id)
            deleted = False
            if entry.target_id:
                deleted = await uow.delete_record_from_source(
                    tenant_id, RecordType.DEALS, entry.target_id, MANUAL_SOURCE
                )
            return {
                "unlinked_activity_id": entry.source_id,
                "deleted_deal_id": entry.target_id if deleted else None,
            }

        if action == ReconciliationActionType.CREATE_ACTIVITY_FROM_DEAL_MANUAL.value:
            deleted = False
            if entry.target_id:
                deleted = await uow.delete_record_from_source(
                    tenant_id, RecordType.SALES_ACTIVITIES, entry.target_id, MANUAL_SOURCE
                )
            return {"deleted_activity_id": entry.target_id if deleted else None}

        record_type = RecordType(entry.source_table)
        await uow.set_duplicate_flag(tenant_id, record_type, entry.source_id, False)
        return {"cleared_duplicate_id": entry.source_id, "record_type": record_type.value}
