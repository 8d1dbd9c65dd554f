"""Reconciliation repository -- async access to sales activities, deals and the audit log.

Provides ReconciliationRepository with the session_factory callable pattern.
Reads feed the in-process analysis engine. Writes go through
ReconciliationUnitOfWork, so each action (link, create, flag, merge, undo)
commits its steps and its audit row together or not at all.

All methods take tenant_id as first argument for tenant-scoped queries.
"""

from __future__ import annotations

import uuid
from collections.abc import AsyncGenerator, AsyncIterator, Callable
from contextlib import asynccontextmanager
from datetime import date, datetime, time, timezone
from typing import Any

import structlog
from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from src.app.core.identifiers import parse_id
from src.app.deals.models import DealModel
from src.app.reconciliation.models import ReconciliationAuditLogModel, SalesActivityModel
from src.app.reconciliation.schemas import (
    AnalysisFilter,
    AuditLogEntry,
    RecordType,
    ReconciliationDealRead,
    SalesActivityRead,
)

logger = structlog.get_logger(__name__)

_UUID_FIELDS = frozenset({"user_id", "owner_id", "deal_id", "duplicate_of", "merged_into"})


# ── Serialization Helpers ───────────────────────────────────────────────────


def _str_or_none(value: uuid.UUID | None) -> str | None:
    return str(value) if value is not None else None


def _coerce(key: str, value: Any) -> Any:
    if key in _UUID_FIELDS and isinstance(value, str):
        return parse_id(value)
    return value


def _model_to_activity(model: SalesActivityModel) -> SalesActivityRead:
    return SalesActivityRead(
        id=str(model.id),
        tenant_id=str(model.tenant_id),
        user_id=_str_or_none(model.user_id),
        type=model.type,
        status=model.status,
        client_name=model.client_name,
        amount=model.amount,
        date=model.date,
        sales_rep=model.sales_rep,
        details=model.details,
        deal_id=_str_or_none(model.deal_id),
        source=model.source,
        is_duplicate=model.is_duplicate,
        duplicate_of=_str_or_none(model.duplicate_of),
        merged_into=_str_or_none(model.merged_into),
        merged_at=model.merged_at,
        created_at=model.created_at,
        updated_at=model.updated_at,
    )


def _model_to_deal(model: DealModel) -> ReconciliationDealRead:
    return ReconciliationDealRead(
        id=str(model.id),
        tenant_id=str(model.tenant_id),
        name=model.name,
        company=model.company,
        value=model.value,
        one_off_revenue=model.one_off_revenue,
        monthly_mrr=model.monthly_mrr,
        stage=model.stage,
        status=model.status,
        owner_id=_str_or_none(model.owner_id),
        stage_changed_at=model.stage_changed_at,
        source=model.source,
        is_duplicate=model.is_duplicate,
        duplicate_of=_str_or_none(model.duplicate_of),
        merged_into=_str_or_none(model.merged_into),
        created_at=model.created_at,
    )


def _model_to_audit(model: ReconciliationAuditLogModel) -> AuditLogEntry:
    return AuditLogEntry(
        id=str(model.id),
        tenant_id=str(model.tenant_id),
        action_type=model.action_type,
        source_table=model.source_table,
        source_id=model.source_id,
        target_table=model.target_table,
        target_id=model.target_id,
        confidence_score=model.confidence_score,
        metadata=model.metadata_json or {},
        user_id=_str_or_none(model.user_id),
        executed_at=model.executed_at,
    )


def _serialize(record: SalesActivityRead | ReconciliationDealRead) -> dict[str, Any]:
    return record.model_dump(mode="json")


def _day_start(value: date) -> datetime:
    return datetime.combine(value, time.min, tzinfo=timezone.utc)


def _day_end(value: date) -> datetime:
    return datetime.combine(value, time.max, tzinfo=timezone.utc)


_MODELS = {
    RecordType.SALES_ACTIVITIES: SalesActivityModel,
    RecordType.DEALS: DealModel,
}


class ReconciliationRepository:
    """Async CRUD for reconciliation data.

    Args:
        session_factory: Async callable that yields AsyncSession instances.
    """

    def __init__(
        self, session_factory: Callable[..., AsyncGenerator[AsyncSession, None]]
    ) -> None:
        self._session_factory = session_factory

    # ── Reads ───────────────────────────────────────────────────────────────

    async def list_activities(
        self, tenant_id: str, filters: AnalysisFilter | None = None
    ) -> list[SalesActivityRead]:
        """Sales activities excluding merged rows, narrowed by owner and date range."""
        async for session in self._session_factory():
            stmt = select(SalesActivityModel).where(
                SalesActivityModel.tenant_id == parse_id(tenant_id),
                SalesActivityModel.status != "merged",
            )
            if filters is not None:
                if filters.user_id:
                    stmt = stmt.where(SalesActivityModel.user_id == parse_id(filters.user_id))
                if filters.start_date:
                    stmt = stmt.where(SalesActivityModel.date >= _day_start(filters.start_date))
                if filters.end_date:
                    stmt = stmt.where(SalesActivityModel.date <= _day_end(filters.end_date))
            result = await session.execute(stmt.order_by(SalesActivityModel.date.desc()))
            return [_model_to_activity(m) for m in result.scalars().all()]

    async def list_deals(
        self, tenant_id: str, filters: AnalysisFilter | None = None
    ) -> list[ReconciliationDealRead]:
        """Deals excluding merged rows, narrowed by owner and stage-change date."""
        async for session in self._session_factory():
            stmt = select(DealModel).where(
                DealModel.tenant_id == parse_id(tenant_id),
                DealModel.status != "merged",
            )
            if filters is not None:
                if filters.user_id:
                    stmt = stmt.where(DealModel.owner_id == parse_id(filters.user_id))
                if filters.start_date:
                    stmt = stmt.where(DealModel.stage_changed_at >= _day_start(filters.start_date))
                if filters.end_date:
                    stmt = stmt.where(DealModel.stage_changed_at <= _day_end(filters.end_date))
            result = await session.execute(stmt.order_by(DealModel.stage_changed_at.desc()))
            return [_model_to_deal(m) for m in result.scalars().all()]

    async def get_activity(self, tenant_id: str, activity_id: str) -> SalesActivityRead | None:
        async for session in self._session_factory():
            result = await session.execute(
                select(SalesActivityModel).where(
                    SalesActivityModel.tenant_id == parse_id(tenant_id),
                    SalesActivityModel.id == parse_id(activity_id),
                )
            )
            model = result.scalar_one_or_none()
            return _model_to_activity(model) if model is not None else None

    async def get_deal(self, tenant_id: str, deal_id: str) -> ReconciliationDealRead | None:
        async for session in self._session_factory():
            result = await session.execute(
                select(DealModel).where(
                    DealModel.tenant_id == parse_id(tenant_id),
                    DealModel.id == parse_id(deal_id),
                )
            )
            model = result.scalar_one_or_none()
            return _model_to_deal(model) if model is not None else None

    async def get_records(
        self, tenant_id: str, record_type: RecordType, record_ids: list[str]
    ) -> list[dict[str, Any]]:
        """Rows of either record type as JSON-ready dicts."""
        model_cls = _MODELS[record_type]
        to_read = _model_to_activity if record_type == RecordType.SALES_ACTIVITIES else _model_to_deal
        async for session in self._session_factory():
            result = await session.execute(
                select(model_cls).where(
                    model_cls.tenant_id == parse_id(tenant_id),
                    model_cls.id.in_([parse_id(r) for r in record_ids]),
                )
            )
            return [_serialize(to_read(m)) for m in result.scalars().all()]

    async def deal_has_activities(self, tenant_id: str, deal_id: str) -> bool:
        async for session in self._session_factory():
            result = await session.execute(
                select(SalesActivityModel.id)
                .where(
                    SalesActivityModel.tenant_id == parse_id(tenant_id),
                    SalesActivityModel.deal_id == parse_id(deal_id),
                )
                .limit(1)
            )
            return result.first() is not None

    # ── Unit of Work ────────────────────────────────────────────────────────

    @asynccontextmanager
    async def unit_of_work(self) -> AsyncIterator[ReconciliationUnitOfWork]:
        """One session and one commit for every write of an action.

        Usage:
            async with repository.unit_of_work() as uow:
                deal = await uow.create_deal(tenant_id, data)
                await uow.log_action(tenant_id, ...)

        Any exception raised inside the block rolls all of its writes back.
        """
        async for session in self._session_factory():
            try:
                yield ReconciliationUnitOfWork(session)
            except BaseException:
                await session.rollback()
                raise
            await session.commit()

    # ── Audit Log ───────────────────────────────────────────────────────────

    async def get_audit_entry(self, tenant_id: str, audit_id: str) -> AuditLogEntry | None:
        async for session in self._session_factory():
            result = await session.execute(
                select(ReconciliationAuditLogModel).where(
                    ReconciliationAuditLogModel.tenant_id == parse_id(tenant_id),
                    ReconciliationAuditLogModel.id == parse_id(audit_id),
                )
            )
            model = result.scalar_one_or_none()
            return _model_to_audit(model) if model is not None else None

    async def has_undo_entry(self, tenant_id: str, audit_id: str) -> bool:
        """True if an UNDO_* row already references the given audit row."""
        async for session in self._session_factory():
            result = await session.execute(
                select(ReconciliationAuditLogModel.id)
                .where(
                    ReconciliationAuditLogModel.tenant_id == parse_id(tenant_id),
                    ReconciliationAuditLogModel.action_type.startswith("UNDO_"),
                    ReconciliationAuditLogModel.metadata_json["original_audit_id"].as_string()
                    == audit_id,
                )
                .limit(1)
            )
            return result.first() is not None

    async def list_audit_log(
        self,
        tenant_id: str,
        user_id: str | None = None,
        action_type: str | None = None,
        limit: int = 100,
    ) -> list[AuditLogEntry]:
        """Audit rows, newest first."""
        async for session in self._session_factory():
            stmt = select(ReconciliationAuditLogModel).where(
                ReconciliationAuditLogModel.tenant_id == parse_id(tenant_id),
            )
            if user_id is not None:
                stmt = stmt.where(ReconciliationAuditLogModel.user_id == parse_id(user_id))
            if action_type is not None:
                stmt = stmt.where(ReconciliationAuditLogModel.action_type == action_type)
            stmt = stmt.order_by(ReconciliationAuditLogModel.executed_at.desc()).limit(limit)
            result = await session.execute(stmt)
            return [_model_to_audit(m) for m in result.scalars().all()]


class ReconciliationUnitOfWork:
    """Write steps of one reconciliation action, sharing a single transaction.

    Steps flush but never commit; ReconciliationRepository.unit_of_work
    commits or rolls back the whole action.
    """

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def link_activity(self, tenant_id: str, activity_id: str, deal_id: str) -> bool:
        """Link an unlinked activity to a deal.

        Returns False when the activity is already linked, including by a
        concurrent action that committed after this one read the row.
        """
        result = await self._session.execute(
            update(SalesActivityModel)
            .where(
                SalesActivityModel.tenant_id == parse_id(tenant_id),
                SalesActivityModel.id == parse_id(activity_id),
                SalesActivityModel.deal_id.is_(None),
            )
            .values(deal_id=parse_id(deal_id), updated_at=datetime.now(timezone.utc))
        )
        return result.rowcount > 0

    async def unlink_activity(self, tenant_id: str, activity_id: str) -> None:
        await self._session.execute(
            update(SalesActivityModel)
            .where(
                SalesActivityModel.tenant_id == parse_id(tenant_id),
                SalesActivityModel.id == parse_id(activity_id),
            )
            .values(deal_id=None, updated_at=datetime.now(timezone.utc))
        )

    async def create_deal(self, tenant_id: str, data: dict[str, Any]) -> ReconciliationDealRead:
        model = DealModel(
            tenant_id=parse_id(tenant_id),
            **{k: _coerce(k, v) for k, v in data.items()},
        )
        self._session.add(model)
        await self._session.flush()
        await self._session.refresh(model)
        return _model_to_deal(model)

    async def create_activity(self, tenant_id: str, data: dict[str, Any]) -> SalesActivityRead:
        model = SalesActivityModel(
            tenant_id=parse_id(tenant_id),
            **{k: _coerce(k, v) for k, v in data.items()},
        )
        self._session.add(model)
        await self._session.flush()
        await self._session.refresh(model)
        return _model_to_activity(model)

    async def delete_record_from_source(
        self, tenant_id: str, record_type: RecordType, record_id: str, source: str
    ) -> bool:
        """Delete a row only if it was created with the given source."""
        model_cls = _MODELS[record_type]
        result = await self._session.execute(
            delete(model_cls).where(
                model_cls.tenant_id == parse_id(tenant_id),
                model_cls.id == parse_id(record_id),
                model_cls.source == source,
            )
        )
        return result.rowcount > 0

    async def set_duplicate_flag(
        self,
        tenant_id: str,
        record_type: RecordType,
        record_id: str,
        is_duplicate: bool,
        duplicate_of: str | None = None,
    ) -> None:
        model_cls = _MODELS[record_type]
        await self._session.execute(
            update(model_cls)
            .where(
                model_cls.tenant_id == parse_id(tenant_id),
                model_cls.id == parse_id(record_id),
            )
            .values(
                is_duplicate=is_duplicate,
                duplicate_of=parse_id(duplicate_of) if duplicate_of else None,
                updated_at=datetime.now(timezone.utc),
            )
        )

    async def merge_records(
        self,
        tenant_id: str,
        record_type: RecordType,
        keep_id: str,
        merged_ids: list[str],
        merge_data: dict[str, Any],
    ) -> None:
        """Apply merge_data to the kept row and soft-delete the rest."""
        model_cls = _MODELS[record_type]
        now = datetime.now(timezone.utc)
        tid = parse_id(tenant_id)
        await self._session.execute(
            update(model_cls)
            .where(model_cls.tenant_id == tid, model_cls.id == parse_id(keep_id))
            .values(**{k: _coerce(k, v) for k, v in merge_data.items()}, updated_at=now)
        )
        if merged_ids:
            await self._session.execute(
                update(model_cls)
                .where(
                    model_cls.tenant_id == tid,
                    model_cls.id.in_([parse_id(r) for r in merged_ids]),
                )
                .values(
                    status="merged",
                    merged_into=parse_id(keep_id),
                    merged_at=now,
                    updated_at=now,
                )
            )

    async def log_action(
        self,
        tenant_id: str,
        action_type: str,
        source_table: str,
        source_id: str,
        target_table: str | None = None,
        target_id: str | None = None,
        confidence_score: float | None = None,
        metadata: dict[str, Any] | None = None,
        user_id: str | None = None,
    ) -> AuditLogEntry:
        model = ReconciliationAuditLogModel(
            tenant_id=parse_id(tenant_id),
            action_type=action_type,
            source_table=source_table,
            source_id=source_id,
            target_table=target_table,
            target_id=target_id,
            confidence_score=confidence_score,
            metadata_json=metadata or {},
            user_id=parse_id(user_id) if user_id else None,
        )
        self._session.add(model)
        await self._session.flush()
        await self._session.refresh(model)
        logger.info(
            "reconciliation.action_logged",
            tenant_id=tenant_id,
            action_type=action_type,
            source_id=source_id,
            target_id=target_id,
        )
        return _model_to_audit(model)
