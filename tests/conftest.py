"""Test fixtures.

Provides:
- FastAPI test app with initialized database (tests using it are marked
  `database`; run `pytest -m "not database"` without PostgreSQL and Redis)
- Async HTTP client for API testing
- Two test tenants (test-alpha, test-beta) with isolated schemas
- An admin user and access token in test-alpha
- Tenant-scoped database sessions
- A builder for router-only apps with auth bypassed (no database needed)
- InMemoryDealRepository, shared by the deal service and API tests
- InMemoryReconciliationRepository for reconciliation action and API tests
- Cleanup of test data after all tests
"""

from __future__ import annotations

import uuid
from collections.abc import AsyncGenerator, Iterable
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any
from unittest.mock import MagicMock

import pytest
import pytest_asyncio
from fastapi import APIRouter, FastAPI
from httpx import ASGITransport, AsyncClient
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from src.app.core.database import close_db, get_engine, init_db
from src.app.core.identifiers import InvalidIdError, invalid_id_handler
from src.app.core.redis import close_redis
from src.app.core.security import create_access_token, hash_password
from src.app.core.tenant import TenantContext, _tenant_context, set_tenant_context
from src.app.deals.repository import MigrationReviewClosedError
from src.app.deals.schemas import (
    AlertStatus,
    ClosePlanItem,
    ClosePlanItemUpdate,
    CompanyCreate,
    CompanyRead,
    ContactCreate,
    ContactRead,
    DealClarityScore,
    DealCreate,
    DealFilter,
    DealHealthAlert,
    DealHealthRule,
    DealHealthScore,
    DealRead,
    DealTruthField,
    DealUpdate,
    MigrationReviewCreate,
    MigrationReviewRead,
    MigrationReviewResolve,
    MigrationReviewStatus,
    MilestoneStatus,
    TruthFieldSource,
    TruthFieldUpsert,
)
from src.app.main import create_app
from src.app.reconciliation.schemas import (
    AuditLogEntry,
    ReconciliationDealRead,
    RecordType,
    SalesActivityRead,
)

TEST_TENANT_ID = "6f1c2b7e-3a41-4d8e-9a0b-5c2d7e8f9a10"


# ── Database-backed App ─────────────────────────────────────────────────────


@pytest_asyncio.fixture(scope="session")
async def app():
    """Create the FastAPI app and initialize the database."""
    application = create_app()

    # Initialize database (creates shared schema + tables)
    await init_db()

    yield application

    # Cleanup: drop test tenant schemas
    engine = get_engine()
    async with engine.begin() as conn:
        await conn.execute(text("DROP SCHEMA IF EXISTS tenant_test_alpha CASCADE"))
        await conn.execute(text("DROP SCHEMA IF EXISTS tenant_test_beta CASCADE"))
        await conn.execute(text("DELETE FROM shared.tenants WHERE slug IN ('test-alpha', 'test-beta')"))

    await close_db()
    await close_redis()


@pytest_asyncio.fixture(scope="session")
async def client(app) -> AsyncGenerator[AsyncClient, None]:
    """Async HTTP client for testing the API."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


@pytest_asyncio.fixture(scope="session")
async def tenant_alpha(client) -> dict:
    """Provision test-alpha tenant."""
    response = await client.post(
        "/api/v1/tenants",
        json={"slug": "test-alpha", "name": "Test Alpha"},
    )
    assert response.status_code == 201, f"Failed to create test-alpha: {response.text}"
    return response.json()


@pytest_asyncio.fixture(scope="session")
async def tenant_beta(client, tenant_alpha) -> dict:
    """Provision test-beta tenant (after alpha to ensure ordering)."""
    response = await client.post(
        "/api/v1/tenants",
        json={"slug": "test-beta", "name": "Test Beta", "currency_code": "USD"},
    )
    assert response.status_code == 201, f"Failed to create test-beta: {response.text}"
    return response.json()


@pytest_asyncio.fixture(scope="session")
async def alpha_user(tenant_alpha) -> dict:
    """Admin user in test-alpha with a known password."""
    user = {
        "id": str(uuid.uuid4()),
        "tenant_id": tenant_alpha["id"],
        "email": "admin@alpha.example.com",
        "password": "alpha-secret-password",
    }
    engine = get_engine()
    async with engine.begin() as conn:
        await conn.execute(text(f"SET LOCAL app.current_tenant_id = '{tenant_alpha['id']}'"))
        await conn.execute(
            text("""
                INSERT INTO tenant_test_alpha.users
                    (id, tenant_id, email, name, role, is_active, hashed_password)
                VALUES (:id, :tid, :email, 'Alpha Admin', 'admin', true, :hashed)
            """),
            {
                "id": uuid.UUID(user["id"]),
                "tid": uuid.UUID(tenant_alpha["id"]),
                "email": user["email"],
                "hashed": hash_password(user["password"]),
            },
        )
    return user


@pytest_asyncio.fixture(scope="session")
async def alpha_token(alpha_user) -> str:
    """Access token for the test-alpha admin."""
    return create_access_token(
        {
            "sub": alpha_user["id"],
            "tenant_id": alpha_user["tenant_id"],
            "tenant_slug": "test-alpha",
            "email": alpha_user["email"],
            "role": "admin",
        }
    )


@pytest_asyncio.fixture
async def alpha_session(tenant_alpha) -> AsyncGenerator[AsyncSession, None]:
    """Database session scoped to tenant alpha."""
    engine = get_engine()
    tenant = TenantContext(
        tenant_id=tenant_alpha["id"],
        tenant_slug="test-alpha",
        schema_name="tenant_test_alpha",
    )
    token = set_tenant_context(tenant)
    try:
        async with engine.connect() as conn:
            conn = await conn.execution_options(
                schema_translate_map={"tenant": "tenant_test_alpha"}
            )
            await conn.execute(text(f"SET app.current_tenant_id = '{tenant_alpha['id']}'"))
            await conn.commit()
            async with AsyncSession(bind=conn, expire_on_commit=False) as session:
                yield session
    finally:
        _tenant_context.reset(token)


@pytest_asyncio.fixture
async def beta_session(tenant_beta) -> AsyncGenerator[AsyncSession, None]:
    """Database session scoped to tenant beta."""
    engine = get_engine()
    tenant = TenantContext(
        tenant_id=tenant_beta["id"],
        tenant_slug="test-beta",
        schema_name="tenant_test_beta",
    )
    token = set_tenant_context(tenant)
    try:
        async with engine.connect() as conn:
            conn = await conn.execution_options(
                schema_translate_map={"tenant": "tenant_test_beta"}
            )
            await conn.execute(text(f"SET app.current_tenant_id = '{tenant_beta['id']}'"))
            await conn.commit()
            async with AsyncSession(bind=conn, expire_on_commit=False) as session:
                yield session
    finally:
        _tenant_context.reset(token)


# ── Router-only Apps ────────────────────────────────────────────────────────


def _mock_user(role: str, user_id: str | None = None) -> MagicMock:
    mock_user = MagicMock()
    mock_user.id = uuid.UUID(user_id) if user_id else uuid.uuid4()
    mock_user.tenant_id = TEST_TENANT_ID
    mock_user.email = f"{role}@example.com"
    mock_user.name = role.title()
    mock_user.is_active = True
    mock_user.role = role
    return mock_user


def _mock_tenant() -> MagicMock:
    mock_tenant = MagicMock()
    mock_tenant.tenant_id = TEST_TENANT_ID
    mock_tenant.tenant_slug = "test"
    mock_tenant.schema_name = "tenant_test"
    return mock_tenant


@pytest.fixture
def api_app():
    """Builder for a minimal app serving ``router`` under /api/v1.

    Auth and tenant resolution are replaced by a mock user with ``role``.
    Extra keyword arguments become app.state attributes. The mock user is
    exposed as app.state.test_user.
    """
    from src.app.api.deps import get_current_user, get_tenant

    def _build(router: APIRouter, role: str = "admin", user_id: str | None = None, **state: Any) -> FastAPI:
        app = FastAPI()
        app.include_router(router, prefix="/api/v1")
        app.add_exception_handler(InvalidIdError, invalid_id_handler)
        user = _mock_user(role, user_id)
        app.dependency_overrides[get_current_user] = lambda: user
        app.dependency_overrides[get_tenant] = _mock_tenant
        app.state.test_user = user
        for name, value in state.items():
            setattr(app.state, name, value)
        return app

    return _build


@pytest.fixture
def tenant_id() -> str:
    return TEST_TENANT_ID


# ── In-Memory Test Double ────────────────────────────────────────────────────


def _now() -> datetime:
    return datetime.now(timezone.utc)


class InMemoryDealRepository:
    """In-memory DealRepository for testing without database."""

    def __init__(self) -> None:
        self.deals: dict[str, DealRead] = {}
        self.companies: dict[str, CompanyRead] = {}
        self.contacts: dict[str, ContactRead] = {}
        self.truth_fields: dict[tuple[str, str], DealTruthField] = {}
        self.close_plan: dict[tuple[str, str], ClosePlanItem] = {}
        self.clarity_scores: dict[str, DealClarityScore] = {}
        self.health_scores: dict[str, DealHealthScore] = {}
        self.rules: list[DealHealthRule] = []
        self.alerts: dict[str, DealHealthAlert] = {}
        self.reviews: dict[str, MigrationReviewRead] = {}
        self.user_names: dict[str, str] = {}
        self._tenants: dict[str, str] = {}

    # Deals

    async def create_deal(self, tenant_id: str, data: DealCreate) -> DealRead:
        deal_id = str(uuid.uuid4())
        now = _now()
        deal = DealRead(
            id=deal_id,
            tenant_id=tenant_id,
            **data.model_dump(exclude={"stage", "status", "stage_changed_at"}),
            stage=data.stage.value,
            status=data.status.value,
            stage_changed_at=data.stage_changed_at or now,
            created_at=now,
            updated_at=now,
        )
        self.deals[deal_id] = deal
        return deal

    async def get_deal(self, tenant_id: str, deal_id: str) -> DealRead | None:
        deal = self.deals.get(deal_id)
        if deal and deal.tenant_id == tenant_id:
            return deal
        return None

    async def list_deals(self, tenant_id: str, filters: DealFilter | None = None) -> list[DealRead]:
        deals = [d for d in self.deals.values() if d.tenant_id == tenant_id]
        if filters is not None:
            if filters.stage is not None:
                deals = [d for d in deals if d.stage == filters.stage.value]
            if filters.status is not None:
                deals = [d for d in deals if d.status == filters.status.value]
            if filters.owner_id is not None:
                deals = [d for d in deals if d.owner_id == filters.owner_id]
        return deals

    async def update_deal(self, tenant_id: str, deal_id: str, data: DealUpdate) -> DealRead:
        deal = await self.get_deal(tenant_id, deal_id)
        if deal is None:
            raise ValueError(f"Deal not found: tenant={tenant_id}, id={deal_id}")
        changes = {
            k: getattr(v, "value", v) for k, v in data.model_dump(exclude_none=True).items()
        }
        if "stage" in changes and changes["stage"] != deal.stage:
            changes["stage_changed_at"] = _now()
        updated = deal.model_copy(update={**changes, "updated_at": _now()})
        self.deals[deal_id] = updated
        return updated

    async def delete_deal(self, tenant_id: str, deal_id: str) -> bool:
        if await self.get_deal(tenant_id, deal_id) is None:
            return False
        del self.deals[deal_id]
        for store in (self.truth_fields, self.close_plan):
            for key in [k for k in store if k[0] == deal_id]:
                del store[key]
        self.clarity_scores.pop(deal_id, None)
        self.health_scores.pop(deal_id, None)
        return True

    async def list_deal_score_rows(
        self,
        tenant_id: str,
        stages: Iterable[str] | None = None,
        deal_id: str | None = None,
        require_owner: bool = False,
    ) -> list[dict[str, Any]]:
        stage_set = set(stages) if stages is not None else None
        rows = []
        for deal in await self.list_deals(tenant_id):
            if stage_set is not None and deal.stage not in stage_set:
                continue
            if deal_id is not None and deal.id != deal_id:
                continue
            if require_owner and not deal.owner_id:
                continue
            clarity = self.clarity_scores.get(deal.id)
            health = self.health_scores.get(deal.id)
            company = self.companies.get(deal.company_id) if deal.company_id else None
            rows.append(
                {
                    "deal_id": deal.id,
                    "deal_name": deal.name,
                    "company_name": company.name if company else deal.company,
                    "deal_value": deal.value,
                    "deal_stage": deal.stage,
                    "deal_status": deal.status,
                    "owner_user_id": deal.owner_id,
                    "clarity_score": clarity.clarity_score if clarity else None,
                    "momentum_score": clarity.momentum_score if clarity else None,
                    "close_plan_completed": clarity.close_plan_completed if clarity else 0,
                    "close_plan_total": clarity.close_plan_total if clarity else 0,
                    "health_score": health.overall_health_score if health else None,
                    "health_status": health.health_status.value if health else None,
                    "risk_level": health.risk_level.value if health else None,
                    "risk_score": health.risk_score if health else None,
                }
            )
        return rows

    # Companies & contacts

    async def create_company(self, tenant_id: str, data: CompanyCreate) -> CompanyRead:
        company = CompanyRead(id=str(uuid.uuid4()), name=data.name, domain=data.domain, created_at=_now())
        self.companies[company.id] = company
        self._tenants[company.id] = tenant_id
        return company

    async def list_companies(self, tenant_id: str) -> list[CompanyRead]:
        return sorted(
            (c for c in self.companies.values() if self._tenants.get(c.id) == tenant_id),
            key=lambda c: c.name,
        )

    async def get_company(self, tenant_id: str, company_id: str) -> CompanyRead | None:
        if self._tenants.get(company_id) != tenant_id:
            return None
        return self.companies.get(company_id)

    async def create_contact(self, tenant_id: str, data: ContactCreate) -> ContactRead:
        contact = ContactRead(id=str(uuid.uuid4()), **data.model_dump(), created_at=_now())
        self.contacts[contact.id] = contact
        self._tenants[contact.id] = tenant_id
        return contact

    async def list_contacts(self, tenant_id: str, company_id: str | None = None) -> list[ContactRead]:
        contacts = [c for c in self.contacts.values() if self._tenants.get(c.id) == tenant_id]
        if company_id is not None:
            contacts = [c for c in contacts if c.company_id == company_id]
        return sorted(contacts, key=lambda c: c.name)

    async def get_contact(self, tenant_id: str, contact_id: str) -> ContactRead | None:
        if self._tenants.get(contact_id) != tenant_id:
            return None
        return self.contacts.get(contact_id)

    async def get_contact_names(self, tenant_id: str, contact_ids: Iterable[str]) -> dict[str, str]:
        return {c: self.contacts[c].name for c in contact_ids if c in self.contacts}

    async def get_user_names(self, tenant_id: str, user_ids: Iterable[str]) -> dict[str, str]:
        return {u: self.user_names[u] for u in user_ids if u in self.user_names}

    # Truth fields

    async def list_truth_fields(self, tenant_id: str, deal_id: str) -> list[DealTruthField]:
        return [f for (d, _), f in self.truth_fields.items() if d == deal_id]

    async def get_truth_field(self, tenant_id: str, deal_id: str, field_key: str) -> DealTruthField | None:
        return self.truth_fields.get((deal_id, field_key))

    async def upsert_truth_field(
        self, tenant_id: str, deal_id: str, field_key: str, data: TruthFieldUpsert
    ) -> DealTruthField:
        existing = self.truth_fields.get((deal_id, field_key))
        field = DealTruthField(
            id=existing.id if existing else str(uuid.uuid4()),
            deal_id=deal_id,
            field_key=field_key,
            **data.model_dump(),
            last_updated_at=_now(),
        )
        self.truth_fields[(deal_id, field_key)] = field
        return field

    async def update_truth_field_confidence(
        self,
        tenant_id: str,
        deal_id: str,
        field_key: str,
        confidence: float,
        source: TruthFieldSource = TruthFieldSource.MANUAL,
    ) -> DealTruthField:
        field = self.truth_fields.get((deal_id, field_key))
        if field is None:
            raise ValueError(f"Truth field not found: deal={deal_id}, field_key={field_key}")
        updated = field.model_copy(
            update={"confidence": max(0.0, min(1.0, confidence)), "source": source}
        )
        self.truth_fields[(deal_id, field_key)] = updated
        return updated

    async def delete_truth_field(self, tenant_id: str, deal_id: str, field_key: str) -> bool:
        return self.truth_fields.pop((deal_id, field_key), None) is not None

    # Close plan

    async def list_close_plan(self, tenant_id: str, deal_id: str) -> list[ClosePlanItem]:
        items = [i for (d, _), i in self.close_plan.items() if d == deal_id]
        return sorted(items, key=lambda i: i.sort_order)

    async def add_close_plan_items(
        self, tenant_id: str, deal_id: str, items: list[ClosePlanItem]
    ) -> list[ClosePlanItem]:
        for item in items:
            key = (deal_id, item.milestone_key.value)
            if key not in self.close_plan:
                self.close_plan[key] = item.model_copy(update={"id": str(uuid.uuid4())})
        return await self.list_close_plan(tenant_id, deal_id)

    async def update_close_plan_item(
        self,
        tenant_id: str,
        deal_id: str,
        milestone_key: str,
        data: ClosePlanItemUpdate,
        user_id: str | None = None,
    ) -> ClosePlanItem:
        item = self.close_plan.get((deal_id, milestone_key))
        if item is None:
            raise ValueError(f"Close plan item not found: deal={deal_id}, milestone={milestone_key}")
        changes: dict[str, Any] = data.model_dump(exclude_none=True)
        if data.status is not None:
            completed = data.status == MilestoneStatus.COMPLETED
            changes["completed_at"] = _now() if completed else None
            changes["completed_by"] = user_id if completed else None
        updated = item.model_copy(update=changes)
        self.close_plan[(deal_id, milestone_key)] = updated
        return updated

    # Scores

    async def get_clarity_score(self, tenant_id: str, deal_id: str) -> DealClarityScore | None:
        return self.clarity_scores.get(deal_id)

    async def upsert_clarity_score(self, tenant_id: str, score: DealClarityScore) -> DealClarityScore:
        saved = score.model_copy(update={"last_calculated_at": _now()})
        self.clarity_scores[score.deal_id] = saved
        return saved

    async def get_health_score(self, tenant_id: str, deal_id: str) -> DealHealthScore | None:
        return self.health_scores.get(deal_id)

    async def upsert_health_score(self, tenant_id: str, score: DealHealthScore) -> DealHealthScore:
        saved = score.model_copy(update={"id": str(uuid.uuid4()), "calculated_at": _now()})
        self.health_scores[score.deal_id] = saved
        return saved

    # Rules & alerts

    async def list_health_rules(self, tenant_id: str, active_only: bool = True) -> list[DealHealthRule]:
        return [r for r in self.rules if r.is_active or not active_only]

    async def create_health_rule(self, tenant_id: str, rule: DealHealthRule) -> DealHealthRule:
        saved = rule.model_copy(update={"id": str(uuid.uuid4())})
        self.rules.append(saved)
        return saved

    async def get_active_alert(self, tenant_id: str, deal_id: str, alert_type: str) -> DealHealthAlert | None:
        for alert in self.alerts.values():
            if (
                alert.deal_id == deal_id
                and alert.alert_type.value == alert_type
                and alert.status == AlertStatus.ACTIVE
            ):
                return alert
        return None

    async def create_alert(self, tenant_id: str, alert: DealHealthAlert) -> DealHealthAlert:
        saved = alert.model_copy(update={"id": str(uuid.uuid4()), "created_at": _now()})
        self.alerts[saved.id] = saved
        return saved

    async def get_alert(self, tenant_id: str, alert_id: str) -> DealHealthAlert | None:
        return self.alerts.get(alert_id)

    async def list_alerts(
        self,
        tenant_id: str,
        deal_id: str | None = None,
        user_id: str | None = None,
        status: str | None = None,
    ) -> list[DealHealthAlert]:
        alerts = list(self.alerts.values())
        if deal_id is not None:
            alerts = [a for a in alerts if a.deal_id == deal_id]
        if user_id is not None:
            alerts = [a for a in alerts if a.user_id == user_id]
        if status is not None:
            alerts = [a for a in alerts if a.status.value == status]
        return alerts

    async def update_alert_status(
        self, tenant_id: str, alert_id: str, status: AlertStatus, user_id: str | None = None
    ) -> DealHealthAlert:
        alert = self.alerts.get(alert_id)
        if alert is None:
            raise ValueError(f"Alert not found: tenant={tenant_id}, id={alert_id}")
        changes: dict[str, Any] = {"status": status}
        if status == AlertStatus.ACKNOWLEDGED:
            changes.update(acknowledged_at=_now(), acknowledged_by=user_id)
        elif status == AlertStatus.RESOLVED:
            changes["resolved_at"] = _now()
        elif status == AlertStatus.DISMISSED:
            changes["dismissed_at"] = _now()
        updated = alert.model_copy(update=changes)
        self.alerts[alert_id] = updated
        return updated

    # Migration reviews

    async def flag_migration_review(self, tenant_id: str, data: MigrationReviewCreate) -> MigrationReviewRead:
        review = MigrationReviewRead(id=str(uuid.uuid4()), **data.model_dump(), flagged_at=_now())
        self.reviews[review.id] = review
        return review

    async def list_migration_reviews(
        self,
        tenant_id: str,
        status: str | None = MigrationReviewStatus.PENDING.value,
        search: str | None = None,
    ) -> list[MigrationReviewRead]:
        reviews = list(self.reviews.values())
        if status is not None:
            reviews = [r for r in reviews if r.status.value == status]
        if search:
            needle = search.strip().lower()
            reviews = [
                r
                for r in reviews
                if any(
                    needle in (value or "").lower()
                    for value in (
                        self.deals[r.deal_id].name if r.deal_id in self.deals else None,
                        r.original_company,
                        r.original_contact_name,
                        r.original_contact_email,
                    )
                )
            ]
        return reviews

    async def get_migration_review(self, tenant_id: str, review_id: str) -> MigrationReviewRead | None:
        return self.reviews.get(review_id)

    async def resolve_migration_review(
        self,
        tenant_id: str,
        review_id: str,
        data: MigrationReviewResolve,
        resolved_by: str | None = None,
    ) -> MigrationReviewRead:
        review = self.reviews.get(review_id)
        if review is None:
            raise ValueError(f"Migration review not found: id={review_id}")
        if review.status != MigrationReviewStatus.PENDING:
            raise MigrationReviewClosedError(review_id, review.status.value)
        deal = self.deals.get(review.deal_id)
        if deal is None:
            raise ValueError(f"Deal not found: id={review.deal_id}")
        self.deals[deal.id] = deal.model_copy(
            update={"company_id": data.company_id, "contact_id": data.contact_id}
        )
        resolved = review.model_copy(
            update={
                "status": MigrationReviewStatus.RESOLVED,
                "resolved_at": _now(),
                "resolved_by": resolved_by,
                "resolution_notes": data.notes,
            }
        )
        self.reviews[review_id] = resolved
        return resolved

    async def archive_migration_review(self, tenant_id: str, review_id: str) -> MigrationReviewRead:
        review = self.reviews.get(review_id)
        if review is None:
            raise ValueError(f"Migration review not found: id={review_id}")
        if review.status != MigrationReviewStatus.PENDING:
            raise MigrationReviewClosedError(review_id, review.status.value)
        archived = review.model_copy(update={"status": MigrationReviewStatus.ARCHIVED})
        self.reviews[review_id] = archived
        return archived


@pytest.fixture
def deal_repo() -> InMemoryDealRepository:
    return InMemoryDealRepository()


class InMemoryReconciliationRepository:
    """Dict-backed stand-in for ReconciliationRepository."""

    def __init__(self) -> None:
        self.activities: dict[str, SalesActivityRead] = {}
        self.deals: dict[str, ReconciliationDealRead] = {}
        self.audit: list[AuditLogEntry] = []

    def _store(self, record_type: RecordType) -> dict[str, Any]:
        return self.activities if record_type == RecordType.SALES_ACTIVITIES else self.deals

    async def list_activities(self, tenant_id, filters=None):
        activities = [a for a in self.activities.values() if a.tenant_id == tenant_id]
        if filters is not None and filters.user_id is not None:
            activities = [a for a in activities if a.user_id == filters.user_id]
        return activities

    async def list_deals(self, tenant_id, filters=None):
        deals = [d for d in self.deals.values() if d.tenant_id == tenant_id]
        if filters is not None and filters.user_id is not None:
            deals = [d for d in deals if d.owner_id == filters.user_id]
        return deals

    async def list_audit_log(self, tenant_id, user_id=None, action_type=None, limit=100):
        entries = [e for e in reversed(self.audit) if e.tenant_id == tenant_id]
        if user_id is not None:
            entries = [e for e in entries if e.user_id == user_id]
        if action_type is not None:
            entries = [e for e in entries if e.action_type == action_type]
        return entries[:limit]

    async def get_activity(self, tenant_id, activity_id):
        return self.activities.get(activity_id)

    async def get_deal(self, tenant_id, deal_id):
        return self.deals.get(deal_id)

    async def get_records(self, tenant_id, record_type, record_ids):
        store = self._store(record_type)
        return [store[r].model_dump(mode="json") for r in record_ids if r in store]

    async def deal_has_activities(self, tenant_id, deal_id):
        return any(a.deal_id == deal_id for a in self.activities.values())

    @asynccontextmanager
    async def unit_of_work(self):
        """Yields itself; an exception in the block restores the prior state."""
        saved = (dict(self.activities), dict(self.deals), list(self.audit))
        try:
            yield self
        except BaseException:
            self.activities, self.deals, self.audit = saved
            raise

    async def link_activity(self, tenant_id, activity_id, deal_id):
        if self.activities[activity_id].deal_id is not None:
            return False
        self.activities[activity_id] = self.activities[activity_id].model_copy(
            update={"deal_id": deal_id}
        )
        return True

    async def unlink_activity(self, tenant_id, activity_id):
        self.activities[activity_id] = self.activities[activity_id].model_copy(
            update={"deal_id": None}
        )

    async def create_deal(self, tenant_id, data):
        deal = ReconciliationDealRead(id=str(uuid.uuid4()), tenant_id=tenant_id, **data)
        self.deals[deal.id] = deal
        return deal

    async def create_activity(self, tenant_id, data):
        activity = SalesActivityRead(id=str(uuid.uuid4()), tenant_id=tenant_id, **data)
        self.activities[activity.id] = activity
        return activity

    async def delete_record_from_source(self, tenant_id, record_type, record_id, source):
        store = self._store(record_type)
        record = store.get(record_id)
        if record is None or record.source != source:
            return False
        del store[record_id]
        return True

    async def set_duplicate_flag(self, tenant_id, record_type, record_id, is_duplicate, duplicate_of=None):
        store = self._store(record_type)
        store[record_id] = store[record_id].model_copy(
            update={"is_duplicate": is_duplicate, "duplicate_of": duplicate_of}
        )

    async def merge_records(self, tenant_id, record_type, keep_id, merged_ids, merge_data):
        store = self._store(record_type)
        store[keep_id] = store[keep_id].model_copy(update=merge_data)
        for record_id in merged_ids:
            store[record_id] = store[record_id].model_copy(
                update={"status": "merged", "merged_into": keep_id}
            )

    async def log_action(
        self,
        tenant_id,
        action_type,
        source_table,
        source_id,
        target_table=None,
        target_id=None,
        confidence_score=None,
        metadata=None,
        user_id=None,
    ):
        entry = AuditLogEntry(
            id=str(uuid.uuid4()),
            tenant_id=tenant_id,
            action_type=action_type,
            source_table=source_table,
            source_id=source_id,
            target_table=target_table,
            target_id=target_id,
            confidence_score=confidence_score,
            metadata=metadata or {},
            user_id=user_id,
            executed_at=datetime.now(timezone.utc),
        )
        self.audit.append(entry)
        return entry

    async def get_audit_entry(self, tenant_id, audit_id):
        return next((e for e in self.audit if e.id == audit_id), None)

    async def has_undo_entry(self, tenant_id, audit_id):
        return any(
            e.action_type.startswith("UNDO_") and e.metadata.get("original_audit_id") == audit_id
            for e in self.audit
        )


@pytest.fixture
def reconciliation_repo() -> InMemoryReconciliationRepository:
    return InMemoryReconciliationRepository()
