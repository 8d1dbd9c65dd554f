"""API tests for Slack settings, user mapping and momentum nudge endpoints.

Settings and momentum services are in-memory fakes on app.state; the cron
secret is supplied through the environment.
"""

from __future__ import annotations

import uuid

import pytest
from httpx import ASGITransport, AsyncClient

from src.app.api.v1.slack import router
from src.app.config import get_settings
from src.app.schemas.slack import (
    MomentumRunResult,
    SlackSettingsRead,
    SlackUserMappingRead,
)


class FakeSlackSettingsRepository:
    def __init__(self) -> None:
        self.settings: dict[str, dict] = {}
        self.mappings: dict[tuple[str, str], SlackUserMappingRead] = {}

    async def get_settings(self, tenant_id):
        stored = self.settings.get(tenant_id, {})
        return SlackSettingsRead(
            slack_team_id=stored.get("slack_team_id"),
            is_connected=stored.get("is_connected", False),
            has_bot_token=bool(stored.get("bot_access_token")),
            momentum_nudges_enabled=stored.get("momentum_nudges_enabled", True),
            clarity_threshold=stored.get("clarity_threshold"),
            confidence_threshold=stored.get("confidence_threshold"),
        )

    async def update_settings(self, tenant_id, data):
        self.settings.setdefault(tenant_id, {}).update(data.model_dump(exclude_none=True))
        return await self.get_settings(tenant_id)

    async def upsert_user_mapping(self, tenant_id, user_id, data):
        mapping = SlackUserMappingRead(user_id=user_id, **data.model_dump())
        self.mappings[(tenant_id, user_id)] = mapping
        return mapping


class FakeMomentumService:
    def __init__(self) -> None:
        self.calls: list[dict] = []

    async def run(self, tenant_id, deal_id=None, currency_code="GBP"):
        self.calls.append(
            {"tenant_id": tenant_id, "deal_id": deal_id, "currency_code": currency_code}
        )
        return MomentumRunResult(nudges_sent=1, deals_evaluated=1)


@pytest.fixture
def cron_secret(monkeypatch):
    monkeypatch.setenv("CRON_SECRET", "cron-test-secret")
    get_settings.cache_clear()
    yield "cron-test-secret"
    get_settings.cache_clear()


@pytest.fixture
def settings_repo() -> FakeSlackSettingsRepository:
    return FakeSlackSettingsRepository()


@pytest.fixture
def momentum_service() -> FakeMomentumService:
    return FakeMomentumService()


def _client(app) -> AsyncClient:
    return AsyncClient(transport=ASGITransport(app=app), base_url="http://test")


# ── Settings ──────────────────────────────────────────────────────────────────


class TestSlackSettings:
    @pytest.mark.asyncio
    async def test_not_initialized(self, api_app) -> None:
        async with _client(api_app(router)) as client:
            response = await client.get("/api/v1/slack/settings")
        assert response.status_code == 503

    @pytest.mark.asyncio
    async def test_token_is_write_only(self, api_app, settings_repo) -> None:
        app = api_app(router, slack_settings_repository=settings_repo)
        async with _client(app) as client:
            response = await client.put(
                "/api/v1/slack/settings",
                json={"bot_access_token": "xoxb-secret", "is_connected": True, "clarity_threshold": 40},
            )
        body = response.json()
        assert response.status_code == 200
        assert body["has_bot_token"] is True
        assert body["clarity_threshold"] == 40
        assert "bot_access_token" not in body
        assert "xoxb-secret" not in response.text

    @pytest.mark.asyncio
    async def test_threshold_validated(self, api_app, settings_repo) -> None:
        app = api_app(router, slack_settings_repository=settings_repo)
        async with _client(app) as client:
            response = await client.put("/api/v1/slack/settings", json={"clarity_threshold": 120})
        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_members_cannot_read_settings(self, api_app, settings_repo) -> None:
        app = api_app(router, role="member", slack_settings_repository=settings_repo)
        async with _client(app) as client:
            response = await client.get("/api/v1/slack/settings")
        assert response.status_code == 403


# ── User Mapping ──────────────────────────────────────────────────────────────


class TestUserMapping:
    @pytest.mark.asyncio
    async def test_member_maps_self(self, api_app, settings_repo) -> None:
        app = api_app(router, role="member", slack_settings_repository=settings_repo)
        user_id = str(app.state.test_user.id)
        async with _client(app) as client:
            response = await client.put(
                f"/api/v1/slack/users/{user_id}/mapping", json={"slack_user_id": "U123"}
            )
        assert response.status_code == 200
        assert response.json() == {"user_id": user_id, "slack_user_id": "U123", "slack_email": None}

    @pytest.mark.asyncio
    async def test_member_cannot_map_others(self, api_app, settings_repo) -> None:
        app = api_app(router, role="member", slack_settings_repository=settings_repo)
        async with _client(app) as client:
            response = await client.put(
                f"/api/v1/slack/users/{uuid.uuid4()}/mapping", json={"slack_user_id": "U123"}
            )
        assert response.status_code == 403
        assert response.json()["detail"] == "Only admins can map other users"

    @pytest.mark.asyncio
    async def test_admin_maps_anyone(self, api_app, settings_repo, tenant_id) -> None:
        other = str(uuid.uuid4())
        app = api_app(router, slack_settings_repository=settings_repo)
        async with _client(app) as client:
            response = await client.put(
                f"/api/v1/slack/users/{other}/mapping",
                json={"slack_user_id": "U999", "slack_email": "rep@example.com"},
            )
        assert response.status_code == 200
        assert settings_repo.mappings[(tenant_id, other)].slack_user_id == "U999"


# ── Momentum Runs ─────────────────────────────────────────────────────────────


class TestMomentumRun:
    @pytest.mark.asyncio
    async def test_cron_requires_configured_secret(self, api_app, momentum_service, monkeypatch) -> None:
        monkeypatch.setenv("CRON_SECRET", "")
        get_settings.cache_clear()
        try:
            app = api_app(router, momentum_service=momentum_service)
            async with _client(app) as client:
                response = await client.post(
                    "/api/v1/slack/momentum/run", headers={"X-Cron-Secret": "anything"}
                )
        finally:
            get_settings.cache_clear()
        assert response.status_code == 503

    @pytest.mark.asyncio
    async def test_cron_rejects_bad_secret(self, api_app, momentum_service, cron_secret) -> None:
        app = api_app(router, momentum_service=momentum_service)
        async with _client(app) as client:
            missing = await client.post("/api/v1/slack/momentum/run")
            wrong = await client.post(
                "/api/v1/slack/momentum/run", headers={"X-Cron-Secret": "nope"}
            )
        assert missing.status_code == 401
        assert wrong.status_code == 401
        assert momentum_service.calls == []

    @pytest.mark.asyncio
    async def test_cron_runs_every_tenant(self, api_app, momentum_service, cron_secret) -> None:
        async def list_tenants():
            return [
                {"id": "t-1", "slug": "north", "schema_name": "tenant_north", "currency_code": "EUR"},
                {"id": "t-2", "slug": "south", "schema_name": "tenant_south", "currency_code": "GBP"},
            ]

        app = api_app(router, momentum_service=momentum_service, list_tenants=list_tenants)
        async with _client(app) as client:
            response = await client.post(
                "/api/v1/slack/momentum/run", headers={"X-Cron-Secret": cron_secret}
            )
        assert response.status_code == 200
        assert response.json() == {"nudges_sent": 2, "deals_evaluated": 2, "errors": []}
        assert [c["currency_code"] for c in momentum_service.calls] == ["EUR", "GBP"]

    @pytest.mark.asyncio
    async def test_single_deal_uses_tenant_currency(self, api_app, momentum_service, tenant_id) -> None:
        async def tenant_lookup(tid):
            return {"id": tid, "currency_code": "USD"}

        app = api_app(router, momentum_service=momentum_service, tenant_lookup=tenant_lookup)
        async with _client(app) as client:
            response = await client.post("/api/v1/slack/momentum/deals/deal-42")
        assert response.status_code == 200
        assert momentum_service.calls == [
            {"tenant_id": tenant_id, "deal_id": "deal-42", "currency_code": "USD"}
        ]

    @pytest.mark.asyncio
    async def test_single_deal_requires_admin(self, api_app, momentum_service) -> None:
        app = api_app(router, role="member", momentum_service=momentum_service)
        async with _client(app) as client:
            response = await client.post("/api/v1/slack/momentum/deals/deal-42")
        assert response.status_code == 403
