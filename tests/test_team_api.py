"""Team membership rules and endpoint tests."""

from __future__ import annotations

import uuid

import pytest
from httpx import ASGITransport, AsyncClient

from src.app.api.v1.team import router
from src.app.services.team import TeamMember, TeamRuleError, check_member_change

ACTOR = "11111111-1111-4111-8111-111111111111"
OWNER = "22222222-2222-4222-8222-222222222222"
MEMBER = "33333333-3333-4333-8333-333333333333"


class InMemoryTeamRepository:
    def __init__(self, members: list[TeamMember]) -> None:
        self.members = {m.id: m for m in members}

    async def list_members(self, tenant_id, include_inactive=False):
        return [m for m in self.members.values() if include_inactive or m.is_active]

    async def get_member(self, tenant_id, user_id):
        return self.members.get(user_id)

    async def update_member(self, tenant_id, user_id, role=None, is_active=None):
        changes = {}
        if role is not None:
            changes["role"] = role
        if is_active is not None:
            changes["is_active"] = is_active
        self.members[user_id] = self.members[user_id].model_copy(update=changes)
        return self.members[user_id]


@pytest.fixture
def team_repo() -> InMemoryTeamRepository:
    return InMemoryTeamRepository(
        [
            TeamMember(id=ACTOR, email="admin@example.com", role="admin"),
            TeamMember(id=OWNER, email="owner@example.com", role="owner"),
            TeamMember(id=MEMBER, email="rep@example.com", role="member"),
            TeamMember(id=str(uuid.uuid4()), email="gone@example.com", is_active=False),
        ]
    )


def _client(app) -> AsyncClient:
    return AsyncClient(transport=ASGITransport(app=app), base_url="http://test")


# ── Rules ─────────────────────────────────────────────────────────────────────


class TestCheckMemberChange:
    def test_cannot_change_self(self) -> None:
        with pytest.raises(TeamRuleError) as exc_info:
            check_member_change(ACTOR, TeamMember(id=ACTOR, email="a@example.com"), "readonly")
        assert exc_info.value.status_code == 400

    def test_owner_is_protected(self) -> None:
        with pytest.raises(TeamRuleError) as exc_info:
            check_member_change(ACTOR, TeamMember(id=OWNER, email="o@example.com", role="owner"))
        assert exc_info.value.status_code == 403

    def test_owner_role_cannot_be_granted(self) -> None:
        with pytest.raises(TeamRuleError):
            check_member_change(ACTOR, TeamMember(id=MEMBER, email="m@example.com"), "owner")

    def test_allowed_change(self) -> None:
        check_member_change(ACTOR, TeamMember(id=MEMBER, email="m@example.com"), "admin")


# ── Endpoints ─────────────────────────────────────────────────────────────────


class TestTeamEndpoints:
    @pytest.mark.asyncio
    async def test_list_hides_inactive_by_default(self, api_app, team_repo) -> None:
        app = api_app(router, role="readonly", team_repository=team_repo)
        async with _client(app) as client:
            active = await client.get("/api/v1/team/members")
            everyone = await client.get("/api/v1/team/members", params={"include_inactive": True})
        assert len(active.json()) == 3
        assert len(everyone.json()) == 4

    @pytest.mark.asyncio
    async def test_change_role(self, api_app, team_repo) -> None:
        app = api_app(router, user_id=ACTOR, team_repository=team_repo)
        async with _client(app) as client:
            response = await client.patch(f"/api/v1/team/members/{MEMBER}/role", json={"role": "readonly"})
        assert response.status_code == 200
        assert team_repo.members[MEMBER].role == "readonly"

    @pytest.mark.asyncio
    async def test_rules_map_to_http_errors(self, api_app, team_repo) -> None:
        app = api_app(router, user_id=ACTOR, team_repository=team_repo)
        async with _client(app) as client:
            self_change = await client.patch(f"/api/v1/team/members/{ACTOR}/role", json={"role": "member"})
            owner = await client.post(f"/api/v1/team/members/{OWNER}/deactivate")
            missing = await client.post(f"/api/v1/team/members/{uuid.uuid4()}/deactivate")
        assert self_change.status_code == 400
        assert owner.status_code == 403
        assert missing.status_code == 404

    @pytest.mark.asyncio
    async def test_deactivate(self, api_app, team_repo) -> None:
        app = api_app(router, user_id=ACTOR, team_repository=team_repo)
        async with _client(app) as client:
            response = await client.post(f"/api/v1/team/members/{MEMBER}/deactivate")
        assert response.json()["is_active"] is False

    @pytest.mark.asyncio
    async def test_members_cannot_administer(self, api_app, team_repo) -> None:
        app = api_app(router, role="member", team_repository=team_repo)
        async with _client(app) as client:
            response = await client.post(f"/api/v1/team/members/{MEMBER}/deactivate")
        assert response.status_code == 403

    @pytest.mark.asyncio
    async def test_not_initialized(self, api_app) -> None:
        async with _client(api_app(router)) as client:
            response = await client.get("/api/v1/team/members")
        assert response.status_code == 503
