"""V1 API router -- aggregates all v1 endpoint routers."""

from __future__ import annotations

from fastapi import APIRouter

from src.app.api.v1 import auth, companies, deals, health, reconciliation, slack, team, tenants

router = APIRouter()

router.include_router(health.router)
router.include_router(tenants.router)
router.include_router(auth.router)
router.include_router(deals.router, prefix="/api/v1")
router.include_router(reconciliation.router, prefix="/api/v1")
router.include_router(slack.router, prefix="/api/v1")
router.include_router(team.router, prefix="/api/v1")
router.include_router(companies.router, prefix="/api/v1")
