"""Background scheduler for the daily deal momentum nudge run.

Wraps an AsyncIOScheduler with a single cron job that lists active
tenants and runs MomentumNudgeService for each of them.

Exports:
    MomentumScheduler: Async scheduler for the daily momentum scan.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from typing import Any

import structlog
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

from src.app.deals.momentum import MomentumNudgeService, run_momentum_for_tenants

logger = structlog.get_logger(__name__)


class MomentumScheduler:
    """Daily cron for momentum nudges.

    Args:
        service: MomentumNudgeService used for every tenant.
        list_tenants: Async callable returning active tenant rows.
        hour: Hour of day (server time) to run the scan.
    """

    def __init__(
        self,
        service: MomentumNudgeService,
        list_tenants: Callable[[], Awaitable[list[dict[str, Any]]]],
        hour: int = 9,
    ) -> None:
        self._service = service
        self._list_tenants = list_tenants
        self._hour = hour
        self._scheduler: AsyncIOScheduler | None = None
        self._started = False

    @property
    def started(self) -> bool:
        return self._started

    def start(self) -> bool:
        """Start the scheduler. Returns False if it could not be started."""
        try:
            self._scheduler = AsyncIOScheduler()
            self._scheduler.add_job(
                self.run_once,
                trigger=CronTrigger(hour=self._hour, minute=0),
                id="deal_momentum_daily_nudges",
                name="Daily deal momentum nudges for Slack-connected tenants",
                misfire_grace_time=3600,
                coalesce=True,
            )
            self._scheduler.start()
            self._started = True
            logger.info("momentum_scheduler.started", schedule=f"Daily {self._hour:02d}:00")
            return True
        except Exception as exc:
            logger.warning("momentum_scheduler.start_failed", error=str(exc))
            return False

    def stop(self) -> None:
        """Shut down the scheduler."""
        if self._scheduler is not None and self._started:
            self._scheduler.shutdown(wait=False)
            self._started = False
            logger.info("momentum_scheduler.stopped")

    async def run_once(self) -> None:
        """One full scan across tenants. Failures are logged, never raised."""
        logger.info("momentum_scheduler.run_triggered")
        try:
            tenants = await self._list_tenants()
        except Exception as exc:
            logger.warning("momentum_scheduler.tenant_query_failed", error=str(exc))
            return

        result = await run_momentum_for_tenants(self._service, tenants)
        logger.info(
            "momentum_scheduler.run_complete",
            tenants=len(tenants),
            nudges_sent=result.nudges_sent,
            errors=len(result.errors),
        )
