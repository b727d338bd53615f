"""
Background jobs on APScheduler: due scheduled actions, SLA sweep and
``time_elapsed`` rules. Jobs run the synchronous services in a thread executor.
"""
from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from sqlalchemy.orm import Session

from metahub.config.settings import Settings, get_settings
from metahub.services.automation_executor import AutomationExecutor
from metahub.services.channel_sender import ChannelSender
from metahub.services.rate_limit_store import InMemoryRateLimitStore, RateLimitStore
from metahub.services.scheduled_actions import ScheduledActionRunner
from metahub.services.sla import SLAService

logger = logging.getLogger(__name__)


class AutomationScheduler:
    def __init__(
        self,
        session_factory: Callable[[], Session],
        sender: ChannelSender | None = None,
        settings: Settings | None = None,
        rate_limits: RateLimitStore | None = None,
    ) -> None:
        self._session_factory = session_factory
        self.sender = sender
        self.settings = settings or get_settings()
        self.rate_limits = rate_limits or InMemoryRateLimitStore()
        self.runner = ScheduledActionRunner(session_factory, sender=sender, settings=self.settings)
        self._scheduler: AsyncIOScheduler | None = None

    @property
    def running(self) -> bool:
        return self._scheduler is not None and self._scheduler.running

    async def start(self) -> None:
        if not self.settings.scheduler_enabled:
            logger.info("Scheduler disabled by configuration")
            return
        if self.running:
            return
        self._scheduler = AsyncIOScheduler(timezone="UTC")
        self._scheduler.add_job(
            self._run_scheduled_actions,
            "interval",
            seconds=self.settings.scheduler_interval_seconds,
            id="scheduled-actions",
            max_instances=1,
            coalesce=True,
        )
        self._scheduler.add_job(
            self._run_sweeps,
            "interval",
            seconds=self.settings.sla_sweep_interval_seconds,
            id="sla-and-time-elapsed",
            max_instances=1,
            coalesce=True,
        )
        self._scheduler.start()
        logger.info("Scheduler started")

    async def stop(self) -> None:
        if self.running:
            self._scheduler.shutdown(wait=False)
            logger.info("Scheduler stopped")
        self._scheduler = None

    async def _run_scheduled_actions(self) -> None:
        loop = asyncio.get_running_loop()
        try:
            await loop.run_in_executor(None, self.runner.run_due)
        except Exception:
            logger.exception("Scheduled action run failed")

    async def _run_sweeps(self) -> None:
        loop = asyncio.get_running_loop()
        try:
            await loop.run_in_executor(None, self.sweep)
        except Exception:
            logger.exception("SLA sweep failed")

    def sweep(self) -> tuple[int, int]:
        """One pass of the SLA sweep and the ``time_elapsed`` rule sweep."""
        with self._session_factory() as db:
            breaches = SLAService(db).sweep()
        with self._session_factory() as db:
            executor = AutomationExecutor(
                db, sender=self.sender, settings=self.settings, rate_limits=self.rate_limits
            )
            fired = executor.sweep_time_elapsed()
        if breaches or fired:
            logger.info("Sweep: %d SLA breaches seen, %d time_elapsed rules fired", breaches, fired)
        return breaches, fired
