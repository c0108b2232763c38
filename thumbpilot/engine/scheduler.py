"""
Optimization scheduler.

A periodic sweep over campaigns whose next run is due. Sweeps never
overlap: one that is still running when the timer fires is skipped, not
queued. The guard is process-local; running more than one instance needs
an external lock on the due-campaign set.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from datetime import datetime

from thumbpilot.common.logger import get_logger
from thumbpilot.common.metrics import record_sweep_duration
from thumbpilot.common.utils import Timer, current_datetime
from thumbpilot.engine.orchestrator import CampaignOrchestrator
from thumbpilot.models import OptimizationRun

logger = get_logger(__name__)


class OptimizationScheduler:
    """Runs due optimization iterations on a fixed interval."""

    def __init__(
        self,
        orchestrator: CampaignOrchestrator,
        clock: Callable[[], datetime] = current_datetime,
    ):
        self.orchestrator = orchestrator
        self._clock = clock
        self._task: asyncio.Task[None] | None = None
        self._in_progress = False
        self.interval_minutes: float | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def in_progress(self) -> bool:
        return self._in_progress

    def start(self, interval_minutes: float = 30.0) -> None:
        """Sweep immediately, then every ``interval_minutes``."""
        if self.running:
            logger.info("Scheduler already running")
            return

        self.interval_minutes = interval_minutes
        self._task = asyncio.create_task(self._loop(interval_minutes * 60), name="optimization-scheduler")
        logger.info("Optimization scheduler started", interval_minutes=interval_minutes)

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("Optimization scheduler stopped")

    async def _loop(self, interval_seconds: float) -> None:
        while True:
            await self.run_pending_optimizations()
            await asyncio.sleep(interval_seconds)

    async def run_pending_optimizations(self) -> int:
        """
        Run one iteration for every due campaign, sequentially.

        Returns the number of campaigns processed; 0 when skipped because
        another sweep is in progress.
        """
        if self._in_progress:
            logger.info("Optimization sweep already in progress, skipping")
            return 0

        self._in_progress = True
        processed = 0
        failed = 0
        timer = Timer("sweep")
        try:
            with timer:
                campaigns = await self.orchestrator.gateway.list_due_campaigns(self._clock())
                logger.info("Campaigns due for optimization", count=len(campaigns))

                for campaign in campaigns:
                    try:
                        await self.orchestrator.run_optimization_iteration(campaign.id)
                    except Exception as e:
                        failed += 1
                        logger.error(
                            "Optimization failed for campaign",
                            campaign_id=campaign.id,
                            error=str(e),
                        )
                    processed += 1
        except Exception as e:
            logger.error("Optimization sweep failed", error=str(e))
        finally:
            self._in_progress = False

        record_sweep_duration(timer.elapsed_s)
        logger.info(
            "Optimization sweep finished",
            processed=processed,
            failed=failed,
            duration_s=round(timer.elapsed_s, 3),
        )
        return processed

    async def manual_trigger(self, campaign_id: str) -> OptimizationRun | None:
        """Run one iteration for ``campaign_id`` now, outside the schedule."""
        logger.info("Manual optimization trigger", campaign_id=campaign_id)
        return await self.orchestrator.run_optimization_iteration(campaign_id)
