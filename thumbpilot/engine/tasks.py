"""
Tracked background pipeline tasks.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable, Coroutine
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from thumbpilot.common.logger import get_logger
from thumbpilot.common.utils import current_datetime

logger = get_logger(__name__)


@dataclass
class PipelineTask:
    """Observable state of one creation pipeline."""

    campaign_id: str
    task: asyncio.Task[Any]
    started_at: datetime
    status: str = "running"  # running, completed, failed, cancelled
    error: str | None = None
    finished_at: datetime | None = None

    @property
    def done(self) -> bool:
        return self.status != "running"


class PipelineTaskRegistry:
    """Starts pipeline coroutines as asyncio tasks and records how they end."""

    def __init__(self, clock: Callable[[], datetime] = current_datetime):
        self._clock = clock
        self._tasks: dict[str, PipelineTask] = {}

    def start(self, campaign_id: str, coro: Coroutine[Any, Any, Any]) -> PipelineTask:
        existing = self._tasks.get(campaign_id)
        if existing is not None and not existing.done:
            coro.close()
            logger.warning("Pipeline already running", campaign_id=campaign_id)
            return existing

        task = asyncio.create_task(coro, name=f"pipeline:{campaign_id}")
        record = PipelineTask(campaign_id=campaign_id, task=task, started_at=self._clock())
        self._tasks[campaign_id] = record
        task.add_done_callback(lambda t: self._on_done(record, t))
        return record

    def _on_done(self, record: PipelineTask, task: asyncio.Task[Any]) -> None:
        record.finished_at = self._clock()
        if task.cancelled():
            record.status = "cancelled"
            return
        error = task.exception()
        if error is not None:
            record.status = "failed"
            record.error = str(error) or type(error).__name__
            logger.error(
                "Pipeline task failed",
                campaign_id=record.campaign_id,
                error=record.error,
            )
        else:
            record.status = "completed"

    def get(self, campaign_id: str) -> PipelineTask | None:
        return self._tasks.get(campaign_id)

    @property
    def running(self) -> list[PipelineTask]:
        return [t for t in self._tasks.values() if not t.done]

    async def wait(self, campaign_id: str) -> PipelineTask | None:
        """Wait for a pipeline to finish without propagating its error."""
        record = self._tasks.get(campaign_id)
        if record is None:
            return None
        await asyncio.gather(record.task, return_exceptions=True)
        return record

    async def cancel_all(self) -> None:
        pending = [t.task for t in self.running]
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
