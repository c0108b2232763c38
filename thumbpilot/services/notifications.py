"""
Campaign lifecycle notifications.

Fire and forget: publishing failures are logged and never reach the
optimization loop.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any

from thumbpilot.common.cache import CacheKeys, RedisClient
from thumbpilot.common.logger import get_logger
from thumbpilot.common.utils import current_datetime, json_dumps
from thumbpilot.models import OptimizationRun, PerformanceSnapshot
from thumbpilot.schemas.response import OptimizationRunResponse, SnapshotResponse

logger = get_logger(__name__)


class NotificationBus(ABC):
    """Publishes ``status_change``, ``optimization_run``, ``performance_snapshot`` and ``campaign_update`` events."""

    @abstractmethod
    async def publish(self, campaign_id: str, event: str, data: dict[str, Any]) -> None: ...

    async def _emit(self, campaign_id: str, event: str, data: dict[str, Any]) -> None:
        try:
            await self.publish(campaign_id, event, data)
        except Exception as e:
            logger.warning(
                "Notification publish failed",
                campaign_id=campaign_id,
                event=event,
                error=str(e),
            )

    async def status_change(
        self, campaign_id: str, status: str, detail: dict[str, Any] | None = None
    ) -> None:
        await self._emit(campaign_id, "status_change", {"status": status, **(detail or {})})

    async def optimization_run(
        self, campaign_id: str, run: OptimizationRun, error: str | None = None
    ) -> None:
        data = OptimizationRunResponse.model_validate(run).model_dump(mode="json")
        if error is not None:
            data["error"] = error
        await self._emit(campaign_id, "optimization_run", data)

    async def performance_snapshot(self, campaign_id: str, snapshot: PerformanceSnapshot) -> None:
        data = SnapshotResponse.model_validate(snapshot).model_dump(mode="json")
        await self._emit(campaign_id, "performance_snapshot", data)

    async def campaign_update(self, campaign_id: str, fields: dict[str, Any]) -> None:
        await self._emit(campaign_id, "campaign_update", fields)


class RedisNotificationBus(NotificationBus):
    """Publishes JSON events on ``campaign:{id}`` and the all-campaigns channel."""

    def __init__(self, client: RedisClient):
        self.client = client

    async def publish(self, campaign_id: str, event: str, data: dict[str, Any]) -> None:
        message = json_dumps(
            {
                "type": event,
                "campaign_id": campaign_id,
                "data": data,
                "timestamp": current_datetime().isoformat(),
            }
        )
        await self.client.publish(CacheKeys.campaign_channel(campaign_id), message)
        await self.client.publish(CacheKeys.all_campaigns_channel(), message)


class LoggingNotificationBus(NotificationBus):
    """Writes events to the log. Used when Redis is unavailable."""

    async def publish(self, campaign_id: str, event: str, data: dict[str, Any]) -> None:
        logger.info("Campaign event", campaign_id=campaign_id, notification=event, data=data)
