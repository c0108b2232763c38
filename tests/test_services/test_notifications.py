"""
Tests for campaign notifications.
"""

from typing import Any

import orjson
import pytest

from thumbpilot.services import NotificationBus, RedisNotificationBus


class FakeRedis:
    def __init__(self) -> None:
        self.published: list[tuple[str, str]] = []

    async def publish(self, channel: str, message: str) -> int:
        self.published.append((channel, message))
        return 1


class BrokenBus(NotificationBus):
    async def publish(self, campaign_id: str, event: str, data: dict[str, Any]) -> None:
        raise ConnectionError("redis is down")


@pytest.mark.asyncio
async def test_redis_bus_publishes_on_campaign_and_global_channels() -> None:
    redis = FakeRedis()
    bus = RedisNotificationBus(redis)

    await bus.status_change("c1", "testing", {"iteration": 1})

    assert [channel for channel, _ in redis.published] == ["campaign:c1", "campaigns:all"]
    message = orjson.loads(redis.published[0][1])
    assert message["type"] == "status_change"
    assert message["campaign_id"] == "c1"
    assert message["data"] == {"status": "testing", "iteration": 1}
    assert "timestamp" in message


@pytest.mark.asyncio
async def test_publish_failures_are_swallowed() -> None:
    bus = BrokenBus()

    await bus.status_change("c1", "failed", {"error": "boom"})
    await bus.campaign_update("c1", {"event": "variant_applied"})
