"""
External collaborators of the optimization engine.
"""

from thumbpilot.services.gateway import PersistenceGateway, SqlAlchemyGateway
from thumbpilot.services.generator import (
    CreativeGenerator,
    HttpGeneratorClient,
    ResilientGenerator,
)
from thumbpilot.services.notifications import (
    LoggingNotificationBus,
    NotificationBus,
    RedisNotificationBus,
)
from thumbpilot.services.platform import (
    PlatformClient,
    ResilientPlatform,
    YouTubeClient,
    extract_video_id,
)

__all__ = [
    "PersistenceGateway",
    "SqlAlchemyGateway",
    "PlatformClient",
    "ResilientPlatform",
    "YouTubeClient",
    "extract_video_id",
    "CreativeGenerator",
    "ResilientGenerator",
    "HttpGeneratorClient",
    "NotificationBus",
    "RedisNotificationBus",
    "LoggingNotificationBus",
]
