"""
Database models for ThumbPilot.
"""

from thumbpilot.models.base import (
    AssetType,
    Base,
    CampaignStatus,
    RunAction,
    RunStatus,
    TimestampMixin,
)
from thumbpilot.models.campaign import (
    Campaign,
    OptimizationRun,
    PerformanceSnapshot,
    Rotation,
    Variant,
    VideoAsset,
)

__all__ = [
    # Base
    "Base",
    "TimestampMixin",
    # Enums
    "CampaignStatus",
    "RunStatus",
    "RunAction",
    "AssetType",
    # Models
    "Campaign",
    "Rotation",
    "OptimizationRun",
    "PerformanceSnapshot",
    "Variant",
    "VideoAsset",
]
