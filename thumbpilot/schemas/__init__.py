"""
Schemas: internal engine dataclasses and pydantic API models.
"""

from thumbpilot.schemas.internal import (
    AnalyticsData,
    ComparisonResult,
    KeyMoment,
    MetricsReading,
    SettleDecision,
    VariantPerformance,
    VariantStats,
    VideoAnalysis,
    VideoInfo,
    WinnerResult,
)
from thumbpilot.schemas.request import CreateCampaignRequest
from thumbpilot.schemas.response import (
    CampaignResponse,
    CampaignStatusResponse,
    ErrorResponse,
    HealthResponse,
    OptimizationRunResponse,
    PipelineTaskResponse,
    RotationResponse,
    SnapshotResponse,
    TriggerResponse,
)

__all__ = [
    # Internal
    "MetricsReading",
    "AnalyticsData",
    "VideoInfo",
    "VideoAnalysis",
    "KeyMoment",
    "VariantPerformance",
    "VariantStats",
    "ComparisonResult",
    "WinnerResult",
    "SettleDecision",
    # Request
    "CreateCampaignRequest",
    # Response
    "CampaignResponse",
    "CampaignStatusResponse",
    "OptimizationRunResponse",
    "RotationResponse",
    "SnapshotResponse",
    "PipelineTaskResponse",
    "TriggerResponse",
    "HealthResponse",
    "ErrorResponse",
]
