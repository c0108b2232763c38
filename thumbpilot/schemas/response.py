"""
API response schemas.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class CampaignResponse(BaseModel):
    """Campaign as exposed to observers."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    user_id: str
    video_id: str
    video_title: str | None = None
    status: str
    current_iteration: int = 0
    max_iterations: int
    iterations_per_day: int
    next_scheduled_run: datetime | None = None
    winning_variant_id: str | None = None
    final_rate: float | None = None
    improvement_pct: float | None = None
    confidence: float | None = None
    error_message: str | None = Field(None, description="Set when status is failed")
    settled_at: datetime | None = None


class RotationResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    variant_id: str | None = None
    started_at: datetime
    ended_at: datetime | None = None
    is_active: bool
    exposure_seconds: int = 0
    views_delta: int | None = None
    view_velocity: float | None = None


class OptimizationRunResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    iteration: int
    status: str
    variants_generated: int = 0
    current_best_rate: float | None = None
    confidence: float | None = None
    action_taken: str | None = None
    notes: str | None = None
    started_at: datetime
    completed_at: datetime | None = None


class SnapshotResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    variant_id: str | None = None
    views: int = 0
    views_in_rotation: int = 0
    view_velocity: float = 0.0
    recorded_at: datetime


class CampaignStatusResponse(BaseModel):
    """Campaign with its history for display."""

    campaign: CampaignResponse
    runs: list[OptimizationRunResponse] = Field(default_factory=list)
    rotations: list[RotationResponse] = Field(default_factory=list)
    snapshots: list[SnapshotResponse] = Field(default_factory=list)
    variant_ids: list[str] = Field(default_factory=list)
    asset_count: int = 0


class PipelineTaskResponse(BaseModel):
    """Observable status of a background creation pipeline."""

    campaign_id: str
    status: str
    error: str | None = None
    started_at: datetime
    finished_at: datetime | None = None


class TriggerResponse(BaseModel):
    """Outcome of a manually triggered iteration."""

    campaign_id: str
    status: str
    current_iteration: int
    run: OptimizationRunResponse | None = Field(None, description="None when the campaign was not in the loop")


class HealthResponse(BaseModel):
    """Health check response schema."""

    status: str = Field(..., description="Service status")
    version: str = Field(..., description="Service version")
    database: bool = Field(..., description="Database connection status")
    redis: bool = Field(..., description="Redis connection status")
    scheduler: bool = Field(False, description="Scheduler running")


class ErrorResponse(BaseModel):
    """Error response schema."""

    error: str = Field(..., description="Error type")
    message: str = Field(..., description="Error message")
    details: dict[str, Any] | None = Field(None, description="Additional details")
