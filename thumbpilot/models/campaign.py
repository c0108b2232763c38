"""
Optimization-engine database models.

Defines: Campaign, Rotation, OptimizationRun, PerformanceSnapshot, Variant, VideoAsset
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    LargeBinary,
    String,
    Text,
)
from sqlalchemy.orm import Mapped, mapped_column

from thumbpilot.models.base import (
    AssetType,
    Base,
    CampaignStatus,
    RunStatus,
    TimestampMixin,
    new_id,
    utcnow,
)


class Campaign(Base, TimestampMixin):
    """One optimization job for one video."""

    __tablename__ = "campaigns"
    __table_args__ = (
        Index("ix_campaigns_status_next_run", "status", "next_scheduled_run"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)

    # Target video
    video_id: Mapped[str] = mapped_column(String(32), nullable=False)
    video_url: Mapped[str] = mapped_column(Text, nullable=False)
    video_title: Mapped[str | None] = mapped_column(String(255), nullable=True)
    original_thumbnail_url: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Lifecycle
    status: Mapped[str] = mapped_column(
        String(20), default=CampaignStatus.PENDING.value, nullable=False
    )
    current_iteration: Mapped[int] = mapped_column(Integer, default=0)
    max_iterations: Mapped[int] = mapped_column(Integer, default=20)
    iterations_per_day: Mapped[int] = mapped_column(Integer, default=5)
    next_scheduled_run: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Outcome
    settled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    winning_variant_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    final_rate: Mapped[float | None] = mapped_column(
        Float, nullable=True, comment="Winning rate metric (views/hour or CTR)"
    )
    improvement_pct: Mapped[float | None] = mapped_column(
        Float, nullable=True, comment="% improvement over the original creative"
    )
    confidence: Mapped[float | None] = mapped_column(Float, nullable=True)


class Variant(Base):
    """Generated creative. Opaque to the engine apart from its image payload."""

    __tablename__ = "variants"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    campaign_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("campaigns.id", ondelete="CASCADE"), nullable=False, index=True
    )
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    prompt: Mapped[str | None] = mapped_column(Text, nullable=True)
    image_url: Mapped[str | None] = mapped_column(
        Text, nullable=True, comment="http(s) URL, data: URL or local file path"
    )
    image_data: Mapped[bytes | None] = mapped_column(LargeBinary, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )


class OptimizationRun(Base):
    """Audit record for one iteration."""

    __tablename__ = "optimization_runs"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    campaign_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("campaigns.id", ondelete="CASCADE"), nullable=False, index=True
    )
    iteration: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[str] = mapped_column(
        String(20), default=RunStatus.PENDING.value, nullable=False
    )
    variants_generated: Mapped[int] = mapped_column(Integer, default=0)
    previous_best_rate: Mapped[float | None] = mapped_column(Float, nullable=True)
    current_best_rate: Mapped[float | None] = mapped_column(Float, nullable=True)
    rate_delta: Mapped[float | None] = mapped_column(Float, nullable=True)
    confidence: Mapped[float | None] = mapped_column(Float, nullable=True)
    action_taken: Mapped[str | None] = mapped_column(String(40), nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    started_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class PerformanceSnapshot(Base):
    """Point-in-time metrics for timeline display."""

    __tablename__ = "performance_snapshots"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    campaign_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("campaigns.id", ondelete="CASCADE"), nullable=False, index=True
    )
    variant_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    views: Mapped[int] = mapped_column(Integer, default=0, comment="Cumulative views")
    views_in_rotation: Mapped[int] = mapped_column(Integer, default=0)
    view_velocity: Mapped[float] = mapped_column(Float, default=0.0, comment="Views/hour")
    average_view_duration: Mapped[float | None] = mapped_column(Float, nullable=True)
    impressions: Mapped[int] = mapped_column(Integer, default=0)
    clicks: Mapped[int] = mapped_column(Integer, default=0)
    is_currently_active: Mapped[bool] = mapped_column(Boolean, default=True)
    recorded_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )


class Rotation(Base):
    """
    One exposure window: a single creative live for a measured period.

    Baseline readings are captured at open, final readings, deltas and
    velocities at close. Closed rotations are never modified.
    """

    __tablename__ = "rotations"
    __table_args__ = (
        Index("ix_rotations_campaign_active", "campaign_id", "is_active"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    campaign_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("campaigns.id", ondelete="CASCADE"), nullable=False
    )
    optimization_run_id: Mapped[str | None] = mapped_column(
        String(36), ForeignKey("optimization_runs.id", ondelete="SET NULL"), nullable=True
    )
    variant_id: Mapped[str | None] = mapped_column(
        String(36), nullable=True, comment="NULL = original creative"
    )

    # Timing
    started_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )
    ended_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    exposure_seconds: Mapped[int] = mapped_column(Integer, default=0)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    # Baseline cumulative readings at window start
    baseline_views: Mapped[int] = mapped_column(Integer, default=0)
    baseline_watch_minutes: Mapped[float] = mapped_column(Float, default=0.0)
    baseline_impressions: Mapped[int] = mapped_column(Integer, default=0)
    baseline_clicks: Mapped[int] = mapped_column(Integer, default=0)

    # Final cumulative readings at window end
    final_views: Mapped[int | None] = mapped_column(Integer, nullable=True)
    final_watch_minutes: Mapped[float | None] = mapped_column(Float, nullable=True)
    final_impressions: Mapped[int | None] = mapped_column(Integer, nullable=True)
    final_clicks: Mapped[int | None] = mapped_column(Integer, nullable=True)

    # Deltas (clamped at zero)
    views_delta: Mapped[int | None] = mapped_column(Integer, nullable=True)
    watch_minutes_delta: Mapped[float | None] = mapped_column(Float, nullable=True)
    impressions_delta: Mapped[int | None] = mapped_column(Integer, nullable=True)
    clicks_delta: Mapped[int | None] = mapped_column(Integer, nullable=True)

    # Velocities
    view_velocity: Mapped[float | None] = mapped_column(
        Float, nullable=True, comment="Views/hour"
    )
    watch_velocity: Mapped[float | None] = mapped_column(
        Float, nullable=True, comment="Watch minutes/hour"
    )


class VideoAsset(Base):
    """Reference material extracted from the video (frames, transcript, elements)."""

    __tablename__ = "video_assets"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    campaign_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("campaigns.id", ondelete="CASCADE"), nullable=False, index=True
    )
    asset_type: Mapped[str] = mapped_column(String(20), default=AssetType.ELEMENT.value)
    name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    url: Mapped[str | None] = mapped_column(Text, nullable=True)
    content: Mapped[str | None] = mapped_column(Text, nullable=True)
    extra: Mapped[dict[str, Any] | None] = mapped_column("metadata", JSON, nullable=True)
    is_key_element: Mapped[bool] = mapped_column(Boolean, default=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )
