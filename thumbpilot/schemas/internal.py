"""
Internal data schemas for the optimization engine.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


@dataclass
class MetricsReading:
    """Cumulative-to-date counters reported by the platform at one instant."""

    views: int = 0
    watch_minutes: float = 0.0
    impressions: int = 0
    clicks: int = 0

    @classmethod
    def zero(cls) -> MetricsReading:
        return cls()


@dataclass
class VideoInfo:
    """Platform metadata for a published video."""

    video_id: str
    title: str = ""
    description: str = ""
    thumbnail_url: str | None = None
    channel_id: str | None = None
    published_at: str | None = None
    view_count: int = 0
    like_count: int = 0


@dataclass
class AnalyticsData:
    """Cumulative analytics for a video (not a delta)."""

    views: int = 0
    watch_time_minutes: float = 0.0
    average_view_duration: float = 0.0
    impressions: int = 0
    clicks: int = 0

    def to_reading(self) -> MetricsReading:
        return MetricsReading(
            views=self.views,
            watch_minutes=self.watch_time_minutes,
            impressions=self.impressions,
            clicks=self.clicks,
        )


@dataclass
class KeyMoment:
    timestamp: float
    description: str


@dataclass
class VideoAnalysis:
    """Content analysis produced by the creative generator."""

    transcript: str = ""
    key_moments: list[KeyMoment] = field(default_factory=list)
    title_variations: list[str] = field(default_factory=list)
    visual_elements: list[str] = field(default_factory=list)
    target_audience: str = "general"
    emotional_tone: str = "engaging"


@dataclass
class VariantPerformance:
    """Closed rotations of one variant aggregated into comparable figures."""

    variant_id: str | None
    rotation_count: int = 0
    total_views: int = 0
    total_exposure_seconds: int = 0
    total_impressions: int = 0
    total_clicks: int = 0

    @property
    def exposure_hours(self) -> float:
        return self.total_exposure_seconds / 3600

    @property
    def avg_velocity(self) -> float:
        """Exposure-weighted average views/hour."""
        if self.total_exposure_seconds <= 0:
            return 0.0
        return self.total_views / self.exposure_hours

    @property
    def ctr(self) -> float:
        if self.total_impressions <= 0:
            return 0.0
        return self.total_clicks / self.total_impressions


@dataclass
class VariantStats:
    """Impression/click counts for the proportion test. ``ctr`` is a proportion."""

    id: str | None
    impressions: int
    clicks: int

    @property
    def ctr(self) -> float:
        if self.impressions <= 0:
            return 0.0
        return self.clicks / self.impressions


@dataclass
class ComparisonResult:
    """Outcome of a pairwise two-proportion test."""

    is_significant: bool
    confidence: float
    p_value: float
    z_score: float
    winner_id: str | None
    winner_position: str | None  # "A", "B" or None
    minimum_sample_met: bool
    sample_size_needed: float


@dataclass
class WinnerResult:
    """Outcome of a multi-variant proportion test."""

    winner_id: str | None
    confidence: float
    is_significant: bool
    p_value: float
    z_score: float
    comparisons: list[tuple[str | None, str | None, ComparisonResult]] = field(
        default_factory=list
    )


@dataclass
class SettleDecision:
    """Whether a campaign should settle, and on what."""

    should_settle: bool
    winner_id: str | None
    confidence: float
    reason: str | None = None          # "significant", "max_iterations", "early_exit"
    best_rate: float = 0.0
    relative_improvement: float = 0.0
    details: dict[str, Any] = field(default_factory=dict)
