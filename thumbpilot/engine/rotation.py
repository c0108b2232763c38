"""
Rotation tracker.

A rotation is an exposure window during which exactly one creative is live.
The platform reports cumulative counters; the tracker turns them into
per-window deltas and velocities by pinning a baseline reading when the
window opens and a final reading when it closes.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable
from datetime import datetime
from typing import Any

from thumbpilot.common.exceptions import RotationStateError
from thumbpilot.common.logger import get_logger
from thumbpilot.common.utils import current_datetime, ensure_utc, safe_divide
from thumbpilot.models import Rotation
from thumbpilot.schemas.internal import MetricsReading, VariantPerformance
from thumbpilot.services.gateway import PersistenceGateway

logger = get_logger(__name__)

# Velocity of an in-flight window is computed over at least this many hours
LIVE_VELOCITY_MIN_HOURS = 0.1


def baseline_fields(reading: MetricsReading) -> dict[str, Any]:
    return {
        "baseline_views": reading.views,
        "baseline_watch_minutes": reading.watch_minutes,
        "baseline_impressions": reading.impressions,
        "baseline_clicks": reading.clicks,
    }


def compute_close_fields(
    rotation: Rotation,
    reading: MetricsReading,
    ended_at: datetime,
    min_window_minutes: float = 10.0,
) -> dict[str, Any]:
    """
    Final readings, deltas and velocities for closing ``rotation``.

    Deltas are clamped at zero because reporting lag can make a later
    cumulative reading smaller than an earlier one. Velocities are zero
    for windows shorter than ``min_window_minutes``.
    """
    elapsed = (ensure_utc(ended_at) - ensure_utc(rotation.started_at)).total_seconds()
    exposure_seconds = max(1, int(elapsed))
    exposure_hours = exposure_seconds / 3600

    views_delta = max(0, reading.views - (rotation.baseline_views or 0))
    watch_delta = max(0.0, reading.watch_minutes - (rotation.baseline_watch_minutes or 0.0))
    impressions_delta = max(0, reading.impressions - (rotation.baseline_impressions or 0))
    clicks_delta = max(0, reading.clicks - (rotation.baseline_clicks or 0))

    if elapsed >= min_window_minutes * 60:
        view_velocity = views_delta / exposure_hours
        watch_velocity = watch_delta / exposure_hours
    else:
        view_velocity = 0.0
        watch_velocity = 0.0

    return {
        "ended_at": ended_at,
        "exposure_seconds": exposure_seconds,
        "is_active": False,
        "final_views": reading.views,
        "final_watch_minutes": reading.watch_minutes,
        "final_impressions": reading.impressions,
        "final_clicks": reading.clicks,
        "views_delta": views_delta,
        "watch_minutes_delta": watch_delta,
        "impressions_delta": impressions_delta,
        "clicks_delta": clicks_delta,
        "view_velocity": view_velocity,
        "watch_velocity": watch_velocity,
    }


def is_qualifying(rotation: Rotation, min_exposure_seconds: float) -> bool:
    """Closed and long enough to count toward a comparison."""
    return (
        not rotation.is_active
        and rotation.ended_at is not None
        and (rotation.exposure_seconds or 0) >= min_exposure_seconds
    )


def aggregate(
    rotations: Iterable[Rotation],
    min_exposure_seconds: float = 600,
) -> dict[str | None, VariantPerformance]:
    """
    Group qualifying rotations by variant.

    The ``None`` key holds the original creative.
    """
    performance: dict[str | None, VariantPerformance] = {}
    for rotation in rotations:
        if not is_qualifying(rotation, min_exposure_seconds):
            continue
        perf = performance.setdefault(
            rotation.variant_id, VariantPerformance(variant_id=rotation.variant_id)
        )
        perf.rotation_count += 1
        perf.total_views += rotation.views_delta or 0
        perf.total_exposure_seconds += rotation.exposure_seconds or 0
        perf.total_impressions += rotation.impressions_delta or 0
        perf.total_clicks += rotation.clicks_delta or 0
    return performance


class RotationTracker:
    """Open, close and measure exposure windows for campaigns."""

    def __init__(
        self,
        gateway: PersistenceGateway,
        clock: Callable[[], datetime] = current_datetime,
        min_velocity_window_minutes: float = 10.0,
    ):
        self.gateway = gateway
        self._clock = clock
        self.min_velocity_window_minutes = min_velocity_window_minutes

    @property
    def min_exposure_seconds(self) -> float:
        return self.min_velocity_window_minutes * 60

    async def start_initial_rotation(
        self,
        campaign_id: str,
        reading: MetricsReading,
        variant_id: str | None = None,
        run_id: str | None = None,
    ) -> Rotation:
        """Open the first window; returns the existing one if a window is already active."""
        active = await self.gateway.get_active_rotation(campaign_id)
        if active is not None:
            logger.info(
                "Active rotation already exists",
                campaign_id=campaign_id,
                rotation_id=active.id,
            )
            return active

        rotation = await self.gateway.create_rotation(
            campaign_id=campaign_id,
            variant_id=variant_id,
            optimization_run_id=run_id,
            started_at=self._clock(),
            is_active=True,
            **baseline_fields(reading),
        )
        logger.info(
            "Initial rotation started",
            campaign_id=campaign_id,
            rotation_id=rotation.id,
            baseline_views=reading.views,
        )
        return rotation

    async def close_active_rotation(
        self,
        campaign_id: str,
        reading: MetricsReading,
    ) -> Rotation | None:
        """Close the active window with ``reading`` as its final reading."""
        active = await self.gateway.get_active_rotation(campaign_id)
        if active is None:
            logger.warning("No active rotation to close", campaign_id=campaign_id)
            return None

        fields = compute_close_fields(
            active,
            reading,
            self._clock(),
            self.min_velocity_window_minutes,
        )
        closed = await self.gateway.close_rotation(active.id, **fields)
        if closed is None:
            logger.warning(
                "Rotation already closed, final readings kept",
                campaign_id=campaign_id,
                rotation_id=active.id,
            )
            return None
        logger.info(
            "Rotation closed",
            campaign_id=campaign_id,
            rotation_id=closed.id,
            variant_id=closed.variant_id,
            exposure_seconds=closed.exposure_seconds,
            views_delta=closed.views_delta,
            view_velocity=round(closed.view_velocity or 0.0, 2),
        )
        return closed

    async def create_rotation(
        self,
        campaign_id: str,
        variant_id: str | None,
        reading: MetricsReading,
        run_id: str | None = None,
    ) -> Rotation:
        """Open a new window with ``reading`` as baseline. The previous one must be closed."""
        active = await self.gateway.get_active_rotation(campaign_id)
        if active is not None:
            raise RotationStateError(
                "Cannot open a rotation while another is active",
                details={"campaign_id": campaign_id, "active_rotation_id": active.id},
            )

        rotation = await self.gateway.create_rotation(
            campaign_id=campaign_id,
            variant_id=variant_id,
            optimization_run_id=run_id,
            started_at=self._clock(),
            is_active=True,
            **baseline_fields(reading),
        )
        logger.info(
            "Rotation started",
            campaign_id=campaign_id,
            rotation_id=rotation.id,
            variant_id=variant_id,
            baseline_views=reading.views,
        )
        return rotation

    def live_velocity(self, rotation: Rotation, reading: MetricsReading) -> float:
        """Views/hour of an in-flight window. Nothing is persisted."""
        elapsed_hours = (self._clock() - ensure_utc(rotation.started_at)).total_seconds() / 3600
        hours = max(LIVE_VELOCITY_MIN_HOURS, elapsed_hours)
        views = max(0, reading.views - (rotation.baseline_views or 0))
        return safe_divide(views, hours)

    async def performance(self, campaign_id: str) -> dict[str | None, VariantPerformance]:
        """Aggregate the qualifying rotations of a campaign."""
        rotations = await self.gateway.list_rotations(campaign_id)
        return aggregate(rotations, self.min_exposure_seconds)
