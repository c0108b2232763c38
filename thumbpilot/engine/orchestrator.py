"""
Campaign orchestrator.

Owns every campaign state change and every side effect on the live video:

    create_campaign -> run_pipeline (analyzing -> generating -> testing)
    run_optimization_iteration (testing/optimizing loop) -> settle_campaign

Swaps follow a saga: the upload happens first and the rotation bookkeeping
is only written once the upload has succeeded, so a rotation boundary
always coincides with a real change of the live creative.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable, Mapping
from dataclasses import asdict
from datetime import datetime, timedelta
from typing import Any

from thumbpilot.common.config import EngineSettings, get_settings
from thumbpilot.common.exceptions import DependencyError, NotFoundError
from thumbpilot.common.logger import clear_log_context, get_logger, log_context
from thumbpilot.common.metrics import (
    record_iteration,
    record_pipeline,
    record_settle,
    record_swap,
)
from thumbpilot.common.utils import current_datetime, lookback_window
from thumbpilot.engine.confidence import ConfidenceEvaluator, calculate_improvement
from thumbpilot.engine.rotation import RotationTracker
from thumbpilot.engine.state import is_in_loop, is_terminal, transition_fields
from thumbpilot.engine.tasks import PipelineTaskRegistry
from thumbpilot.models import (
    AssetType,
    Campaign,
    CampaignStatus,
    OptimizationRun,
    PerformanceSnapshot,
    RunAction,
    RunStatus,
    Variant,
)
from thumbpilot.schemas.internal import MetricsReading, SettleDecision, VariantPerformance
from thumbpilot.services.gateway import PersistenceGateway
from thumbpilot.services.generator import CreativeGenerator
from thumbpilot.services.notifications import LoggingNotificationBus, NotificationBus
from thumbpilot.services.platform import PlatformClient, extract_video_id

logger = get_logger(__name__)


def initial_prompt(title: str | None, elements: list[str], audience: str, tone: str) -> str:
    return (
        f'Create a YouTube thumbnail for: "{title or "YouTube video"}".\n'
        f"Key elements to include: {', '.join(elements) or 'engaging visuals'}.\n"
        f"Target audience: {audience}.\n"
        f"Emotional tone: {tone}."
    )


def iteration_prompt(title: str | None, elements: list[str], iteration: int) -> str:
    return (
        f'Create an optimized YouTube thumbnail for: "{title or "YouTube video"}".\n'
        f"Include these key elements: {', '.join(elements) or 'engaging visuals'}.\n"
        "Reference style from existing video frames.\n"
        f"Iteration {iteration}: Focus on higher CTR with more compelling visuals, "
        "brighter colors, and clearer focal points."
    )


class CampaignOrchestrator:
    """Drives campaigns through their lifecycle."""

    def __init__(
        self,
        gateway: PersistenceGateway,
        platform: PlatformClient,
        generator: CreativeGenerator,
        notifications: NotificationBus | None = None,
        settings: EngineSettings | None = None,
        evaluator: ConfidenceEvaluator | None = None,
        tasks: PipelineTaskRegistry | None = None,
        clock: Callable[[], datetime] = current_datetime,
    ):
        self.gateway = gateway
        self.platform = platform
        self.generator = generator
        self.notifications = notifications or LoggingNotificationBus()
        self.settings = settings or get_settings().engine
        self.evaluator = evaluator or ConfidenceEvaluator.from_settings(self.settings)
        self.tasks = tasks or PipelineTaskRegistry(clock)
        self._clock = clock
        self._iteration_locks: dict[str, asyncio.Lock] = {}
        self.rotations = RotationTracker(
            gateway,
            clock=clock,
            min_velocity_window_minutes=self.settings.min_velocity_window_minutes,
        )

    # ==================== Creation pipeline ====================

    async def create_campaign(
        self,
        user_id: str,
        video_url: str,
        max_iterations: int | None = None,
        iterations_per_day: int | None = None,
        start_pipeline: bool = True,
    ) -> Campaign:
        """
        Persist a new campaign and start its pipeline as a tracked task.

        Raises:
            InvalidVideoError: if the URL does not resolve to a video.
        """
        video_id = extract_video_id(video_url)

        title = None
        thumbnail_url = None
        try:
            info = await self.platform.get_video_info(video_id)
            title = info.title or None
            thumbnail_url = info.thumbnail_url
        except DependencyError as e:
            logger.warning("Video info unavailable", video_id=video_id, error=str(e))

        campaign = await self.gateway.create_campaign(
            user_id=user_id,
            video_id=video_id,
            video_url=video_url,
            video_title=title,
            original_thumbnail_url=thumbnail_url,
            status=CampaignStatus.PENDING.value,
            max_iterations=max_iterations or self.settings.default_max_iterations,
            iterations_per_day=iterations_per_day or self.settings.default_iterations_per_day,
        )
        logger.info(
            "Campaign created",
            campaign_id=campaign.id,
            user_id=user_id,
            video_id=video_id,
        )

        if start_pipeline:
            self.tasks.start(campaign.id, self.run_pipeline(campaign.id))
        return campaign

    async def run_pipeline(self, campaign_id: str) -> Campaign:
        """
        analyzing -> generating -> testing.

        Any error moves the campaign to ``failed`` and is re-raised so the
        owning task records it.
        """
        log_context(campaign_id=campaign_id)
        try:
            campaign = await self._require_campaign(campaign_id)
            campaign = await self._transition(
                campaign, CampaignStatus.ANALYZING, message="Analyzing video content..."
            )
            await self._analyze(campaign)

            campaign = await self._transition(
                campaign, CampaignStatus.GENERATING, message="Generating thumbnail variations..."
            )
            analysis_asset = await self.gateway.list_assets(campaign.id, AssetType.TRANSCRIPT.value)
            extra = (analysis_asset[0].extra or {}) if analysis_asset else {}
            elements = await self._reference_elements(campaign.id)
            variant_ids = await self.generator.generate_variants(
                campaign.id,
                campaign.user_id,
                initial_prompt(
                    campaign.video_title,
                    elements,
                    extra.get("target_audience", "general"),
                    extra.get("emotional_tone", "engaging"),
                ),
                self.settings.initial_variant_count,
                elements,
            )

            baseline = await self._baseline_reading(campaign)
            await self.rotations.start_initial_rotation(campaign.id, baseline)
            await self.collect_snapshot(campaign)

            campaign = await self.gateway.update_campaign(
                campaign.id,
                **transition_fields(campaign, CampaignStatus.TESTING),
                current_iteration=1,
                next_scheduled_run=self._clock()
                + timedelta(hours=self.settings.first_iteration_delay_hours),
            )
            run = await self.gateway.create_run(
                campaign_id=campaign.id,
                iteration=1,
                status=RunStatus.PENDING.value,
                started_at=self._clock(),
            )
        except Exception as e:
            logger.error("Campaign pipeline failed", error=str(e), error_type=type(e).__name__)
            record_pipeline(False)
            await self._fail_campaign(campaign_id, str(e) or type(e).__name__)
            raise
        finally:
            clear_log_context("campaign_id")

        logger.info(
            "Campaign pipeline completed",
            campaign_id=campaign.id,
            variants=len(variant_ids),
            next_scheduled_run=campaign.next_scheduled_run,
        )
        record_pipeline(True)
        await self.notifications.status_change(
            campaign.id,
            CampaignStatus.TESTING.value,
            {"message": "Starting A/B testing cycle...", "iteration": 1},
        )
        await self.notifications.optimization_run(campaign.id, run)
        return campaign

    async def _analyze(self, campaign: Campaign) -> None:
        """Reference frames, transcript and content analysis, stored as video assets."""
        try:
            frames = await self.platform.extract_reference_frames(campaign.video_id)
        except DependencyError as e:
            logger.warning("Reference frames unavailable", error=str(e))
            frames = []
        for url in frames:
            await self.gateway.create_asset(
                campaign_id=campaign.id,
                asset_type=AssetType.FRAME.value,
                name="Reference Frame",
                url=url,
                is_key_element=True,
            )

        try:
            transcript = await self.platform.get_transcript(campaign.video_id)
        except DependencyError as e:
            logger.warning("Transcript unavailable", error=str(e))
            transcript = ""

        analysis = await self.generator.analyze_content(
            transcript or campaign.video_title or "YouTube video",
            campaign.video_title or "",
            campaign.original_thumbnail_url,
        )

        await self.gateway.create_asset(
            campaign_id=campaign.id,
            asset_type=AssetType.TRANSCRIPT.value,
            name="Video Transcript",
            content=transcript,
            extra={
                "key_moments": [asdict(m) for m in analysis.key_moments],
                "title_variations": analysis.title_variations,
                "target_audience": analysis.target_audience,
                "emotional_tone": analysis.emotional_tone,
            },
        )
        for element in analysis.visual_elements:
            await self.gateway.create_asset(
                campaign_id=campaign.id,
                asset_type=AssetType.ELEMENT.value,
                name=element,
                description=f"Key visual element: {element}",
                is_key_element=True,
            )

    async def _baseline_reading(self, campaign: Campaign) -> MetricsReading:
        """Current analytics, or a zero placeholder when the platform can't provide them."""
        try:
            return await self._fetch_reading(campaign)
        except Exception as e:
            logger.warning("Baseline analytics unavailable, using zero baseline", error=str(e))
            return MetricsReading.zero()

    # ==================== Optimization loop ====================

    async def run_optimization_iteration(self, campaign_id: str) -> OptimizationRun | None:
        """
        Measure, decide, and either settle or swap + generate more variants.

        Returns the iteration's run, or None when the campaign is not in
        the loop or already has an iteration in flight. Errors mark the
        run failed and leave the campaign status alone so the next sweep
        retries.
        """
        lock = self._iteration_locks.setdefault(campaign_id, asyncio.Lock())
        if lock.locked():
            logger.info("Iteration already in flight, skipping", campaign_id=campaign_id)
            record_iteration("skipped")
            return None

        async with lock:
            return await self._run_iteration(campaign_id)

    async def _run_iteration(self, campaign_id: str) -> OptimizationRun | None:
        campaign = await self._require_campaign(campaign_id)
        if not is_in_loop(campaign.status):
            logger.info(
                "Campaign not in testing/optimizing, skipping iteration",
                campaign_id=campaign_id,
                status=campaign.status,
            )
            record_iteration("skipped")
            return None

        iteration = max(1, campaign.current_iteration)
        run = await self._start_run(campaign, iteration)
        log_context(campaign_id=campaign_id, iteration=iteration, run_id=run.id)
        await self.notifications.optimization_run(campaign_id, run)

        try:
            run = await self._iterate(campaign, run, iteration)
        except Exception as e:
            message = str(e) or type(e).__name__
            logger.error("Optimization iteration failed", error=message, error_type=type(e).__name__)
            run = await self.gateway.update_run(
                run.id,
                status=RunStatus.FAILED.value,
                notes=message,
                completed_at=self._clock(),
            )
            record_iteration("failed")
            await self.notifications.optimization_run(campaign_id, run, error=message)
        finally:
            clear_log_context("campaign_id", "iteration", "run_id")
        return run

    async def _start_run(self, campaign: Campaign, iteration: int) -> OptimizationRun:
        runs = await self.gateway.list_runs(campaign.id)
        pending = next(
            (r for r in runs if r.iteration == iteration and r.status == RunStatus.PENDING.value),
            None,
        )
        if pending is not None:
            return await self.gateway.update_run(
                pending.id, status=RunStatus.PROCESSING.value, started_at=self._clock()
            )
        return await self.gateway.create_run(
            campaign_id=campaign.id,
            iteration=iteration,
            status=RunStatus.PROCESSING.value,
            started_at=self._clock(),
        )

    async def _iterate(
        self, campaign: Campaign, run: OptimizationRun, iteration: int
    ) -> OptimizationRun:
        await self.collect_snapshot(campaign)

        performance = await self.rotations.performance(campaign.id)
        decision = self.evaluator.evaluate(
            [p for variant_id, p in performance.items() if variant_id is not None],
            iteration,
            campaign.max_iterations,
        )

        previous_best = await self._previous_best_rate(campaign.id, run.id)
        rate_fields = {
            "previous_best_rate": previous_best,
            "current_best_rate": decision.best_rate,
            "rate_delta": decision.best_rate - previous_best,
            "confidence": decision.confidence,
        }

        if decision.should_settle:
            await self.settle_campaign(campaign, decision, performance, run_id=run.id)
            run = await self.gateway.update_run(
                run.id,
                status=RunStatus.COMPLETED.value,
                action_taken=RunAction.SETTLED.value,
                notes=f"Settled ({decision.reason}) with {decision.confidence * 100:.1f}% confidence",
                completed_at=self._clock(),
                **rate_fields,
            )
            record_iteration("settled")
            await self.notifications.optimization_run(campaign.id, run)
            return run

        swap_failed = False
        candidate = await self._pick_next_variant(campaign.id, performance)
        if candidate is not None:
            swap_failed = not await self.apply_variant(campaign, candidate, run_id=run.id)

        elements = await self._reference_elements(campaign.id)
        new_variant_ids = await self.generator.generate_variants(
            campaign.id,
            campaign.user_id,
            iteration_prompt(campaign.video_title, elements, iteration),
            self.settings.iteration_variant_count,
            elements,
        )

        next_run = self._clock() + timedelta(hours=24 / max(1, campaign.iterations_per_day))
        campaign = await self.gateway.update_campaign(
            campaign.id,
            **transition_fields(campaign, CampaignStatus.OPTIMIZING),
            current_iteration=iteration + 1,
            next_scheduled_run=next_run,
        )

        notes = f"Confidence: {decision.confidence * 100:.1f}%"
        if swap_failed:
            notes += "; creative swap failed, previous creative still live"
        run = await self.gateway.update_run(
            run.id,
            status=(RunStatus.FAILED if swap_failed else RunStatus.COMPLETED).value,
            variants_generated=len(new_variant_ids),
            action_taken=RunAction.GENERATED_VARIATIONS.value,
            notes=notes,
            completed_at=self._clock(),
            **rate_fields,
        )
        record_iteration("swap_failed" if swap_failed else "continued")
        logger.info(
            "Optimization iteration completed",
            next_iteration=iteration + 1,
            confidence=round(decision.confidence, 4),
            variants_generated=len(new_variant_ids),
            swap_failed=swap_failed,
        )

        await self.notifications.optimization_run(campaign.id, run)
        await self.notifications.campaign_update(
            campaign.id,
            {
                "iteration": iteration,
                "current_best_rate": decision.best_rate,
                "confidence": decision.confidence,
                "next_scheduled_run": next_run.isoformat(),
                "variants_generated": len(new_variant_ids),
            },
        )
        return run

    async def _pick_next_variant(
        self,
        campaign_id: str,
        performance: Mapping[str | None, VariantPerformance],
    ) -> Variant | None:
        """
        Next creative to put live.

        Variants short of the minimum rotation count go first (fewest
        rotations, then oldest); otherwise the best-rated variant that is
        not already live.
        """
        variants = await self.gateway.list_variants(campaign_id)
        active = await self.gateway.get_active_rotation(campaign_id)
        live_id = active.variant_id if active else None
        candidates = [v for v in variants if v.id != live_id]
        if not candidates:
            return None

        def rotations_of(variant: Variant) -> int:
            perf = performance.get(variant.id)
            return perf.rotation_count if perf else 0

        under_tested = [
            (rotations_of(v), position, v)
            for position, v in enumerate(candidates)
            if rotations_of(v) < self.settings.min_rotations_per_variant
        ]
        if under_tested:
            return min(under_tested, key=lambda item: item[:2])[2]

        def rate_of(variant: Variant) -> float:
            perf = performance.get(variant.id)
            return self.evaluator.rate_of(perf) if perf else 0.0

        return max(candidates, key=rate_of)

    async def _previous_best_rate(self, campaign_id: str, current_run_id: str) -> float:
        runs = await self.gateway.list_runs(campaign_id)
        rates = [
            r.current_best_rate
            for r in runs
            if r.id != current_run_id and r.current_best_rate is not None
        ]
        return max(rates, default=0.0)

    # ==================== Swap ====================

    async def apply_variant(
        self,
        campaign: Campaign,
        variant: Variant,
        run_id: str | None = None,
    ) -> bool:
        """
        Put ``variant`` live on the video.

        1. read pre-swap analytics
        2. upload; on failure stop here with the active rotation untouched
        3. close the active rotation and open one for ``variant``, both
           pinned to the pre-swap reading

        Returns True only when the upload succeeded.
        """
        image = await self.gateway.load_variant_image(variant)
        if not image:
            logger.warning("Could not load variant image", variant_id=variant.id)
            record_swap(False)
            return False

        try:
            reading = await self._fetch_reading(campaign)
        except Exception as e:
            logger.warning("Pre-swap analytics unavailable, swap skipped", variant_id=variant.id, error=str(e))
            record_swap(False)
            return False

        try:
            await self.platform.apply_creative(campaign.video_id, image)
        except Exception as e:
            logger.warning(
                "Creative upload failed, keeping current rotation",
                variant_id=variant.id,
                error=str(e),
                error_type=type(e).__name__,
            )
            record_swap(False)
            return False

        await self.rotations.close_active_rotation(campaign.id, reading)
        await self.rotations.create_rotation(campaign.id, variant.id, reading, run_id=run_id)
        record_swap(True)
        logger.info("Variant applied", campaign_id=campaign.id, variant_id=variant.id, video_id=campaign.video_id)

        await self.notifications.campaign_update(
            campaign.id,
            {"event": "variant_applied", "variant_id": variant.id, "video_id": campaign.video_id},
        )
        return True

    # ==================== Settle ====================

    async def settle_campaign(
        self,
        campaign: Campaign,
        decision: SettleDecision,
        performance: Mapping[str | None, VariantPerformance] | None = None,
        run_id: str | None = None,
    ) -> Campaign:
        """Lock in the winner: apply it if not already live and mark the campaign settled."""
        if performance is None:
            performance = await self.rotations.performance(campaign.id)

        baseline = await self._baseline_rate(campaign.id, performance)
        improvement = calculate_improvement(baseline, decision.best_rate)

        winner_id = decision.winner_id
        if winner_id is not None:
            active = await self.gateway.get_active_rotation(campaign.id)
            if active is None or active.variant_id != winner_id:
                winner = await self.gateway.get_variant(winner_id)
                if winner is None:
                    logger.warning("Winning variant not found", variant_id=winner_id)
                elif not await self.apply_variant(campaign, winner, run_id=run_id):
                    logger.warning("Winning variant could not be applied", variant_id=winner_id)

        campaign = await self.gateway.update_campaign(
            campaign.id,
            **transition_fields(campaign, CampaignStatus.SETTLED),
            settled_at=self._clock(),
            winning_variant_id=winner_id,
            final_rate=decision.best_rate,
            improvement_pct=improvement,
            confidence=decision.confidence,
            next_scheduled_run=None,
        )
        record_settle(decision.reason or "manual")
        logger.info(
            "Campaign settled",
            campaign_id=campaign.id,
            winning_variant_id=winner_id,
            reason=decision.reason,
            final_rate=round(decision.best_rate, 4),
            improvement_pct=round(improvement, 2),
            confidence=round(decision.confidence, 4),
        )

        await self.notifications.status_change(
            campaign.id,
            CampaignStatus.SETTLED.value,
            {
                "winning_variant_id": winner_id,
                "final_rate": decision.best_rate,
                "improvement_pct": improvement,
                "confidence": decision.confidence,
                "reason": decision.reason,
            },
        )
        return campaign

    async def _baseline_rate(
        self,
        campaign_id: str,
        performance: Mapping[str | None, VariantPerformance],
    ) -> float:
        """Rate of the original creative, else the earliest snapshot's velocity."""
        original = performance.get(None)
        if original is not None and original.rotation_count > 0:
            return self.evaluator.rate_of(original)
        if self.evaluator.method == "velocity":
            snapshots = await self.gateway.list_snapshots(campaign_id)
            if snapshots:
                return snapshots[0].view_velocity or 0.0
        return 0.0

    # ==================== Telemetry ====================

    async def collect_snapshot(self, campaign: Campaign) -> PerformanceSnapshot | None:
        """Best-effort point-in-time metrics; failures are logged and dropped."""
        try:
            reading = await self._fetch_reading(campaign)
            active = await self.gateway.get_active_rotation(campaign.id)
            views_in_rotation = 0
            velocity = 0.0
            if active is not None:
                views_in_rotation = max(0, reading.views - (active.baseline_views or 0))
                velocity = self.rotations.live_velocity(active, reading)

            snapshot = await self.gateway.create_snapshot(
                campaign_id=campaign.id,
                variant_id=active.variant_id if active else None,
                views=reading.views,
                views_in_rotation=views_in_rotation,
                view_velocity=velocity,
                impressions=reading.impressions,
                clicks=reading.clicks,
                is_currently_active=True,
                recorded_at=self._clock(),
            )
        except Exception as e:
            logger.warning("Performance snapshot failed", campaign_id=campaign.id, error=str(e))
            return None

        await self.notifications.performance_snapshot(campaign.id, snapshot)
        return snapshot

    async def _fetch_reading(self, campaign: Campaign) -> MetricsReading:
        start, end = lookback_window(self.settings.analytics_lookback_days, self._clock())
        analytics = await self.platform.get_analytics(campaign.video_id, start, end)
        return analytics.to_reading()

    # ==================== Queries ====================

    async def get_campaign_status(self, campaign_id: str) -> dict[str, Any]:
        """Campaign with its assets, runs, snapshots, rotations and variants."""
        campaign = await self._require_campaign(campaign_id)
        return {
            "campaign": campaign,
            "assets": await self.gateway.list_assets(campaign_id),
            "runs": await self.gateway.list_runs(campaign_id),
            "snapshots": await self.gateway.list_snapshots(campaign_id),
            "rotations": await self.gateway.list_rotations(campaign_id),
            "variants": await self.gateway.list_variants(campaign_id),
        }

    # ==================== Helpers ====================

    async def _require_campaign(self, campaign_id: str) -> Campaign:
        campaign = await self.gateway.get_campaign(campaign_id)
        if campaign is None:
            raise NotFoundError(f"Campaign {campaign_id} not found", details={"campaign_id": campaign_id})
        return campaign

    async def _transition(
        self, campaign: Campaign, target: CampaignStatus, **detail: Any
    ) -> Campaign:
        updated = await self.gateway.update_campaign(
            campaign.id, **transition_fields(campaign, target)
        )
        logger.info(
            "Campaign status changed",
            campaign_id=campaign.id,
            previous=campaign.status,
            status=target.value,
        )
        await self.notifications.status_change(campaign.id, target.value, detail)
        return updated

    async def _fail_campaign(self, campaign_id: str, message: str) -> None:
        campaign = await self.gateway.get_campaign(campaign_id)
        if campaign is None or is_terminal(campaign.status):
            return
        await self.gateway.update_campaign(
            campaign_id,
            **transition_fields(campaign, CampaignStatus.FAILED),
            error_message=message,
            next_scheduled_run=None,
        )
        logger.warning("Campaign failed", campaign_id=campaign_id, error=message)
        await self.notifications.status_change(
            campaign_id, CampaignStatus.FAILED.value, {"error": message}
        )

    async def _reference_elements(self, campaign_id: str) -> list[str]:
        assets = await self.gateway.list_assets(campaign_id, AssetType.ELEMENT.value)
        return [
            a.name or a.description or ""
            for a in assets
            if a.is_key_element and (a.name or a.description)
        ]
