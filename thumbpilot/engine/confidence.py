"""
Settle decisions.

Two decision procedures, one per metric shape:

- ``ProportionTest``: pooled two-proportion z-test over impressions/clicks.
- ``VelocityEvaluator``: relative-improvement heuristic over rotation
  velocities (views/hour), for when the platform reports no click data.

``ConfidenceEvaluator`` picks one of them from ``engine.decision_method``.
"""

from __future__ import annotations

import math
from collections.abc import Sequence

from thumbpilot.common.config import EngineSettings
from thumbpilot.common.logger import get_logger
from thumbpilot.common.utils import clamp
from thumbpilot.schemas.internal import (
    ComparisonResult,
    SettleDecision,
    VariantPerformance,
    VariantStats,
    WinnerResult,
)

logger = get_logger(__name__)

# Abramowitz & Stegun 7.1.26
_A1 = 0.254829592
_A2 = -0.284496736
_A3 = 1.421413741
_A4 = -1.453152027
_A5 = 1.061405429
_P = 0.3275911

Z_ALPHA = 1.96  # alpha = 0.05, two-tailed
Z_BETA = 0.84   # power = 0.8


def calculate_improvement(original: float, new: float) -> float:
    """Percentage change from ``original`` to ``new``."""
    if original == 0:
        return 100.0 if new > 0 else 0.0
    return (new - original) / original * 100


class ProportionTest:
    """Two-proportion significance test over impression/click counts."""

    def __init__(self, min_impressions: int = 500, confidence_threshold: float = 0.95):
        self.min_impressions = min_impressions
        self.confidence_threshold = confidence_threshold

    @staticmethod
    def z_score(p1: float, n1: int, p2: float, n2: int) -> float:
        if n1 == 0 or n2 == 0:
            return 0.0
        pooled = (p1 * n1 + p2 * n2) / (n1 + n2)
        se = math.sqrt(pooled * (1 - pooled) * (1 / n1 + 1 / n2))
        if se == 0:
            return 0.0
        return (p1 - p2) / se

    @staticmethod
    def p_value(z: float) -> float:
        """Two-tailed p-value for a z-score."""
        sign = -1 if z < 0 else 1
        x = abs(z) / math.sqrt(2)
        t = 1.0 / (1.0 + _P * x)
        y = 1.0 - (((((_A5 * t + _A4) * t) + _A3) * t + _A2) * t + _A1) * t * math.exp(-x * x)
        cdf = 0.5 * (1.0 + sign * y)
        return clamp(2 * (1 - cdf), 0.0, 1.0)

    @staticmethod
    def minimum_sample_size(baseline_ctr: float, minimum_detectable_effect: float = 0.1) -> float:
        """Impressions per variant to detect a relative lift of ``minimum_detectable_effect``."""
        p1 = baseline_ctr
        p2 = baseline_ctr * (1 + minimum_detectable_effect)
        p = (p1 + p2) / 2
        effect = abs(p2 - p1)
        if effect == 0:
            return math.inf
        return float(math.ceil(2 * p * (1 - p) * (Z_ALPHA + Z_BETA) ** 2 / effect**2))

    @staticmethod
    def estimate_hours_to_significance(
        current_impressions: int,
        hours_elapsed: float,
        sample_size_needed: float,
    ) -> float:
        if hours_elapsed <= 0 or current_impressions <= 0:
            return math.inf
        per_hour = current_impressions / hours_elapsed
        return max(0.0, sample_size_needed - current_impressions) / per_hour

    def compare_variants(
        self,
        a: VariantStats,
        b: VariantStats,
        threshold: float | None = None,
    ) -> ComparisonResult:
        threshold = self.confidence_threshold if threshold is None else threshold
        minimum_sample_met = (
            a.impressions >= self.min_impressions and b.impressions >= self.min_impressions
        )

        z = self.z_score(a.ctr, a.impressions, b.ctr, b.impressions)
        p_value = self.p_value(z)
        confidence = clamp(1 - p_value, 0.0, 1.0)
        is_significant = confidence >= threshold and minimum_sample_met

        winner_id = None
        winner_position = None
        if is_significant:
            if a.ctr > b.ctr:
                winner_id, winner_position = a.id, "A"
            else:
                winner_id, winner_position = b.id, "B"

        return ComparisonResult(
            is_significant=is_significant,
            confidence=confidence,
            p_value=p_value,
            z_score=z,
            winner_id=winner_id,
            winner_position=winner_position,
            minimum_sample_met=minimum_sample_met,
            sample_size_needed=self.minimum_sample_size(max(a.ctr, b.ctr) or 0.05),
        )

    def find_winner(
        self,
        variants: Sequence[VariantStats],
        threshold: float | None = None,
    ) -> WinnerResult:
        """
        The top-CTR variant wins only if it is significantly ahead of every
        other variant. Confidence is the weakest pairwise confidence.
        """
        if len(variants) < 2:
            return WinnerResult(
                winner_id=variants[0].id if variants else None,
                confidence=0.0,
                is_significant=False,
                p_value=1.0,
                z_score=0.0,
            )

        ranked = sorted(variants, key=lambda v: v.ctr, reverse=True)
        top = ranked[0]

        comparisons = []
        significant = True
        lowest_confidence = 1.0
        highest_p_value = 0.0
        weakest_z = math.inf
        for other in ranked[1:]:
            result = self.compare_variants(top, other, threshold)
            comparisons.append((top.id, other.id, result))
            if not result.is_significant or result.winner_position != "A":
                significant = False
            lowest_confidence = min(lowest_confidence, result.confidence)
            highest_p_value = max(highest_p_value, result.p_value)
            weakest_z = min(weakest_z, abs(result.z_score))

        return WinnerResult(
            winner_id=top.id if significant else None,
            confidence=lowest_confidence,
            is_significant=significant,
            p_value=highest_p_value,
            z_score=weakest_z,
            comparisons=comparisons,
        )

    def evaluate(
        self,
        performance: Sequence[VariantPerformance],
        iteration: int,
        max_iterations: int,
    ) -> SettleDecision:
        stats = [
            VariantStats(id=p.variant_id, impressions=p.total_impressions, clicks=p.total_clicks)
            for p in performance
        ]
        result = self.find_winner(stats)
        ranked = sorted(stats, key=lambda s: s.ctr, reverse=True)
        best = ranked[0] if ranked else None
        second_ctr = ranked[1].ctr if len(ranked) > 1 else 0.0
        best_rate = best.ctr if best else 0.0
        relative = _relative_improvement(best_rate, second_ctr)

        details = {
            "p_value": result.p_value,
            "z_score": result.z_score,
            "variants": len(stats),
        }
        if result.is_significant:
            return SettleDecision(
                should_settle=True,
                winner_id=result.winner_id,
                confidence=result.confidence,
                reason="significant",
                best_rate=best_rate,
                relative_improvement=relative,
                details=details,
            )
        if iteration >= max_iterations:
            return SettleDecision(
                should_settle=True,
                winner_id=best.id if best else None,
                confidence=result.confidence,
                reason="max_iterations",
                best_rate=best_rate,
                relative_improvement=relative,
                details=details,
            )
        return SettleDecision(
            should_settle=False,
            winner_id=None,
            confidence=result.confidence,
            best_rate=best_rate,
            relative_improvement=relative,
            details=details,
        )


def _relative_improvement(best: float, second: float) -> float:
    if second > 0:
        return (best - second) / second
    return 1.0 if best > 0 else 0.0


class VelocityEvaluator:
    """
    Heuristic confidence over exposure-weighted average velocities.

    A side is eligible once it has ``min_rotations`` qualifying rotations
    and ``min_exposure_hours`` of total exposure. Confidence is banded on
    the relative improvement of the best variant over the runner-up, with
    small bonuses for extra exposure and rotations.
    """

    def __init__(
        self,
        settle_threshold: float = 0.95,
        min_rotations: int = 2,
        min_exposure_hours: float = 2.0,
        early_exit_min_iteration: int = 5,
        early_exit_min_rotations: int = 3,
        early_exit_max_improvement: float = 0.05,
        early_exit_min_confidence: float = 0.70,
    ):
        self.settle_threshold = settle_threshold
        self.min_rotations = min_rotations
        self.min_exposure_hours = min_exposure_hours
        self.early_exit_min_iteration = early_exit_min_iteration
        self.early_exit_min_rotations = early_exit_min_rotations
        self.early_exit_max_improvement = early_exit_max_improvement
        self.early_exit_min_confidence = early_exit_min_confidence

    def score(
        self,
        relative_improvement: float,
        min_rotations: int,
        min_exposure_hours: float,
    ) -> float:
        """Confidence in [0, 0.99] for a best/runner-up pair."""
        if min_rotations < self.min_rotations or min_exposure_hours < self.min_exposure_hours:
            return clamp(
                0.3 * min(1.0, min_rotations / 2) * min(1.0, min_exposure_hours / 2),
                0.0,
                1.0,
            )

        rel = max(0.0, relative_improvement)
        if rel >= 0.30:
            confidence = 0.85 + min(0.14, rel - 0.30)
        elif rel >= 0.15:
            confidence = 0.70 + min(0.14, rel * 0.5)
        elif rel >= 0.05:
            confidence = 0.50 + min(0.19, (rel - 0.05) * 1.9)
        else:
            confidence = 0.30 + rel * 4

        exposure_bonus = min(0.05, (min_exposure_hours - 2) * 0.01)
        rotation_bonus = min(0.05, (min_rotations - 2) * 0.02)
        return clamp(confidence + exposure_bonus + rotation_bonus, 0.0, 0.99)

    def evaluate(
        self,
        performance: Sequence[VariantPerformance],
        iteration: int,
        max_iterations: int,
    ) -> SettleDecision:
        ranked = sorted(performance, key=lambda p: p.avg_velocity, reverse=True)
        best = ranked[0] if ranked else None

        if len(ranked) < 2:
            if iteration >= max_iterations:
                return SettleDecision(
                    should_settle=True,
                    winner_id=best.variant_id if best else None,
                    confidence=0.0,
                    reason="max_iterations",
                    best_rate=best.avg_velocity if best else 0.0,
                )
            return SettleDecision(
                should_settle=False,
                winner_id=None,
                confidence=0.0,
                best_rate=best.avg_velocity if best else 0.0,
                details={"variants": len(ranked)},
            )

        second = ranked[1]
        relative = _relative_improvement(best.avg_velocity, second.avg_velocity)
        min_rotations = min(best.rotation_count, second.rotation_count)
        min_hours = min(best.exposure_hours, second.exposure_hours)
        confidence = self.score(relative, min_rotations, min_hours)
        eligible = min_rotations >= self.min_rotations and min_hours >= self.min_exposure_hours

        details = {
            "best_velocity": best.avg_velocity,
            "second_velocity": second.avg_velocity,
            "min_rotations": min_rotations,
            "min_exposure_hours": round(min_hours, 3),
            "eligible": eligible,
        }

        def settle(reason: str) -> SettleDecision:
            return SettleDecision(
                should_settle=True,
                winner_id=best.variant_id,
                confidence=confidence,
                reason=reason,
                best_rate=best.avg_velocity,
                relative_improvement=relative,
                details=details,
            )

        if eligible and confidence >= self.settle_threshold:
            return settle("significant")
        if iteration >= max_iterations:
            return settle("max_iterations")
        # A lift under 5% scores at most 0.60 with full bonuses, so this only
        # fires when early_exit_min_confidence is configured below that.
        if (
            iteration >= self.early_exit_min_iteration
            and min_rotations >= self.early_exit_min_rotations
            and relative < self.early_exit_max_improvement
            and confidence > self.early_exit_min_confidence
        ):
            return settle("early_exit")

        return SettleDecision(
            should_settle=False,
            winner_id=None,
            confidence=confidence,
            best_rate=best.avg_velocity,
            relative_improvement=relative,
            details=details,
        )


class ConfidenceEvaluator:
    """Settle decision with the configured decision method."""

    def __init__(
        self,
        method: str = "velocity",
        velocity: VelocityEvaluator | None = None,
        proportion: ProportionTest | None = None,
    ):
        if method not in ("velocity", "proportion"):
            raise ValueError(f"Unknown decision method: {method}")
        self.method = method
        self.velocity = velocity or VelocityEvaluator()
        self.proportion = proportion or ProportionTest()

    @classmethod
    def from_settings(cls, engine: EngineSettings) -> ConfidenceEvaluator:
        return cls(
            method=engine.decision_method,
            velocity=VelocityEvaluator(
                settle_threshold=engine.confidence_threshold,
                min_rotations=engine.min_rotations_per_variant,
                min_exposure_hours=engine.min_exposure_hours_per_variant,
                early_exit_min_iteration=engine.early_exit_min_iteration,
                early_exit_min_rotations=engine.early_exit_min_rotations,
                early_exit_max_improvement=engine.early_exit_max_improvement,
                early_exit_min_confidence=engine.early_exit_min_confidence,
            ),
            proportion=ProportionTest(
                min_impressions=engine.min_impressions_per_variant,
                confidence_threshold=engine.confidence_threshold,
            ),
        )

    def rate_of(self, performance: VariantPerformance) -> float:
        """The rate this method compares: views/hour or click-through proportion."""
        if self.method == "proportion":
            return performance.ctr
        return performance.avg_velocity

    def evaluate(
        self,
        performance: Sequence[VariantPerformance],
        iteration: int,
        max_iterations: int,
    ) -> SettleDecision:
        if self.method == "proportion":
            decision = self.proportion.evaluate(performance, iteration, max_iterations)
        else:
            decision = self.velocity.evaluate(performance, iteration, max_iterations)

        logger.info(
            "Settle criteria evaluated",
            method=self.method,
            iteration=iteration,
            max_iterations=max_iterations,
            should_settle=decision.should_settle,
            reason=decision.reason,
            confidence=round(decision.confidence, 4),
            relative_improvement=round(decision.relative_improvement, 4),
        )
        return decision
