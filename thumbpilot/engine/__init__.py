"""
Autonomous optimization engine.

Rotation tracking, settle decisions, the campaign state machine and
orchestrator, and the periodic scheduler.
"""

from thumbpilot.engine.confidence import (
    ConfidenceEvaluator,
    ProportionTest,
    VelocityEvaluator,
    calculate_improvement,
)
from thumbpilot.engine.orchestrator import CampaignOrchestrator
from thumbpilot.engine.rotation import RotationTracker, aggregate
from thumbpilot.engine.scheduler import OptimizationScheduler
from thumbpilot.engine.state import (
    TRANSITIONS,
    can_transition,
    is_terminal,
    validate_transition,
)
from thumbpilot.engine.tasks import PipelineTask, PipelineTaskRegistry

__all__ = [
    "CampaignOrchestrator",
    "OptimizationScheduler",
    "PipelineTask",
    "PipelineTaskRegistry",
    "RotationTracker",
    "aggregate",
    "ConfidenceEvaluator",
    "ProportionTest",
    "VelocityEvaluator",
    "calculate_improvement",
    "TRANSITIONS",
    "can_transition",
    "validate_transition",
    "is_terminal",
]
