"""
FastAPI dependencies resolving the engine objects built at startup.
"""

from fastapi import Request

from thumbpilot.engine import CampaignOrchestrator, OptimizationScheduler


def get_orchestrator(request: Request) -> CampaignOrchestrator:
    """Dependency to get the campaign orchestrator."""
    return request.app.state.orchestrator


def get_scheduler(request: Request) -> OptimizationScheduler:
    """Dependency to get the optimization scheduler."""
    return request.app.state.scheduler
