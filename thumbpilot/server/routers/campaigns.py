"""
Campaign endpoints.

Create a campaign (its pipeline runs in the background), inspect its
status and pipeline, and trigger an optimization iteration on demand.
"""

from fastapi import APIRouter, Depends, HTTPException, status

from thumbpilot.common.logger import get_logger
from thumbpilot.engine import CampaignOrchestrator, OptimizationScheduler
from thumbpilot.schemas.request import CreateCampaignRequest
from thumbpilot.schemas.response import (
    CampaignResponse,
    CampaignStatusResponse,
    OptimizationRunResponse,
    PipelineTaskResponse,
    RotationResponse,
    SnapshotResponse,
    TriggerResponse,
)
from thumbpilot.server.dependencies import get_orchestrator, get_scheduler

logger = get_logger(__name__)
router = APIRouter()


@router.post("", response_model=CampaignResponse, status_code=status.HTTP_201_CREATED)
async def create_campaign(
    body: CreateCampaignRequest,
    orchestrator: CampaignOrchestrator = Depends(get_orchestrator),
) -> CampaignResponse:
    """
    Create a campaign and start its creation pipeline.

    Returns immediately with the campaign in ``pending``; progress is
    visible through ``GET /{campaign_id}/pipeline`` and notifications.
    """
    campaign = await orchestrator.create_campaign(
        user_id=body.user_id,
        video_url=body.video_url,
        max_iterations=body.max_iterations,
        iterations_per_day=body.iterations_per_day,
    )
    return CampaignResponse.model_validate(campaign)


@router.get("/{campaign_id}", response_model=CampaignStatusResponse)
async def get_campaign(
    campaign_id: str,
    orchestrator: CampaignOrchestrator = Depends(get_orchestrator),
) -> CampaignStatusResponse:
    """Campaign with its runs, rotations and snapshots."""
    detail = await orchestrator.get_campaign_status(campaign_id)
    return CampaignStatusResponse(
        campaign=CampaignResponse.model_validate(detail["campaign"]),
        runs=[OptimizationRunResponse.model_validate(r) for r in detail["runs"]],
        rotations=[RotationResponse.model_validate(r) for r in detail["rotations"]],
        snapshots=[SnapshotResponse.model_validate(s) for s in detail["snapshots"]],
        variant_ids=[v.id for v in detail["variants"]],
        asset_count=len(detail["assets"]),
    )


@router.get("/{campaign_id}/pipeline", response_model=PipelineTaskResponse)
async def get_pipeline(
    campaign_id: str,
    orchestrator: CampaignOrchestrator = Depends(get_orchestrator),
) -> PipelineTaskResponse:
    """Status of the campaign's background creation pipeline."""
    task = orchestrator.tasks.get(campaign_id)
    if task is None:
        raise HTTPException(status_code=404, detail="No pipeline for this campaign")

    return PipelineTaskResponse(
        campaign_id=task.campaign_id,
        status=task.status,
        error=task.error,
        started_at=task.started_at,
        finished_at=task.finished_at,
    )


@router.post("/{campaign_id}/trigger", response_model=TriggerResponse)
async def trigger_optimization(
    campaign_id: str,
    scheduler: OptimizationScheduler = Depends(get_scheduler),
) -> TriggerResponse:
    """Run one optimization iteration now."""
    run = await scheduler.manual_trigger(campaign_id)
    campaign = await scheduler.orchestrator.gateway.get_campaign(campaign_id)

    return TriggerResponse(
        campaign_id=campaign_id,
        status=campaign.status,
        current_iteration=campaign.current_iteration,
        run=OptimizationRunResponse.model_validate(run) if run is not None else None,
    )
