"""
Tests for the campaign orchestrator: pipeline, iterations, swaps and settling.
"""

import asyncio
from datetime import timedelta

import pytest

from conftest import (
    PNG_BYTES,
    VIDEO_URL,
    FakeClock,
    FakeGenerator,
    FakePlatform,
    RecordingNotificationBus,
    seed_campaign,
    seed_closed_rotation,
)
from thumbpilot.common.exceptions import InvalidVideoError, NotFoundError
from thumbpilot.common.utils import ensure_utc
from thumbpilot.engine import CampaignOrchestrator, OptimizationScheduler
from thumbpilot.models import AssetType, CampaignStatus, RunAction, RunStatus
from thumbpilot.services import SqlAlchemyGateway


async def run_pipeline_to_testing(
    orchestrator: CampaignOrchestrator, platform: FakePlatform
) -> str:
    platform.views = 1000
    campaign = await orchestrator.create_campaign("user_123", VIDEO_URL)
    task = await orchestrator.tasks.wait(campaign.id)
    assert task is not None and task.status == "completed"
    return campaign.id


# ==================== Creation pipeline ====================

@pytest.mark.asyncio
async def test_pipeline_reaches_testing(
    orchestrator: CampaignOrchestrator,
    gateway: SqlAlchemyGateway,
    platform: FakePlatform,
    notifications: RecordingNotificationBus,
    clock: FakeClock,
) -> None:
    campaign_id = await run_pipeline_to_testing(orchestrator, platform)

    campaign = await gateway.get_campaign(campaign_id)
    assert campaign.status == CampaignStatus.TESTING.value
    assert campaign.video_id == "dQw4w9WgXcQ"
    assert campaign.video_title == "How to test async code"
    assert campaign.current_iteration == 1
    assert ensure_utc(campaign.next_scheduled_run) == clock() + timedelta(hours=4)

    variants = await gateway.list_variants(campaign_id)
    assert len(variants) == 6

    rotations = await gateway.list_rotations(campaign_id)
    assert len(rotations) == 1
    assert rotations[0].is_active is True
    assert rotations[0].variant_id is None
    assert rotations[0].baseline_views == 1000

    runs = await gateway.list_runs(campaign_id)
    assert [(r.iteration, r.status) for r in runs] == [(1, RunStatus.PENDING.value)]

    assert len(await gateway.list_snapshots(campaign_id)) == 1
    assert len(await gateway.list_assets(campaign_id, AssetType.FRAME.value)) == 2
    elements = await gateway.list_assets(campaign_id, AssetType.ELEMENT.value)
    assert [a.name for a in elements] == ["face", "code on screen"]

    statuses = [d["status"] for d in notifications.of_type("status_change")]
    assert statuses == ["analyzing", "generating", "testing"]


@pytest.mark.asyncio
async def test_pipeline_uses_zero_baseline_without_analytics(
    orchestrator: CampaignOrchestrator,
    gateway: SqlAlchemyGateway,
    platform: FakePlatform,
) -> None:
    platform.fail_analytics = True

    campaign = await orchestrator.create_campaign("user_123", VIDEO_URL)
    task = await orchestrator.tasks.wait(campaign.id)

    assert task.status == "completed"
    rotation = await gateway.get_active_rotation(campaign.id)
    assert rotation.baseline_views == 0
    assert await gateway.list_snapshots(campaign.id) == []


@pytest.mark.asyncio
async def test_pipeline_failure_marks_campaign_failed(
    orchestrator: CampaignOrchestrator,
    gateway: SqlAlchemyGateway,
    generator: FakeGenerator,
    notifications: RecordingNotificationBus,
) -> None:
    generator.fail = True

    campaign = await orchestrator.create_campaign("user_123", VIDEO_URL)
    task = await orchestrator.tasks.wait(campaign.id)

    assert task.status == "failed"
    assert task.error == "generator unavailable"

    campaign = await gateway.get_campaign(campaign.id)
    assert campaign.status == CampaignStatus.FAILED.value
    assert campaign.error_message == "generator unavailable"
    assert notifications.of_type("status_change")[-1]["status"] == "failed"


@pytest.mark.asyncio
async def test_invalid_url_creates_nothing(
    orchestrator: CampaignOrchestrator, gateway: SqlAlchemyGateway
) -> None:
    with pytest.raises(InvalidVideoError):
        await orchestrator.create_campaign("user_123", "https://example.com/not-a-video")

    assert await gateway.list_campaigns() == []


# ==================== Optimization loop ====================

@pytest.mark.asyncio
async def test_iteration_swaps_and_generates(
    orchestrator: CampaignOrchestrator,
    gateway: SqlAlchemyGateway,
    platform: FakePlatform,
    notifications: RecordingNotificationBus,
    clock: FakeClock,
) -> None:
    campaign_id = await run_pipeline_to_testing(orchestrator, platform)
    first_variant = (await gateway.list_variants(campaign_id))[0]

    clock.advance(hours=4)
    platform.views = 1400
    run = await orchestrator.run_optimization_iteration(campaign_id)

    assert run.iteration == 1
    assert run.status == RunStatus.COMPLETED.value
    assert run.action_taken == RunAction.GENERATED_VARIATIONS.value
    assert run.variants_generated == 3
    assert len(await gateway.list_runs(campaign_id)) == 1

    campaign = await gateway.get_campaign(campaign_id)
    assert campaign.status == CampaignStatus.OPTIMIZING.value
    assert campaign.current_iteration == 2
    assert ensure_utc(campaign.next_scheduled_run) == clock() + timedelta(hours=24 / 5)

    original, current = await gateway.list_rotations(campaign_id)
    assert original.is_active is False
    assert original.views_delta == 400
    assert original.view_velocity == pytest.approx(100.0)
    assert current.is_active is True
    assert current.variant_id == first_variant.id
    assert current.baseline_views == 1400

    assert platform.uploads == [("dQw4w9WgXcQ", PNG_BYTES)]
    assert len(await gateway.list_variants(campaign_id)) == 9
    events = [d.get("event") for d in notifications.of_type("campaign_update")]
    assert "variant_applied" in events


@pytest.mark.asyncio
async def test_failed_upload_keeps_current_rotation(
    orchestrator: CampaignOrchestrator,
    gateway: SqlAlchemyGateway,
    platform: FakePlatform,
    clock: FakeClock,
) -> None:
    campaign_id = await run_pipeline_to_testing(orchestrator, platform)
    clock.advance(hours=4)
    platform.views = 1400
    await orchestrator.run_optimization_iteration(campaign_id)
    live_before = await gateway.get_active_rotation(campaign_id)

    clock.advance(hours=5)
    platform.views = 1900
    platform.fail_upload = True
    run = await orchestrator.run_optimization_iteration(campaign_id)

    assert run.iteration == 2
    assert run.status == RunStatus.FAILED.value
    assert "swap failed" in run.notes

    live_after = await gateway.get_active_rotation(campaign_id)
    assert live_after.id == live_before.id
    assert live_after.ended_at is None
    assert len(await gateway.list_rotations(campaign_id)) == 2

    campaign = await gateway.get_campaign(campaign_id)
    assert campaign.status == CampaignStatus.OPTIMIZING.value
    assert len(platform.uploads) == 1


@pytest.mark.asyncio
async def test_iteration_error_marks_run_failed_only(
    orchestrator: CampaignOrchestrator,
    gateway: SqlAlchemyGateway,
    platform: FakePlatform,
    generator: FakeGenerator,
    notifications: RecordingNotificationBus,
    clock: FakeClock,
) -> None:
    campaign_id = await run_pipeline_to_testing(orchestrator, platform)
    clock.advance(hours=4)
    generator.fail = True

    run = await orchestrator.run_optimization_iteration(campaign_id)

    assert run.status == RunStatus.FAILED.value
    assert run.notes == "generator unavailable"
    campaign = await gateway.get_campaign(campaign_id)
    assert campaign.status == CampaignStatus.TESTING.value
    assert notifications.of_type("optimization_run")[-1]["error"] == "generator unavailable"


@pytest.mark.asyncio
async def test_concurrent_sweep_and_trigger_run_one_iteration(
    orchestrator: CampaignOrchestrator,
    gateway: SqlAlchemyGateway,
    platform: FakePlatform,
    clock: FakeClock,
) -> None:
    campaign_id = await run_pipeline_to_testing(orchestrator, platform)
    clock.advance(hours=4)
    platform.views = 1400
    scheduler = OptimizationScheduler(orchestrator, clock=clock)

    _, triggered = await asyncio.gather(
        scheduler.run_pending_optimizations(),
        scheduler.manual_trigger(campaign_id),
    )

    rotations = await gateway.list_rotations(campaign_id)
    assert len([r for r in rotations if r.is_active]) == 1
    assert len(rotations) == 2
    assert len(platform.uploads) == 1

    runs = await gateway.list_runs(campaign_id)
    assert [(r.iteration, r.status) for r in runs] == [(1, RunStatus.COMPLETED.value)]
    assert triggered is None or triggered.id == runs[0].id
    assert (await gateway.get_campaign(campaign_id)).current_iteration == 2


@pytest.mark.asyncio
async def test_iteration_in_flight_is_skipped(
    orchestrator: CampaignOrchestrator,
    gateway: SqlAlchemyGateway,
    platform: FakePlatform,
    clock: FakeClock,
) -> None:
    campaign_id = await run_pipeline_to_testing(orchestrator, platform)
    clock.advance(hours=4)

    first = asyncio.create_task(orchestrator.run_optimization_iteration(campaign_id))
    await asyncio.sleep(0)
    second = await orchestrator.run_optimization_iteration(campaign_id)
    run = await first

    assert second is None
    assert run is not None
    assert run.status == RunStatus.COMPLETED.value
    assert len(await gateway.list_runs(campaign_id)) == 1


@pytest.mark.asyncio
async def test_significant_winner_settles_campaign(
    orchestrator: CampaignOrchestrator,
    gateway: SqlAlchemyGateway,
    platform: FakePlatform,
    notifications: RecordingNotificationBus,
    clock: FakeClock,
) -> None:
    campaign = await seed_campaign(gateway, CampaignStatus.OPTIMIZING, current_iteration=3)
    fast = await gateway.create_variant(campaign_id=campaign.id, user_id="user_123", image_data=PNG_BYTES)
    slow = await gateway.create_variant(campaign_id=campaign.id, user_id="user_123", image_data=PNG_BYTES)

    start = clock() - timedelta(hours=20)
    await seed_closed_rotation(gateway, campaign.id, fast.id, start, 1.5, 210)
    await seed_closed_rotation(gateway, campaign.id, slow.id, start + timedelta(hours=2), 2.0, 200)
    await seed_closed_rotation(gateway, campaign.id, fast.id, start + timedelta(hours=5), 1.5, 210)
    await seed_closed_rotation(gateway, campaign.id, slow.id, start + timedelta(hours=7), 2.0, 200)
    await gateway.create_rotation(
        campaign_id=campaign.id,
        variant_id=slow.id,
        started_at=clock() - timedelta(hours=1),
        is_active=True,
        baseline_views=5000,
    )
    platform.views = 5100

    run = await orchestrator.run_optimization_iteration(campaign.id)

    assert run.status == RunStatus.COMPLETED.value
    assert run.action_taken == RunAction.SETTLED.value

    settled = await gateway.get_campaign(campaign.id)
    assert settled.status == CampaignStatus.SETTLED.value
    assert settled.winning_variant_id == fast.id
    assert settled.confidence >= 0.95
    assert settled.final_rate == pytest.approx(140.0)
    assert settled.next_scheduled_run is None
    assert settled.settled_at is not None

    live = await gateway.get_active_rotation(campaign.id)
    assert live.variant_id == fast.id
    assert len(platform.uploads) == 1

    final = notifications.of_type("status_change")[-1]
    assert final["status"] == "settled"
    assert final["confidence"] >= 0.95


@pytest.mark.asyncio
async def test_iteration_cap_settles(
    orchestrator: CampaignOrchestrator, gateway: SqlAlchemyGateway
) -> None:
    campaign = await seed_campaign(
        gateway, CampaignStatus.TESTING, current_iteration=1, max_iterations=1
    )

    run = await orchestrator.run_optimization_iteration(campaign.id)

    assert run.action_taken == RunAction.SETTLED.value
    assert "max_iterations" in run.notes
    settled = await gateway.get_campaign(campaign.id)
    assert settled.status == CampaignStatus.SETTLED.value
    assert settled.winning_variant_id is None


@pytest.mark.asyncio
async def test_settle_reports_improvement_over_original(
    orchestrator: CampaignOrchestrator,
    gateway: SqlAlchemyGateway,
    clock: FakeClock,
) -> None:
    campaign = await seed_campaign(
        gateway, CampaignStatus.OPTIMIZING, current_iteration=4, max_iterations=4
    )
    variant = await gateway.create_variant(campaign_id=campaign.id, user_id="user_123", image_data=PNG_BYTES)
    start = clock() - timedelta(hours=10)
    await seed_closed_rotation(gateway, campaign.id, None, start, 2.0, 200)
    await seed_closed_rotation(gateway, campaign.id, variant.id, start + timedelta(hours=2), 2.0, 300)
    await gateway.create_rotation(
        campaign_id=campaign.id, variant_id=variant.id, started_at=clock(), is_active=True
    )

    await orchestrator.run_optimization_iteration(campaign.id)

    settled = await gateway.get_campaign(campaign.id)
    assert settled.winning_variant_id == variant.id
    assert settled.final_rate == pytest.approx(150.0)
    assert settled.improvement_pct == pytest.approx(50.0)


@pytest.mark.asyncio
async def test_iteration_skips_campaigns_outside_the_loop(
    orchestrator: CampaignOrchestrator, gateway: SqlAlchemyGateway
) -> None:
    campaign = await seed_campaign(gateway, CampaignStatus.SETTLED)

    assert await orchestrator.run_optimization_iteration(campaign.id) is None
    assert await gateway.list_runs(campaign.id) == []


@pytest.mark.asyncio
async def test_iteration_for_unknown_campaign(orchestrator: CampaignOrchestrator) -> None:
    with pytest.raises(NotFoundError):
        await orchestrator.run_optimization_iteration("missing")


@pytest.mark.asyncio
async def test_campaign_status_view(
    orchestrator: CampaignOrchestrator, platform: FakePlatform
) -> None:
    campaign_id = await run_pipeline_to_testing(orchestrator, platform)

    status = await orchestrator.get_campaign_status(campaign_id)

    assert status["campaign"].id == campaign_id
    assert len(status["variants"]) == 6
    assert len(status["rotations"]) == 1
    assert len(status["runs"]) == 1
    assert len(status["snapshots"]) == 1
    assert len(status["assets"]) == 5
