"""
Pytest configuration and fixtures.
"""

import os

os.environ.setdefault("THUMBPILOT_ENV", "test")

from collections.abc import AsyncGenerator, Sequence
from datetime import date, datetime, timedelta, timezone
from pathlib import Path
from typing import Any

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from thumbpilot.common.config import EngineSettings
from thumbpilot.common.exceptions import DependencyError, SwapError
from thumbpilot.engine import CampaignOrchestrator, OptimizationScheduler
from thumbpilot.models import Base, Campaign, CampaignStatus, Rotation
from thumbpilot.schemas.internal import AnalyticsData, VideoAnalysis, VideoInfo
from thumbpilot.services import (
    CreativeGenerator,
    NotificationBus,
    PlatformClient,
    SqlAlchemyGateway,
)

PNG_BYTES = b"\x89PNG\r\n\x1a\nfake-image"
VIDEO_URL = "https://www.youtube.com/watch?v=dQw4w9WgXcQ"


class FakeClock:
    """Deterministic clock for the engine; advance it explicitly."""

    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class FakePlatform(PlatformClient):
    """In-memory video platform with settable cumulative counters."""

    def __init__(self) -> None:
        self.views = 0
        self.watch_minutes = 0.0
        self.impressions = 0
        self.clicks = 0
        self.fail_upload = False
        self.fail_analytics = False
        self.uploads: list[tuple[str, bytes]] = []

    async def get_video_info(self, video_id: str) -> VideoInfo:
        return VideoInfo(
            video_id=video_id,
            title="How to test async code",
            thumbnail_url=f"https://i.ytimg.com/vi/{video_id}/maxresdefault.jpg",
        )

    async def get_analytics(self, video_id: str, start_date: date, end_date: date) -> AnalyticsData:
        if self.fail_analytics:
            raise DependencyError("analytics unavailable")
        return AnalyticsData(
            views=self.views,
            watch_time_minutes=self.watch_minutes,
            impressions=self.impressions,
            clicks=self.clicks,
        )

    async def apply_creative(self, video_id: str, image: bytes) -> None:
        if self.fail_upload:
            raise SwapError("upload rejected", details={"video_id": video_id})
        self.uploads.append((video_id, image))

    async def get_transcript(self, video_id: str) -> str:
        return "today we look at testing asyncio services"

    async def extract_reference_frames(self, video_id: str) -> list[str]:
        return [
            f"https://img.youtube.com/vi/{video_id}/maxresdefault.jpg",
            f"https://img.youtube.com/vi/{video_id}/1.jpg",
        ]


class FakeGenerator(CreativeGenerator):
    """Stores variants with an in-memory PNG payload."""

    def __init__(self, gateway: SqlAlchemyGateway):
        self.gateway = gateway
        self.fail = False
        self.prompts: list[str] = []

    async def analyze_content(
        self, transcript: str, title: str, thumbnail_url: str | None = None
    ) -> VideoAnalysis:
        return VideoAnalysis(
            transcript=transcript,
            visual_elements=["face", "code on screen"],
            target_audience="developers",
            emotional_tone="curious",
        )

    async def generate_variants(
        self,
        campaign_id: str,
        user_id: str,
        base_prompt: str,
        count: int,
        reference_elements: Sequence[str] = (),
    ) -> list[str]:
        if self.fail:
            raise DependencyError("generator unavailable")
        self.prompts.append(base_prompt)
        ids = []
        for i in range(count):
            variant = await self.gateway.create_variant(
                campaign_id=campaign_id,
                user_id=user_id,
                prompt=f"{base_prompt} #{i}",
                image_data=PNG_BYTES,
            )
            ids.append(variant.id)
        return ids


class RecordingNotificationBus(NotificationBus):
    """Keeps every published event for assertions."""

    def __init__(self) -> None:
        self.events: list[tuple[str, str, dict[str, Any]]] = []

    async def publish(self, campaign_id: str, event: str, data: dict[str, Any]) -> None:
        self.events.append((campaign_id, event, data))

    def of_type(self, event: str) -> list[dict[str, Any]]:
        return [data for _, name, data in self.events if name == event]


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest_asyncio.fixture(scope="function")
async def gateway(tmp_path: Path) -> AsyncGenerator[SqlAlchemyGateway, None]:
    """SQLAlchemy gateway over a throwaway SQLite file."""
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'thumbpilot.db'}",
        poolclass=NullPool,
        echo=False,
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    session_factory = async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )

    yield SqlAlchemyGateway(session_factory)

    await engine.dispose()


@pytest.fixture
def platform() -> FakePlatform:
    return FakePlatform()


@pytest.fixture
def generator(gateway: SqlAlchemyGateway) -> FakeGenerator:
    return FakeGenerator(gateway)


@pytest.fixture
def notifications() -> RecordingNotificationBus:
    return RecordingNotificationBus()


@pytest.fixture
def engine_settings() -> EngineSettings:
    return EngineSettings()


@pytest.fixture
def orchestrator(
    gateway: SqlAlchemyGateway,
    platform: FakePlatform,
    generator: FakeGenerator,
    notifications: RecordingNotificationBus,
    engine_settings: EngineSettings,
    clock: FakeClock,
) -> CampaignOrchestrator:
    return CampaignOrchestrator(
        gateway=gateway,
        platform=platform,
        generator=generator,
        notifications=notifications,
        settings=engine_settings,
        clock=clock,
    )


@pytest.fixture
def scheduler(orchestrator: CampaignOrchestrator, clock: FakeClock) -> OptimizationScheduler:
    return OptimizationScheduler(orchestrator, clock=clock)


@pytest_asyncio.fixture(scope="function")
async def client(
    orchestrator: CampaignOrchestrator,
    scheduler: OptimizationScheduler,
) -> AsyncGenerator[AsyncClient, None]:
    """Create a test client wired to the in-process engine."""
    from thumbpilot.server.dependencies import get_orchestrator, get_scheduler
    from thumbpilot.server.main import app

    app.dependency_overrides[get_orchestrator] = lambda: orchestrator
    app.dependency_overrides[get_scheduler] = lambda: scheduler

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac

    app.dependency_overrides.clear()
    await orchestrator.tasks.cancel_all()


# ==================== Seeding helpers ====================

async def seed_campaign(
    gateway: SqlAlchemyGateway,
    status: CampaignStatus = CampaignStatus.OPTIMIZING,
    **fields: Any,
) -> Campaign:
    values = {
        "user_id": "user_123",
        "video_id": "dQw4w9WgXcQ",
        "video_url": VIDEO_URL,
        "video_title": "How to test async code",
        "status": status.value,
        "current_iteration": 2,
        "max_iterations": 20,
        "iterations_per_day": 4,
    }
    values.update(fields)
    return await gateway.create_campaign(**values)


async def seed_closed_rotation(
    gateway: SqlAlchemyGateway,
    campaign_id: str,
    variant_id: str | None,
    started_at: datetime,
    hours: float,
    views: int,
) -> Rotation:
    """A closed rotation of ``hours`` that gained ``views``."""
    exposure = int(hours * 3600)
    return await gateway.create_rotation(
        campaign_id=campaign_id,
        variant_id=variant_id,
        started_at=started_at,
        ended_at=started_at + timedelta(seconds=exposure),
        exposure_seconds=exposure,
        is_active=False,
        baseline_views=0,
        final_views=views,
        views_delta=views,
        impressions_delta=0,
        clicks_delta=0,
        view_velocity=views / hours,
    )
