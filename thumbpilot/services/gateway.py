"""
Persistence gateway.

``PersistenceGateway`` is the storage contract the engine depends on:
create / get / partial-update / list keyed by opaque string ids.
``SqlAlchemyGateway`` implements it on top of an async session factory,
one short transaction per call.
"""

from __future__ import annotations

import base64
from abc import ABC, abstractmethod
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, TypeVar

import httpx
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from thumbpilot.common.exceptions import NotFoundError
from thumbpilot.common.logger import get_logger
from thumbpilot.models import (
    Base,
    Campaign,
    CampaignStatus,
    OptimizationRun,
    PerformanceSnapshot,
    Rotation,
    Variant,
    VideoAsset,
)

logger = get_logger(__name__)

ModelT = TypeVar("ModelT", bound=Base)


class PersistenceGateway(ABC):
    """Storage contract for campaigns, rotations, runs, snapshots, variants and assets."""

    # ==================== Campaigns ====================

    @abstractmethod
    async def create_campaign(self, **fields: Any) -> Campaign: ...

    @abstractmethod
    async def get_campaign(self, campaign_id: str) -> Campaign | None: ...

    @abstractmethod
    async def update_campaign(self, campaign_id: str, **fields: Any) -> Campaign: ...

    @abstractmethod
    async def list_campaigns(self, user_id: str | None = None) -> list[Campaign]: ...

    @abstractmethod
    async def list_due_campaigns(self, now: datetime) -> list[Campaign]:
        """Campaigns in testing/optimizing whose next run is at or before ``now``."""

    # ==================== Rotations ====================

    @abstractmethod
    async def create_rotation(self, **fields: Any) -> Rotation: ...

    @abstractmethod
    async def get_active_rotation(self, campaign_id: str) -> Rotation | None: ...

    @abstractmethod
    async def close_rotation(self, rotation_id: str, **fields: Any) -> Rotation | None:
        """Write closing fields if the rotation is still active; None when it was already closed."""

    @abstractmethod
    async def list_rotations(self, campaign_id: str) -> list[Rotation]:
        """All rotations of a campaign, oldest first."""

    # ==================== Optimization runs ====================

    @abstractmethod
    async def create_run(self, **fields: Any) -> OptimizationRun: ...

    @abstractmethod
    async def get_run(self, run_id: str) -> OptimizationRun | None: ...

    @abstractmethod
    async def update_run(self, run_id: str, **fields: Any) -> OptimizationRun: ...

    @abstractmethod
    async def list_runs(self, campaign_id: str) -> list[OptimizationRun]: ...

    # ==================== Snapshots ====================

    @abstractmethod
    async def create_snapshot(self, **fields: Any) -> PerformanceSnapshot: ...

    @abstractmethod
    async def list_snapshots(self, campaign_id: str) -> list[PerformanceSnapshot]:
        """Snapshots of a campaign, oldest first."""

    # ==================== Variants ====================

    @abstractmethod
    async def create_variant(self, **fields: Any) -> Variant: ...

    @abstractmethod
    async def create_variants(self, rows: list[dict[str, Any]]) -> list[Variant]:
        """Store a batch of variants in one transaction."""

    @abstractmethod
    async def get_variant(self, variant_id: str) -> Variant | None: ...

    @abstractmethod
    async def list_variants(self, campaign_id: str) -> list[Variant]:
        """Variants of a campaign in creation order."""

    @abstractmethod
    async def load_variant_image(self, variant: Variant) -> bytes | None:
        """Resolve the image payload of a variant, or None if unavailable."""

    # ==================== Video assets ====================

    @abstractmethod
    async def create_asset(self, **fields: Any) -> VideoAsset: ...

    @abstractmethod
    async def list_assets(
        self, campaign_id: str, asset_type: str | None = None
    ) -> list[VideoAsset]: ...


class SqlAlchemyGateway(PersistenceGateway):
    """
    SQLAlchemy async implementation.

    Every call runs in its own transaction; returned objects are detached
    and fully loaded (the session factory must use ``expire_on_commit=False``).
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        http_timeout: float = 30.0,
    ):
        self._session_factory = session_factory
        self._http_timeout = http_timeout

    @asynccontextmanager
    async def _session(self) -> AsyncGenerator[AsyncSession, None]:
        async with self._session_factory() as session:
            async with session.begin():
                yield session

    async def _create(self, model: type[ModelT], fields: dict[str, Any]) -> ModelT:
        async with self._session() as session:
            obj = model(**fields)
            session.add(obj)
            await session.flush()
        return obj

    async def _get(self, model: type[ModelT], obj_id: str) -> ModelT | None:
        async with self._session() as session:
            return await session.get(model, obj_id)

    async def _update(self, model: type[ModelT], obj_id: str, fields: dict[str, Any]) -> ModelT:
        async with self._session() as session:
            obj = await session.get(model, obj_id)
            if obj is None:
                raise NotFoundError(
                    f"{model.__name__} {obj_id} not found",
                    details={"id": obj_id},
                )
            for key, value in fields.items():
                if not hasattr(model, key):
                    raise AttributeError(f"{model.__name__} has no field {key!r}")
                setattr(obj, key, value)
            await session.flush()
        return obj

    async def _list(self, query: Any) -> list[Any]:
        async with self._session() as session:
            result = await session.execute(query)
            return list(result.scalars().all())

    # ==================== Campaigns ====================

    async def create_campaign(self, **fields: Any) -> Campaign:
        return await self._create(Campaign, fields)

    async def get_campaign(self, campaign_id: str) -> Campaign | None:
        return await self._get(Campaign, campaign_id)

    async def update_campaign(self, campaign_id: str, **fields: Any) -> Campaign:
        return await self._update(Campaign, campaign_id, fields)

    async def list_campaigns(self, user_id: str | None = None) -> list[Campaign]:
        query = select(Campaign).order_by(Campaign.created_at)
        if user_id is not None:
            query = query.where(Campaign.user_id == user_id)
        return await self._list(query)

    async def list_due_campaigns(self, now: datetime) -> list[Campaign]:
        query = (
            select(Campaign)
            .where(
                Campaign.status.in_(
                    [CampaignStatus.TESTING.value, CampaignStatus.OPTIMIZING.value]
                ),
                Campaign.next_scheduled_run.is_not(None),
                Campaign.next_scheduled_run <= now,
            )
            .order_by(Campaign.next_scheduled_run)
        )
        return await self._list(query)

    # ==================== Rotations ====================

    async def create_rotation(self, **fields: Any) -> Rotation:
        return await self._create(Rotation, fields)

    async def get_active_rotation(self, campaign_id: str) -> Rotation | None:
        query = (
            select(Rotation)
            .where(Rotation.campaign_id == campaign_id, Rotation.is_active.is_(True))
            .limit(1)
        )
        rows = await self._list(query)
        return rows[0] if rows else None

    async def close_rotation(self, rotation_id: str, **fields: Any) -> Rotation | None:
        async with self._session() as session:
            result = await session.execute(
                update(Rotation)
                .where(Rotation.id == rotation_id, Rotation.is_active.is_(True))
                .values({**fields, "is_active": False})
            )
            if result.rowcount == 0:
                return None
        return await self._get(Rotation, rotation_id)

    async def list_rotations(self, campaign_id: str) -> list[Rotation]:
        query = (
            select(Rotation)
            .where(Rotation.campaign_id == campaign_id)
            .order_by(Rotation.started_at)
        )
        return await self._list(query)

    # ==================== Optimization runs ====================

    async def create_run(self, **fields: Any) -> OptimizationRun:
        return await self._create(OptimizationRun, fields)

    async def get_run(self, run_id: str) -> OptimizationRun | None:
        return await self._get(OptimizationRun, run_id)

    async def update_run(self, run_id: str, **fields: Any) -> OptimizationRun:
        return await self._update(OptimizationRun, run_id, fields)

    async def list_runs(self, campaign_id: str) -> list[OptimizationRun]:
        query = (
            select(OptimizationRun)
            .where(OptimizationRun.campaign_id == campaign_id)
            .order_by(OptimizationRun.iteration, OptimizationRun.started_at)
        )
        return await self._list(query)

    # ==================== Snapshots ====================

    async def create_snapshot(self, **fields: Any) -> PerformanceSnapshot:
        return await self._create(PerformanceSnapshot, fields)

    async def list_snapshots(self, campaign_id: str) -> list[PerformanceSnapshot]:
        query = (
            select(PerformanceSnapshot)
            .where(PerformanceSnapshot.campaign_id == campaign_id)
            .order_by(PerformanceSnapshot.recorded_at)
        )
        return await self._list(query)

    # ==================== Variants ====================

    async def create_variant(self, **fields: Any) -> Variant:
        return await self._create(Variant, fields)

    async def create_variants(self, rows: list[dict[str, Any]]) -> list[Variant]:
        async with self._session() as session:
            variants = [Variant(**fields) for fields in rows]
            session.add_all(variants)
            await session.flush()
        return variants

    async def get_variant(self, variant_id: str) -> Variant | None:
        return await self._get(Variant, variant_id)

    async def list_variants(self, campaign_id: str) -> list[Variant]:
        query = (
            select(Variant)
            .where(Variant.campaign_id == campaign_id)
            .order_by(Variant.created_at)
        )
        return await self._list(query)

    async def load_variant_image(self, variant: Variant) -> bytes | None:
        if variant.image_data:
            return variant.image_data

        url = variant.image_url
        if not url:
            return None

        if url.startswith("data:image"):
            _, _, payload = url.partition(",")
            return base64.b64decode(payload) if payload else None

        if url.startswith(("http://", "https://")):
            try:
                async with httpx.AsyncClient(timeout=self._http_timeout) as client:
                    response = await client.get(url)
                    response.raise_for_status()
                    return response.content
            except httpx.HTTPError as e:
                logger.warning("Failed to fetch variant image", variant_id=variant.id, error=str(e))
                return None

        path = Path(url.lstrip("/")) if url.startswith("/uploads/") else Path(url)
        if path.is_file():
            return path.read_bytes()
        return None

    # ==================== Video assets ====================

    async def create_asset(self, **fields: Any) -> VideoAsset:
        return await self._create(VideoAsset, fields)

    async def list_assets(
        self, campaign_id: str, asset_type: str | None = None
    ) -> list[VideoAsset]:
        query = (
            select(VideoAsset)
            .where(VideoAsset.campaign_id == campaign_id)
            .order_by(VideoAsset.created_at)
        )
        if asset_type is not None:
            query = query.where(VideoAsset.asset_type == asset_type)
        return await self._list(query)
