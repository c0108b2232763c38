"""
Creative generator access.

``CreativeGenerator`` is the contract the engine depends on: content
analysis and batches of new thumbnail variants. ``HttpGeneratorClient``
talks to an external generation service over JSON and stores the
returned images as ``Variant`` records; ``ResilientGenerator`` routes
calls through the resilience stack.
"""

from __future__ import annotations

import base64
from abc import ABC, abstractmethod
from collections.abc import Sequence
from typing import Any

import httpx

from thumbpilot.common.config import GeneratorSettings, get_settings
from thumbpilot.common.exceptions import (
    AuthorizationError,
    DependencyError,
    RateLimitError,
    TransientDependencyError,
)
from thumbpilot.common.logger import get_logger
from thumbpilot.common.resilience import ResilientCaller
from thumbpilot.schemas.internal import KeyMoment, VideoAnalysis
from thumbpilot.services.gateway import PersistenceGateway

logger = get_logger(__name__)

TRANSCRIPT_PROMPT_LIMIT = 5000

VARIATION_STYLES = (
    "vibrant and eye-catching with bold colors and dramatic lighting",
    "clean minimal design with strong focal point and contrast",
    "high energy dynamic composition with motion elements",
    "emotional close-up with expressive face and reaction",
    "curiosity-inducing with mystery element and question hook",
    "before/after transformation style with split composition",
)

DEFAULT_VISUAL_ELEMENTS = ["face", "text", "bright colors"]


def build_variant_prompts(
    base_prompt: str,
    count: int,
    reference_elements: Sequence[str] = (),
) -> list[str]:
    """One prompt per variant, cycling through the variation styles."""
    elements = (
        f"Include these key elements: {', '.join(reference_elements)}."
        if reference_elements
        else ""
    )
    prompts = []
    for i in range(count):
        style = VARIATION_STYLES[i % len(VARIATION_STYLES)]
        prompts.append(
            f"{base_prompt}\n"
            f"Style: {style}.\n"
            f"{elements}\n"
            "Create a 16:9 YouTube thumbnail that maximizes click-through rate.\n"
            "Make it highly clickable with clear focal point and readable text if any.\n"
            "Professional quality, optimized for mobile viewing."
        )
    return prompts


class CreativeGenerator(ABC):
    """Operations the engine needs from the creative generator."""

    @abstractmethod
    async def analyze_content(
        self,
        transcript: str,
        title: str,
        thumbnail_url: str | None = None,
    ) -> VideoAnalysis: ...

    @abstractmethod
    async def generate_variants(
        self,
        campaign_id: str,
        user_id: str,
        base_prompt: str,
        count: int,
        reference_elements: Sequence[str] = (),
    ) -> list[str]:
        """Generate and store ``count`` variants; returns their ids."""

    async def close(self) -> None:
        return None


class ResilientGenerator(CreativeGenerator):
    """Routes every generator call through a ``ResilientCaller``."""

    def __init__(self, client: CreativeGenerator, caller: ResilientCaller):
        self.client = client
        self.caller = caller

    async def analyze_content(
        self,
        transcript: str,
        title: str,
        thumbnail_url: str | None = None,
    ) -> VideoAnalysis:
        return await self.caller.call(
            lambda: self.client.analyze_content(transcript, title, thumbnail_url)
        )

    async def generate_variants(
        self,
        campaign_id: str,
        user_id: str,
        base_prompt: str,
        count: int,
        reference_elements: Sequence[str] = (),
    ) -> list[str]:
        return await self.caller.call(
            lambda: self.client.generate_variants(
                campaign_id, user_id, base_prompt, count, reference_elements
            )
        )

    async def close(self) -> None:
        await self.client.close()


class HttpGeneratorClient(CreativeGenerator):
    """
    JSON client for the generation service.

    Endpoints:
        POST /v1/analyze   {transcript, title, thumbnail_url} -> analysis
        POST /v1/generate  {prompts: [...]} -> {images: [{image_base64 | image_url}]}

    Each generated batch is decoded first and then stored in a single
    transaction, so a failed call leaves no partial batch behind.
    """

    def __init__(
        self,
        gateway: PersistenceGateway,
        settings: GeneratorSettings | None = None,
        client: httpx.AsyncClient | None = None,
    ):
        self.gateway = gateway
        self.settings = settings or get_settings().generator
        headers = {"Authorization": f"Bearer {self.settings.api_key}"} if self.settings.api_key else {}
        self._client = client or httpx.AsyncClient(
            base_url=self.settings.base_url,
            timeout=self.settings.timeout,
            headers=headers,
        )

    async def close(self) -> None:
        await self._client.aclose()

    async def _post(self, path: str, payload: dict[str, Any]) -> dict[str, Any]:
        response = await self._client.post(path, json=payload)
        status = response.status_code
        if status in (401, 403):
            raise AuthorizationError(f"Generator rejected credentials: {status}")
        if status == 429:
            raise RateLimitError(f"Generator rate limited: {status}")
        if status >= 500:
            raise TransientDependencyError(f"Generator error: {status}", status_code=status)
        if status >= 400:
            raise DependencyError(f"Generator error: {status}", details={"body": response.text[:500]})
        return response.json()

    async def analyze_content(
        self,
        transcript: str,
        title: str,
        thumbnail_url: str | None = None,
    ) -> VideoAnalysis:
        data = await self._post(
            "/v1/analyze",
            {
                "transcript": transcript[:TRANSCRIPT_PROMPT_LIMIT],
                "title": title,
                "thumbnail_url": thumbnail_url,
            },
        )
        return VideoAnalysis(
            transcript=transcript,
            key_moments=[
                KeyMoment(timestamp=float(m.get("timestamp", 0)), description=m.get("description", ""))
                for m in data.get("key_moments") or []
            ],
            title_variations=list(data.get("title_variations") or []),
            visual_elements=list(data.get("visual_elements") or DEFAULT_VISUAL_ELEMENTS),
            target_audience=data.get("target_audience") or "general",
            emotional_tone=data.get("emotional_tone") or "engaging",
        )

    async def generate_variants(
        self,
        campaign_id: str,
        user_id: str,
        base_prompt: str,
        count: int,
        reference_elements: Sequence[str] = (),
    ) -> list[str]:
        if count <= 0:
            return []

        prompts = build_variant_prompts(base_prompt, count, reference_elements)
        data = await self._post("/v1/generate", {"prompts": prompts})
        images = data.get("images") or []
        if not images:
            raise DependencyError(
                "Generator returned no images",
                details={"campaign_id": campaign_id, "requested": count},
            )

        rows = []
        for prompt, image in zip(prompts, images):
            encoded = image.get("image_base64")
            rows.append(
                {
                    "campaign_id": campaign_id,
                    "user_id": user_id,
                    "prompt": prompt,
                    "image_url": image.get("image_url"),
                    "image_data": base64.b64decode(encoded) if encoded else None,
                }
            )
        variants = await self.gateway.create_variants(rows)
        variant_ids = [v.id for v in variants]

        logger.info(
            "Variants generated",
            campaign_id=campaign_id,
            requested=count,
            generated=len(variant_ids),
        )
        return variant_ids
