"""
Tests for the creative generator client and its resilient wrapper.
"""

import base64
import binascii

import httpx
import orjson
import pytest

from conftest import PNG_BYTES, seed_campaign
from thumbpilot.common.config import GeneratorSettings
from thumbpilot.common.exceptions import (
    AuthorizationError,
    DependencyError,
    RateLimitError,
    TransientDependencyError,
)
from thumbpilot.common.resilience import RateLimiter, ResilientCaller, RetryPolicy
from thumbpilot.services import HttpGeneratorClient, ResilientGenerator, SqlAlchemyGateway
from thumbpilot.services.generator import DEFAULT_VISUAL_ELEMENTS, build_variant_prompts


def make_client(gateway: SqlAlchemyGateway, handler) -> HttpGeneratorClient:
    return HttpGeneratorClient(
        gateway,
        GeneratorSettings(base_url="http://generator.test"),
        client=httpx.AsyncClient(
            base_url="http://generator.test", transport=httpx.MockTransport(handler)
        ),
    )


def test_variant_prompts_vary_style() -> None:
    prompts = build_variant_prompts("Base prompt", 3, ["face"])

    assert len(prompts) == 3
    assert len(set(prompts)) == 3
    assert all(p.startswith("Base prompt") for p in prompts)


@pytest.mark.asyncio
async def test_generate_variants_persists_images(gateway: SqlAlchemyGateway) -> None:
    campaign = await seed_campaign(gateway)
    encoded = base64.b64encode(PNG_BYTES).decode()

    def handler(request: httpx.Request) -> httpx.Response:
        body = orjson.loads(request.content)
        assert request.url.path == "/v1/generate"
        return httpx.Response(
            200,
            json={"images": [{"image_base64": encoded} for _ in body["prompts"]]},
        )

    client = make_client(gateway, handler)
    ids = await client.generate_variants(campaign.id, "user_123", "Base prompt", 2)

    variants = await gateway.list_variants(campaign.id)
    assert sorted(v.id for v in variants) == sorted(ids)
    assert all(v.image_data == PNG_BYTES for v in variants)
    await client.close()


@pytest.mark.asyncio
async def test_failed_batch_stores_nothing(gateway: SqlAlchemyGateway) -> None:
    campaign = await seed_campaign(gateway)
    encoded = base64.b64encode(PNG_BYTES).decode()

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            200, json={"images": [{"image_base64": encoded}, {"image_base64": "abc"}]}
        )

    client = make_client(gateway, handler)
    with pytest.raises(binascii.Error):
        await client.generate_variants(campaign.id, "user_123", "Base prompt", 2)

    assert await gateway.list_variants(campaign.id) == []


@pytest.mark.asyncio
async def test_generate_without_images_is_an_error(gateway: SqlAlchemyGateway) -> None:
    campaign = await seed_campaign(gateway)
    client = make_client(gateway, lambda request: httpx.Response(200, json={"images": []}))

    with pytest.raises(DependencyError):
        await client.generate_variants(campaign.id, "user_123", "Base prompt", 2)
    assert await gateway.list_variants(campaign.id) == []


@pytest.mark.asyncio
async def test_analyze_content_defaults(gateway: SqlAlchemyGateway) -> None:
    client = make_client(
        gateway,
        lambda request: httpx.Response(
            200, json={"key_moments": [{"timestamp": 12, "description": "demo"}]}
        ),
    )

    analysis = await client.analyze_content("transcript", "Title")

    assert analysis.key_moments[0].timestamp == 12.0
    assert analysis.visual_elements == DEFAULT_VISUAL_ELEMENTS
    assert analysis.target_audience == "general"


@pytest.mark.parametrize(
    "status,error",
    [
        (401, AuthorizationError),
        (429, RateLimitError),
        (503, TransientDependencyError),
        (422, DependencyError),
    ],
)
@pytest.mark.asyncio
async def test_status_mapping(gateway: SqlAlchemyGateway, status: int, error: type[Exception]) -> None:
    client = make_client(gateway, lambda request: httpx.Response(status, text="nope"))

    with pytest.raises(error):
        await client.analyze_content("transcript", "Title")


@pytest.mark.asyncio
async def test_resilient_generator_retries_transient_errors(gateway: SqlAlchemyGateway) -> None:
    calls = 0

    def handler(request: httpx.Request) -> httpx.Response:
        nonlocal calls
        calls += 1
        if calls == 1:
            return httpx.Response(503)
        return httpx.Response(200, json={"visual_elements": ["logo"]})

    async def no_sleep(delay: float) -> None:
        return None

    generator = ResilientGenerator(
        make_client(gateway, handler),
        ResilientCaller(
            "generator",
            retry_policy=RetryPolicy(max_retries=2),
            rate_limiter=RateLimiter(min_interval=0.0),
            sleep=no_sleep,
        ),
    )

    analysis = await generator.analyze_content("transcript", "Title")

    assert calls == 2
    assert analysis.visual_elements == ["logo"]
