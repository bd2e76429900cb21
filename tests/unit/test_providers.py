import io
import json

import httpx
import pytest
from PIL import Image

from photo_pipeline.core.exceptions import (
    AIServiceError,
    BackgroundRemovalError,
    CircuitBreaker,
    CircuitBreakerOpenError,
)
from photo_pipeline.engines.matting.services import RemoveBgService, SimulatedBackgroundRemover
from photo_pipeline.engines.vision.schemas import ItemCondition
from photo_pipeline.engines.vision.services import (
    OpenAIVisionService,
    SimulatedVisionService,
    parse_draft,
)


def _chat_response(content: dict, status_code: int = 200) -> httpx.Response:
    return httpx.Response(
        status_code,
        json={
            "choices": [{"message": {"content": json.dumps(content)}}],
            "usage": {"total_tokens": 321},
        },
    )


def _vision(handler, circuit=None) -> OpenAIVisionService:
    return OpenAIVisionService(
        api_url="https://vision.test/v1/chat/completions",
        api_key="test-key",
        circuit=circuit or CircuitBreaker("vision-test", failure_threshold=2),
        transport=httpx.MockTransport(handler),
    )


# =============================================================================
# Vision
# =============================================================================

def test_parse_draft_normalizes_provider_fields():
    draft = parse_draft({
        "title": "Levi's 501 Jeans W32 L30",
        "description": "Classic straight fit",
        "brand": "Levi's",
        "size": "N/A",
        "condition": "like_new",
        "category": "Men's Jeans",
        "price_low": "$40",
        "price_high": "25",
    })

    assert draft.brand == "Levi's"
    assert draft.size is None
    assert draft.condition == ItemCondition.LIKE_NEW
    assert (draft.price_range.low, draft.price_range.high) == (25, 40)


def test_parse_draft_accepts_single_suggested_price():
    draft = parse_draft({"title": "Scarf", "suggestedPrice": 18, "condition": "mint"})

    assert draft.price_range.low == draft.price_range.high == 18
    assert draft.condition == ItemCondition.UNKNOWN


@pytest.mark.asyncio
async def test_openai_vision_inlines_local_image_as_data_url(image_factory):
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["auth"] = request.headers["Authorization"]
        seen["body"] = json.loads(request.content)
        return _chat_response({"title": "Red dress", "category": "Women's Dresses", "condition": "GOOD"})

    draft = await _vision(handler).analyze(
        image_url="/static/storage/users/u/jobs/j/original.jpg",
        image_bytes=image_factory(300, 300),
    )

    assert draft.title == "Red dress"
    assert seen["auth"] == "Bearer test-key"
    image_part = seen["body"]["messages"][1]["content"][1]
    assert image_part["image_url"]["url"].startswith("data:image/jpeg;base64,")


@pytest.mark.asyncio
async def test_openai_vision_error_status_raises_and_opens_circuit():
    circuit = CircuitBreaker("vision-test", failure_threshold=2)
    service = _vision(lambda request: httpx.Response(500, text="upstream down"), circuit)

    for _ in range(2):
        with pytest.raises(AIServiceError) as exc_info:
            await service.analyze(image_url="https://cdn.test/a.jpg")
        assert exc_info.value.details["http_status"] == 500

    assert circuit.state == "OPEN"
    with pytest.raises(CircuitBreakerOpenError):
        await service.analyze(image_url="https://cdn.test/a.jpg")


@pytest.mark.asyncio
async def test_openai_vision_unparseable_content_raises():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"choices": [{"message": {"content": "not json"}}]})

    with pytest.raises(AIServiceError):
        await _vision(handler).analyze(image_url="https://cdn.test/a.jpg")


@pytest.mark.asyncio
async def test_openai_vision_timeout_raises():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("too slow", request=request)

    with pytest.raises(AIServiceError, match="timeout"):
        await _vision(handler).analyze(image_url="https://cdn.test/a.jpg")


@pytest.mark.asyncio
async def test_openai_vision_without_key_raises():
    service = OpenAIVisionService(api_key=None, circuit=CircuitBreaker("vision-test"))
    with pytest.raises(AIServiceError):
        await service.analyze(image_url="https://cdn.test/a.jpg")


@pytest.mark.asyncio
async def test_simulated_vision_is_deterministic(image_factory):
    data = image_factory(400, 300)
    service = SimulatedVisionService()

    first = await service.analyze(image_bytes=data)
    second = await service.analyze(image_bytes=data)

    assert first == second
    assert "landscape" in first.title


# =============================================================================
# Background removal
# =============================================================================

def _removebg(handler, circuit=None) -> RemoveBgService:
    return RemoveBgService(
        api_url="https://removebg.test/v1.0/removebg",
        api_key="bg-key",
        circuit=circuit or CircuitBreaker("bg-test", failure_threshold=2),
        transport=httpx.MockTransport(handler),
    )


@pytest.mark.asyncio
async def test_removebg_returns_png_bytes():
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.headers["X-Api-Key"] == "bg-key"
        assert b'name="image_file"' in request.content
        return httpx.Response(200, content=b"\x89PNG fake")

    assert await _removebg(handler).remove_background(b"jpeg bytes") == b"\x89PNG fake"


@pytest.mark.asyncio
async def test_removebg_maps_known_errors():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(402, json={"errors": [{"title": "No credits"}]})

    circuit = CircuitBreaker("bg-test", failure_threshold=1)
    with pytest.raises(BackgroundRemovalError) as exc_info:
        await _removebg(handler, circuit).remove_background(b"jpeg bytes")

    assert "Insufficient credits" in exc_info.value.message
    assert exc_info.value.details["http_status"] == 402
    # Account problems are not provider outages
    assert circuit.state == "CLOSED"


@pytest.mark.asyncio
async def test_simulated_background_remover_makes_white_transparent():
    img = Image.new("RGB", (300, 300), (255, 255, 255))
    img.paste((10, 10, 10), (100, 100, 200, 200))
    source = io.BytesIO()
    img.save(source, format="PNG")

    result = Image.open(io.BytesIO(await SimulatedBackgroundRemover().remove_background(source.getvalue())))

    assert result.format == "PNG"
    assert result.mode == "RGBA"
    assert result.getpixel((5, 5))[3] == 0
    assert result.getpixel((150, 150))[3] == 255
