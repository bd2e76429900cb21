"""
Vision Enrichment Services

Turns a product photo into an advisory listing draft. The OpenAI-compatible
service talks to a chat-completions endpoint with image input; the simulated
service produces a deterministic draft for development without API keys.
"""

import io
import json
import base64
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import httpx
from PIL import Image
from pydantic import ValidationError as PydanticValidationError

from photo_pipeline.core.config import settings
from photo_pipeline.core.exceptions import AIServiceError, CircuitBreaker, CircuitBreakerOpenError, get_circuit_breaker
from photo_pipeline.core.logging import get_logger
from photo_pipeline.core.metrics import record_external_call
from photo_pipeline.engines.vision.schemas import AnalysisDraft, ItemCondition, PriceRange

logger = get_logger(__name__)


SYSTEM_PROMPT = """
You are a listing assistant for second-hand resellers. Look at the product photo
(clothing, shoes, accessories, or their tags) and return structured listing data.

Reply with ONE raw JSON object and nothing else, using exactly these keys.
Use "N/A" for anything you cannot determine from the image.
{
  "title": "Brand + style + key features + size + gender, search friendly",
  "description": "Professional, keyword-rich description: visible condition, fabric from the tag, key features",
  "brand": "Brand name",
  "size": "Size printed on the tag",
  "color": "Dominant color(s)",
  "category": "Best fitting marketplace category, e.g. \\"Women's Dresses\\"",
  "condition": "NEW, LIKE NEW, GOOD or FAIR",
  "price_low": "Conservative resale price in USD, integer",
  "price_high": "Optimistic resale price in USD, integer"
}

Condition guide: NEW = tags attached, LIKE NEW = no visible wear,
GOOD = minor wear, FAIR = noticeable wear. Prices are resale, not retail.
"""

USER_PROMPT = "Analyze this image and produce the listing JSON. Read any visible tags or labels carefully."


class VisionService(ABC):
    """Contract for the AI enrichment provider."""

    @abstractmethod
    async def analyze(
        self,
        image_url: Optional[str] = None,
        image_bytes: Optional[bytes] = None,
        mime_type: str = "image/jpeg"
    ) -> AnalysisDraft:
        """
        Produce a listing draft for one image.

        Raises:
            AIServiceError: on any provider or parsing failure
            CircuitBreakerOpenError: while the provider is considered down
        """
        pass


def _optional_text(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    if not text or text.upper() == "N/A":
        return None
    return text


def _price(value: Any) -> Optional[float]:
    if value is None:
        return None
    try:
        return float(str(value).replace("$", "").replace(",", "").strip())
    except ValueError:
        return None


def parse_draft(payload: Dict[str, Any]) -> AnalysisDraft:
    """
    Normalize the provider's JSON into an AnalysisDraft.

    Accepts either price_low/price_high or a single suggested_price.
    """
    low = _price(payload.get("price_low"))
    high = _price(payload.get("price_high"))
    if low is None and high is None:
        low = high = _price(payload.get("suggested_price", payload.get("suggestedPrice")))

    price_range = None
    if low is not None or high is not None:
        price_range = PriceRange(
            low=low if low is not None else high,
            high=high if high is not None else low
        )

    condition_raw = str(payload.get("condition") or "").strip().upper().replace("_", " ")
    try:
        condition = ItemCondition(condition_raw)
    except ValueError:
        condition = ItemCondition.UNKNOWN

    return AnalysisDraft(
        title=_optional_text(payload.get("title")) or "Untitled item",
        description=_optional_text(payload.get("description")) or "",
        category=_optional_text(payload.get("category")) or "N/A",
        condition=condition,
        price_range=price_range,
        brand=_optional_text(payload.get("brand")),
        size=_optional_text(payload.get("size")),
        color=_optional_text(payload.get("color")),
    )


class OpenAIVisionService(VisionService):
    """Vision provider speaking the OpenAI chat-completions protocol."""

    def __init__(
        self,
        api_url: str = settings.AI_API_URL,
        api_key: Optional[str] = settings.AI_API_KEY,
        model: str = settings.AI_MODEL,
        max_tokens: int = settings.AI_MAX_TOKENS,
        timeout: float = settings.AI_TIMEOUT_SECONDS,
        circuit: Optional[CircuitBreaker] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        self.api_url = api_url
        self.api_key = api_key
        self.model = model
        self.max_tokens = max_tokens
        self.timeout = timeout
        self.circuit = circuit or get_circuit_breaker("vision")
        self._transport = transport

    def _image_reference(
        self,
        image_url: Optional[str],
        image_bytes: Optional[bytes],
        mime_type: str
    ) -> str:
        # Locally served URLs are not reachable by the provider; inline the bytes instead
        if image_url and image_url.startswith(("http://", "https://")):
            return image_url
        if image_bytes:
            encoded = base64.b64encode(image_bytes).decode("utf-8")
            return f"data:{mime_type};base64,{encoded}"
        raise AIServiceError("No reachable image URL or image bytes to analyze")

    async def analyze(
        self,
        image_url: Optional[str] = None,
        image_bytes: Optional[bytes] = None,
        mime_type: str = "image/jpeg"
    ) -> AnalysisDraft:
        if not self.api_key:
            raise AIServiceError("AI_API_KEY is not configured")

        if not self.circuit.can_execute():
            raise CircuitBreakerOpenError("vision")

        reference = self._image_reference(image_url, image_bytes, mime_type)
        start_time = datetime.now(timezone.utc)

        payload = {
            "model": self.model,
            "max_tokens": self.max_tokens,
            "response_format": {"type": "json_object"},
            "messages": [
                {"role": "system", "content": SYSTEM_PROMPT},
                {
                    "role": "user",
                    "content": [
                        {"type": "text", "text": USER_PROMPT},
                        {"type": "image_url", "image_url": {"url": reference, "detail": "high"}},
                    ],
                },
            ],
        }
        headers = {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {self.api_key}",
        }

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.post(self.api_url, json=payload, headers=headers)

            record_external_call(
                "vision",
                "success" if response.status_code == 200 else "error",
                response.status_code
            )

            if response.status_code != 200:
                self.circuit.record_failure()
                raise AIServiceError(
                    f"Vision API error {response.status_code}: {response.text[:200]}",
                    http_status=response.status_code
                )

            body = response.json()
            content = body["choices"][0]["message"]["content"]
            draft = parse_draft(json.loads(content))

        except AIServiceError:
            raise

        except httpx.TimeoutException:
            self.circuit.record_failure()
            record_external_call("vision", "timeout")
            raise AIServiceError("Vision API timeout")

        except (KeyError, IndexError, TypeError, ValueError, PydanticValidationError) as e:
            # ValueError covers JSONDecodeError
            self.circuit.record_failure(e)
            raise AIServiceError(f"Vision API returned an unusable response: {e}")

        except httpx.HTTPError as e:
            self.circuit.record_failure(e)
            record_external_call("vision", "error")
            raise AIServiceError(f"Vision API call failed: {e}")

        self.circuit.record_success()
        duration_ms = int((datetime.now(timezone.utc) - start_time).total_seconds() * 1000)
        logger.info(
            "vision_analysis_completed",
            duration_ms=duration_ms,
            tokens_used=(body.get("usage") or {}).get("total_tokens"),
            category=draft.category
        )
        return draft


_COLOR_NAMES = {
    "black": (20, 20, 20),
    "white": (235, 235, 235),
    "gray": (128, 128, 128),
    "red": (200, 40, 40),
    "green": (40, 160, 60),
    "blue": (40, 70, 200),
    "yellow": (230, 210, 50),
    "brown": (120, 80, 40),
    "pink": (230, 150, 180),
}


class SimulatedVisionService(VisionService):
    """Offline draft derived from the image itself, for development."""

    async def analyze(
        self,
        image_url: Optional[str] = None,
        image_bytes: Optional[bytes] = None,
        mime_type: str = "image/jpeg"
    ) -> AnalysisDraft:
        if not image_bytes:
            raise AIServiceError("Simulated vision service needs image bytes")

        try:
            with Image.open(io.BytesIO(image_bytes)) as img:
                width, height = img.size
                average = img.convert("RGB").resize((1, 1)).getpixel((0, 0))
        except (OSError, ValueError) as e:
            raise AIServiceError(f"Simulated vision service could not read image: {e}")

        color = min(
            _COLOR_NAMES,
            key=lambda name: sum((a - b) ** 2 for a, b in zip(average, _COLOR_NAMES[name]))
        )
        orientation = "portrait" if height > width else "landscape" if width > height else "square"

        logger.info("vision_analysis_simulated", color=color, orientation=orientation)

        return AnalysisDraft(
            title=f"{color.title()} item ({orientation} photo)",
            description=f"Simulated draft for a {width}x{height} photo with mostly {color} tones.",
            category="Uncategorized",
            condition=ItemCondition.GOOD,
            price_range=PriceRange(low=10, high=25),
            color=color,
        )


def get_vision_service() -> VisionService:
    """Real provider when configured, simulated otherwise."""
    if settings.AI_API_KEY and not settings.USE_SIMULATION:
        return OpenAIVisionService()
    return SimulatedVisionService()
