"""
Background Removal Services

RemoveBgService calls the remove.bg HTTP API. SimulatedBackgroundRemover
keys out a near-white backdrop with Pillow so the stage can run offline.
"""

import io
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Optional

import httpx
from PIL import Image

from photo_pipeline.core.config import settings
from photo_pipeline.core.exceptions import (
    BackgroundRemovalError, CircuitBreaker, CircuitBreakerOpenError, get_circuit_breaker
)
from photo_pipeline.core.logging import get_logger
from photo_pipeline.core.metrics import record_external_call

logger = get_logger(__name__)

# remove.bg status codes with a user-facing explanation
REMOVEBG_ERRORS = {
    400: "Invalid image format or size",
    402: "Insufficient credits in remove.bg account",
    403: "Invalid remove.bg API key",
    429: "remove.bg rate limit exceeded",
}


class BackgroundRemover(ABC):
    """Contract for the background removal provider."""

    @abstractmethod
    async def remove_background(self, image_bytes: bytes) -> bytes:
        """
        Return a PNG with the background made transparent.

        Raises:
            BackgroundRemovalError: on any provider failure
            CircuitBreakerOpenError: while the provider is considered down
        """
        pass


class RemoveBgService(BackgroundRemover):
    """remove.bg API client."""

    def __init__(
        self,
        api_url: str = settings.REMOVEBG_API_URL,
        api_key: Optional[str] = settings.REMOVEBG_API_KEY,
        timeout: float = settings.REMOVEBG_TIMEOUT_SECONDS,
        circuit: Optional[CircuitBreaker] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        self.api_url = api_url
        self.api_key = api_key
        self.timeout = timeout
        self.circuit = circuit or get_circuit_breaker("background_removal")
        self._transport = transport

    @staticmethod
    def _error_message(response: httpx.Response) -> str:
        known = REMOVEBG_ERRORS.get(response.status_code)
        try:
            title = response.json()["errors"][0]["title"]
        except (ValueError, KeyError, IndexError, TypeError):
            title = None
        if known and title:
            return f"{known}: {title}"
        return known or title or f"remove.bg API error {response.status_code}"

    async def remove_background(self, image_bytes: bytes) -> bytes:
        if not self.api_key:
            raise BackgroundRemovalError("REMOVEBG_API_KEY is not configured")

        if not self.circuit.can_execute():
            raise CircuitBreakerOpenError("background_removal")

        start_time = datetime.now(timezone.utc)

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.post(
                    self.api_url,
                    headers={"X-Api-Key": self.api_key},
                    data={"size": "auto", "format": "png"},
                    files={"image_file": ("image", image_bytes, "application/octet-stream")},
                )
        except httpx.TimeoutException:
            self.circuit.record_failure()
            record_external_call("background_removal", "timeout")
            raise BackgroundRemovalError("remove.bg API timeout")
        except httpx.HTTPError as e:
            self.circuit.record_failure(e)
            record_external_call("background_removal", "error")
            raise BackgroundRemovalError(f"remove.bg API call failed: {e}")

        record_external_call(
            "background_removal",
            "success" if response.status_code == 200 else "error",
            response.status_code
        )

        if response.status_code != 200:
            # Client-side errors say nothing about provider health
            if response.status_code >= 429:
                self.circuit.record_failure()
            raise BackgroundRemovalError(self._error_message(response), http_status=response.status_code)

        if not response.content:
            self.circuit.record_failure()
            raise BackgroundRemovalError("remove.bg returned an empty image")

        self.circuit.record_success()
        duration_ms = int((datetime.now(timezone.utc) - start_time).total_seconds() * 1000)
        logger.info(
            "background_removal_completed",
            duration_ms=duration_ms,
            input_size=len(image_bytes),
            output_size=len(response.content),
            credits_charged=response.headers.get("X-Credits-Charged")
        )
        return response.content


class SimulatedBackgroundRemover(BackgroundRemover):
    """Makes near-white pixels transparent. Development only."""

    def __init__(self, threshold: int = 235):
        self.threshold = threshold

    async def remove_background(self, image_bytes: bytes) -> bytes:
        try:
            with Image.open(io.BytesIO(image_bytes)) as img:
                rgba = img.convert("RGBA")
        except (OSError, ValueError) as e:
            raise BackgroundRemovalError(f"Could not read image: {e}")

        mask = rgba.convert("L").point(lambda v: 0 if v >= self.threshold else 255)
        rgba.putalpha(mask)

        output = io.BytesIO()
        rgba.save(output, format="PNG")

        logger.info("background_removal_simulated", input_size=len(image_bytes))
        return output.getvalue()


def get_background_remover() -> BackgroundRemover:
    """Real provider when configured, simulated otherwise."""
    if settings.REMOVEBG_API_KEY and not settings.USE_SIMULATION:
        return RemoveBgService()
    return SimulatedBackgroundRemover()
