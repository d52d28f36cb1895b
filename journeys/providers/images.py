"""Scene image providers: Gemini Imagen (primary) and fal.ai Flux (secondary)."""

from __future__ import annotations

import base64
import binascii
from typing import Protocol

import httpx

from journeys.config import (
    GEMINI_API_KEY,
    GEMINI_BASE_URL,
    IMAGE_ASPECT_RATIO,
    IMAGE_TIMEOUT_SECONDS,
    PRIMARY_IMAGE_MODEL,
    SECONDARY_IMAGE_MODEL,
)
from journeys.errors import ProviderError, ProviderErrorKind, json_object, raise_for_provider, to_provider_error
from journeys.providers.fal import FalClient

_FAL_IMAGE_SIZES = {
    "16:9": "landscape_16_9",
    "4:3": "landscape_4_3",
    "1:1": "square_hd",
    "9:16": "portrait_16_9",
}


class ImageProvider(Protocol):
    name: str
    model: str

    def is_configured(self) -> bool: ...

    async def generate(self, prompt: str) -> bytes: ...


class GeminiImageProvider:
    name = "gemini"

    def __init__(
        self,
        api_key: str = GEMINI_API_KEY,
        model: str = PRIMARY_IMAGE_MODEL,
        base_url: str = GEMINI_BASE_URL,
        aspect_ratio: str = IMAGE_ASPECT_RATIO,
        timeout: float = IMAGE_TIMEOUT_SECONDS,
    ):
        self.api_key = api_key
        self.model = model
        self.base_url = base_url.rstrip("/")
        self.aspect_ratio = aspect_ratio
        self.timeout = timeout

    def is_configured(self) -> bool:
        return bool(self.api_key.strip())

    async def generate(self, prompt: str) -> bytes:
        if not self.is_configured():
            raise ProviderError(ProviderErrorKind.CONFIGURATION, self.name, "Gemini API key is not set")
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(
                    f"{self.base_url}/models/{self.model}:predict",
                    headers={"x-goog-api-key": self.api_key},
                    json={
                        "instances": [{"prompt": prompt}],
                        "parameters": {"sampleCount": 1, "aspectRatio": self.aspect_ratio},
                    },
                )
        except httpx.HTTPError as exc:
            raise to_provider_error(exc, self.name) from exc
        raise_for_provider(response, self.name)

        predictions = json_object(response, self.name).get("predictions") or []
        first = predictions[0] if isinstance(predictions, list) and predictions else None
        encoded = first.get("bytesBase64Encoded") if isinstance(first, dict) else None
        if not encoded:
            raise ProviderError(ProviderErrorKind.VALIDATION, self.name, "No image returned")
        try:
            return base64.b64decode(encoded)
        except binascii.Error as exc:
            raise ProviderError(ProviderErrorKind.VALIDATION, self.name, "Malformed image payload") from exc


class FalImageProvider:
    name = "fal"

    def __init__(
        self,
        client: FalClient | None = None,
        model: str = SECONDARY_IMAGE_MODEL,
        aspect_ratio: str = IMAGE_ASPECT_RATIO,
        steps: int = 28,
    ):
        self.client = client or FalClient(timeout=IMAGE_TIMEOUT_SECONDS)
        self.model = model
        self.image_size = _FAL_IMAGE_SIZES.get(aspect_ratio, "landscape_16_9")
        self.steps = steps

    def is_configured(self) -> bool:
        return self.client.is_configured()

    async def generate_url(self, prompt: str, steps: int | None = None) -> str:
        """Run the model and return the hosted URL of the first image."""
        data = await self.client.run(self.model, {
            "prompt": prompt,
            "image_size": self.image_size,
            "num_inference_steps": steps or self.steps,
            "num_images": 1,
            "enable_safety_checker": True,
        })
        images = data.get("images") or []
        first = images[0] if isinstance(images, list) and images else None
        url = first.get("url") if isinstance(first, dict) else None
        if not url:
            raise ProviderError(ProviderErrorKind.VALIDATION, self.name, "No image URL returned")
        return url

    async def generate(self, prompt: str) -> bytes:
        return await self.client.download(await self.generate_url(prompt))
