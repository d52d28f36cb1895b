"""Animated scene clips via fal.ai.

Two steps: render a still with the image model, then animate it with the
first image-to-video model that succeeds. When every image-to-video model
fails, a direct text-to-video model is tried last.
"""

from __future__ import annotations

import logging
from typing import Protocol

from journeys.config import (
    CLIP_IMAGE_TO_VIDEO_MODELS,
    CLIP_MODEL_ID,
    CLIP_STILL_MODEL,
    CLIP_TEXT_TO_VIDEO_MODEL,
)
from journeys.errors import ProviderError, ProviderErrorKind
from journeys.providers.fal import FalClient
from journeys.providers.images import FalImageProvider

logger = logging.getLogger(__name__)

# Auth and billing failures are shared by every model on the account.
_ACCOUNT_WIDE_KINDS = (ProviderErrorKind.CONFIGURATION, ProviderErrorKind.QUOTA)


class ClipProvider(Protocol):
    name: str
    model: str

    def is_configured(self) -> bool: ...

    async def generate(self, prompt: str, duration: int) -> bytes: ...


def extract_video_url(data: dict) -> str | None:
    video = data.get("video")
    if isinstance(video, dict) and video.get("url"):
        return video["url"]
    videos = data.get("videos")
    if isinstance(videos, list) and videos and isinstance(videos[0], dict) and videos[0].get("url"):
        return videos[0]["url"]
    output = data.get("output_video")
    if isinstance(output, str) and output:
        return output
    return None


class FalClipProvider:
    name = "fal-clip"

    def __init__(
        self,
        client: FalClient | None = None,
        still_model: str = CLIP_STILL_MODEL,
        image_to_video_models: tuple[str, ...] = CLIP_IMAGE_TO_VIDEO_MODELS,
        text_to_video_model: str = CLIP_TEXT_TO_VIDEO_MODEL,
        model: str = CLIP_MODEL_ID,
    ):
        self.client = client or FalClient(provider=self.name)
        self.stills = FalImageProvider(client=self.client, model=still_model, steps=20)
        self.image_to_video_models = image_to_video_models
        self.text_to_video_model = text_to_video_model
        self.model = model

    def is_configured(self) -> bool:
        return self.client.is_configured()

    async def generate(self, prompt: str, duration: int) -> bytes:
        still_url = await self.stills.generate_url(prompt)

        data = None
        last_error: ProviderError | None = None
        for model in self.image_to_video_models:
            try:
                data = await self.client.run(model, {
                    "prompt": prompt,
                    "image_url": still_url,
                    "duration": str(duration),
                })
                break
            except ProviderError as exc:
                if exc.kind in _ACCOUNT_WIDE_KINDS:
                    raise
                logger.warning("clip_attempt_failed", extra={"model": model, "error_kind": exc.kind.value, "error": str(exc)})
                last_error = exc

        if data is None:
            try:
                data = await self.client.run(self.text_to_video_model, {"prompt": prompt})
            except ProviderError as exc:
                raise ProviderError(
                    exc.kind,
                    self.name,
                    f"All video models failed; image-to-video: {last_error}; text-to-video: {exc}",
                ) from exc

        url = extract_video_url(data)
        if not url:
            raise ProviderError(ProviderErrorKind.VALIDATION, self.name, "No video URL in response")
        return await self.client.download(url)
