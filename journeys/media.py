"""Media orchestration for narrator segments.

Each request walks a small state machine: an optional clip attempt, then an
image attempt (primary, secondary, placeholder). Results are published as
MediaUpdate values addressed by the segment id captured when the request was
launched, so overlapping generations can never land on the wrong segment.
"""

from __future__ import annotations

import asyncio
import base64
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, TypeVar

from journeys.cache import Fingerprint, GenerationCache
from journeys.config import (
    CLIP_DURATION_SECONDS,
    CLIP_TIMEOUT_SECONDS,
    IMAGE_TIMEOUT_SECONDS,
    MAX_CLIPS_PER_STORY,
    PLACEHOLDER_IMAGE_URL,
)
from journeys.errors import ProviderError, ProviderErrorKind, to_provider_error
from journeys.models import MediaKind, MediaTierSettings
from journeys.providers.clips import ClipProvider
from journeys.providers.images import ImageProvider
from journeys.retry import MEDIA_RETRY_POLICY, RetryPolicy, run_with_backoff

logger = logging.getLogger(__name__)

T = TypeVar("T")

IMAGE_STYLE = "photo-realistic, historically accurate, cinematic lighting, high detail"
CLIP_STYLE = "cinematic, dramatic, high quality, historically accurate, photo-realistic"

SECONDARY_USED_ADVISORY = "Image generated with the fallback provider (primary failed)."
PLACEHOLDER_ADVISORY = "Image generation failed. Showing a placeholder image."
BOTH_FAILED_ADVISORY = "Both image providers failed. Showing a placeholder image."

_CLIP_ADVISORIES = {
    ProviderErrorKind.QUOTA: "Animation failed: insufficient credits. Using a static image instead.",
    ProviderErrorKind.CONFIGURATION: "Animation failed: check the clip provider API key. Using a static image instead.",
    ProviderErrorKind.TIMEOUT: "Animation timed out. Using a static image instead.",
    ProviderErrorKind.RATE_LIMIT: "Animation service is busy. Using a static image instead.",
}
CLIP_FAILED_ADVISORY = "Animation failed. Using a static image instead."


@dataclass
class MediaRequest:
    segment_id: str
    prompt: str
    is_important_scene: bool = False
    clips_generated: int = 0
    character_context: str = ""
    environment: str = ""


@dataclass
class MediaUpdate:
    segment_id: str
    image_ref: str | None = None
    clip_ref: str | None = None
    is_loading_image: bool | None = None
    is_loading_clip: bool | None = None
    source: str = ""
    advisory: str | None = None
    clip_generated: bool = False

    def segment_changes(self) -> dict:
        """Segment fields this update sets; None means untouched."""
        changes = {
            "image_ref": self.image_ref,
            "clip_ref": self.clip_ref,
            "is_loading_image": self.is_loading_image,
            "is_loading_clip": self.is_loading_clip,
        }
        return {key: value for key, value in changes.items() if value is not None}


def sniff_mime(payload: bytes, default: str = "application/octet-stream") -> str:
    if payload.startswith(b"\x89PNG"):
        return "image/png"
    if payload.startswith(b"\xff\xd8"):
        return "image/jpeg"
    if payload[:4] == b"RIFF" and payload[8:12] == b"WEBP":
        return "image/webp"
    if payload[:6] in (b"GIF87a", b"GIF89a"):
        return "image/gif"
    if payload[4:8] == b"ftyp":
        return "video/mp4"
    if payload[:4] == b"\x1aE\xdf\xa3":
        return "video/webm"
    return default


def to_data_url(payload: bytes, default_mime: str = "application/octet-stream") -> str:
    mime = sniff_mime(payload, default_mime)
    return f"data:{mime};base64,{base64.b64encode(payload).decode('ascii')}"


def build_image_prompt(request: MediaRequest) -> str:
    parts = [request.prompt.strip()]
    if request.character_context:
        parts.append(f"Characters: {request.character_context}")
    if request.environment:
        parts.append(f"Setting: {request.environment}")
    parts.append(IMAGE_STYLE)
    return ". ".join(parts)


def build_clip_prompt(request: MediaRequest) -> str:
    return f"{request.prompt.strip()}, {CLIP_STYLE}"


class MediaOrchestrator:
    def __init__(
        self,
        cache: GenerationCache,
        primary: ImageProvider,
        secondary: ImageProvider | None = None,
        clip_provider: ClipProvider | None = None,
        settings: MediaTierSettings | None = None,
        retry_policy: RetryPolicy = MEDIA_RETRY_POLICY,
        image_timeout: float = IMAGE_TIMEOUT_SECONDS,
        clip_timeout: float = CLIP_TIMEOUT_SECONDS,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self._cache = cache
        self._primary = primary
        self._secondary = secondary
        self._clips = clip_provider
        self._settings = settings or MediaTierSettings()
        self._retry_policy = retry_policy
        self._image_timeout = image_timeout
        self._clip_timeout = clip_timeout
        self._sleep = sleep

    @property
    def settings(self) -> MediaTierSettings:
        return self._settings

    def configure(self, settings: MediaTierSettings) -> None:
        self._settings = settings

    def should_attempt_clip(self, request: MediaRequest) -> bool:
        return (
            request.is_important_scene
            and self._settings.clips_enabled
            and self._settings.current_session_count < self._settings.session_limit
            and self._clips is not None
            and self._clips.is_configured()
            and request.clips_generated < MAX_CLIPS_PER_STORY
        )

    async def resolve(self, request: MediaRequest, publish: Callable[[MediaUpdate], None]) -> MediaUpdate:
        """Resolve media for one segment, publishing progress and the final update."""
        if self.should_attempt_clip(request):
            publish(MediaUpdate(request.segment_id, is_loading_clip=True))
            clip_update = await self._attempt_clip(request)
            publish(clip_update)
            if clip_update.clip_ref:
                return clip_update

        update = await self._attempt_image(request)
        publish(update)
        logger.info(
            "media_resolved",
            extra={"segment_id": request.segment_id, "source": update.source, "has_advisory": bool(update.advisory)},
        )
        return update

    async def _call(self, provider_name: str, factory: Callable[[], Awaitable[T]], timeout: float) -> T:
        async def attempt() -> T:
            return await asyncio.wait_for(factory(), timeout=timeout)

        try:
            return await run_with_backoff(attempt, self._retry_policy, sleep=self._sleep, label=provider_name)
        except ProviderError:
            raise
        except Exception as exc:
            raise to_provider_error(exc, provider_name) from exc

    # --- Clip tier ---

    async def _attempt_clip(self, request: MediaRequest) -> MediaUpdate:
        prompt = build_clip_prompt(request)
        fingerprint = Fingerprint(MediaKind.CLIP, self._clips.model, CLIP_DURATION_SECONDS, prompt)

        cached = self._cache.get(fingerprint)
        if cached is not None:
            return MediaUpdate(
                request.segment_id,
                clip_ref=to_data_url(cached, "video/mp4"),
                is_loading_clip=False,
                is_loading_image=False,
                source="cache",
            )

        try:
            payload = await self._call(
                self._clips.name,
                lambda: self._clips.generate(prompt, CLIP_DURATION_SECONDS),
                self._clip_timeout,
            )
        except ProviderError as exc:
            logger.warning(
                "clip_attempt_failed",
                extra={"segment_id": request.segment_id, "error_kind": exc.kind.value, "error": str(exc)},
            )
            return MediaUpdate(
                request.segment_id,
                is_loading_clip=False,
                source="clip_failed",
                advisory=_CLIP_ADVISORIES.get(exc.kind, CLIP_FAILED_ADVISORY),
            )

        self._cache.put(fingerprint, payload, source_text=request.prompt)
        self._settings = self._settings.model_copy(
            update={"current_session_count": self._settings.current_session_count + 1}
        )
        return MediaUpdate(
            request.segment_id,
            clip_ref=to_data_url(payload, "video/mp4"),
            is_loading_clip=False,
            is_loading_image=False,
            source=self._clips.name,
            clip_generated=True,
        )

    # --- Image tier ---

    def _secondary_enabled(self) -> bool:
        return (
            self._secondary is not None
            and self._settings.use_secondary_fallback
            and self._secondary.is_configured()
        )

    async def _attempt_image(self, request: MediaRequest) -> MediaUpdate:
        prompt = build_image_prompt(request)
        fingerprint = Fingerprint(MediaKind.IMAGE, self._primary.model, 0, prompt)

        cached = self._cache.get(fingerprint)
        if cached is not None:
            return self._image_update(request, cached, "cache")

        try:
            payload = await self._call(self._primary.name, lambda: self._primary.generate(prompt), self._image_timeout)
            source, advisory = self._primary.name, None
        except ProviderError as primary_error:
            logger.warning(
                "image_attempt_failed",
                extra={
                    "segment_id": request.segment_id,
                    "provider": self._primary.name,
                    "error_kind": primary_error.kind.value,
                    "error": str(primary_error),
                },
            )
            if not self._secondary_enabled():
                return self._placeholder(request, PLACEHOLDER_ADVISORY)
            try:
                payload = await self._call(
                    self._secondary.name, lambda: self._secondary.generate(prompt), self._image_timeout
                )
                source, advisory = self._secondary.name, SECONDARY_USED_ADVISORY
            except ProviderError as secondary_error:
                logger.warning(
                    "image_attempt_failed",
                    extra={
                        "segment_id": request.segment_id,
                        "provider": self._secondary.name,
                        "error_kind": secondary_error.kind.value,
                        "error": str(secondary_error),
                    },
                )
                return self._placeholder(request, BOTH_FAILED_ADVISORY)

        self._cache.put(fingerprint, payload, source_text=request.prompt)
        update = self._image_update(request, payload, source)
        update.advisory = advisory
        return update

    def _image_update(self, request: MediaRequest, payload: bytes, source: str) -> MediaUpdate:
        return MediaUpdate(
            request.segment_id,
            image_ref=to_data_url(payload, "image/png"),
            is_loading_image=False,
            is_loading_clip=False,
            source=source,
        )

    def _placeholder(self, request: MediaRequest, advisory: str) -> MediaUpdate:
        return MediaUpdate(
            request.segment_id,
            image_ref=PLACEHOLDER_IMAGE_URL,
            is_loading_image=False,
            is_loading_clip=False,
            source="placeholder",
            advisory=advisory,
        )
