"""Hosted narration voices: ElevenLabs and Speechify text-to-speech."""

from __future__ import annotations

import base64
import binascii
from typing import Protocol

import httpx

from journeys.config import (
    ELEVENLABS_API_KEY,
    ELEVENLABS_BASE_URL,
    ELEVENLABS_MODEL_ID,
    SPEECH_TIMEOUT_SECONDS,
    SPEECHIFY_API_KEY,
    SPEECHIFY_BASE_URL,
)
from journeys.errors import ProviderError, ProviderErrorKind, json_object, raise_for_provider, to_provider_error


class SpeechProvider(Protocol):
    name: str

    def is_configured(self) -> bool: ...

    def set_api_key(self, override: str) -> None: ...

    async def synthesize(self, text: str, voice_id: str) -> bytes: ...


class _HostedSpeechProvider:
    name = "speech"

    def __init__(self, api_key: str, base_url: str, timeout: float):
        self._default_key = api_key
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

    def is_configured(self) -> bool:
        return bool(self.api_key.strip())

    def set_api_key(self, override: str) -> None:
        """Prefer a user-supplied key; an empty override restores the environment key."""
        self.api_key = override.strip() or self._default_key

    def _check_request(self, text: str) -> None:
        if not self.is_configured():
            raise ProviderError(ProviderErrorKind.CONFIGURATION, self.name, f"{self.name} API key is not set")
        if not text.strip():
            raise ProviderError(ProviderErrorKind.VALIDATION, self.name, "Text cannot be empty")

    async def _post(self, url: str, headers: dict, payload: dict) -> httpx.Response:
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(url, headers=headers, json=payload)
        except httpx.HTTPError as exc:
            raise to_provider_error(exc, self.name) from exc
        raise_for_provider(response, self.name)
        return response


class ElevenLabsProvider(_HostedSpeechProvider):
    name = "elevenlabs"

    def __init__(
        self,
        api_key: str = ELEVENLABS_API_KEY,
        base_url: str = ELEVENLABS_BASE_URL,
        model_id: str = ELEVENLABS_MODEL_ID,
        timeout: float = SPEECH_TIMEOUT_SECONDS,
    ):
        super().__init__(api_key, base_url, timeout)
        self.model_id = model_id

    async def synthesize(self, text: str, voice_id: str) -> bytes:
        self._check_request(text)
        response = await self._post(
            f"{self.base_url}/text-to-speech/{voice_id}",
            headers={"xi-api-key": self.api_key, "Accept": "audio/mpeg"},
            payload={
                "text": text,
                "model_id": self.model_id,
                "voice_settings": {"stability": 0.5, "similarity_boost": 0.5},
            },
        )
        if not response.content:
            raise ProviderError(ProviderErrorKind.VALIDATION, self.name, "Empty audio response")
        return response.content


class SpeechifyProvider(_HostedSpeechProvider):
    name = "speechify"

    def __init__(
        self,
        api_key: str = SPEECHIFY_API_KEY,
        base_url: str = SPEECHIFY_BASE_URL,
        timeout: float = SPEECH_TIMEOUT_SECONDS,
    ):
        super().__init__(api_key, base_url, timeout)

    async def synthesize(self, text: str, voice_id: str) -> bytes:
        self._check_request(text)
        response = await self._post(
            f"{self.base_url}/audio/speech",
            headers={"Authorization": f"Bearer {self.api_key}"},
            payload={"input": text, "voice_id": voice_id, "audio_format": "mp3"},
        )
        encoded = json_object(response, self.name).get("audio_data")
        if not encoded:
            raise ProviderError(ProviderErrorKind.VALIDATION, self.name, "No audio data received")
        try:
            return base64.b64decode(encoded)
        except binascii.Error as exc:
            raise ProviderError(ProviderErrorKind.VALIDATION, self.name, "Malformed audio payload") from exc
