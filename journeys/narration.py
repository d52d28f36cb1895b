"""Narration playback for story segments.

One segment narrates at a time. States::

    idle -> generating -> playing <-> paused -> idle

Built-in synthesis goes through a SpeechEngine. Hosted voices go through the
audio cache, then the provider, then an AudioOutput. An ElevenLabs quota
failure retries the same utterance through Speechify.
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import Callable, Protocol

from journeys.cache import Fingerprint, GenerationCache
from journeys.config import HOSTED_SPEED_SENTINEL
from journeys.errors import ProviderErrorKind, to_provider_error
from journeys.models import HostedVoiceSettings, MediaKind, NarrationProvider, PersistedSettings
from journeys.providers.speech import SpeechProvider

logger = logging.getLogger(__name__)


class PlaybackState(str, Enum):
    IDLE = "idle"
    GENERATING = "generating"
    PLAYING = "playing"
    PAUSED = "paused"


class SpeechEngine(Protocol):
    def speak(
        self,
        text: str,
        voice_id: str,
        rate: float,
        on_end: Callable[[], None],
        on_error: Callable[[Exception], None],
    ) -> None: ...

    def pause(self) -> None: ...

    def resume(self) -> None: ...

    def cancel(self) -> None: ...


class AudioOutput(Protocol):
    def play(
        self,
        payload: bytes,
        on_complete: Callable[[], None],
        on_error: Callable[[Exception], None],
    ) -> None: ...

    def pause(self) -> None: ...

    def resume(self) -> None: ...

    def stop(self) -> None: ...


class NarrationController:
    def __init__(
        self,
        settings: PersistedSettings,
        cache: GenerationCache,
        elevenlabs: SpeechProvider,
        speechify: SpeechProvider,
        engine: SpeechEngine | None = None,
        audio_output: AudioOutput | None = None,
        on_advisory: Callable[[str], None] | None = None,
        on_state_change: Callable[[PlaybackState, str | None], None] | None = None,
    ):
        self._cache = cache
        self._elevenlabs = elevenlabs
        self._speechify = speechify
        self._engine = engine
        self._audio_output = audio_output
        self.on_advisory = on_advisory
        self._on_state_change = on_state_change

        self._state = PlaybackState.IDLE
        self._active_segment_id: str | None = None
        self._hosted = False
        self._token = 0
        self.configure(settings)

    @property
    def state(self) -> PlaybackState:
        return self._state

    @property
    def active_segment_id(self) -> str | None:
        return self._active_segment_id

    def configure(self, settings: PersistedSettings) -> None:
        self._settings = settings
        self._elevenlabs.set_api_key(settings.elevenlabs.api_key_override)
        self._speechify.set_api_key(settings.speechify.api_key_override)

    def autoplay_enabled(self) -> bool:
        narration = self._settings.narration
        if not narration.enabled:
            return False
        if narration.provider == NarrationProvider.ELEVENLABS:
            return self._settings.elevenlabs.autoplay or narration.autoplay
        if narration.provider == NarrationProvider.SPEECHIFY:
            return self._settings.speechify.autoplay or narration.autoplay
        return narration.autoplay

    # --- State helpers ---

    def _set_state(self, state: PlaybackState) -> None:
        self._state = state
        if self._on_state_change:
            self._on_state_change(state, self._active_segment_id)

    def _reset(self) -> None:
        self._active_segment_id = None
        self._hosted = False
        self._set_state(PlaybackState.IDLE)

    def _advise(self, message: str) -> None:
        if self.on_advisory:
            self.on_advisory(message)

    def _finished(self, token: int) -> None:
        if token == self._token:
            self._reset()

    def _failed(self, token: int, error: Exception) -> None:
        if token != self._token:
            return
        logger.warning("narration_failed", extra={"segment_id": self._active_segment_id, "error": str(error)})
        self._advise("Narration playback failed.")
        self._reset()

    # --- Controls ---

    async def toggle(self, segment_id: str, text: str) -> None:
        """Pause or resume the active segment; otherwise start narrating ``segment_id``."""
        if segment_id == self._active_segment_id:
            if self._state == PlaybackState.PLAYING:
                self.pause()
                return
            if self._state == PlaybackState.PAUSED:
                self.resume()
                return
            if self._state == PlaybackState.GENERATING:
                return
        await self.play(segment_id, text)

    async def play(self, segment_id: str, text: str) -> None:
        self.stop()
        self._token += 1
        token = self._token
        self._active_segment_id = segment_id
        provider = self._settings.narration.provider
        logger.info("narration_started", extra={"segment_id": segment_id, "provider": provider.value})

        if provider == NarrationProvider.ELEVENLABS:
            await self._play_hosted(token, text, self._elevenlabs, self._settings.elevenlabs, fallback=self._speechify)
        elif provider == NarrationProvider.SPEECHIFY:
            await self._play_hosted(token, text, self._speechify, self._settings.speechify)
        else:
            self._play_builtin(token, text)

    def pause(self) -> None:
        if self._state != PlaybackState.PLAYING:
            return
        if self._hosted and self._audio_output:
            self._audio_output.pause()
        elif self._engine:
            self._engine.pause()
        self._set_state(PlaybackState.PAUSED)

    def resume(self) -> None:
        if self._state != PlaybackState.PAUSED:
            return
        if self._hosted and self._audio_output:
            self._audio_output.resume()
        elif self._engine:
            self._engine.resume()
        self._set_state(PlaybackState.PLAYING)

    def stop(self) -> None:
        """Cancel synthesis and discard any playing audio; in-flight generations are dropped."""
        self._token += 1
        if self._engine:
            self._engine.cancel()
        if self._audio_output:
            self._audio_output.stop()
        if self._state != PlaybackState.IDLE or self._active_segment_id is not None:
            self._reset()

    # --- Built-in synthesis ---

    def _play_builtin(self, token: int, text: str) -> None:
        if self._engine is None:
            self._advise("Built-in narration is not available on this device.")
            self._reset()
            return
        narration = self._settings.narration
        self._hosted = False
        self._set_state(PlaybackState.PLAYING)
        self._engine.speak(
            text,
            narration.voice_id,
            narration.speed,
            on_end=lambda: self._finished(token),
            on_error=lambda error: self._failed(token, error),
        )

    # --- Hosted voices ---

    async def _play_hosted(
        self,
        token: int,
        text: str,
        provider: SpeechProvider,
        voice: HostedVoiceSettings,
        fallback: SpeechProvider | None = None,
    ) -> None:
        if not provider.is_configured():
            self._advise(f"{provider.name} is not configured. Add an API key in settings.")
            self._reset()
            return
        if self._audio_output is None:
            self._advise("Audio playback is not available.")
            self._reset()
            return

        self._set_state(PlaybackState.GENERATING)
        fingerprint = Fingerprint(MediaKind.AUDIO, f"{provider.name}:{voice.voice_id}", HOSTED_SPEED_SENTINEL, text)
        audio = self._cache.get(fingerprint)
        if audio is None:
            try:
                audio = await provider.synthesize(text, voice.voice_id)
            except Exception as raw:
                exc = to_provider_error(raw, provider.name)
                if token != self._token:
                    return
                if exc.kind == ProviderErrorKind.QUOTA and fallback is not None:
                    logger.warning("narration_quota_fallback", extra={"provider": provider.name, "fallback": fallback.name})
                    self._advise(f"{provider.name} quota exceeded. Using {fallback.name} instead.")
                    await self._play_hosted(token, text, fallback, self._settings.speechify)
                    return
                logger.warning(
                    "narration_failed",
                    extra={"provider": provider.name, "error_kind": exc.kind.value, "error": str(exc)},
                )
                self._advise(f"Narration failed: {exc}")
                self._reset()
                return
            self._cache.put(fingerprint, audio, source_text=text)

        if token != self._token:
            return
        self._hosted = True
        self._set_state(PlaybackState.PLAYING)
        self._audio_output.play(
            audio,
            on_complete=lambda: self._finished(token),
            on_error=lambda error: self._failed(token, error),
        )
