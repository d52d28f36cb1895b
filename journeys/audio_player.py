"""AudioOutput backed by sounddevice; requires the ``audio`` extra.

Completion and error callbacks are delivered on the event loop that started
playback, never on the audio thread.
"""

from __future__ import annotations

import asyncio
import io
import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable

import numpy as np
import sounddevice as sd
import soundfile as sf


class StreamState(Enum):
    STOPPED = "stopped"
    PLAYING = "playing"
    PAUSED = "paused"


@dataclass
class SoundDeviceOutput:
    blocksize: int = 1024
    _state: StreamState = field(default=StreamState.STOPPED)
    _audio_data: np.ndarray | None = field(default=None, repr=False)
    _sample_rate: int = field(default=0)
    _position: int = field(default=0)
    _stream: sd.OutputStream | None = field(default=None, repr=False)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)
    _loop: asyncio.AbstractEventLoop | None = field(default=None, repr=False)
    _on_complete: Callable[[], None] | None = field(default=None, repr=False)

    @property
    def state(self) -> StreamState:
        with self._lock:
            return self._state

    def play(
        self,
        payload: bytes,
        on_complete: Callable[[], None],
        on_error: Callable[[Exception], None],
    ) -> None:
        self._loop = asyncio.get_running_loop()
        self.stop()
        try:
            audio, sample_rate = sf.read(io.BytesIO(payload), dtype="float32")
        except RuntimeError as exc:
            self._loop.call_soon(on_error, exc)
            return
        if len(audio.shape) > 1:
            audio = audio[:, 0]
        with self._lock:
            self._audio_data = audio
            self._sample_rate = sample_rate
            self._on_complete = on_complete
            self._position = 0
            self._state = StreamState.PLAYING
        try:
            self._start_stream()
        except sd.PortAudioError as exc:
            self.stop()
            self._loop.call_soon(on_error, exc)

    def _start_stream(self) -> None:
        def fill(outdata, frames, time_info, status):
            with self._lock:
                if self._state != StreamState.PLAYING or self._audio_data is None:
                    outdata.fill(0)
                    return
                chunk = self._audio_data[self._position:self._position + frames]
                outdata[:len(chunk), 0] = chunk
                outdata[len(chunk):] = 0
                self._position += len(chunk)
                finished = len(chunk) < frames
                if finished:
                    self._finish_locked()
            if finished:
                raise sd.CallbackStop

        stream = sd.OutputStream(
            samplerate=self._sample_rate,
            channels=1,
            callback=fill,
            blocksize=self.blocksize,
        )
        with self._lock:
            self._stream = stream
        stream.start()

    def _finish_locked(self) -> None:
        # Runs on the audio thread; the stream is closed later on the loop.
        on_complete = self._on_complete
        stream = self._detach_locked()
        if self._loop is None:
            return
        if stream is not None:
            self._loop.call_soon_threadsafe(stream.close)
        if on_complete:
            self._loop.call_soon_threadsafe(on_complete)

    def _detach_locked(self) -> sd.OutputStream | None:
        stream, self._stream = self._stream, None
        self._state = StreamState.STOPPED
        self._on_complete = None
        self._position = 0
        self._audio_data = None
        return stream

    def pause(self) -> None:
        with self._lock:
            if self._state == StreamState.PLAYING:
                self._state = StreamState.PAUSED

    def resume(self) -> None:
        with self._lock:
            if self._state == StreamState.PAUSED:
                self._state = StreamState.PLAYING

    def stop(self) -> None:
        # Stopping waits for the stream callback, which takes the lock.
        with self._lock:
            stream = self._detach_locked()
        if stream is not None:
            stream.stop()
            stream.close()
