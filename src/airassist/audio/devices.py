"""
audio/devices.py — Microphone and speaker adapters

    Microphone.open(on_frame)   — start delivering int16 PCM frames to on_frame
                                  on the event loop thread
    Microphone.close()
    Speaker.play(clip)          — returns when playback has finished; cancelling
                                  the awaiting task stops the output
    Speaker.stop()

The sounddevice implementations open PortAudio lazily: importing the module
raises OSError on hosts without PortAudio, which is reported as the
matching capability error instead of failing application startup.
"""

from __future__ import annotations

import asyncio
from typing import Any, Callable, Optional, Protocol, runtime_checkable

import numpy as np

from airassist.audio.clip import DecodedClip
from airassist.exceptions import MicrophoneUnavailableError, PlaybackError
from airassist.observability.logger import get_logger

log = get_logger(__name__)

FrameCallback = Callable[[bytes], None]

_DTYPE = "int16"


@runtime_checkable
class Microphone(Protocol):

    async def open(self, on_frame: FrameCallback) -> None: ...

    async def close(self) -> None: ...


@runtime_checkable
class Speaker(Protocol):

    async def play(self, clip: DecodedClip) -> None: ...

    async def stop(self) -> None: ...


def _import_sounddevice(error_cls: type[Exception]) -> Any:
    try:
        import sounddevice as sd
    except OSError as e:
        raise error_cls(f"PortAudio library not available: {e}") from e
    return sd


# ─────────────────────────────────────────────────────────────────────────────
# Microphone
# ─────────────────────────────────────────────────────────────────────────────

class SoundDeviceMicrophone:
    """PortAudio input stream that forwards each block to the event loop."""

    def __init__(
        self,
        sample_rate: int = 16000,
        channels: int = 1,
        frame_size: int = 480,
        device: Optional[int] = None,
    ) -> None:
        self._sample_rate = sample_rate
        self._channels = channels
        self._frame_size = frame_size
        self._device = device
        self._stream: Any = None

    async def open(self, on_frame: FrameCallback) -> None:
        sd = _import_sounddevice(MicrophoneUnavailableError)
        loop = asyncio.get_running_loop()

        # Runs on the PortAudio thread
        def _sd_callback(indata, frames, time_info, status):
            if status:
                log.debug("microphone.status", status=str(status))
            # Copy: the buffer is reused by PortAudio after the callback returns
            loop.call_soon_threadsafe(on_frame, bytes(indata))

        try:
            stream = sd.InputStream(
                samplerate=self._sample_rate,
                channels=self._channels,
                dtype=_DTYPE,
                blocksize=self._frame_size,
                device=self._device,
                callback=_sd_callback,
            )
            stream.start()
        except (sd.PortAudioError, ValueError) as e:
            raise MicrophoneUnavailableError(f"Could not open microphone: {e}") from e

        self._stream = stream
        log.info("microphone.opened", sample_rate=self._sample_rate, device=self._device)

    async def close(self) -> None:
        stream, self._stream = self._stream, None
        if stream is None:
            return
        stream.stop()
        stream.close()
        log.debug("microphone.closed")


# ─────────────────────────────────────────────────────────────────────────────
# Speaker
# ─────────────────────────────────────────────────────────────────────────────

class SoundDeviceSpeaker:
    """Blocking sounddevice playback driven from an executor thread."""

    def __init__(self, volume: int = 80, device: Optional[int] = None) -> None:
        self.volume = volume
        self._device = device

    async def play(self, clip: DecodedClip) -> None:
        sd = _import_sounddevice(PlaybackError)
        audio = clip.as_array().astype(np.float32) / 32768.0
        audio *= max(0, min(100, self.volume)) / 100.0

        loop = asyncio.get_running_loop()
        try:
            await loop.run_in_executor(
                None, self._play_blocking, sd, audio, clip.sample_rate
            )
        except asyncio.CancelledError:
            sd.stop()
            raise
        except sd.PortAudioError as e:
            raise PlaybackError(f"Audio output failed: {e}") from e

    def _play_blocking(self, sd: Any, audio: np.ndarray, sample_rate: int) -> None:
        """Blocks until playback completes or sd.stop() is called."""
        sd.play(audio, samplerate=sample_rate, device=self._device)
        sd.wait()

    async def stop(self) -> None:
        sd = _import_sounddevice(PlaybackError)
        sd.stop()
