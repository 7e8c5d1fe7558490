"""
audio/recognizer.py — Speech-to-text capability

The capture engine consumes any object satisfying SpeechRecognizer:

    start(sample_rate, on_partial)  — begin an utterance
    feed(pcm)                       — append int16 PCM (called per frame)
    finish() → str                  — final hypothesis ("" if none)
    cancel()                        — drop the utterance

WhisperRecognizer runs faster-whisper over the buffered utterance in an
executor thread when the utterance finishes. faster-whisper ships in the
optional `stt` extra; make_recognizer() raises RecognizerUnavailableError
when it is not installed, and the capture engine then records without a
transcript.
"""

from __future__ import annotations

import asyncio
from typing import Any, Callable, Optional, Protocol, runtime_checkable

import numpy as np

from airassist.exceptions import RecognitionError, RecognizerUnavailableError
from airassist.observability.logger import get_logger

log = get_logger(__name__)

PartialCallback = Callable[[str], None]


@runtime_checkable
class SpeechRecognizer(Protocol):

    async def start(self, sample_rate: int, on_partial: PartialCallback) -> None: ...

    def feed(self, pcm: bytes) -> None: ...

    async def finish(self) -> str: ...

    async def cancel(self) -> None: ...


class WhisperRecognizer:
    """
    Batch faster-whisper recognizer.

    The model is loaded lazily on the first start() so constructing the
    recognizer is cheap and an absent model only fails the capture that
    needs it.
    """

    def __init__(
        self,
        model_name: str = "base.en",
        device: str = "cpu",
        compute_type: str = "int8",
        language: Optional[str] = "en",
    ) -> None:
        self._model_name = model_name
        self._device = device
        self._compute_type = compute_type
        self._language = language
        self._model: Any = None
        self._chunks: list[bytes] = []
        self._sample_rate = 16000
        self._on_partial: Optional[PartialCallback] = None

    async def start(self, sample_rate: int, on_partial: PartialCallback) -> None:
        if self._model is None:
            loop = asyncio.get_running_loop()
            self._model = await loop.run_in_executor(None, self._load_model)
        self._chunks = []
        self._sample_rate = sample_rate
        self._on_partial = on_partial

    def _load_model(self) -> Any:
        """Blocking model load — runs in executor."""
        try:
            from faster_whisper import WhisperModel
        except ImportError as e:
            raise RecognizerUnavailableError(
                "faster-whisper is not installed. Install with: pip install 'airassist[stt]'"
            ) from e
        try:
            model = WhisperModel(
                self._model_name, device=self._device, compute_type=self._compute_type
            )
        except (OSError, RuntimeError, ValueError) as e:
            raise RecognizerUnavailableError(
                f"Failed to load Whisper model '{self._model_name}': {e}"
            ) from e
        log.info("recognizer.model_loaded", model=self._model_name, device=self._device)
        return model

    def feed(self, pcm: bytes) -> None:
        self._chunks.append(pcm)

    async def finish(self) -> str:
        pcm = b"".join(self._chunks)
        self._chunks = []
        if not pcm or self._model is None:
            return ""
        loop = asyncio.get_running_loop()
        text = await loop.run_in_executor(None, self._transcribe, pcm)
        if text and self._on_partial is not None:
            self._on_partial(text)
        return text

    def _transcribe(self, pcm: bytes) -> str:
        """Blocking Whisper transcription — runs in executor."""
        usable = len(pcm) - (len(pcm) % 2)
        audio_f32 = np.frombuffer(pcm[:usable], dtype="<i2").astype(np.float32) / 32768.0
        if self._sample_rate != 16000 and audio_f32.size:
            # Whisper expects 16 kHz mono
            n_out = int(audio_f32.size * 16000 / self._sample_rate)
            audio_f32 = np.interp(
                np.linspace(0, audio_f32.size - 1, n_out),
                np.arange(audio_f32.size),
                audio_f32,
            ).astype(np.float32)
        try:
            segments, _info = self._model.transcribe(
                audio_f32,
                language=self._language,
                beam_size=1,
                vad_filter=False,
            )
            # segments is lazy; decoding happens while iterating
            return " ".join(seg.text.strip() for seg in segments).strip()
        except (RuntimeError, ValueError, OSError) as e:
            raise RecognitionError(f"Whisper transcription failed: {e}") from e

    async def cancel(self) -> None:
        self._chunks = []


def make_recognizer(
    enabled: bool,
    model_name: str = "base.en",
    device: str = "cpu",
    compute_type: str = "int8",
    language: Optional[str] = "en",
) -> Optional[SpeechRecognizer]:
    """
    Build the configured recognizer, or None when recognition is disabled.

    faster-whisper availability is checked here so the app can log it once
    at startup rather than on every capture.
    """
    if not enabled:
        return None
    try:
        import faster_whisper  # noqa: F401
    except ImportError as e:
        raise RecognizerUnavailableError(
            "faster-whisper is not installed. Install with: pip install 'airassist[stt]'"
        ) from e
    return WhisperRecognizer(model_name, device, compute_type, language)
