"""
audio/clip.py — WAV clip container

Captured speech travels as a RIFF/WAVE clip: PCM format tag 1, 16-bit
little-endian samples, the capture sample rate and channel count. On the
wire the clip is base64 text.

    encode_clip(pcm, sample_rate, channels) → bytes
    decode_clip(clip)                       → DecodedClip
"""

from __future__ import annotations

import base64
import binascii
import io
from dataclasses import dataclass

import numpy as np
import soundfile as sf

from airassist.exceptions import PlaybackError

_SAMPLE_WIDTH = 2  # bytes per int16 sample


@dataclass
class DecodedClip:
    pcm: bytes
    sample_rate: int
    channels: int

    @property
    def sample_count(self) -> int:
        """Frames per channel."""
        return len(self.pcm) // (_SAMPLE_WIDTH * self.channels)

    @property
    def duration_s(self) -> float:
        return self.sample_count / self.sample_rate if self.sample_rate else 0.0

    def as_array(self) -> np.ndarray:
        """int16 samples shaped (frames, channels)."""
        samples = np.frombuffer(self.pcm, dtype="<i2")
        return samples.reshape(-1, self.channels)


def encode_clip(pcm: bytes, sample_rate: int, channels: int = 1) -> bytes:
    """Wrap raw little-endian int16 PCM in a WAV container."""
    usable = len(pcm) - (len(pcm) % (_SAMPLE_WIDTH * channels))
    samples = np.frombuffer(pcm[:usable], dtype="<i2").reshape(-1, channels)
    buf = io.BytesIO()
    sf.write(buf, samples, sample_rate, format="WAV", subtype="PCM_16")
    return buf.getvalue()


def decode_clip(clip: bytes) -> DecodedClip:
    """
    Parse a WAV clip back into raw int16 PCM.

    Raises PlaybackError when the bytes are not a readable audio container.
    """
    try:
        data, sample_rate = sf.read(io.BytesIO(clip), dtype="int16", always_2d=True)
    except (RuntimeError, TypeError, ValueError) as e:
        raise PlaybackError(f"Unreadable audio clip: {e}") from e
    channels = data.shape[1]
    return DecodedClip(
        pcm=np.ascontiguousarray(data).astype("<i2").tobytes(),
        sample_rate=int(sample_rate),
        channels=int(channels),
    )


def clip_to_base64(clip: bytes) -> str:
    return base64.b64encode(clip).decode("ascii")


def clip_from_base64(text: str) -> bytes:
    """Decode a base64 clip. Raises PlaybackError on malformed input."""
    try:
        return base64.b64decode(text, validate=True)
    except (binascii.Error, ValueError) as e:
        raise PlaybackError(f"Invalid base64 audio payload: {e}") from e
