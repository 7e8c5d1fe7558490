"""
audio/ — capture, silence detection, clip codec and device adapters.
"""

from airassist.audio.capture import (
    AudioCaptureEngine,
    CaptureConfig,
    CaptureEvent,
    CaptureEventKind,
    CaptureResult,
    PlaybackOutcome,
    RecordingState,
)
from airassist.audio.clip import DecodedClip, decode_clip, encode_clip
from airassist.audio.silence import SilenceDecision, SilenceDetector, frame_energy

__all__ = [
    "AudioCaptureEngine",
    "CaptureConfig",
    "CaptureEvent",
    "CaptureEventKind",
    "CaptureResult",
    "PlaybackOutcome",
    "RecordingState",
    "DecodedClip",
    "decode_clip",
    "encode_clip",
    "SilenceDecision",
    "SilenceDetector",
    "frame_energy",
]
