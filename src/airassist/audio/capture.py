"""
audio/capture.py — Audio capture engine

Owns the record → finalize lifecycle and clip playback.

Recording state machine:
    IDLE ──start_capture──► RECORDING ──silence──► FINALIZING ──stop_capture──► IDLE
                                 │                                    ▲
                                 └──────────── stop_capture ──────────┘
    cancel_capture discards the recording from any active state.

At most one recording exists at a time: a start while one is active is a
no-op that returns False.

Silence:
    Every microphone frame goes through a SilenceDetector. A watchdog task
    sleeps on the injected clock until the detector's projected silence
    deadline, so silence fires even if frames stop arriving. On silence
    the engine publishes SILENCE_DETECTED, moves to FINALIZING and invokes
    the config's on_silence callback exactly once. An awaitable result runs
    as a task the engine owns; cancel_capture() cancels it. Finalization
    itself is the caller's stop_capture(), which falls back to the last
    partial transcript when the recognizer fails.

Playback:
    play_clip() stops any prior playback and returns a Completion that
    resolves exactly once with COMPLETED, STOPPED or FAILED.
"""

from __future__ import annotations

import asyncio
import inspect
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Optional

from airassist.audio.clip import clip_to_base64, decode_clip, encode_clip
from airassist.audio.devices import Microphone, Speaker
from airassist.audio.recognizer import SpeechRecognizer
from airassist.audio.silence import SilenceDecision, SilenceDetector, frame_energy
from airassist.core.clock import Clock, LoopClock
from airassist.core.completion import Completion
from airassist.core.events import EventChannel, Subscription
from airassist.exceptions import (
    MicrophoneUnavailableError,
    PlaybackError,
    RecognizerUnavailableError,
)
from airassist.observability.logger import get_logger

log = get_logger(__name__)

# Watchdog re-check interval while speech keeps the timer from projecting a deadline
_WATCHDOG_IDLE_POLL_S = 0.25


# ─────────────────────────────────────────────────────────────────────────────
# Types
# ─────────────────────────────────────────────────────────────────────────────

class RecordingState(str, Enum):
    IDLE       = "idle"
    RECORDING  = "recording"
    FINALIZING = "finalizing"


class PlaybackOutcome(str, Enum):
    COMPLETED = "completed"
    STOPPED   = "stopped"
    FAILED    = "failed"


class CaptureEventKind(str, Enum):
    STATE_CHANGED      = "state_changed"
    PARTIAL_TRANSCRIPT = "partial_transcript"
    SILENCE_DETECTED   = "silence_detected"
    PLAYBACK_STARTED   = "playback_started"
    PLAYBACK_FINISHED  = "playback_finished"


@dataclass
class CaptureEvent:
    kind: CaptureEventKind
    state: Optional[RecordingState] = None
    text: Optional[str] = None
    outcome: Optional[PlaybackOutcome] = None


@dataclass
class CaptureConfig:
    detect_silence: bool = True
    silence_threshold_energy: float = 0.02
    inactivity_duration: float = 2.0
    on_silence: Optional[Callable[[], Any]] = None
    use_recognizer: bool = True


@dataclass
class CaptureResult:
    clip: bytes
    transcript: str
    sample_rate: int
    channels: int
    sample_count: int
    speech_detected: bool = True

    @property
    def clip_b64(self) -> str:
        return clip_to_base64(self.clip)

    @property
    def duration_s(self) -> float:
        return self.sample_count / self.sample_rate if self.sample_rate else 0.0

    @property
    def is_empty(self) -> bool:
        return self.sample_count == 0


@dataclass
class _Recording:
    config: CaptureConfig
    started_at: float
    detector: Optional[SilenceDetector]
    chunks: list[bytes] = field(default_factory=list)
    partial: str = ""
    recognizer_active: bool = False
    silence_fired: bool = False
    speech_detected: bool = False


# ─────────────────────────────────────────────────────────────────────────────
# Engine
# ─────────────────────────────────────────────────────────────────────────────

class AudioCaptureEngine:

    def __init__(
        self,
        microphone: Microphone,
        speaker: Speaker,
        recognizer: Optional[SpeechRecognizer] = None,
        clock: Optional[Clock] = None,
        sample_rate: int = 16000,
        channels: int = 1,
        release_s: float = 0.1,
    ) -> None:
        self._mic = microphone
        self._speaker = speaker
        self._recognizer = recognizer
        self._clock = clock or LoopClock()
        self._sample_rate = sample_rate
        self._channels = channels
        self._release_s = release_s

        self._state = RecordingState.IDLE
        self._recording: Optional[_Recording] = None
        self._watchdog: Optional[asyncio.Task] = None
        self._callback_tasks: set[asyncio.Task] = set()
        self._playback_task: Optional[asyncio.Task] = None
        self._playback: Optional[Completion[PlaybackOutcome]] = None
        self._events: EventChannel[CaptureEvent] = EventChannel("capture")

    # ── Introspection ─────────────────────────────────────────────────────────

    @property
    def state(self) -> RecordingState:
        return self._state

    @property
    def is_recording(self) -> bool:
        return self._state is not RecordingState.IDLE

    @property
    def is_playing(self) -> bool:
        return self._playback is not None and not self._playback.done()

    def events(self) -> Subscription[CaptureEvent]:
        return self._events.subscribe()

    def _set_state(self, new: RecordingState) -> None:
        if new is self._state:
            return
        old, self._state = self._state, new
        log.debug("capture.state_changed", old=old.value, new=new.value)
        self._events.publish(CaptureEvent(CaptureEventKind.STATE_CHANGED, state=new))

    # ── Recording ─────────────────────────────────────────────────────────────

    async def start_capture(self, config: Optional[CaptureConfig] = None) -> bool:
        """
        Begin a recording. Returns False (and does nothing) if one is active.

        Raises MicrophoneUnavailableError if the input device cannot be
        opened. An unavailable recognizer only costs the transcript.
        """
        config = config or CaptureConfig()
        if self._state is not RecordingState.IDLE:
            log.debug("capture.start_ignored", state=self._state.value)
            return False

        now = self._clock.monotonic()
        detector = (
            SilenceDetector(
                threshold=config.silence_threshold_energy,
                inactivity_s=config.inactivity_duration,
                release_s=self._release_s,
                now=now,
            )
            if config.detect_silence
            else None
        )
        recording = _Recording(config=config, started_at=now, detector=detector)

        # Claim the slot before the first suspension point
        self._recording = recording
        self._set_state(RecordingState.RECORDING)

        try:
            await self._mic.open(self.feed_frame)
        except MicrophoneUnavailableError:
            self._recording = None
            self._set_state(RecordingState.IDLE)
            raise

        if config.use_recognizer and self._recognizer is not None:
            try:
                await self._recognizer.start(self._sample_rate, self._on_partial)
                recording.recognizer_active = True
            except RecognizerUnavailableError as e:
                log.warning("capture.recognizer_unavailable", error=str(e))

        if self._recording is not recording:
            # Cancelled while the microphone or recognizer was opening
            await self._close_mic()
            return False

        if detector is not None:
            self._watchdog = asyncio.create_task(self._silence_watchdog(recording))

        log.info(
            "capture.started",
            detect_silence=config.detect_silence,
            threshold=config.silence_threshold_energy,
            recognizer=recording.recognizer_active,
        )
        return True

    def feed_frame(self, pcm: bytes) -> None:
        """Accept one microphone frame. Ignored unless recording."""
        recording = self._recording
        if recording is None or self._state is not RecordingState.RECORDING:
            return

        recording.chunks.append(pcm)
        if recording.recognizer_active:
            self._recognizer.feed(pcm)

        if recording.detector is None:
            recording.speech_detected = True
            return
        energy = frame_energy(pcm)
        if energy > recording.detector.threshold:
            recording.speech_detected = True
        decision = recording.detector.process(energy, self._clock.monotonic())
        if decision is SilenceDecision.SILENCE:
            self._on_silence(recording)

    async def stop_capture(self) -> Optional[CaptureResult]:
        """
        Finalize the active recording. Returns None if nothing is recording.

        A recognizer failure is not fatal: the result carries the last
        partial transcript instead.
        """
        recording = self._recording
        if recording is None:
            return None

        self._set_state(RecordingState.FINALIZING)
        try:
            await self._cancel_watchdog()
            await self._close_mic()

            final = ""
            if recording.recognizer_active:
                try:
                    final = await self._recognizer.finish()
                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    log.warning(
                        "capture.recognizer_failed",
                        error=str(e),
                        error_type=type(e).__name__,
                        fallback_chars=len(recording.partial),
                    )
            transcript = final or recording.partial

            pcm = b"".join(recording.chunks)
            frame_bytes = 2 * self._channels
            sample_count = len(pcm) // frame_bytes
            clip = encode_clip(pcm, self._sample_rate, self._channels) if sample_count else b""
        finally:
            if self._recording is recording:
                self._recording = None
                self._set_state(RecordingState.IDLE)

        log.info(
            "capture.finalized",
            samples=sample_count,
            duration_s=round(sample_count / self._sample_rate, 2),
            transcript=transcript[:80],
        )
        return CaptureResult(
            clip=clip,
            transcript=transcript,
            sample_rate=self._sample_rate,
            channels=self._channels,
            sample_count=sample_count,
            speech_detected=recording.speech_detected or bool(transcript),
        )

    async def cancel_capture(self) -> None:
        """Discard the active recording, if any."""
        await self._cancel_callbacks()
        recording = self._recording
        if recording is None:
            return
        self._recording = None
        await self._cancel_watchdog()
        await self._close_mic()
        if recording.recognizer_active:
            await self._recognizer.cancel()
        self._set_state(RecordingState.IDLE)
        log.info("capture.cancelled")

    def _on_partial(self, text: str) -> None:
        recording = self._recording
        if recording is None:
            return
        recording.partial = text
        self._events.publish(CaptureEvent(CaptureEventKind.PARTIAL_TRANSCRIPT, text=text))

    def _on_silence(self, recording: _Recording) -> None:
        if recording.silence_fired or self._recording is not recording:
            return
        recording.silence_fired = True
        log.info(
            "capture.silence_detected",
            after_s=round(self._clock.monotonic() - recording.started_at, 2),
        )
        self._events.publish(CaptureEvent(CaptureEventKind.SILENCE_DETECTED))
        self._set_state(RecordingState.FINALIZING)

        callback = recording.config.on_silence
        if callback is None:
            return
        result = callback()
        if inspect.isawaitable(result):
            task = asyncio.ensure_future(result)
            self._callback_tasks.add(task)
            task.add_done_callback(self._on_callback_done)

    def _on_callback_done(self, task: asyncio.Task) -> None:
        self._callback_tasks.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            log.error("capture.on_silence_failed", error=str(error), error_type=type(error).__name__)

    async def _cancel_callbacks(self) -> None:
        current = asyncio.current_task()
        tasks = [t for t in self._callback_tasks if t is not current]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    async def _silence_watchdog(self, recording: _Recording) -> None:
        """Fire silence on time even when no frames arrive."""
        detector = recording.detector
        while self._recording is recording and self._state is RecordingState.RECORDING:
            remaining = detector.time_until_silence(self._clock.monotonic())
            await self._clock.sleep(remaining if remaining is not None else _WATCHDOG_IDLE_POLL_S)
            if self._recording is not recording or self._state is not RecordingState.RECORDING:
                return
            if detector.poll(self._clock.monotonic()) is SilenceDecision.SILENCE:
                self._on_silence(recording)
                return

    async def _cancel_watchdog(self) -> None:
        task, self._watchdog = self._watchdog, None
        if task is None or task is asyncio.current_task():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _close_mic(self) -> None:
        try:
            await self._mic.close()
        except OSError as e:
            log.warning("capture.mic_close_failed", error=str(e))

    # ── Playback ──────────────────────────────────────────────────────────────

    def play_clip(self, clip: bytes) -> Completion[PlaybackOutcome]:
        """
        Start playing a WAV clip, stopping any playback already running.

        The returned completion resolves once: COMPLETED at the natural end,
        STOPPED if superseded or stopped, FAILED on a decode/device error.
        """
        self._abort_playback()
        completion: Completion[PlaybackOutcome] = Completion()
        self._playback = completion
        self._playback_task = asyncio.create_task(self._run_playback(clip, completion))
        return completion

    async def _run_playback(self, clip: bytes, completion: Completion[PlaybackOutcome]) -> None:
        outcome = PlaybackOutcome.FAILED
        try:
            decoded = decode_clip(clip)
            self._events.publish(CaptureEvent(CaptureEventKind.PLAYBACK_STARTED))
            log.info("playback.started", duration_s=round(decoded.duration_s, 2))
            await self._speaker.play(decoded)
            outcome = PlaybackOutcome.COMPLETED
        except asyncio.CancelledError:
            outcome = PlaybackOutcome.STOPPED
            raise
        except (PlaybackError, OSError) as e:
            log.warning("playback.failed", error=str(e), error_type=type(e).__name__)
        finally:
            if completion.resolve(outcome):
                log.info("playback.finished", outcome=outcome.value)
                self._events.publish(
                    CaptureEvent(CaptureEventKind.PLAYBACK_FINISHED, outcome=outcome)
                )

    def _abort_playback(self) -> None:
        task, self._playback_task = self._playback_task, None
        completion, self._playback = self._playback, None
        if task is not None and not task.done():
            task.cancel()
        if completion is not None and completion.resolve(PlaybackOutcome.STOPPED):
            self._events.publish(
                CaptureEvent(CaptureEventKind.PLAYBACK_FINISHED, outcome=PlaybackOutcome.STOPPED)
            )

    async def stop_playback(self) -> None:
        """Stop the current playback, if any. Its completion resolves STOPPED."""
        task = self._playback_task
        self._abort_playback()
        if task is not None:
            try:
                await task
            except asyncio.CancelledError:
                pass
        await self._speaker.stop()

    async def shutdown(self) -> None:
        await self.cancel_capture()
        if self.is_playing:
            await self.stop_playback()
