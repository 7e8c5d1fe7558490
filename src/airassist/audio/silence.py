"""
audio/silence.py — Silence detection state machine

Pure policy, no audio hardware and no wall clock: callers pass the frame
energy and the current time, the detector returns a decision.

Energy estimate:
    instant attack  — a loud frame raises the estimate immediately
    slow release    — the estimate decays exponentially (time constant
                      release_s), so the short dips between words never
                      read as silence

Timer:
    The inactivity timer runs while the estimate is at or below the
    threshold. Any frame whose estimate exceeds the threshold resets it.
    When the estimate has stayed quiet for inactivity_s the detector
    returns SILENCE exactly once; every call afterwards returns DONE.

    poll(now) advances the same logic without a frame, so silence still
    fires when the microphone stops delivering audio.
"""

from __future__ import annotations

import math
from enum import Enum
from typing import Optional

import numpy as np


class SilenceDecision(str, Enum):
    SPEECH  = "speech"    # estimate above threshold
    QUIET   = "quiet"     # below threshold, timer running
    SILENCE = "silence"   # inactivity window elapsed (returned once)
    DONE    = "done"      # already fired for this recording


def frame_energy(pcm: bytes) -> float:
    """Normalized RMS of little-endian int16 PCM, in [0, 1]."""
    usable = len(pcm) - (len(pcm) % 2)
    if usable == 0:
        return 0.0
    samples = np.frombuffer(pcm[:usable], dtype="<i2").astype(np.float64)
    rms = math.sqrt(float(np.mean(samples * samples)))
    return min(1.0, rms / 32768.0)


class SilenceDetector:
    """
    One detector per recording. reset() starts a new window at `now`.

    Args:
        threshold:     normalized energy at or below which a frame is quiet
        inactivity_s:  continuous quiet time required to declare silence
        release_s:     decay time constant of the energy estimate; 0 means
                       the estimate follows each frame exactly
    """

    def __init__(
        self,
        threshold: float,
        inactivity_s: float = 2.0,
        release_s: float = 0.1,
        now: float = 0.0,
    ) -> None:
        self.threshold = threshold
        self.inactivity_s = inactivity_s
        self.release_s = release_s
        self.reset(now)

    def reset(self, now: float) -> None:
        self._estimate = 0.0
        self._last_at = now
        self._quiet_since: Optional[float] = now if self._estimate <= self.threshold else None
        self._fired = False

    # ── Introspection ─────────────────────────────────────────────────────────

    @property
    def fired(self) -> bool:
        return self._fired

    @property
    def quiet_since(self) -> Optional[float]:
        return self._quiet_since

    def estimate_at(self, now: float) -> float:
        """The decayed energy estimate at `now` (no new frame)."""
        dt = now - self._last_at
        if dt <= 0:
            return self._estimate
        if self.release_s <= 0:
            return 0.0
        return self._estimate * math.exp(-dt / self.release_s)

    # ── Decisions ─────────────────────────────────────────────────────────────

    def process(self, energy: float, now: float) -> SilenceDecision:
        """Feed one frame's energy observed at `now`."""
        if self._fired:
            return SilenceDecision.DONE

        self._note_decay(now)
        estimate = max(energy, self.estimate_at(now))
        self._estimate = estimate
        self._last_at = now

        if estimate > self.threshold:
            self._quiet_since = None
            return SilenceDecision.SPEECH

        if self._quiet_since is None:
            self._quiet_since = now
        return self._check(now)

    def process_frame(self, pcm: bytes, now: float) -> SilenceDecision:
        return self.process(frame_energy(pcm), now)

    def poll(self, now: float) -> SilenceDecision:
        """Re-evaluate without a frame (timer tick)."""
        if self._fired:
            return SilenceDecision.DONE
        self._note_decay(now)
        if self._quiet_since is None:
            return SilenceDecision.SPEECH
        return self._check(now)

    def time_until_silence(self, now: float) -> Optional[float]:
        """
        Seconds until silence would fire if no louder frame arrives.

        None when already fired, or when the estimate can never decay below
        a zero threshold.
        """
        if self._fired:
            return None
        start = self._quiet_since
        if start is None:
            start = self._crossing_time()
            if start is None:
                return None
        return max(0.0, start + self.inactivity_s - now)

    # ── Internals ─────────────────────────────────────────────────────────────

    def _crossing_time(self) -> Optional[float]:
        """When the decaying estimate reaches the threshold."""
        if self._estimate <= self.threshold:
            return self._last_at
        if self.release_s <= 0:
            return self._last_at
        if self.threshold <= 0:
            return None
        return self._last_at + self.release_s * math.log(self._estimate / self.threshold)

    def _note_decay(self, now: float) -> None:
        """Start the quiet timer at the exact moment the estimate decayed past the threshold."""
        if self._quiet_since is not None:
            return
        crossing = self._crossing_time()
        if crossing is not None and crossing <= now:
            self._quiet_since = crossing

    def _check(self, now: float) -> SilenceDecision:
        if now - self._quiet_since >= self.inactivity_s:
            self._fired = True
            return SilenceDecision.SILENCE
        return SilenceDecision.QUIET
