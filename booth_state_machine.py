"""
Suit-Booth — Capture State Machine
==================================
Owns the session state of one live camera stream.

    Idle → Tracking → Armed → CountdownRunning(3..1) → Captured
         → Segmenting → PreviewReady → DressUpInFlight → Composited

Consumes per-frame (aligned, blink) observations and user commands.
Rejected commands leave the state untouched and queue a warning
message for the overlay. The countdown runs on an injectable monotonic
clock so it can be driven deterministically.
"""

from __future__ import annotations

import logging
import time
from collections import deque
from typing import Callable, List, Optional

import numpy as np

from booth_types import (
    BoothMessage,
    CaptureState,
    CropMetadata,
    SUSPENDED_STATES,
)

_log = logging.getLogger("BoothState")


class CaptureStateMachine:
    """Blink-triggered countdown capture with alignment guarding.

    Transition rules:
      - Tracking → Armed only on user request while aligned
      - Armed → CountdownRunning(start) on blink while aligned
      - CountdownRunning(n) → Tracking as soon as alignment is lost
      - CountdownRunning(n) → CountdownRunning(n-1) every interval
      - CountdownRunning(0) → Captured immediately
      - Tracking/Armed → Captured on manual capture while aligned
    """

    def __init__(
        self,
        countdown_start: int = 3,
        interval_ms: int = 1000,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.countdown_start = countdown_start
        self.interval_s = interval_ms / 1000.0
        self._clock = clock

        self.state: CaptureState = CaptureState.IDLE
        self.countdown: Optional[int] = None
        self._countdown_deadline: Optional[float] = None

        self.captured_frame: Optional[np.ndarray] = None
        self.crop_metadata: Optional[CropMetadata] = None

        self._messages: deque = deque(maxlen=16)
        self._listeners: List[Callable[[CaptureState, CaptureState], None]] = []
        self._history: deque = deque(maxlen=300)
        self._total_transitions = 0
        self._state_entry_time = clock()

    @classmethod
    def from_config(cls, config: dict, clock: Callable[[], float] = time.monotonic):
        countdown = config.get("countdown", {})
        return cls(
            countdown_start=int(countdown.get("start", 3)),
            interval_ms=int(countdown.get("interval_ms", 1000)),
            clock=clock,
        )

    # ── Properties ────────────────────────────────────────────

    @property
    def armed(self) -> bool:
        return self.state == CaptureState.ARMED

    @property
    def blink_enabled(self) -> bool:
        """Blink evaluation only runs while armed and no countdown is running."""
        return self.state == CaptureState.ARMED

    @property
    def inference_suspended(self) -> bool:
        return self.state in SUSPENDED_STATES

    @property
    def is_tracking(self) -> bool:
        return self.state in (
            CaptureState.TRACKING, CaptureState.ARMED, CaptureState.COUNTDOWN,
        )

    def add_listener(self, listener: Callable[[CaptureState, CaptureState], None]) -> None:
        """Register a callback invoked as ``listener(old, new)`` on every transition."""
        self._listeners.append(listener)

    # ── Lifecycle ─────────────────────────────────────────────

    def mark_ready(self) -> bool:
        """Camera and models are ready: Idle → Tracking."""
        if self.state != CaptureState.IDLE:
            return False
        self._transition(CaptureState.TRACKING)
        return True

    def reset(self) -> None:
        """Back to Idle, dropping every capture artifact."""
        self._clear_capture()
        self._transition(CaptureState.IDLE)

    # ── User commands ─────────────────────────────────────────

    def arm(self, aligned: bool) -> bool:
        """User asks for blink-triggered auto-capture."""
        if self.state == CaptureState.IDLE:
            self._warn("Camera is still starting up, please wait")
            return False
        if self.state != CaptureState.TRACKING:
            self._warn(f"Cannot arm while {self.state.value}")
            return False
        if not aligned:
            self._warn("Align your face with the guide first")
            return False
        self._transition(CaptureState.ARMED)
        self._push("Ready! Blink to start the countdown", "success", 2.0)
        return True

    def disarm(self) -> bool:
        if self.state != CaptureState.ARMED:
            return False
        self._transition(CaptureState.TRACKING)
        return True

    def manual_capture(self, aligned: bool) -> bool:
        """Capture immediately, bypassing the blink and the countdown."""
        if self.state not in (CaptureState.TRACKING, CaptureState.ARMED):
            self._warn(f"Cannot capture while {self.state.value}")
            return False
        if not aligned:
            self._warn("Align your face with the guide first")
            return False
        self._transition(CaptureState.CAPTURED)
        return True

    def request_dress_up(self, has_body: bool) -> bool:
        if self.state != CaptureState.PREVIEW_READY:
            self._warn(f"Nothing to dress up while {self.state.value}")
            return False
        if not has_body:
            self._warn("No body region in this capture")
            return False
        self._transition(CaptureState.DRESS_UP_IN_FLIGHT)
        self._push("Dressing up...", "info", 2.0)
        return True

    def discard(self) -> bool:
        """Back/discard from a preview: full session reset into Tracking."""
        if self.state not in (CaptureState.PREVIEW_READY, CaptureState.COMPOSITED):
            return False
        self._clear_capture()
        self._transition(CaptureState.TRACKING)
        return True

    # ── Per-frame observations ────────────────────────────────

    def on_frame(self, aligned: bool, blink: bool = False) -> None:
        """Apply one frame's alignment/blink observation."""
        if self.state == CaptureState.COUNTDOWN:
            if not aligned:
                self._abort_countdown()
            return

        if self.state == CaptureState.ARMED and blink and aligned:
            self._start_countdown()

    def tick(self, now: Optional[float] = None) -> bool:
        """Advance the countdown. Returns True when the capture fires."""
        if self.state != CaptureState.COUNTDOWN or self._countdown_deadline is None:
            return False
        now = self._clock() if now is None else now

        while self.countdown is not None and now >= self._countdown_deadline:
            self.countdown -= 1
            self._countdown_deadline += self.interval_s
            if self.countdown <= 0:
                self.countdown = None
                self._countdown_deadline = None
                self._transition(CaptureState.CAPTURED)
                return True
            self._push(str(self.countdown), "info", 0.95)
        return False

    # ── Capture pipeline results ──────────────────────────────

    def begin_segmentation(self) -> bool:
        if self.state != CaptureState.CAPTURED:
            return False
        self._transition(CaptureState.SEGMENTING)
        return True

    def segmentation_succeeded(self, metadata: CropMetadata) -> bool:
        if self.state != CaptureState.SEGMENTING:
            return False
        self.crop_metadata = metadata
        self._transition(CaptureState.PREVIEW_READY)
        self._push("Photo captured!", "success", 2.0)
        return True

    def segmentation_failed(self, reason: str) -> bool:
        if self.state not in (CaptureState.CAPTURED, CaptureState.SEGMENTING):
            return False
        self._clear_capture()
        self._transition(CaptureState.TRACKING)
        self._push(f"Capture failed: {reason}", "error", 3.0)
        return True

    def dress_up_succeeded(self) -> bool:
        if self.state != CaptureState.DRESS_UP_IN_FLIGHT:
            return False
        self._transition(CaptureState.COMPOSITED)
        self._push("Dress-up complete!", "success", 2.0)
        return True

    def dress_up_failed(self, reason: str) -> bool:
        if self.state != CaptureState.DRESS_UP_IN_FLIGHT:
            return False
        self._transition(CaptureState.PREVIEW_READY)
        self._push(f"Dress-up failed: {reason}", "error", 3.0)
        return True

    # ── Messages & summary ────────────────────────────────────

    def notify(self, text: str, level: str = "warning", duration_s: float = 2.0) -> None:
        """Queue a user-visible message without changing state."""
        if level == "warning":
            _log.warning("%s", text)
        self._push(text, level, duration_s)

    def pop_messages(self) -> list[BoothMessage]:
        msgs = list(self._messages)
        self._messages.clear()
        return msgs

    def get_summary(self) -> dict:
        return {
            "state": self.state.value,
            "countdown": self.countdown,
            "armed": self.armed,
            "state_duration_ms": round((self._clock() - self._state_entry_time) * 1000.0, 1),
            "total_transitions": self._total_transitions,
            "has_capture": self.captured_frame is not None,
        }

    @property
    def history(self) -> list:
        return list(self._history)

    # ── Private helpers ───────────────────────────────────────

    def _start_countdown(self) -> None:
        self._transition(CaptureState.COUNTDOWN)
        self.countdown = self.countdown_start
        self._countdown_deadline = self._clock() + self.interval_s
        self._push(str(self.countdown), "info", 0.95)

    def _abort_countdown(self) -> None:
        self.countdown = None
        self._countdown_deadline = None
        self._transition(CaptureState.TRACKING)
        self._warn("Countdown cancelled: face left the guide")

    def _clear_capture(self) -> None:
        self.countdown = None
        self._countdown_deadline = None
        self.captured_frame = None
        self.crop_metadata = None

    def _transition(self, new_state: CaptureState) -> None:
        old = self.state
        self.state = new_state
        self._total_transitions += 1
        self._state_entry_time = self._clock()
        self._history.append((self._state_entry_time, old.value, new_state.value))
        _log.info("State %s → %s", old.value, new_state.value)
        for listener in self._listeners:
            listener(old, new_state)

    def _warn(self, text: str) -> None:
        _log.warning("Rejected: %s", text)
        self._push(text, "warning", 2.0)

    def _push(self, text: str, level: str, duration_s: float) -> None:
        self._messages.append(
            BoothMessage(text=text, level=level, duration_s=duration_s,
                         created_at=self._clock())
        )
