"""
Liveguard — Liveness Step State Machine
=======================================
Owns the LivenessSession and sequences the fixed challenge order:

    intro → faceAlignment → blinkEyes → turnLeft → turnRight → smile → completed

Rules:
  - progress is clamped to [0, 100]; once it reaches 100 it is held
    there until advance() or reset()
  - step_completed flags and detection-history action flags only ever
    go False → True until reset()
  - a step that runs past step_timeout_ms gets its progress zeroed in
    place (soft retry); the step and its start time are unchanged
  - the machine never advances on its own: ready_to_advance tells the
    UI it may call advance() after its display delay
"""

from __future__ import annotations

import logging
import time
from typing import Callable, Optional

from liveguard_types import (
    CHALLENGE_STEPS,
    DEFAULT_STEP_TIMEOUT_MS,
    STEP_ORDER,
    DetectionHistory,
    LivenessSession,
    LivenessStep,
)

_log = logging.getLogger("LivenessStateMachine")

MAX_PROGRESS = 100.0


def monotonic_ms() -> float:
    return time.monotonic() * 1000.0


def next_step(step: LivenessStep) -> LivenessStep:
    """Successor in the fixed order; completed is terminal."""
    idx = STEP_ORDER.index(step)
    return STEP_ORDER[min(idx + 1, len(STEP_ORDER) - 1)]


class LivenessStateMachine:
    """Step sequencing, progress bookkeeping and timeouts for one session."""

    def __init__(
        self,
        step_timeout_ms: float = DEFAULT_STEP_TIMEOUT_MS,
        clock: Optional[Callable[[], float]] = None,
        audit=None,
    ):
        """Initialize in the intro step.

        Args:
            step_timeout_ms: Soft timeout per challenge step.
            clock: Millisecond time source (monotonic by default).
            audit: Optional LiveguardLogger for structured events.
        """
        self._clock = clock or monotonic_ms
        self._audit = audit
        self.session = LivenessSession(step_timeout_ms=step_timeout_ms)
        self._total_transitions = 0

    # ── Read-only views ───────────────────────────────────────

    @property
    def current_step(self) -> LivenessStep:
        return self.session.current_step

    @property
    def progress(self) -> float:
        return self.session.progress

    @property
    def history(self) -> DetectionHistory:
        return self.session.detection_history

    @property
    def is_active(self) -> bool:
        """True while a challenge step (not intro/completed) is running."""
        return self.session.current_step in CHALLENGE_STEPS

    @property
    def ready_to_advance(self) -> bool:
        return self.is_active and self.session.progress >= MAX_PROGRESS

    def overall_progress(self) -> float:
        """Whole-check progress for display, in [0, 100]."""
        step = self.session.current_step
        if step == LivenessStep.COMPLETED:
            return 100.0
        if step == LivenessStep.INTRO:
            return 0.0
        n = len(CHALLENGE_STEPS)
        done = sum(1 for s in CHALLENGE_STEPS if self.session.step_completed[s])
        base = done / n * 100.0
        current = self.session.progress / 100.0 * (1.0 / n) * 100.0
        return min(base + current, 99.0)

    # ── Transitions ───────────────────────────────────────────

    def start(self) -> None:
        """intro → faceAlignment with a fresh detection history."""
        s = self.session
        s.current_step = LivenessStep.FACE_ALIGNMENT
        s.progress = 0.0
        s.step_completed[LivenessStep.INTRO] = True
        s.step_start_time = self._clock()
        s.detection_history = DetectionHistory()
        self._total_transitions += 1
        _log.info("Liveness check started")
        self._emit("session_started", step=s.current_step.value)

    def advance(self) -> LivenessStep:
        """Mark the current step completed and move to the next one."""
        s = self.session
        previous = s.current_step
        s.step_completed[previous] = True
        s.current_step = next_step(previous)
        s.progress = 0.0
        s.step_start_time = self._clock()
        self._total_transitions += 1
        _log.info("Step %s -> %s", previous.value, s.current_step.value)
        self._emit("step_advanced", previous=previous.value, current=s.current_step.value)
        return s.current_step

    def reset(self) -> None:
        """Back to intro with every flag cleared (timeout setting kept)."""
        self.session = LivenessSession(step_timeout_ms=self.session.step_timeout_ms)
        self._total_transitions = 0
        _log.info("Liveness check reset")
        self._emit("session_reset")

    # ── Mutations driven by classifiers ───────────────────────

    def apply_progress(self, value: float) -> float:
        """Store clamped progress; 100 is sticky within a step."""
        s = self.session
        if s.progress >= MAX_PROGRESS:
            return s.progress
        s.progress = min(MAX_PROGRESS, max(0.0, float(value)))
        return s.progress

    def mark_action(self, name: str, detected: bool = True) -> None:
        """Latch a detection-history action flag."""
        if name not in DetectionHistory.ACTIONS:
            raise ValueError(f"Unknown liveness action: {name!r}")
        if not detected:
            return
        if not getattr(self.history, name):
            setattr(self.history, name, True)
            _log.info("Action detected: %s (step=%s)", name, self.current_step.value)
            self._emit("action_detected", action=name, step=self.current_step.value)

    def check_timeout(self, now: Optional[float] = None) -> bool:
        """Zero the progress of a step that ran past its timeout.

        Returns:
            True if the timeout fired on this call.
        """
        s = self.session
        now = self._clock() if now is None else now
        if s.step_start_time > 0 and now - s.step_start_time > s.step_timeout_ms:
            before = s.progress
            self.apply_progress(0)
            if before != s.progress:
                _log.debug("Step %s timed out, progress reset", s.current_step.value)
                self._emit("step_timeout", step=s.current_step.value)
            return True
        return False

    # ── Introspection ─────────────────────────────────────────

    def get_summary(self) -> dict:
        summary = self.session.to_dict()
        summary.update({
            "overall_progress": round(self.overall_progress(), 1),
            "ready_to_advance": self.ready_to_advance,
            "total_transitions": self._total_transitions,
        })
        return summary

    def _emit(self, event: str, **data) -> None:
        if self._audit is not None:
            self._audit.event(event, **data)
