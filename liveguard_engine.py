"""
Liveguard — Liveness Engine
===========================
Wires the frame scheduler, the gesture classifiers and the step state
machine into one object the launcher (or any UI) drives.

  scheduler thread ──> process_detections() ──> classifier ──> state machine
  UI thread        ──> start_check() / advance() / reset() / poll_advance()

Both threads mutate the session, so every mutation runs under one lock.
Only the first detected face is scored.
"""

from __future__ import annotations

import logging
import threading
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from gestures import GestureClassifier, build_classifiers
from liveguard_config import LiveguardConfig
from liveguard_detector import MediaPipeFaceDetector, ModelInitializer
from liveguard_protocol import InitRequest
from liveguard_scheduler import AdaptiveFrameScheduler, FrameSource, OffloadedFrameScheduler
from liveguard_state import LivenessStateMachine, monotonic_ms
from liveguard_types import Detection, GestureResult, LivenessStep

_log = logging.getLogger("LiveguardEngine")


def build_scheduler(
    config: LiveguardConfig,
    frame_source: FrameSource,
    on_results,
    detector=None,
    clock: Optional[Callable[[], float]] = None,
) -> AdaptiveFrameScheduler:
    """Scheduler for the configured execution context.

    use_alternate_execution_context selects the worker-process
    scheduler; otherwise detection runs on the scheduler thread.
    """
    common = dict(
        frame_source=frame_source,
        on_results=on_results,
        model=config.model,
        performance=config.performance,
        target_fps=config.target_fps,
        clock=clock,
    )
    if config.performance.use_alternate_execution_context:
        from performance.detection_worker import DetectionWorkerClient

        client = DetectionWorkerClient(InitRequest(
            detector_asset=config.detector_asset,
            landmarker_asset=config.landmarker_asset,
            max_faces=config.model.max_faces,
            min_detection_confidence=config.model.detection_confidence,
        ))
        return OffloadedFrameScheduler(client, **common)

    if detector is None:
        detector = MediaPipeFaceDetector(
            detector_asset=config.detector_asset,
            landmarker_asset=config.landmarker_asset,
            max_faces=config.model.max_faces,
            min_detection_confidence=config.model.detection_confidence,
        )
    return AdaptiveFrameScheduler(detector, **common)


class LiveguardEngine:
    """Session owner and dispatcher for one liveness check."""

    def __init__(
        self,
        config: Optional[LiveguardConfig] = None,
        audit=None,
        clock: Optional[Callable[[], float]] = None,
        classifiers: Optional[Dict[LivenessStep, GestureClassifier]] = None,
    ):
        self.config = config or LiveguardConfig()
        self.audit = audit
        self._clock = clock or monotonic_ms
        self.state = LivenessStateMachine(self.config.step_timeout_ms, clock=self._clock, audit=audit)
        self.classifiers = classifiers or build_classifiers()
        self.scheduler: Optional[AdaptiveFrameScheduler] = None

        self._lock = threading.RLock()
        self._ready_since: Optional[float] = None
        self.latest_detections: List[Detection] = []
        self.frame_size: Optional[Tuple[int, int]] = None
        self.last_result: Optional[GestureResult] = None

    # ── Detection input ───────────────────────────────────────

    def process_detections(
        self,
        detections: Sequence[Detection],
        frame_size: Optional[Tuple[int, int]] = None,
    ) -> Optional[GestureResult]:
        """Score the active step from one tick's detections.

        Returns:
            The classifier result, or None when no step is active or no
            face was found.
        """
        with self._lock:
            self.latest_detections = list(detections)
            if frame_size is not None:
                self.frame_size = frame_size

            if not self.state.is_active:
                return None
            self.state.check_timeout()
            if not detections:
                return None

            classifier = self.classifiers.get(self.state.current_step)
            if classifier is None:
                return None

            result = classifier.classify(
                detections[0], self.frame_size, self.state.history, self.state.progress
            )
            if result.action is not None:
                self.state.mark_action(result.action)
            if result.progress is not None:
                self.state.apply_progress(result.progress)
            self.last_result = result
            return result

    # ── UI commands ───────────────────────────────────────────

    def start_check(self) -> None:
        with self._lock:
            self._ready_since = None
            self.state.start()

    def advance(self) -> LivenessStep:
        with self._lock:
            self._ready_since = None
            return self.state.advance()

    def reset(self) -> None:
        with self._lock:
            self._ready_since = None
            self.last_result = None
            self.state.reset()

    def poll_advance(self, now: Optional[float] = None) -> bool:
        """Advance a passed step once it has shown 100% for advance_delay_ms.

        Returns:
            True if the step advanced on this call.
        """
        with self._lock:
            if not self.state.ready_to_advance:
                self._ready_since = None
                return False
            now = self._clock() if now is None else now
            if self._ready_since is None:
                self._ready_since = now
            if now - self._ready_since < self.config.advance_delay_ms:
                return False
            self._ready_since = None
            self.state.advance()
            return True

    def get_status(self) -> dict:
        with self._lock:
            status = self.state.get_summary()
            status["faces"] = len(self.latest_detections)
            if self.last_result is not None:
                status["metrics"] = dict(self.last_result.metrics)
        if self.scheduler is not None:
            status["performance"] = self.scheduler.metrics.to_dict()
        return status

    # ── Scheduler lifecycle ───────────────────────────────────

    def attach_scheduler(self, frame_source: FrameSource, detector=None) -> AdaptiveFrameScheduler:
        self.scheduler = build_scheduler(self.config, frame_source, self.process_detections, detector=detector)
        return self.scheduler

    def initialize(self, initializer: Optional[ModelInitializer] = None):
        """Load models through the scheduler (bounded retry)."""
        if self.scheduler is None:
            raise RuntimeError("No scheduler attached")
        initializer = initializer or ModelInitializer(
            retries=self.config.init_retries, backoff_ms=self.config.init_backoff_ms
        )
        result = self.scheduler.initialize(initializer)
        if not result.success and self.audit is not None:
            self.audit.event("model_init_failed", attempts=result.attempts, error=result.error)
        return result

    def run(self) -> None:
        if self.scheduler is None:
            raise RuntimeError("No scheduler attached")
        self.scheduler.start()

    def report_metrics(self) -> None:
        if self.scheduler is not None and self.audit is not None:
            self.audit.log_metrics(self.scheduler.metrics.to_dict())

    def stop(self) -> None:
        if self.scheduler is not None:
            self.scheduler.stop()
            release = getattr(self.scheduler.detector, "release", None)
            if release is not None:
                release()
        with self._lock:
            self.latest_detections = []
