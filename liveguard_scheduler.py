"""
Liveguard — Adaptive Frame Scheduler
====================================
Per-tick detection loop with a self-tuning skip budget.

Each tick:
  1. fps from the delta to the previous tick
  2. skip if a detection is already in flight, or if the skip budget
     is positive (the budget is decremented)
  3. otherwise: face detection every processed tick; landmarks only
     when enabled, a face was found and landmark_throttle_ms has
     elapsed (else carried from the previous tick by IoU > 0.5);
     expressions recomputed every expression_throttle_ms (else carried)
  4. results go to the on_results callback, metrics are refreshed
  5. next skip budget = clamp(floor(detect_ms / frame_interval_ms),
     0, max_skip_frames); in-flight is cleared unconditionally

Two drivers share the loop:
  AdaptiveFrameScheduler   detection runs in the calling thread
  OffloadedFrameScheduler  detection runs in a worker process
                           (performance/detection_worker.py)
"""

from __future__ import annotations

import logging
import math
import threading
import time
from typing import Callable, List, Optional, Sequence, Tuple

import numpy as np
import psutil

from liveguard_detector import FaceDetectorBackend, InitResult, ModelInitializer
from liveguard_features import extract_features
from liveguard_matcher import CARRY_IOU_THRESHOLD, best_match, carry_landmarks
from liveguard_types import (
    Detection,
    ModelSettings,
    PerformanceConfig,
    PerformanceMetrics,
)

_log = logging.getLogger("FrameScheduler")

TARGET_FPS = 30.0

FrameSource = Callable[[], Optional[np.ndarray]]
ResultCallback = Callable[[List[Detection], Tuple[int, int]], None]


def next_skip_count(detect_time_ms: float, frame_interval_ms: float, max_skip_frames: int) -> int:
    """How many ticks to skip after a detection that took detect_time_ms."""
    if frame_interval_ms <= 0:
        return 0
    return min(max(0, math.floor(detect_time_ms / frame_interval_ms)), max_skip_frames)


def process_memory_mb() -> float:
    """Resident memory of this process in MB (0.0 if unavailable)."""
    try:
        return psutil.Process().memory_info().rss / 1024 / 1024
    except psutil.Error as e:
        _log.debug("Memory probe failed: %s", e)
        return 0.0


class AdaptiveFrameScheduler:
    """Cooperative scheduler: runs the detector inside tick().

    tick() can be driven by the built-in loop thread (start/stop) or
    called directly, e.g. from a UI timer or a test with an explicit
    clock.
    """

    def __init__(
        self,
        detector: FaceDetectorBackend,
        frame_source: FrameSource,
        on_results: Optional[ResultCallback] = None,
        model: Optional[ModelSettings] = None,
        performance: Optional[PerformanceConfig] = None,
        target_fps: float = TARGET_FPS,
        clock: Optional[Callable[[], float]] = None,
    ):
        """
        Args:
            detector: Backend with detect_faces / detect_landmarks.
            frame_source: Returns the latest BGR frame, or None if none yet.
            on_results: Receives (detections, (width, height)) per processed tick.
            model: Detection settings (confidence, max faces, feature toggles).
            performance: Throttling preset.
            target_fps: Loop rate; also sets the skip-budget frame interval.
            clock: Millisecond time source (monotonic by default).
        """
        self.detector = detector
        self.frame_source = frame_source
        self.on_results = on_results
        self.model = model or ModelSettings()
        self.performance = performance or PerformanceConfig()
        self.target_fps = target_fps
        self.frame_interval_ms = 1000.0 / target_fps
        self._clock = clock or (lambda: time.monotonic() * 1000.0)

        self.metrics = PerformanceMetrics()
        self.detections: List[Detection] = []
        self.detector_ready = False
        self.init_result: Optional[InitResult] = None

        self._in_flight = False
        self._skip_count = 0
        self._last_tick: Optional[float] = None
        self._last_landmark_run = float("-inf")
        self._last_expression_run = float("-inf")

        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    # ── State views ───────────────────────────────────────────

    @property
    def in_flight(self) -> bool:
        return self._in_flight

    @property
    def skip_count(self) -> int:
        return self._skip_count

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    # ── Initialisation ────────────────────────────────────────

    def initialize(self, initializer: Optional[ModelInitializer] = None) -> InitResult:
        """Load detector models with bounded retry.

        On failure detection stays inactive: ticks still run (fps is
        measured) but no frame is processed.
        """
        initializer = initializer or ModelInitializer()
        self.init_result = initializer.initialize(self.detector.load)
        self.detector_ready = self.init_result.success
        if not self.detector_ready:
            _log.error("Detector unavailable after %d attempts: %s",
                       self.init_result.attempts, self.init_result.error)
        return self.init_result

    # ── Per-tick processing ───────────────────────────────────

    def _update_fps(self, now: float) -> None:
        if self._last_tick is not None:
            delta = now - self._last_tick
            if delta > 0:
                self.metrics.fps = 1000.0 / delta
        self._last_tick = now

    def _should_skip(self) -> bool:
        if self._in_flight:
            return True
        if self._skip_count > 0:
            self._skip_count -= 1
            return True
        return False

    def _attach_expressions(self, faces: Sequence[Detection], now: float) -> List[Detection]:
        if not self.model.expressions_enabled:
            return [f.with_expressions(None) for f in faces]
        if now - self._last_expression_run >= self.performance.expression_throttle_ms:
            self._last_expression_run = now
            return [
                f.with_expressions(extract_features(f.landmarks).to_expressions()) if f.has_landmarks else f
                for f in faces
            ]
        # Throttled: keep the previous tick's expressions for the same face
        carried = []
        for face in faces:
            if face.expressions is None:
                match, score = best_match(face.box, self.detections, key=lambda d: d.box)
                if match is not None and score > CARRY_IOU_THRESHOLD:
                    face = face.with_expressions(match.expressions)
            carried.append(face)
        return carried

    def _detect(self, frame: np.ndarray) -> List[Detection]:
        t0 = self._clock()
        try:
            return self.detector.detect_faces(
                frame, self.model.detection_confidence, self.model.max_faces
            )
        finally:
            self.metrics.detect_time_ms = self._clock() - t0

    def _landmarks(self, frame: np.ndarray, faces: List[Detection], now: float) -> List[Detection]:
        self.metrics.landmark_time_ms = 0.0
        if not faces:
            return faces
        run_landmarks = (
            self.model.landmarks_enabled
            and now - self._last_landmark_run >= self.performance.landmark_throttle_ms
        )
        if run_landmarks:
            t0 = self._clock()
            faces = self.detector.detect_landmarks(frame, faces)
            self.metrics.landmark_time_ms = self._clock() - t0
            self._last_landmark_run = now
            return faces
        return carry_landmarks(faces, self.detections, CARRY_IOU_THRESHOLD)

    def _process(self, frame: np.ndarray, now: float) -> List[Detection]:
        faces = self._detect(frame)
        faces = self._landmarks(frame, faces, now)
        return self._attach_expressions(faces, now)

    def tick(self, now: Optional[float] = None) -> bool:
        """Run one scheduler tick.

        Returns:
            True if a frame was processed on this tick.
        """
        now = self._clock() if now is None else now
        self._update_fps(now)

        if not self.detector_ready or self._should_skip():
            return False

        frame = self.frame_source()
        if frame is None:
            return False

        self._in_flight = True
        try:
            try:
                faces = self._process(frame, now)
            except Exception as e:
                _log.error("Detection failed: %s", e)
                faces = []
            self.detections = faces
            self.metrics.memory_mb = process_memory_mb()
            self._skip_count = next_skip_count(
                self.metrics.detect_time_ms, self.frame_interval_ms, self.performance.max_skip_frames
            )
            if self.on_results is not None:
                h, w = frame.shape[:2]
                self.on_results(faces, (w, h))
        finally:
            self._in_flight = False
        return True

    # ── Loop thread ───────────────────────────────────────────

    def _run(self) -> None:
        interval_s = self.frame_interval_ms / 1000.0
        while not self._stop_event.is_set():
            started = time.monotonic()
            try:
                self.tick()
            except Exception as e:
                _log.error("Scheduler tick error: %s", e, exc_info=True)
            remaining = interval_s - (time.monotonic() - started)
            self._stop_event.wait(max(0.0, remaining))

    def start(self) -> None:
        """Start the loop thread (no-op if already running)."""
        if self.running:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run, name="liveguard-scheduler", daemon=True)
        self._thread.start()
        _log.info("Scheduler started at %.0f FPS target", self.target_fps)

    def stop(self) -> None:
        """Cancel the next tick and clear detections."""
        self._stop_event.set()
        if self._thread is not None and self._thread is not threading.current_thread():
            self._thread.join(timeout=1.0)
        self._thread = None
        self.detections = []
        _log.info("Scheduler stopped")


class OffloadedFrameScheduler(AdaptiveFrameScheduler):
    """Scheduler whose detection runs in a worker process.

    Frames are posted through a DetectionWorkerClient. The client's
    pending table holds at most one request, so a tick that finds a
    request outstanding is skipped. Responses are collected on the next
    tick; fps is averaged over 1-second windows.
    """

    FPS_WINDOW_MS = 1000.0

    def __init__(self, client, frame_source: FrameSource, **kwargs):
        super().__init__(detector=client, frame_source=frame_source, **kwargs)
        self.client = client
        self._window_start: Optional[float] = None
        self._window_frames = 0

    def initialize(self, initializer: Optional[ModelInitializer] = None) -> InitResult:
        """Boot the worker and wait for its initialized message."""
        initializer = initializer or ModelInitializer()
        self.init_result = initializer.initialize(self.client.start)
        self.detector_ready = self.init_result.success
        if not self.detector_ready:
            _log.error("Detection worker unavailable after %d attempts: %s",
                       self.init_result.attempts, self.init_result.error)
        return self.init_result

    def _update_fps(self, now: float) -> None:
        if self._window_start is None:
            self._window_start = now
        elapsed = now - self._window_start
        if elapsed >= self.FPS_WINDOW_MS:
            self.metrics.fps = self._window_frames / (elapsed / 1000.0)
            self._window_frames = 0
            self._window_start = now
        self._window_frames += 1
        self._last_tick = now

    def _collect(self, now: float) -> bool:
        """Deliver a finished worker response, if any."""
        response = self.client.poll()
        if response is None:
            return False
        faces, elapsed_ms = response
        if not any(f.has_landmarks for f in faces):
            faces = carry_landmarks(faces, self.detections, CARRY_IOU_THRESHOLD)
        faces = self._attach_expressions(faces, now)
        self.detections = faces
        self.metrics.detect_time_ms = elapsed_ms
        self.metrics.memory_mb = process_memory_mb()
        self._skip_count = next_skip_count(
            elapsed_ms, self.frame_interval_ms, self.performance.max_skip_frames
        )
        if self.on_results is not None and self.client.last_frame_size is not None:
            self.on_results(faces, self.client.last_frame_size)
        return True

    def tick(self, now: Optional[float] = None) -> bool:
        now = self._clock() if now is None else now
        self._update_fps(now)
        if not self.detector_ready or self._in_flight:
            return False

        self._in_flight = True
        try:
            self._collect(now)
        finally:
            self._in_flight = False

        # A request still outstanding in the worker counts as in flight
        if self.client.has_pending or self._should_skip():
            return False

        frame = self.frame_source()
        if frame is None:
            return False
        want_landmarks = (
            self.model.landmarks_enabled
            and now - self._last_landmark_run >= self.performance.landmark_throttle_ms
        )
        request_id = self.client.submit(
            frame, self.model.detection_confidence, self.model.max_faces, landmarks=want_landmarks
        )
        if request_id is None:
            return False
        if want_landmarks:
            self._last_landmark_run = now
        return True

    def stop(self) -> None:
        super().stop()
        self.client.cancel_pending()
