"""
Liveguard — Face Detector Adapters
==================================
Wraps the external inference models behind a two-call interface the
scheduler drives once per processed tick:

  detect_faces(frame, detection_confidence, max_faces) -> [Detection]
      BlazeFace boxes (MediaPipe FaceDetector), expanded 10% so the
      landmark model sees the whole face.
  detect_landmarks(frame, faces) -> [Detection]
      FaceMesh points (MediaPipe FaceLandmarker) attached to the
      detector boxes by IoU (> 0.3).

Model loading goes through ModelInitializer: a bounded number of
attempts with a fixed backoff, returning an InitResult instead of
raising. Exhausted retries leave detection inactive.
"""

from __future__ import annotations

import logging
import os
import time
from dataclasses import dataclass
from typing import Callable, List, Optional, Protocol

import cv2
import numpy as np

from liveguard_matcher import attach_landmarks
from liveguard_types import BoundingBox, Detection

_log = logging.getLogger("LiveguardDetector")

_SCRIPT_DIR = os.path.dirname(os.path.abspath(__file__))

# Box growth applied to detector output before landmark matching
BOX_EXPANSION = 0.1


class FaceDetectorBackend(Protocol):
    """What the scheduler needs from an inference backend."""

    def load(self) -> None: ...

    def detect_faces(self, frame: np.ndarray, detection_confidence: float, max_faces: int) -> List[Detection]: ...

    def detect_landmarks(self, frame: np.ndarray, faces: List[Detection]) -> List[Detection]: ...

    def release(self) -> None: ...


# ═══════════════════════════════════════════════════════════════
# Bounded-retry initialisation
# ═══════════════════════════════════════════════════════════════

@dataclass
class InitResult:
    success: bool
    attempts: int
    error: Optional[str] = None


class ModelInitializer:
    """Runs a loader with bounded retries and a fixed backoff.

    retries counts the attempts after the first, so retries=3 means at
    most 4 calls to the loader.
    """

    def __init__(
        self,
        retries: int = 3,
        backoff_ms: float = 2000.0,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.retries = retries
        self.backoff_ms = backoff_ms
        self._sleep = sleep
        self.last_result: Optional[InitResult] = None

    def initialize(self, loader: Callable[[], None]) -> InitResult:
        attempts = 0
        last_error: Optional[str] = None
        while attempts <= self.retries:
            attempts += 1
            try:
                loader()
                _log.info("Models loaded (attempt %d)", attempts)
                self.last_result = InitResult(success=True, attempts=attempts)
                return self.last_result
            except Exception as e:
                last_error = str(e)
                _log.error("Model initialization failed (attempt %d/%d): %s",
                           attempts, self.retries + 1, e)
                if attempts <= self.retries:
                    self._sleep(self.backoff_ms / 1000.0)
        self.last_result = InitResult(success=False, attempts=attempts, error=last_error)
        return self.last_result


# ═══════════════════════════════════════════════════════════════
# Geometry helpers
# ═══════════════════════════════════════════════════════════════

def expand_box(box: BoundingBox, frame_w: int, frame_h: int, factor: float = BOX_EXPANSION) -> BoundingBox:
    """Grow a box by factor (split across both sides), clipped to the frame."""
    dx = box.width * factor / 2.0
    dy = box.height * factor / 2.0
    return BoundingBox.from_corners(
        max(0.0, box.x_min - dx),
        max(0.0, box.y_min - dy),
        min(float(frame_w), box.x_max + dx),
        min(float(frame_h), box.y_max + dy),
    )


def landmarks_to_pixels(face_lms, frame_w: int, frame_h: int) -> np.ndarray:
    """MediaPipe normalized landmarks -> (N, 3) pixel array.

    z is scaled by frame width, matching MediaPipe's depth convention.
    """
    return np.array(
        [[lm.x * frame_w, lm.y * frame_h, lm.z * frame_w] for lm in face_lms],
        dtype=np.float32,
    )


# ═══════════════════════════════════════════════════════════════
# MediaPipe backend
# ═══════════════════════════════════════════════════════════════

class MediaPipeFaceDetector:
    """BlazeFace boxes + FaceMesh landmarks via MediaPipe Tasks.

    Models are created in load(), not __init__, so construction is
    cheap and loading can be retried.
    """

    def __init__(
        self,
        detector_asset: str = "models/blaze_face_short_range.tflite",
        landmarker_asset: str = "models/face_landmarker.task",
        max_faces: int = 1,
        min_detection_confidence: float = 0.5,
    ) -> None:
        self._detector_asset = detector_asset
        self._landmarker_asset = landmarker_asset
        self._max_faces = max_faces
        self._min_confidence = min_detection_confidence
        self._detector = None
        self._landmarker = None

    @property
    def loaded(self) -> bool:
        return self._detector is not None and self._landmarker is not None

    def _resolve(self, asset: str) -> str:
        full_path = asset if os.path.isabs(asset) else os.path.join(_SCRIPT_DIR, asset)
        if not os.path.exists(full_path):
            raise FileNotFoundError(f"MediaPipe model not found: {full_path}")
        return full_path

    def load(self) -> None:
        """Create the FaceDetector and FaceLandmarker tasks."""
        detector_path = self._resolve(self._detector_asset)
        landmarker_path = self._resolve(self._landmarker_asset)

        from mediapipe.tasks import python
        from mediapipe.tasks.python import vision

        detector_options = vision.FaceDetectorOptions(
            base_options=python.BaseOptions(
                model_asset_path=detector_path,
                delegate=python.BaseOptions.Delegate.CPU,
            ),
            running_mode=vision.RunningMode.IMAGE,
            min_detection_confidence=self._min_confidence,
        )
        landmarker_options = vision.FaceLandmarkerOptions(
            base_options=python.BaseOptions(
                model_asset_path=landmarker_path,
                delegate=python.BaseOptions.Delegate.CPU,
            ),
            running_mode=vision.RunningMode.IMAGE,
            num_faces=self._max_faces,
            min_face_detection_confidence=self._min_confidence,
            min_face_presence_confidence=self._min_confidence,
            output_face_blendshapes=False,
        )

        self._detector = vision.FaceDetector.create_from_options(detector_options)
        self._landmarker = vision.FaceLandmarker.create_from_options(landmarker_options)
        _log.info(
            "MediaPipe detector loaded: detector=%s landmarker=%s max_faces=%d",
            os.path.basename(detector_path), os.path.basename(landmarker_path), self._max_faces,
        )

    @staticmethod
    def _to_mp_image(frame: np.ndarray):
        import mediapipe as mp
        # MediaPipe expects RGB input
        rgb_frame = cv2.cvtColor(frame, cv2.COLOR_BGR2RGB)
        return mp.Image(image_format=mp.ImageFormat.SRGB, data=rgb_frame)

    def detect_faces(self, frame: np.ndarray, detection_confidence: float, max_faces: int) -> List[Detection]:
        """Run BlazeFace; returns boxes sorted by confidence, at most max_faces."""
        if self._detector is None:
            _log.error("MediaPipe face detector not initialized")
            return []

        h, w = frame.shape[:2]
        result = self._detector.detect(self._to_mp_image(frame))
        if not result or not result.detections:
            return []

        faces: List[Detection] = []
        for det in result.detections:
            score = det.categories[0].score if det.categories else 0.0
            if score < detection_confidence:
                continue
            bb = det.bounding_box
            raw = BoundingBox.from_corners(
                max(0, bb.origin_x),
                max(0, bb.origin_y),
                min(w, bb.origin_x + bb.width),
                min(h, bb.origin_y + bb.height),
            )
            if raw.width <= 0 or raw.height <= 0:
                continue
            faces.append(Detection(box=expand_box(raw, w, h), probability=float(score)))

        faces.sort(key=lambda d: d.probability, reverse=True)
        return faces[:max_faces]

    def detect_landmarks(self, frame: np.ndarray, faces: List[Detection]) -> List[Detection]:
        """Run FaceMesh and attach each point set to its detector box."""
        if not faces:
            return faces
        if self._landmarker is None:
            _log.error("MediaPipe landmarker not initialized")
            return faces

        h, w = frame.shape[:2]
        result = self._landmarker.detect(self._to_mp_image(frame))
        if not result or not result.face_landmarks:
            return faces

        landmark_sets = [landmarks_to_pixels(face_lms, w, h) for face_lms in result.face_landmarks]
        return attach_landmarks(faces, landmark_sets)

    def release(self) -> None:
        """Release detector resources."""
        for task in (self._detector, self._landmarker):
            if task is not None:
                task.close()
        self._detector = None
        self._landmarker = None
        _log.info("MediaPipe detector released")

    def __enter__(self) -> "MediaPipeFaceDetector":
        return self

    def __exit__(self, *args) -> None:
        self.release()
