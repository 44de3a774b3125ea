"""
Liveguard — Shared Data Model
=============================
Dataclasses and enums passed between the feature extractor, the
gesture classifiers, the step state machine and the frame scheduler.

  - BoundingBox / Detection: produced once per processed frame
  - LivenessStep / LivenessSession: owned by LivenessStateMachine
  - PerformanceConfig / PerformanceMetrics: scheduler tuning + telemetry
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field, asdict, replace
from enum import Enum
from typing import Dict, Optional, Tuple

import numpy as np


# ═══════════════════════════════════════════════════════════════
# Detection
# ═══════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class BoundingBox:
    """Axis-aligned face box in pixel coordinates."""
    x_min: float
    y_min: float
    x_max: float
    y_max: float
    width: float
    height: float

    @classmethod
    def from_corners(cls, x_min: float, y_min: float, x_max: float, y_max: float) -> "BoundingBox":
        return cls(
            x_min=float(x_min), y_min=float(y_min),
            x_max=float(x_max), y_max=float(y_max),
            width=float(x_max - x_min), height=float(y_max - y_min),
        )

    @classmethod
    def from_xywh(cls, x: float, y: float, w: float, h: float) -> "BoundingBox":
        return cls.from_corners(x, y, x + w, y + h)

    @classmethod
    def from_points(cls, points: np.ndarray) -> "BoundingBox":
        """Tight box around the (x, y) extent of a keypoint array."""
        xs = points[:, 0]
        ys = points[:, 1]
        return cls.from_corners(xs.min(), ys.min(), xs.max(), ys.max())

    @property
    def area(self) -> float:
        return max(0.0, self.width) * max(0.0, self.height)

    @property
    def center(self) -> Tuple[float, float]:
        return ((self.x_min + self.x_max) / 2.0, (self.y_min + self.y_max) / 2.0)

    def to_dict(self) -> dict:
        return asdict(self)


def new_detection_id() -> str:
    return uuid.uuid4().hex


@dataclass(frozen=True)
class Detection:
    """One face found in one frame.

    Attributes:
        box: Face bounding box in pixel coordinates.
        id: Identity token, fresh for every frame.
        landmarks: (N, 3) MediaPipe FaceMesh points (x, y, z) in pixels,
                   or None when landmark extraction did not run and no
                   prior match could be carried forward.
        expressions: name -> score map from the feature extractor, or None.
        probability: Detector confidence [0.0, 1.0].
    """
    box: BoundingBox
    id: str = field(default_factory=new_detection_id)
    landmarks: Optional[np.ndarray] = None
    expressions: Optional[Dict[str, float]] = None
    probability: float = 0.0

    @property
    def has_landmarks(self) -> bool:
        return self.landmarks is not None and len(self.landmarks) > 0

    def with_landmarks(self, landmarks: Optional[np.ndarray]) -> "Detection":
        return replace(self, landmarks=landmarks)

    def with_expressions(self, expressions: Optional[Dict[str, float]]) -> "Detection":
        return replace(self, expressions=expressions)


# ═══════════════════════════════════════════════════════════════
# Liveness session
# ═══════════════════════════════════════════════════════════════

class LivenessStep(str, Enum):
    INTRO = "intro"
    FACE_ALIGNMENT = "faceAlignment"
    BLINK_EYES = "blinkEyes"
    TURN_LEFT = "turnLeft"
    TURN_RIGHT = "turnRight"
    SMILE = "smile"
    COMPLETED = "completed"


# Fixed challenge order
STEP_ORDER: Tuple[LivenessStep, ...] = tuple(LivenessStep)

# Steps the user actively performs (excludes intro/completed)
CHALLENGE_STEPS: Tuple[LivenessStep, ...] = STEP_ORDER[1:-1]

DEFAULT_STEP_TIMEOUT_MS = 15000


@dataclass
class DetectionHistory:
    """Per-session action flags plus the signals carried across frames."""
    blink_detected: bool = False
    left_turn_detected: bool = False
    right_turn_detected: bool = False
    smile_detected: bool = False
    prev_eye_openness: float = 1.0
    prev_face_orientation: float = 0.0

    ACTIONS = ("blink_detected", "left_turn_detected", "right_turn_detected", "smile_detected")


def _empty_step_map() -> Dict[LivenessStep, bool]:
    return {step: False for step in STEP_ORDER}


@dataclass
class LivenessSession:
    current_step: LivenessStep = LivenessStep.INTRO
    progress: float = 0.0
    step_completed: Dict[LivenessStep, bool] = field(default_factory=_empty_step_map)
    step_start_time: float = 0.0            # ms, 0 = unset
    step_timeout_ms: float = DEFAULT_STEP_TIMEOUT_MS
    detection_history: DetectionHistory = field(default_factory=DetectionHistory)

    def to_dict(self) -> dict:
        return {
            "current_step": self.current_step.value,
            "progress": self.progress,
            "step_completed": {s.value: done for s, done in self.step_completed.items()},
            "step_start_time": self.step_start_time,
            "step_timeout_ms": self.step_timeout_ms,
            "detection_history": asdict(self.detection_history),
        }


# ═══════════════════════════════════════════════════════════════
# Classifier output
# ═══════════════════════════════════════════════════════════════

@dataclass
class GestureResult:
    """Output of one gesture classifier call.

    progress is None when the classifier could not measure anything
    (missing landmarks/expressions) and the prior progress must be held.
    Values above 100 are allowed; the state machine clamps.
    """
    progress: Optional[float] = None
    action: Optional[str] = None
    metrics: dict = field(default_factory=dict)

    @property
    def is_noop(self) -> bool:
        return self.progress is None and self.action is None


# ═══════════════════════════════════════════════════════════════
# Performance
# ═══════════════════════════════════════════════════════════════

# throttling level -> (landmark_throttle_ms, expression_throttle_ms, max_skip_frames)
THROTTLING_PRESETS: Dict[int, Tuple[int, int, int]] = {
    1: (100, 200, 1),   # responsive
    2: (200, 400, 2),   # balanced
    3: (300, 600, 3),   # power saver
}


@dataclass(frozen=True)
class PerformanceConfig:
    throttling_level: int = 1
    landmark_throttle_ms: float = 100.0
    expression_throttle_ms: float = 200.0
    max_skip_frames: int = 1
    use_alternate_execution_context: bool = False

    @classmethod
    def from_level(cls, level: int, use_alternate_execution_context: bool = False) -> "PerformanceConfig":
        if isinstance(level, bool) or level not in THROTTLING_PRESETS:
            raise ValueError(f"throttling_level must be one of {sorted(THROTTLING_PRESETS)}, got {level!r}")
        landmark_ms, expression_ms, max_skip = THROTTLING_PRESETS[level]
        return cls(
            throttling_level=level,
            landmark_throttle_ms=float(landmark_ms),
            expression_throttle_ms=float(expression_ms),
            max_skip_frames=max_skip,
            use_alternate_execution_context=use_alternate_execution_context,
        )


@dataclass
class PerformanceMetrics:
    fps: float = 0.0
    detect_time_ms: float = 0.0
    landmark_time_ms: float = 0.0
    memory_mb: float = 0.0

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass(frozen=True)
class ModelSettings:
    detection_confidence: float = 0.5
    max_faces: int = 1
    landmarks_enabled: bool = True
    expressions_enabled: bool = True
