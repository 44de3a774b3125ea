"""
Liveguard — Gesture Classifier Interface
========================================
Defines the `GestureClassifier` base class. One subclass per
challenge step turns the latest Detection into a GestureResult.

Engine Integration:
  - LiveguardEngine picks the classifier registered for the current step
  - classify() may update the carried signals on DetectionHistory
    (prev_eye_openness / prev_face_orientation)
  - action flags are reported through GestureResult.action and latched
    by LivenessStateMachine.mark_action()
  - progress above 100 is allowed; the state machine clamps
"""

from abc import ABC, abstractmethod
from typing import Dict, Optional, Tuple

from liveguard_features import extract_features
from liveguard_types import Detection, DetectionHistory, GestureResult, LivenessStep

# Fallback frame size when the capture surface has not reported one yet
DEFAULT_FRAME_SIZE = (640, 480)


class GestureClassifier(ABC):
    """Abstract base for all per-step gesture classifiers."""

    @property
    @abstractmethod
    def step(self) -> LivenessStep:
        """The challenge step this classifier scores."""
        pass

    @abstractmethod
    def classify(
        self,
        detection: Detection,
        frame_size: Optional[Tuple[int, int]],
        history: DetectionHistory,
        current_progress: float = 0.0,
    ) -> GestureResult:
        """Score one detection for this step.

        Args:
            detection: Latest face (box + optional landmarks/expressions).
            frame_size: (width, height) of the source frame in pixels.
            history: Session detection history (carried signals).
            current_progress: Session progress before this call.

        Returns:
            GestureResult; progress None means "hold prior progress".
        """
        pass

    @property
    def name(self) -> str:
        return self.step.value


def measurements(detection: Detection) -> Dict[str, float]:
    """Measured primitives for a detection, name -> value.

    Landmarks are authoritative: when present they are run through the
    extractor and override any (possibly carried, stale) expressions.
    Without landmarks the precomputed expressions are used as-is. An
    empty map means nothing could be measured.
    """
    merged: Dict[str, float] = dict(detection.expressions or {})
    if detection.has_landmarks:
        features = extract_features(detection.landmarks)
        if features.is_measured:
            merged.update(features.to_expressions())
    return merged
