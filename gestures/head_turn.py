"""
Head-turn detection from the nose-tip offset against the ear midpoint.

face_orientation < 0 means the face is turned left, > 0 right.
"""

from typing import Optional, Tuple

from liveguard_types import Detection, DetectionHistory, GestureResult, LivenessStep

from .base import GestureClassifier, measurements

TURN_THRESHOLD = 0.15


class _HeadTurnClassifier(GestureClassifier):
    # +1 for right, -1 for left
    direction: int = 0
    action: str = ""

    def classify(
        self,
        detection: Detection,
        frame_size: Optional[Tuple[int, int]],
        history: DetectionHistory,
        current_progress: float = 0.0,
    ) -> GestureResult:
        orientation = measurements(detection).get("faceOrientation")
        if orientation is None:
            return GestureResult()

        metrics = {"face_orientation": orientation, "prev_face_orientation": history.prev_face_orientation}
        history.prev_face_orientation = orientation

        signed = orientation * self.direction
        if signed > TURN_THRESHOLD:
            return GestureResult(progress=100.0, action=self.action, metrics=metrics)

        progress = max(0.0, min(100.0, signed / TURN_THRESHOLD * 100.0))
        return GestureResult(progress=progress, metrics=metrics)


class TurnLeftClassifier(_HeadTurnClassifier):
    step = LivenessStep.TURN_LEFT
    direction = -1
    action = "left_turn_detected"


class TurnRightClassifier(_HeadTurnClassifier):
    step = LivenessStep.TURN_RIGHT
    direction = 1
    action = "right_turn_detected"
