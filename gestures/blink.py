"""
Blink detection with hysteresis.

A blink fires on either of:
  - a sharp drop from an open eye: prev > OPEN and prev - cur > CHANGE
  - a closing eye under the closed line: cur < CLOSED and cur < prev

Openness source, best first: refined multi-point openness (fraction of
face width), then the single lid-pair openness (fraction of eye width).
"""

from typing import Optional, Tuple

from liveguard_types import Detection, DetectionHistory, GestureResult, LivenessStep

from .base import GestureClassifier, measurements

OPEN_THRESHOLD = 0.5
CHANGE_THRESHOLD = 0.25
CLOSED_THRESHOLD = 0.3

# Partial-progress ceiling: only a real blink reaches 100
PARTIAL_CAP = 90.0


def is_blink(previous: float, current: float) -> bool:
    sharp_drop = previous > OPEN_THRESHOLD and previous - current > CHANGE_THRESHOLD
    closing = current < CLOSED_THRESHOLD and current < previous
    return sharp_drop or closing


class BlinkClassifier(GestureClassifier):
    step = LivenessStep.BLINK_EYES

    def classify(
        self,
        detection: Detection,
        frame_size: Optional[Tuple[int, int]],
        history: DetectionHistory,
        current_progress: float = 0.0,
    ) -> GestureResult:
        values = measurements(detection)
        current = values.get("refinedEyeOpenness", values.get("eyeOpenness"))
        if current is None:
            return GestureResult()

        previous = history.prev_eye_openness
        history.prev_eye_openness = current
        metrics = {"eye_openness": current, "prev_eye_openness": previous}

        if is_blink(previous, current):
            return GestureResult(progress=100.0, action="blink_detected", metrics=metrics)

        if history.blink_detected:
            return GestureResult(metrics=metrics)

        partial = min(PARTIAL_CAP, max(abs(current - previous) * 200, (1 - current) * 70))
        if partial > current_progress:
            return GestureResult(progress=partial, metrics=metrics)
        return GestureResult(metrics=metrics)
