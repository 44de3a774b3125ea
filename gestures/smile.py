"""
Smile detection.

Primary score: 0.7 * mouth_curvature + 0.3 * mouth_width, fires above
0.4. Progress below the threshold is over-scaled (x150) for snappier
feedback; the state machine clamps at 100.

When curvature is unavailable (expressions from an external model),
the composite "happy" score is used instead: fires above 0.6,
progress x120.
"""

from typing import Optional, Tuple

from liveguard_types import Detection, DetectionHistory, GestureResult, LivenessStep

from .base import GestureClassifier, measurements

CURVATURE_WEIGHT = 0.7
WIDTH_WEIGHT = 0.3
SMILE_THRESHOLD = 0.4
SMILE_GAIN = 150.0

HAPPY_THRESHOLD = 0.6
HAPPY_GAIN = 120.0


def smile_score(curvature: float, width: float) -> float:
    return curvature * CURVATURE_WEIGHT + width * WIDTH_WEIGHT


class SmileClassifier(GestureClassifier):
    step = LivenessStep.SMILE

    def classify(
        self,
        detection: Detection,
        frame_size: Optional[Tuple[int, int]],
        history: DetectionHistory,
        current_progress: float = 0.0,
    ) -> GestureResult:
        values = measurements(detection)
        curvature = values.get("mouthCurvature")
        width = values.get("mouthWidth")

        if curvature is not None and width is not None:
            score = smile_score(curvature, width)
            metrics = {"smile_score": score, "mouth_curvature": curvature, "mouth_width": width}
            if score > SMILE_THRESHOLD:
                return GestureResult(progress=100.0, action="smile_detected", metrics=metrics)
            return GestureResult(progress=score * SMILE_GAIN, metrics=metrics)

        happy = values.get("happy", 0.0)
        if happy > 0:
            metrics = {"happy": happy}
            if happy > HAPPY_THRESHOLD:
                return GestureResult(progress=100.0, action="smile_detected", metrics=metrics)
            return GestureResult(progress=happy * HAPPY_GAIN, metrics=metrics)

        return GestureResult()
