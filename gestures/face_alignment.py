"""
Face alignment: is the face centred and sized sensibly in the frame?

Works from the bounding box alone, so it never needs landmarks.
"""

import math
from typing import Optional, Tuple

from liveguard_types import Detection, DetectionHistory, GestureResult, LivenessStep

from .base import DEFAULT_FRAME_SIZE, GestureClassifier

# Centre must fall in the middle half of the frame on both axes
CENTER_RANGE = (0.25, 0.75)
# Face must cover 20-80% of the frame on both axes
SIZE_RANGE = (0.2, 0.8)

POSITION_WEIGHT = 70.0
SIZE_WEIGHT = 30.0


def _inside(value: float, bounds: Tuple[float, float]) -> bool:
    return bounds[0] < value < bounds[1]


class FaceAlignmentClassifier(GestureClassifier):
    step = LivenessStep.FACE_ALIGNMENT

    def classify(
        self,
        detection: Detection,
        frame_size: Optional[Tuple[int, int]],
        history: DetectionHistory,
        current_progress: float = 0.0,
    ) -> GestureResult:
        frame_w, frame_h = frame_size or DEFAULT_FRAME_SIZE
        if frame_w <= 0 or frame_h <= 0:
            return GestureResult()

        box = detection.box
        center_x, center_y = box.center
        norm_x = center_x / frame_w
        norm_y = center_y / frame_h
        norm_width = box.width / frame_w
        norm_height = box.height / frame_h
        metrics = {"norm_x": norm_x, "norm_y": norm_y, "norm_width": norm_width, "norm_height": norm_height}

        centered = (
            _inside(norm_x, CENTER_RANGE) and _inside(norm_y, CENTER_RANGE)
            and _inside(norm_width, SIZE_RANGE) and _inside(norm_height, SIZE_RANGE)
        )
        if centered:
            return GestureResult(progress=100.0, metrics=metrics)

        dist = math.sqrt((norm_x - 0.5) ** 2 + (norm_y - 0.5) ** 2)
        size_optimal = min(
            max((norm_width - 0.1) / 0.3, 0.0),
            max((0.9 - norm_width) / 0.3, 0.0),
        )
        progress = max(0.0, (1 - dist * 2) * POSITION_WEIGHT + size_optimal * SIZE_WEIGHT)
        metrics["distance"] = dist
        return GestureResult(progress=progress, metrics=metrics)
