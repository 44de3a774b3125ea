"""
Liveguard — Detection-Continuity Matcher
========================================
IoU-based box matching used to keep landmarks attached to the right
face when the two models disagree on granularity or when landmark
extraction is throttled for a tick.

  carry_landmarks()   frame-to-frame reuse, threshold 0.5
  attach_landmarks()  landmark-model output onto detector boxes, threshold 0.3
"""

from __future__ import annotations

from typing import Callable, Iterable, List, Optional, Sequence, Tuple, TypeVar

import numpy as np

from liveguard_types import BoundingBox, Detection

T = TypeVar("T")

CARRY_IOU_THRESHOLD = 0.5
ATTACH_IOU_THRESHOLD = 0.3


def iou(a: BoundingBox, b: BoundingBox) -> float:
    """Intersection over union of two boxes, in [0, 1]."""
    inter_x1 = max(a.x_min, b.x_min)
    inter_y1 = max(a.y_min, b.y_min)
    inter_x2 = min(a.x_max, b.x_max)
    inter_y2 = min(a.y_max, b.y_max)

    if inter_x2 <= inter_x1 or inter_y2 <= inter_y1:
        return 0.0

    inter_area = (inter_x2 - inter_x1) * (inter_y2 - inter_y1)
    union_area = a.area + b.area - inter_area
    if union_area <= 0:
        return 0.0
    return float(min(1.0, inter_area / union_area))


def best_match(
    box: BoundingBox,
    candidates: Iterable[T],
    key: Callable[[T], BoundingBox],
) -> Tuple[Optional[T], float]:
    """Return the candidate with the highest IoU against box (ties: first seen)."""
    best: Optional[T] = None
    best_iou = 0.0
    for candidate in candidates:
        score = iou(box, key(candidate))
        if score > best_iou:
            best_iou = score
            best = candidate
    return best, best_iou


def carry_landmarks(
    faces: Sequence[Detection],
    previous: Sequence[Detection],
    threshold: float = CARRY_IOU_THRESHOLD,
) -> List[Detection]:
    """Copy landmarks (and their expressions) from the best previous match.

    Previous detections without landmarks are not candidates. A face
    keeps whatever it already had when no match clears the threshold.
    """
    donors = [p for p in previous if p.has_landmarks]
    if not donors:
        return list(faces)

    carried: List[Detection] = []
    for face in faces:
        match, score = best_match(face.box, donors, key=lambda d: d.box)
        if match is not None and score > threshold:
            face = face.with_landmarks(match.landmarks).with_expressions(match.expressions)
        carried.append(face)
    return carried


def attach_landmarks(
    faces: Sequence[Detection],
    landmark_sets: Sequence[np.ndarray],
    threshold: float = ATTACH_IOU_THRESHOLD,
) -> List[Detection]:
    """Attach landmark-model keypoints to detector-model boxes.

    Each keypoint set is boxed by its (x, y) extent and matched to the
    face box by IoU.
    """
    sets = [np.asarray(s, dtype=np.float64) for s in landmark_sets if s is not None and len(s) > 0]
    if not sets:
        return list(faces)

    boxed = [(BoundingBox.from_points(s), s) for s in sets]
    attached: List[Detection] = []
    for face in faces:
        match, score = best_match(face.box, boxed, key=lambda item: item[0])
        if match is not None and score > threshold:
            face = face.with_landmarks(match[1])
        attached.append(face)
    return attached
