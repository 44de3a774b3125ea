"""
Liveguard — Geometric Feature Extractor
=======================================
Turns one MediaPipe FaceMesh landmark set into
expression/orientation primitives and a five-way expression
distribution. Pure functions, no state.

Primitives (ratios unless noted):
  eye_openness     lid separation / eye width, both eyes averaged
  mouth_openness   lip separation / face height (forehead → chin)
  mouth_width      mouth-corner distance / inter-ear distance
  mouth_curvature  -mean(corner height above reference point), pixel units
                   (+ = smiling)
  eyebrow_raise    brow-to-eye distance / face height, both sides averaged
  face_orientation nose-tip offset from ear midpoint / inter-ear distance
                   (negative = turned left, positive = turned right)

Composite scores (surprised, happy, sad, angry) are fixed linear
combinations of the primitives clamped through min-max calibration;
neutral absorbs the remainder and all five are renormalized to sum 1.

A refined eye openness (three eyelid pairs per eye, normalized to
15% of face width, clamped to [0, 1]) is exposed for the blink
classifier.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, Optional, Sequence

import numpy as np

_log = logging.getLogger("LiveguardFeatures")


# ═══════════════════════════════════════════════════════════════
# MediaPipe FaceMesh indices
# ═══════════════════════════════════════════════════════════════

MIN_LANDMARKS = 468

# Eyes: upper/lower lid and horizontal corners
LEFT_EYE_TOP = 159
LEFT_EYE_BOTTOM = 145
LEFT_EYE_OUTER = 33
LEFT_EYE_INNER = 133
RIGHT_EYE_TOP = 386
RIGHT_EYE_BOTTOM = 374
RIGHT_EYE_OUTER = 263
RIGHT_EYE_INNER = 362

# Eyebrows
LEFT_BROW_OUTER = 70
RIGHT_BROW_OUTER = 300

# Mouth: inner lip centre and corners, plus the cheek points
# just above each corner used as curvature references
MOUTH_TOP = 13
MOUTH_BOTTOM = 14
MOUTH_LEFT = 78
MOUTH_RIGHT = 308
MOUTH_LEFT_REF = 92
MOUTH_RIGHT_REF = 322

# Nose
NOSE_TIP = 1

# Face extent
FOREHEAD = 10
CHIN = 152
LEFT_EAR = 234
RIGHT_EAR = 454

# Refined eyelid pairs (upper point, lower point)
LEFT_EYELID_PAIRS = ((159, 33), (145, 133), (144, 173))
RIGHT_EYELID_PAIRS = ((386, 263), (374, 362), (373, 398))

# Typical eye opening as a fraction of inter-ear face width
REFINED_EYE_FACE_FRACTION = 0.15

# (min, max) calibration per composite expression
EXPRESSION_CALIBRATION = {
    "surprised": (0.1, 0.5),
    "happy": (0.2, 0.6),
    "sad": (0.0, 0.4),
    "angry": (0.0, 0.5),
}

EXPRESSION_NAMES = ("neutral", "happy", "sad", "angry", "surprised")


# ═══════════════════════════════════════════════════════════════
# Result type
# ═══════════════════════════════════════════════════════════════

@dataclass
class ExpressionFeatures:
    """Extractor output.

    expressions always holds the five-way distribution. Geometric
    primitives are None when the input was too short to measure.
    """
    expressions: Dict[str, float] = field(default_factory=dict)
    eye_openness: Optional[float] = None
    refined_eye_openness: Optional[float] = None
    left_eye_openness: Optional[float] = None
    right_eye_openness: Optional[float] = None
    mouth_openness: Optional[float] = None
    mouth_width: Optional[float] = None
    mouth_curvature: Optional[float] = None
    eyebrow_raise: Optional[float] = None
    face_orientation: Optional[float] = None

    @classmethod
    def neutral_only(cls) -> "ExpressionFeatures":
        return cls(expressions={"neutral": 1.0, "happy": 0.0, "sad": 0.0, "angry": 0.0, "surprised": 0.0})

    @property
    def is_measured(self) -> bool:
        return self.eye_openness is not None

    def to_expressions(self) -> Dict[str, float]:
        """Flat name -> value map stored on Detection.expressions."""
        flat = dict(self.expressions)
        for key, value in (
            ("eyeOpenness", self.eye_openness),
            ("refinedEyeOpenness", self.refined_eye_openness),
            ("leftEyeOpenness", self.left_eye_openness),
            ("rightEyeOpenness", self.right_eye_openness),
            ("mouthOpenness", self.mouth_openness),
            ("mouthWidth", self.mouth_width),
            ("mouthCurvature", self.mouth_curvature),
            ("eyebrowRaise", self.eyebrow_raise),
            ("faceOrientation", self.face_orientation),
        ):
            if value is not None:
                flat[key] = value
        return flat


# ═══════════════════════════════════════════════════════════════
# Helpers
# ═══════════════════════════════════════════════════════════════

def as_landmark_array(landmarks: Sequence) -> np.ndarray:
    """Coerce a landmark sequence to a float (N, 3) array; z defaults to 0.

    Ragged, non-numeric or single-column input comes back empty.
    """
    try:
        pts = np.asarray(landmarks, dtype=np.float64)
    except (TypeError, ValueError) as e:
        _log.debug("Malformed landmark set: %s", e)
        return np.empty((0, 3), dtype=np.float64)
    if pts.ndim != 2 or pts.shape[0] == 0 or pts.shape[1] < 2:
        return np.empty((0, 3), dtype=np.float64)
    if pts.shape[1] == 2:
        pts = np.hstack([pts, np.zeros((pts.shape[0], 1))])
    return pts[:, :3]


def distance(p1: np.ndarray, p2: np.ndarray) -> float:
    """3-D Euclidean distance."""
    return float(np.linalg.norm(p2 - p1))


def normalize(value: float, lo: float, hi: float) -> float:
    """Min-max scale into [0, 1] with clamping."""
    return float(min(1.0, max(0.0, (value - lo) / (hi - lo))))


def _ratio(num: float, den: float) -> float:
    # Degenerate geometry (collapsed points) reads as zero rather than inf/nan
    return num / den if den > 1e-9 else 0.0


def face_orientation(pts: np.ndarray) -> float:
    """Signed horizontal nose offset from the ear midpoint / inter-ear distance."""
    left_ear = pts[LEFT_EAR]
    right_ear = pts[RIGHT_EAR]
    mid_x = (left_ear[0] + right_ear[0]) / 2.0
    return _ratio(pts[NOSE_TIP][0] - mid_x, distance(left_ear, right_ear))


def eye_openness_simple(pts: np.ndarray) -> float:
    """Single lid pair per eye normalized by that eye's width."""
    left = _ratio(distance(pts[LEFT_EYE_TOP], pts[LEFT_EYE_BOTTOM]),
                  distance(pts[LEFT_EYE_OUTER], pts[LEFT_EYE_INNER]))
    right = _ratio(distance(pts[RIGHT_EYE_TOP], pts[RIGHT_EYE_BOTTOM]),
                   distance(pts[RIGHT_EYE_OUTER], pts[RIGHT_EYE_INNER]))
    return (left + right) / 2.0


def refined_eye_openness(pts: np.ndarray) -> tuple[float, float, float]:
    """Multi-point eyelid average per eye, scaled to a fraction of face width.

    Returns:
        (combined clamped to [0, 1], left unclamped, right unclamped)
    """
    face_width = distance(pts[LEFT_EAR], pts[RIGHT_EAR])
    reference = face_width * REFINED_EYE_FACE_FRACTION

    left_mean = np.mean([distance(pts[u], pts[l]) for u, l in LEFT_EYELID_PAIRS])
    right_mean = np.mean([distance(pts[u], pts[l]) for u, l in RIGHT_EYELID_PAIRS])

    left = _ratio(float(left_mean), reference)
    right = _ratio(float(right_mean), reference)
    combined = min(1.0, max(0.0, (left + right) / 2.0))
    return combined, left, right


# ═══════════════════════════════════════════════════════════════
# Extractor
# ═══════════════════════════════════════════════════════════════

def extract_features(landmarks: Optional[Sequence]) -> ExpressionFeatures:
    """Compute primitives and the expression distribution for one face.

    Args:
        landmarks: (N, 2|3) FaceMesh points. Fewer than 468 points
                   (or None) yields a neutral-only result.

    Returns:
        ExpressionFeatures; the five expression scores sum to 1.
    """
    if landmarks is None:
        return ExpressionFeatures.neutral_only()
    pts = as_landmark_array(landmarks)
    if pts.shape[0] < MIN_LANDMARKS:
        _log.debug("Landmark set too short (%d < %d), neutral only", pts.shape[0], MIN_LANDMARKS)
        return ExpressionFeatures.neutral_only()

    face_height = distance(pts[FOREHEAD], pts[CHIN])
    ear_distance = distance(pts[LEFT_EAR], pts[RIGHT_EAR])

    eye_open = eye_openness_simple(pts)
    mouth_open = _ratio(distance(pts[MOUTH_TOP], pts[MOUTH_BOTTOM]), face_height)
    mouth_width = _ratio(distance(pts[MOUTH_LEFT], pts[MOUTH_RIGHT]), ear_distance)

    left_brow = _ratio(distance(pts[LEFT_BROW_OUTER], pts[LEFT_EYE_TOP]), face_height)
    right_brow = _ratio(distance(pts[RIGHT_BROW_OUTER], pts[RIGHT_EYE_TOP]), face_height)
    brow_raise = (left_brow + right_brow) / 2.0

    # Image y grows downward: a corner above its reference gives a negative height
    left_corner_height = pts[MOUTH_LEFT][1] - pts[MOUTH_LEFT_REF][1]
    right_corner_height = pts[MOUTH_RIGHT][1] - pts[MOUTH_RIGHT_REF][1]
    curvature = float(-(left_corner_height + right_corner_height) / 2.0)

    surprised = normalize(eye_open * 3 + brow_raise * 2 + mouth_open * 2,
                          *EXPRESSION_CALIBRATION["surprised"])
    happy = normalize(mouth_width * 3 + curvature * 6 + brow_raise * 0.5 - mouth_open * 0.7,
                      *EXPRESSION_CALIBRATION["happy"])
    sad = normalize((1 - mouth_width) * 1.5 + (1 - brow_raise) * 2 - curvature * 4,
                    *EXPRESSION_CALIBRATION["sad"])
    angry = normalize((1 - brow_raise) * 4 + (1 - eye_open) * 2 - curvature * 2,
                      *EXPRESSION_CALIBRATION["angry"])
    neutral = max(0.0, 1.0 - (surprised + happy + sad + angry))

    total = neutral + happy + sad + angry + surprised
    # total >= 1 always: either neutral fills up to 1 or the others exceed it
    expressions = {
        "neutral": neutral / total,
        "happy": happy / total,
        "sad": sad / total,
        "angry": angry / total,
        "surprised": surprised / total,
    }

    refined, left_eye, right_eye = refined_eye_openness(pts)

    return ExpressionFeatures(
        expressions=expressions,
        eye_openness=eye_open,
        refined_eye_openness=refined,
        left_eye_openness=left_eye,
        right_eye_openness=right_eye,
        mouth_openness=mouth_open,
        mouth_width=mouth_width,
        mouth_curvature=curvature,
        eyebrow_raise=brow_raise,
        face_orientation=face_orientation(pts),
    )
