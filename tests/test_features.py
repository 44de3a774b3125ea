"""
Liveguard — Geometric Feature Extractor Tests
=============================================
Primitives, expression distribution and the short-input fallback.
"""

from __future__ import annotations

import math
import sys
from pathlib import Path

import numpy as np
import pytest

# Project root
_project_root = str(Path(__file__).resolve().parent.parent)
if _project_root not in sys.path:
    sys.path.insert(0, _project_root)

from liveguard_features import (
    EXPRESSION_NAMES,
    ExpressionFeatures,
    extract_features,
    face_orientation,
    normalize,
    refined_eye_openness,
)
from landmark_helpers import make_landmarks


# ── Fallback ──────────────────────────────────────────────────

def test_none_landmarks_are_neutral_only():
    features = extract_features(None)
    assert features.expressions["neutral"] == 1.0
    assert not features.is_measured
    assert features.face_orientation is None


def test_short_landmark_set_is_neutral_only():
    features = extract_features(make_landmarks(n_points=100))
    assert features.expressions == ExpressionFeatures.neutral_only().expressions
    assert "eyeOpenness" not in features.to_expressions()


def test_467_points_is_still_too_short():
    pts = make_landmarks()[:467]
    assert not extract_features(pts).is_measured


def test_468_points_is_measured():
    pts = make_landmarks()[:468]
    assert extract_features(pts).is_measured


@pytest.mark.parametrize("landmarks", [
    np.zeros((478, 1)),
    [[1.0, 2.0, 3.0]] * 477 + [[1.0, 2.0]],
    [["x", "y", "z"]] * 478,
], ids=["single-column", "ragged", "non-numeric"])
def test_malformed_landmarks_are_neutral_only(landmarks):
    features = extract_features(landmarks)
    assert not features.is_measured
    assert features.expressions == ExpressionFeatures.neutral_only().expressions


# ── Primitives ────────────────────────────────────────────────

def test_primitives_on_reference_face():
    f = extract_features(make_landmarks())
    assert f.eye_openness == pytest.approx(0.3)
    assert f.mouth_openness == pytest.approx(0.02)
    assert f.mouth_width == pytest.approx(0.4)
    assert f.eyebrow_raise == pytest.approx(0.1)
    assert f.mouth_curvature == pytest.approx(0.0)
    assert f.face_orientation == pytest.approx(0.0)


@pytest.mark.parametrize("orientation", [-0.3, -0.1, 0.0, 0.12, 0.25])
def test_face_orientation_tracks_nose_offset(orientation):
    pts = make_landmarks(orientation=orientation)
    assert face_orientation(pts) == pytest.approx(orientation)
    assert extract_features(pts).face_orientation == pytest.approx(orientation)


def test_face_orientation_uses_3d_ear_distance():
    # Yawed head: the far ear recedes, so the x-gap alone understates face width
    pts = make_landmarks(orientation=-0.1)
    pts[454, 2] = 150.0
    # nose offset -20 / hypot(200, 150)
    assert face_orientation(pts) == pytest.approx(-0.08)
    assert extract_features(pts).face_orientation == pytest.approx(-0.08)


def test_mouth_curvature_is_positive_when_corners_lift():
    smiling = extract_features(make_landmarks(mouth_lift=6.0))
    frowning = extract_features(make_landmarks(mouth_lift=-6.0))
    assert smiling.mouth_curvature == pytest.approx(6.0)
    assert frowning.mouth_curvature == pytest.approx(-6.0)


def test_primitives_are_scale_invariant():
    small = extract_features(make_landmarks())
    big = extract_features(make_landmarks() * 2.0)
    assert big.eye_openness == pytest.approx(small.eye_openness)
    assert big.mouth_width == pytest.approx(small.mouth_width)
    assert big.face_orientation == pytest.approx(small.face_orientation)


def test_refined_openness_drops_when_eyes_close():
    open_val, _, _ = refined_eye_openness(make_landmarks(eye_gap=12.0))
    closed_val, _, _ = refined_eye_openness(make_landmarks(eye_gap=0.0))
    assert 0.0 <= closed_val < open_val <= 1.0


def test_refined_openness_is_clamped():
    combined, left, right = refined_eye_openness(make_landmarks(eye_gap=200.0))
    assert combined == 1.0
    assert left > 1.0 and right > 1.0


def test_two_dimensional_input_is_accepted():
    pts = make_landmarks(orientation=0.1)[:, :2]
    assert extract_features(pts).face_orientation == pytest.approx(0.1)


def test_collapsed_landmarks_stay_finite():
    pts = np.zeros((478, 3))
    flat = extract_features(pts).to_expressions()
    assert all(math.isfinite(v) for v in flat.values())


# ── Expression distribution ───────────────────────────────────

@pytest.mark.parametrize("kwargs", [
    {},
    {"mouth_lift": 8.0},
    {"mouth_lift": -8.0, "mouth_width": 40.0},
    {"eye_gap": 0.0, "brow_gap": 2.0},
    {"mouth_gap": 40.0, "brow_gap": 50.0},
])
def test_expression_scores_sum_to_one(kwargs):
    expressions = extract_features(make_landmarks(**kwargs)).expressions
    assert set(expressions) == set(EXPRESSION_NAMES)
    assert sum(expressions.values()) == pytest.approx(1.0)
    assert all(0.0 <= v <= 1.0 for v in expressions.values())


def test_to_expressions_exposes_primitives():
    flat = extract_features(make_landmarks()).to_expressions()
    for key in ("eyeOpenness", "refinedEyeOpenness", "leftEyeOpenness", "rightEyeOpenness",
                "mouthOpenness", "mouthWidth", "mouthCurvature", "eyebrowRaise", "faceOrientation"):
        assert key in flat


def test_normalize_clamps():
    assert normalize(-1.0, 0.0, 1.0) == 0.0
    assert normalize(0.5, 0.0, 1.0) == 0.5
    assert normalize(5.0, 0.0, 1.0) == 1.0
