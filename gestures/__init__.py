"""
Liveguard — Gesture Classifiers Package
=======================================
One classifier per challenge step, registered by step.
"""
from typing import Dict

from liveguard_types import LivenessStep

from .base import GestureClassifier, measurements
from .blink import BlinkClassifier
from .face_alignment import FaceAlignmentClassifier
from .head_turn import TurnLeftClassifier, TurnRightClassifier
from .smile import SmileClassifier


def build_classifiers() -> Dict[LivenessStep, GestureClassifier]:
    """Fresh classifier instance for every challenge step."""
    classifiers = [
        FaceAlignmentClassifier(),
        BlinkClassifier(),
        TurnLeftClassifier(),
        TurnRightClassifier(),
        SmileClassifier(),
    ]
    return {c.step: c for c in classifiers}


__all__ = [
    "GestureClassifier",
    "measurements",
    "BlinkClassifier",
    "FaceAlignmentClassifier",
    "TurnLeftClassifier",
    "TurnRightClassifier",
    "SmileClassifier",
    "build_classifiers",
]
