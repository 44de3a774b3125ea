"""
Liveguard — Detection Worker Protocol
=====================================
Typed messages exchanged with the detection worker process, plus the
bounded table that correlates requests with responses.

Main process -> worker:
  InitRequest       load models in the worker
  DetectRequest     one frame; id correlates the response
  ShutdownRequest   stop the worker loop

Worker -> main process:
  ReadyMessage            worker booted, waiting for InitRequest
  InitializedMessage      model load outcome
  DetectionResultMessage  faces for a DetectRequest id
  ErrorMessage            failure for a request id (or an unknown message)

All messages are plain dataclasses so they pickle across
multiprocessing queues.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import ClassVar, Dict, List, Optional

import numpy as np

from liveguard_types import BoundingBox, Detection

_log = logging.getLogger("WorkerProtocol")


# ═══════════════════════════════════════════════════════════════
# Requests
# ═══════════════════════════════════════════════════════════════

@dataclass
class InitRequest:
    type: ClassVar[str] = "init"
    detector_asset: str = "models/blaze_face_short_range.tflite"
    landmarker_asset: str = "models/face_landmarker.task"
    max_faces: int = 1
    min_detection_confidence: float = 0.5


@dataclass
class DetectRequest:
    """One frame for detection. The worker owns image after sending."""
    type: ClassVar[str] = "detect"
    image: np.ndarray
    detection_confidence: float
    max_faces: int
    id: int
    landmarks: bool = True


@dataclass
class ShutdownRequest:
    type: ClassVar[str] = "shutdown"


# ═══════════════════════════════════════════════════════════════
# Responses
# ═══════════════════════════════════════════════════════════════

@dataclass
class ReadyMessage:
    type: ClassVar[str] = "ready"


@dataclass
class InitializedMessage:
    type: ClassVar[str] = "initialized"
    success: bool
    error: Optional[str] = None


@dataclass
class FaceMessage:
    box: BoundingBox
    probability: float
    landmarks: Optional[np.ndarray] = None

    @classmethod
    def from_detection(cls, detection: Detection) -> "FaceMessage":
        return cls(box=detection.box, probability=detection.probability, landmarks=detection.landmarks)

    def to_detection(self) -> Detection:
        # Fresh identity token on the receiving side
        return Detection(box=self.box, probability=self.probability, landmarks=self.landmarks)


@dataclass
class DetectionResultMessage:
    type: ClassVar[str] = "detection-result"
    faces: List[FaceMessage] = field(default_factory=list)
    id: Optional[int] = None


@dataclass
class ErrorMessage:
    type: ClassVar[str] = "error"
    message: str
    id: Optional[int] = None


# ═══════════════════════════════════════════════════════════════
# Request correlation
# ═══════════════════════════════════════════════════════════════

class PendingRequestTable:
    """Outstanding request ids -> send time (ms), with a hard capacity.

    The capacity is the backpressure: a caller that cannot add() must
    not send another frame.
    """

    def __init__(self, capacity: int = 1):
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        self.capacity = capacity
        self._pending: Dict[int, float] = {}

    def __len__(self) -> int:
        return len(self._pending)

    def __contains__(self, request_id) -> bool:
        return request_id in self._pending

    @property
    def is_full(self) -> bool:
        return len(self._pending) >= self.capacity

    def add(self, request_id: int, started_ms: float) -> bool:
        if self.is_full or request_id in self._pending:
            return False
        self._pending[request_id] = started_ms
        return True

    def pop(self, request_id) -> Optional[float]:
        """Remove a request; returns its send time or None if unknown."""
        return self._pending.pop(request_id, None)

    def cancel_all(self) -> int:
        """Drop every outstanding request; late responses become unknown."""
        count = len(self._pending)
        if count:
            _log.debug("Cancelled %d pending request(s)", count)
        self._pending.clear()
        return count
