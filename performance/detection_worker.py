import os
import sys
import time
import queue
import logging
import multiprocessing as mp
from typing import Callable, List, Optional, Tuple

import numpy as np

# Add project root to path for imports when running as worker
if __name__ == "__main__":
    sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from liveguard_detector import MediaPipeFaceDetector
from liveguard_protocol import (
    DetectionResultMessage,
    DetectRequest,
    ErrorMessage,
    FaceMessage,
    InitializedMessage,
    InitRequest,
    PendingRequestTable,
    ReadyMessage,
    ShutdownRequest,
)
from liveguard_types import Detection

_log = logging.getLogger("DetectionWorker")


def mediapipe_backend(request: InitRequest) -> MediaPipeFaceDetector:
    return MediaPipeFaceDetector(
        detector_asset=request.detector_asset,
        landmarker_asset=request.landmarker_asset,
        max_faces=request.max_faces,
        min_detection_confidence=request.min_detection_confidence,
    )


class DetectionWorkerHandler:
    """Worker-side message dispatch. One instance per worker process.

    Every request gets exactly one response; exceptions never escape
    handle(), they become ErrorMessage.
    """

    def __init__(self, backend_factory: Callable[[InitRequest], object] = mediapipe_backend):
        self._factory = backend_factory
        self.backend = None

    def handle(self, message):
        if isinstance(message, InitRequest):
            return self._init(message)
        if isinstance(message, DetectRequest):
            return self._detect(message)
        kind = getattr(message, "type", type(message).__name__)
        return ErrorMessage(message=f"Unknown message type: {kind}", id=getattr(message, "id", None))

    def _init(self, request: InitRequest) -> InitializedMessage:
        self.close()
        try:
            backend = self._factory(request)
            backend.load()
        except Exception as e:
            _log.error("Failed to initialize detector in worker: %s", e)
            return InitializedMessage(success=False, error=str(e))
        self.backend = backend
        return InitializedMessage(success=True)

    def _detect(self, request: DetectRequest):
        if self.backend is None:
            return ErrorMessage(message="Model not initialized", id=request.id)
        try:
            faces = self.backend.detect_faces(request.image, request.detection_confidence, request.max_faces)
            if request.landmarks and faces:
                faces = self.backend.detect_landmarks(request.image, faces)
        except Exception as e:
            _log.error("Worker detection failed: %s", e)
            return ErrorMessage(message=str(e), id=request.id)
        return DetectionResultMessage(faces=[FaceMessage.from_detection(f) for f in faces], id=request.id)

    def close(self):
        if self.backend is not None:
            self.backend.release()
            self.backend = None


def _worker_loop(input_queue, output_queue, backend_factory=mediapipe_backend):
    """Worker process loop. Announces readiness, then serves requests.

    Args:
        input_queue: Queue receiving protocol requests.
        output_queue: Queue sending protocol responses.
        backend_factory: Builds the detector backend from an InitRequest.
    """
    # Setup logging in worker
    logging.basicConfig(level=logging.INFO)
    _log.info("Worker process started (PID: %d)", os.getpid())

    handler = DetectionWorkerHandler(backend_factory)
    output_queue.put(ReadyMessage())
    try:
        while True:
            message = input_queue.get()
            if message is None or isinstance(message, ShutdownRequest):
                break  # Sentinel to stop
            output_queue.put(handler.handle(message))
    finally:
        handler.close()
        _log.info("Worker process stopping")


class DetectionWorkerClient:
    """Main-process side of the detection worker.

    Non-blocking: submit() posts a frame, poll() returns a finished
    result. The pending table (capacity 1 by default) means a second
    frame is refused until the first one is answered or cancelled.
    """

    def __init__(
        self,
        init_request: Optional[InitRequest] = None,
        backend_factory: Callable[[InitRequest], object] = mediapipe_backend,
        init_timeout_s: float = 30.0,
        max_pending: int = 1,
        context=None,
        clock: Optional[Callable[[], float]] = None,
    ):
        self._init_request = init_request or InitRequest()
        self._backend_factory = backend_factory
        self._init_timeout_s = init_timeout_s
        self._ctx = context or mp.get_context()
        self._clock = clock or (lambda: time.monotonic() * 1000.0)
        self._pending = PendingRequestTable(max_pending)
        self._next_id = 0
        self._input_queue = None
        self._output_queue = None
        self._worker = None
        self.initialized = False
        self.last_frame_size: Optional[Tuple[int, int]] = None

    @property
    def alive(self) -> bool:
        return self._worker is not None and self._worker.is_alive()

    @property
    def has_pending(self) -> bool:
        return len(self._pending) > 0

    @property
    def pending(self) -> PendingRequestTable:
        return self._pending

    def _spawn(self):
        self._input_queue = self._ctx.Queue(maxsize=2)  # Limited buffer
        self._output_queue = self._ctx.Queue()
        self._worker = self._ctx.Process(
            target=_worker_loop,
            args=(self._input_queue, self._output_queue, self._backend_factory),
            daemon=True,
        )
        self._worker.start()

    def start(self):
        """Boot the worker (if needed) and initialize its models.

        Raises:
            TimeoutError: no InitializedMessage within init_timeout_s.
            RuntimeError: the worker reported a failed model load.
        """
        if not self.alive:
            self._spawn()
        self.initialized = False
        self._input_queue.put(self._init_request)

        deadline = time.monotonic() + self._init_timeout_s
        while True:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise TimeoutError("Detection worker did not initialize in time")
            try:
                message = self._output_queue.get(timeout=remaining)
            except queue.Empty:
                continue
            if isinstance(message, ReadyMessage):
                _log.info("Detection worker is ready")
            elif isinstance(message, InitializedMessage):
                if not message.success:
                    raise RuntimeError(message.error or "Detection worker failed to initialize")
                self.initialized = True
                _log.info("Detection worker initialized")
                return
            else:
                _log.debug("Dropping %s received during init", message.type)

    load = start

    def submit(
        self,
        frame: np.ndarray,
        detection_confidence: float,
        max_faces: int,
        landmarks: bool = True,
    ) -> Optional[int]:
        """Post a frame. Returns the request id, or None if refused."""
        if not self.initialized or self._pending.is_full:
            return None
        request_id = self._next_id
        self._next_id += 1
        self._pending.add(request_id, self._clock())
        h, w = frame.shape[:2]
        self.last_frame_size = (w, h)
        # The worker owns the sent buffer; keep no reference to it here
        image = np.array(frame, copy=True)
        self._input_queue.put(DetectRequest(
            image=image,
            detection_confidence=detection_confidence,
            max_faces=max_faces,
            id=request_id,
            landmarks=landmarks,
        ))
        return request_id

    def poll(self) -> Optional[Tuple[List[Detection], float]]:
        """Next answered request as (detections, elapsed_ms), or None.

        Responses for unknown or cancelled ids are dropped. A worker
        error maps to an empty detection list.
        """
        if self._output_queue is None:
            return None
        while True:
            try:
                message = self._output_queue.get_nowait()
            except queue.Empty:
                return None

            request_id = getattr(message, "id", None)
            started = self._pending.pop(request_id) if request_id is not None else None
            if started is None:
                if isinstance(message, ErrorMessage):
                    _log.error("Worker error: %s", message.message)
                else:
                    _log.debug("Dropping unmatched %s (id=%s)", message.type, request_id)
                continue

            elapsed = self._clock() - started
            if isinstance(message, DetectionResultMessage):
                return [face.to_detection() for face in message.faces], elapsed
            if isinstance(message, ErrorMessage):
                _log.error("Worker error for request %d: %s", request_id, message.message)
                return [], elapsed
            _log.debug("Unexpected %s for request %d", message.type, request_id)

    def cancel_pending(self) -> int:
        return self._pending.cancel_all()

    def release(self):
        """Stop worker process; outstanding requests get no response."""
        self.cancel_pending()
        self.initialized = False
        if self._worker is None:
            return
        try:
            self._input_queue.put(ShutdownRequest(), timeout=1.0)
        except queue.Full:
            _log.warning("Worker input queue full during shutdown")
        self._worker.join(timeout=1.0)
        if self._worker.is_alive():
            self._worker.terminate()
        self._worker = None
        self._input_queue = None
        self._output_queue = None
