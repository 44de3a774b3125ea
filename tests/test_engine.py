"""
Liveguard — Engine Integration Tests
====================================
Validates LiveguardEngine end to end with synthetic detections:
- step dispatch and progress clamping
- auto-advance after the display delay
- timeouts and reset
- scheduler wiring and model-init failure reporting
"""

import os
import sys
import threading
import unittest
from unittest.mock import MagicMock

import numpy as np

sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from liveguard_config import LiveguardConfig
from liveguard_detector import ModelInitializer
from liveguard_engine import LiveguardEngine, build_scheduler
from liveguard_scheduler import AdaptiveFrameScheduler, OffloadedFrameScheduler
from liveguard_types import BoundingBox, LivenessStep, PerformanceConfig
from landmark_helpers import face_box, make_detection, make_landmarks

FRAME_SIZE = (640, 480)


class FakeClock:
    def __init__(self, start=1000.0):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, ms):
        self.now += ms


class TestLiveguardEngine(unittest.TestCase):

    def setUp(self):
        self.clock = FakeClock()
        self.audit = MagicMock()
        self.engine = LiveguardEngine(LiveguardConfig(), audit=self.audit, clock=self.clock)

    def _goto(self, step):
        self.engine.start_check()
        while self.engine.state.current_step != step:
            self.engine.advance()

    def test_idle_before_start(self):
        self.assertIsNone(self.engine.process_detections([make_detection()], FRAME_SIZE))
        self.assertEqual(self.engine.state.current_step, LivenessStep.INTRO)

    def test_centered_face_passes_alignment(self):
        self.engine.start_check()
        result = self.engine.process_detections([make_detection()], FRAME_SIZE)
        self.assertEqual(result.progress, 100.0)
        self.assertTrue(self.engine.state.ready_to_advance)

    def test_only_first_face_is_scored(self):
        self.engine.start_check()
        off_center = make_detection(box=BoundingBox.from_xywh(0, 0, 60, 60))
        self.engine.process_detections([off_center, make_detection()], FRAME_SIZE)
        self.assertLess(self.engine.state.progress, 100.0)

    def test_no_face_holds_progress(self):
        self.engine.start_check()
        self.engine.state.apply_progress(40)
        self.assertIsNone(self.engine.process_detections([], FRAME_SIZE))
        self.assertEqual(self.engine.state.progress, 40.0)

    def test_auto_advance_after_delay(self):
        self.engine.start_check()
        self.engine.process_detections([make_detection()], FRAME_SIZE)

        self.assertFalse(self.engine.poll_advance())
        self.clock.advance(1199)
        self.assertFalse(self.engine.poll_advance())
        self.clock.advance(1)
        self.assertTrue(self.engine.poll_advance())
        self.assertEqual(self.engine.state.current_step, LivenessStep.BLINK_EYES)
        self.assertFalse(self.engine.poll_advance())

    def test_blink_sets_flag(self):
        self._goto(LivenessStep.BLINK_EYES)
        self.engine.process_detections([make_detection(expressions={"refinedEyeOpenness": 0.9})], FRAME_SIZE)
        result = self.engine.process_detections(
            [make_detection(expressions={"refinedEyeOpenness": 0.1})], FRAME_SIZE
        )
        self.assertEqual(result.action, "blink_detected")
        self.assertTrue(self.engine.state.history.blink_detected)
        self.assertEqual(self.engine.state.progress, 100.0)
        self.audit.event.assert_any_call("action_detected", action="blink_detected", step="blinkEyes")

    def test_left_turn_from_landmarks(self):
        self._goto(LivenessStep.TURN_LEFT)
        self.engine.process_detections([make_detection(landmarks=make_landmarks(orientation=-0.2))], FRAME_SIZE)
        self.assertTrue(self.engine.state.history.left_turn_detected)
        self.assertEqual(self.engine.state.progress, 100.0)

    def test_malformed_landmarks_leave_step_untouched(self):
        self._goto(LivenessStep.TURN_LEFT)
        result = self.engine.process_detections(
            [make_detection(landmarks=np.zeros((478, 1)))], FRAME_SIZE
        )
        self.assertTrue(result.is_noop)
        self.assertEqual(self.engine.state.progress, 0.0)
        self.assertFalse(self.engine.state.history.left_turn_detected)

    def test_smile_progress_is_clamped(self):
        self._goto(LivenessStep.SMILE)
        # 0.7 * 0.3 + 0.3 * 0.5 = 0.36 -> 54 (below threshold)
        self.engine.process_detections(
            [make_detection(expressions={"mouthCurvature": 0.3, "mouthWidth": 0.5})], FRAME_SIZE
        )
        self.assertAlmostEqual(self.engine.state.progress, 54.0)
        self.assertFalse(self.engine.state.history.smile_detected)

    def test_progress_always_in_range(self):
        self._goto(LivenessStep.BLINK_EYES)
        for value in (1.0, 0.9, 0.4, 0.0, 0.7, 0.2, 1.0):
            self.engine.process_detections([make_detection(expressions={"eyeOpenness": value})], FRAME_SIZE)
            self.assertGreaterEqual(self.engine.state.progress, 0.0)
            self.assertLessEqual(self.engine.state.progress, 100.0)

    def test_timeout_zeroes_progress(self):
        self._goto(LivenessStep.TURN_RIGHT)
        self.engine.process_detections([make_detection(expressions={"faceOrientation": 0.075})], FRAME_SIZE)
        self.assertAlmostEqual(self.engine.state.progress, 50.0)

        self.clock.advance(15001)
        self.engine.process_detections([], FRAME_SIZE)
        self.assertEqual(self.engine.state.progress, 0.0)
        self.assertEqual(self.engine.state.current_step, LivenessStep.TURN_RIGHT)

    def test_reset(self):
        self._goto(LivenessStep.SMILE)
        self.engine.reset()
        self.assertEqual(self.engine.state.current_step, LivenessStep.INTRO)
        self.assertIsNone(self.engine.last_result)

    def test_status(self):
        self.engine.start_check()
        self.engine.process_detections([make_detection()], FRAME_SIZE)
        status = self.engine.get_status()
        self.assertEqual(status["current_step"], "faceAlignment")
        self.assertEqual(status["faces"], 1)
        self.assertIn("norm_x", status["metrics"])

    def test_concurrent_ui_and_scheduler(self):
        self.engine.start_check()
        errors = []

        def feed():
            try:
                for _ in range(300):
                    self.engine.process_detections([make_detection()], FRAME_SIZE)
            except Exception as e:  # surfaced through the assertion below
                errors.append(e)

        worker = threading.Thread(target=feed)
        worker.start()
        for _ in range(50):
            self.engine.advance()
            self.engine.reset()
            self.engine.start_check()
        worker.join()
        self.assertEqual(errors, [])


class TestSchedulerWiring(unittest.TestCase):

    def test_in_process_scheduler(self):
        detector = MagicMock()
        sched = build_scheduler(LiveguardConfig(), lambda: None, None, detector=detector)
        self.assertIsInstance(sched, AdaptiveFrameScheduler)
        self.assertNotIsInstance(sched, OffloadedFrameScheduler)
        self.assertIs(sched.detector, detector)

    def test_alternate_execution_context_uses_worker(self):
        config = LiveguardConfig(performance=PerformanceConfig.from_level(2, use_alternate_execution_context=True))
        sched = build_scheduler(config, lambda: None, None)
        self.assertIsInstance(sched, OffloadedFrameScheduler)
        self.assertEqual(sched.performance.max_skip_frames, 2)

    def test_initialize_without_scheduler(self):
        with self.assertRaises(RuntimeError):
            LiveguardEngine().initialize()

    def test_failed_init_is_audited(self):
        audit = MagicMock()
        engine = LiveguardEngine(audit=audit)
        detector = MagicMock()
        detector.load.side_effect = FileNotFoundError("missing")
        engine.attach_scheduler(lambda: None, detector=detector)

        result = engine.initialize(ModelInitializer(retries=1, sleep=MagicMock()))
        self.assertFalse(result.success)
        audit.event.assert_called_with("model_init_failed", attempts=2, error="missing")

    def test_failed_init_keeps_running_without_detection(self):
        engine = LiveguardEngine(clock=FakeClock())
        detector = MagicMock()
        detector.load.side_effect = RuntimeError("no backend")
        frame = np.zeros((480, 640, 3), dtype=np.uint8)
        sched = engine.attach_scheduler(lambda: frame, detector=detector)

        result = engine.initialize(ModelInitializer(retries=0, sleep=MagicMock()))
        self.assertFalse(result.success)
        engine.start_check()
        self.assertFalse(sched.tick())
        detector.detect_faces.assert_not_called()
        self.assertEqual(engine.state.current_step, LivenessStep.FACE_ALIGNMENT)
        engine.stop()

    def test_scheduler_feeds_engine(self):
        engine = LiveguardEngine(clock=FakeClock())
        detector = MagicMock()
        detector.detect_faces.return_value = [make_detection(box=face_box())]
        detector.detect_landmarks.side_effect = lambda frame, faces: faces
        frame = np.zeros((480, 640, 3), dtype=np.uint8)
        sched = engine.attach_scheduler(lambda: frame, detector=detector)
        sched.detector_ready = True

        engine.start_check()
        sched.tick()
        self.assertEqual(engine.state.progress, 100.0)
        self.assertEqual(engine.frame_size, (640, 480))
        engine.stop()
        detector.release.assert_called_once()
