"""
Liveguard — Audit Logger Tests
==============================
JSONL output, NumPy/Enum serialization and thread-safe appends.
"""

import json
import os
import sys
import tempfile
import threading
import unittest

import numpy as np

sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from liveguard_logger import LiveguardJSONEncoder, LiveguardLogger, NullAuditLogger
from liveguard_types import LivenessStep


class TestLiveguardLogger(unittest.TestCase):

    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.logger = LiveguardLogger(self.tmp.name)

    def tearDown(self):
        self.logger.close()
        self.tmp.cleanup()

    def _entries(self):
        with open(self.logger.log_path, encoding="utf-8") as f:
            return [json.loads(line) for line in f]

    def test_startup_entry(self):
        entries = self._entries()
        self.assertEqual(entries[0]["event"], "system_startup")
        self.assertEqual(entries[0]["level"], "SYSTEM")

    def test_open_is_reported_on_module_logger(self):
        with self.assertLogs("LiveguardAudit", level="INFO") as captured:
            extra = LiveguardLogger(self.tmp.name, filename="second.jsonl")
        extra.close()
        self.assertIn("second.jsonl", captured.output[0])

    def test_event_with_numpy_payload(self):
        self.logger.event("step_advanced", previous=LivenessStep.SMILE,
                          score=np.float32(0.5), count=np.int64(3), points=np.zeros(2))
        entry = self._entries()[-1]
        self.assertEqual(entry["event"], "step_advanced")
        self.assertEqual(entry["data"], {"previous": "smile", "score": 0.5, "count": 3, "points": [0.0, 0.0]})

    def test_metrics_entry(self):
        self.logger.log_metrics({"fps": 29.5, "detect_time_ms": 12.0})
        entry = self._entries()[-1]
        self.assertEqual(entry["event"], "performance_metrics")
        self.assertEqual(entry["data"]["fps"], 29.5)

    def test_close_is_idempotent_and_stops_writes(self):
        self.logger.close()
        self.logger.close()
        self.logger.event("late")
        events = [e["event"] for e in self._entries()]
        self.assertEqual(events[-1], "system_shutdown")
        self.assertNotIn("late", events)

    def test_concurrent_appends_stay_line_delimited(self):
        def write(n):
            for i in range(50):
                self.logger.event("tick", thread=n, i=i)

        threads = [threading.Thread(target=write, args=(n,)) for n in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        ticks = [e for e in self._entries() if e["event"] == "tick"]
        self.assertEqual(len(ticks), 200)


class TestEncoder(unittest.TestCase):

    def test_unknown_type_still_raises(self):
        with self.assertRaises(TypeError):
            json.dumps({"x": object()}, cls=LiveguardJSONEncoder)

    def test_numpy_bool(self):
        self.assertEqual(json.dumps(np.bool_(True), cls=LiveguardJSONEncoder), "true")


def test_null_logger_accepts_everything():
    audit = NullAuditLogger()
    audit.event("session_started", step="faceAlignment")
    audit.log_metrics({"fps": 1.0})
    audit.log({"event": "x"})
    audit.close()
