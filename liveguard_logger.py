"""
Liveguard — Structured Audit Logger
===================================
Records every liveness decision (session start, step transitions,
detected actions, timeouts, model init failures) and periodic
performance snapshots as JSONL for post-session review.

Key Features:
  - JSONL (Newline Delimited JSON) format
  - Thread-safe appends (scheduler thread + UI thread)
  - NumPy-aware serialization
"""

import json
import logging
import os
import sys
import threading
import time
from enum import Enum
from typing import Any, Dict, Optional

import numpy as np

_log = logging.getLogger("LiveguardAudit")


class LiveguardJSONEncoder(json.JSONEncoder):
    """Handles NumPy and Enum types for JSON serialization."""
    def default(self, obj):
        if isinstance(obj, np.ndarray):
            return obj.tolist()
        if isinstance(obj, np.floating):
            return float(obj)
        if isinstance(obj, np.integer):
            return int(obj)
        if isinstance(obj, np.bool_):
            return bool(obj)
        if isinstance(obj, Enum):
            return obj.value
        return super().default(obj)


class LiveguardLogger:
    """Append-only JSONL audit trail for one engine instance."""

    def __init__(self, log_dir: str = "logs", filename: str = "liveguard_audit.jsonl"):
        self.log_dir = log_dir
        os.makedirs(self.log_dir, exist_ok=True)

        self.log_path = os.path.join(self.log_dir, filename)
        self._file = open(self.log_path, "a", encoding="utf-8")
        self._lock = threading.Lock()
        _log.info("Audit log opened: %s", self.log_path)

        self.log({
            "event": "system_startup",
            "python_version": sys.version,
            "platform": sys.platform
        }, level="SYSTEM")

    def log(self, data: Dict[str, Any], level: str = "AUDIT", event: Optional[str] = None):
        """Append log entry."""
        entry = {
            "timestamp": time.time(),
            "level": level,
            "event": event or data.get("event", "unknown"),
            "data": data
        }

        line = json.dumps(entry, cls=LiveguardJSONEncoder) + "\n"

        with self._lock:
            if self._file.closed:
                return
            self._file.write(line)
            self._file.flush()

    def event(self, name: str, **data):
        """Shorthand for a named AUDIT entry."""
        self.log(data, level="AUDIT", event=name)

    def log_metrics(self, metrics: Dict[str, Any]):
        self.log(metrics, level="AUDIT", event="performance_metrics")

    def close(self):
        """Clean shutdown."""
        with self._lock:
            if self._file.closed:
                return
        self.log({"message": "Logger shutting down"}, level="SYSTEM", event="system_shutdown")
        with self._lock:
            self._file.close()


class NullAuditLogger:
    """Drop-in audit logger that records nothing (tests, headless embeds)."""

    def log(self, data, level="AUDIT", event=None):
        pass

    def event(self, name, **data):
        pass

    def log_metrics(self, metrics):
        pass

    def close(self):
        pass

