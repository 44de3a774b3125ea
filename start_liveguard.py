"""
Liveguard — Launcher
====================
Runs a liveness check against a webcam (or video file): camera frames
feed the frame scheduler, the engine scores each challenge, and a
passed step auto-advances after the configured display delay.

Usage:
  python start_liveguard.py --source 0
  python start_liveguard.py --source clip.mp4 --headless
  python start_liveguard.py --throttling 3 --worker

Keys (window mode): SPACE start / restart, R reset, Q or ESC exit.
"""

import argparse
import logging
import os
import sys
import threading
import time

import cv2

# Add root
sys.path.append(os.path.dirname(os.path.abspath(__file__)))

from liveguard_config import ConfigError, LiveguardConfig, load_config, setup_logger
from liveguard_engine import LiveguardEngine
from liveguard_logger import LiveguardLogger, NullAuditLogger
from liveguard_types import LivenessStep

WINDOW_NAME = "Liveguard | Liveness Check"

STEP_PROMPTS = {
    LivenessStep.INTRO: "Press SPACE to start the liveness check",
    LivenessStep.FACE_ALIGNMENT: "Center your face in the frame",
    LivenessStep.BLINK_EYES: "Blink your eyes",
    LivenessStep.TURN_LEFT: "Turn your head to the left",
    LivenessStep.TURN_RIGHT: "Turn your head to the right",
    LivenessStep.SMILE: "Smile",
    LivenessStep.COMPLETED: "Liveness verified",
}

METRICS_INTERVAL_S = 5.0


class LatestFrame:
    """Single-slot frame buffer shared by the capture loop and the scheduler."""

    def __init__(self):
        self._lock = threading.Lock()
        self._frame = None

    def put(self, frame):
        with self._lock:
            self._frame = frame

    def get(self):
        with self._lock:
            return self._frame


def draw_status(frame, engine: LiveguardEngine):
    """Overlay face boxes, the current prompt and progress bars."""
    status = engine.get_status()
    step = LivenessStep(status["current_step"])
    h, w = frame.shape[:2]

    for det in engine.latest_detections:
        b = det.box
        cv2.rectangle(frame, (int(b.x_min), int(b.y_min)), (int(b.x_max), int(b.y_max)), (0, 200, 0), 2)

    cv2.rectangle(frame, (0, 0), (w, 70), (20, 20, 20), -1)
    cv2.putText(frame, STEP_PROMPTS[step], (12, 28), cv2.FONT_HERSHEY_SIMPLEX, 0.7, (255, 255, 255), 2)

    bar_w = w - 24
    step_fill = int(bar_w * status["progress"] / 100.0)
    total_fill = int(bar_w * status["overall_progress"] / 100.0)
    cv2.rectangle(frame, (12, 40), (12 + step_fill, 50), (0, 200, 255), -1)
    cv2.rectangle(frame, (12, 56), (12 + total_fill, 62), (0, 255, 0), -1)

    perf = status.get("performance")
    if perf:
        text = f"{perf['fps']:.0f} FPS | detect {perf['detect_time_ms']:.1f} ms | {perf['memory_mb']:.0f} MB"
        cv2.putText(frame, text, (12, h - 12), cv2.FONT_HERSHEY_SIMPLEX, 0.5, (200, 200, 200), 1)
    return frame


def main():
    parser = argparse.ArgumentParser(description="Liveguard Liveness Check")
    parser.add_argument("--source", type=str, default="0", help="Camera ID (0, 1, etc.) or Video File Path")
    parser.add_argument("--config", type=str, default=None, help="Path to config.yaml")
    parser.add_argument("--throttling", type=int, choices=[1, 2, 3], help="Override performance.throttling_level")
    parser.add_argument("--worker", action="store_true", help="Run detection in a worker process")
    parser.add_argument("--audit", action="store_true", help="Enable JSONL audit trail")
    parser.add_argument("--headless", action="store_true", help="Run without UI window (auto-starts the check)")
    parser.add_argument("--width", type=int, default=640, help="Camera width (default 640)")
    parser.add_argument("--height", type=int, default=480, help="Camera height (default 480)")
    args = parser.parse_args()

    try:
        raw = load_config(args.config)
        if args.throttling is not None:
            raw["performance"]["throttling_level"] = args.throttling
        if args.worker:
            raw["performance"]["use_alternate_execution_context"] = True
        config = LiveguardConfig.from_dict(raw)
    except ConfigError as e:
        print(f"[LIVEGUARD] Configuration error: {e}")
        return 2

    log = setup_logger("Liveguard", getattr(logging, config.log_level, logging.INFO))
    audit = LiveguardLogger(config.audit_dir) if args.audit else NullAuditLogger()

    source = int(args.source) if args.source.isdigit() else args.source

    print("=" * 60)
    print("  Liveguard — Starting...")
    print(f"  Source:     {source}")
    print(f"  Resolution: {args.width}x{args.height}")
    print(f"  Throttling: level {config.performance.throttling_level}")
    print(f"  Detection:  {'worker process' if config.performance.use_alternate_execution_context else 'in-process'}")
    print("=" * 60)

    cap = cv2.VideoCapture(source)
    if not cap.isOpened():
        print(f"[LIVEGUARD] Cannot open source: {source}")
        return 1
    cap.set(cv2.CAP_PROP_FRAME_WIDTH, args.width)
    cap.set(cv2.CAP_PROP_FRAME_HEIGHT, args.height)

    latest = LatestFrame()
    engine = LiveguardEngine(config, audit=audit)
    engine.attach_scheduler(latest.get)

    try:
        result = engine.initialize()
        if not result.success:
            log.warning("Models unavailable after %d attempts (%s); detection inactive",
                        result.attempts, result.error)
        engine.run()
        if args.headless:
            engine.start_check()

        print("[LIVEGUARD] Active. SPACE start, R reset, Q/ESC exit.")
        last_metrics = time.monotonic()
        last_step = engine.state.current_step

        while True:
            ok, frame = cap.read()
            if not ok:
                if isinstance(source, str):
                    print("[LIVEGUARD] End of video.")
                    break
                time.sleep(0.01)
                continue
            latest.put(frame)

            engine.poll_advance()
            step = engine.state.current_step
            if step != last_step:
                print(f"[LIVEGUARD] Step: {step.value}")
                last_step = step
                if step == LivenessStep.COMPLETED and args.headless:
                    break

            if time.monotonic() - last_metrics >= METRICS_INTERVAL_S:
                engine.report_metrics()
                last_metrics = time.monotonic()

            if args.headless:
                continue

            cv2.imshow(WINDOW_NAME, draw_status(frame.copy(), engine))
            key = cv2.waitKey(1) & 0xFF
            if key in (ord('q'), ord('Q'), 27):  # Q or ESC
                break
            if key == ord(' '):
                if engine.state.current_step in (LivenessStep.INTRO, LivenessStep.COMPLETED):
                    engine.reset()
                    engine.start_check()
            elif key in (ord('r'), ord('R')):
                engine.reset()

    except KeyboardInterrupt:
        print("\n[LIVEGUARD] Interrupted by User.")
    finally:
        print("[LIVEGUARD] Cleaning up...")
        engine.stop()
        cap.release()
        if not args.headless:
            cv2.destroyAllWindows()
        summary = engine.get_status()
        log.info("Final step: %s (%.0f%%)", summary["current_step"], summary["overall_progress"])
        audit.close()
    return 0


if __name__ == "__main__":
    sys.exit(main())
