"""
Liveguard — Configuration
=========================
Loads config.yaml, merges it over the built-in defaults and validates
the recognised option surface:

  model.detection_confidence        float in [0, 1]
  model.max_faces                   positive int
  model.landmarks_enabled           bool
  model.expressions_enabled         bool
  performance.throttling_level      1 | 2 | 3
  performance.use_alternate_execution_context   bool

Also hosts setup_logger() so every module formats console output
the same way.
"""

from __future__ import annotations

import copy
import logging
import os
from dataclasses import dataclass, field
from typing import Any, Optional

import yaml

from liveguard_types import ModelSettings, PerformanceConfig, DEFAULT_STEP_TIMEOUT_MS


_SCRIPT_DIR = os.path.dirname(os.path.abspath(__file__))
_config_path = os.path.join(_SCRIPT_DIR, "config.yaml")


DEFAULT_CONFIG: dict = {
    "model": {
        "detection_confidence": 0.5,
        "max_faces": 1,
        "landmarks_enabled": True,
        "expressions_enabled": True,
    },
    "performance": {
        "throttling_level": 1,
        "use_alternate_execution_context": False,
        "target_fps": 30,
    },
    "liveness": {
        "step_timeout_ms": DEFAULT_STEP_TIMEOUT_MS,
        "advance_delay_ms": 1200,
    },
    "models": {
        "detector_asset": "models/blaze_face_short_range.tflite",
        "landmarker_asset": "models/face_landmarker.task",
        "init_retries": 3,
        "init_backoff_ms": 2000,
    },
    "logging": {
        "level": "INFO",
        "audit_dir": "logs",
    },
}


class ConfigError(ValueError):
    """Raised for out-of-range or malformed configuration values."""


# ===================================================================
# Logging Setup
# ===================================================================

def setup_logger(name: str, level: int = logging.INFO) -> logging.Logger:
    """Create a configured logger for Liveguard modules."""
    logger = logging.getLogger(name)
    if not logger.handlers:
        handler = logging.StreamHandler()
        formatter = logging.Formatter(
            '[%(asctime)s] %(name)-12s %(levelname)-7s %(message)s',
            datefmt='%H:%M:%S'
        )
        handler.setFormatter(formatter)
        logger.addHandler(handler)
    logger.setLevel(level)
    return logger


# ===================================================================
# Loading
# ===================================================================

def _deep_merge(base: dict, override: dict) -> dict:
    merged = copy.deepcopy(base)
    for key, value in (override or {}).items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def load_config(path: Optional[str] = None) -> dict:
    """Load config.yaml merged over DEFAULT_CONFIG.

    A missing default file is not an error (defaults apply); an
    explicitly requested path that does not exist is.
    """
    target = path or _config_path
    if not os.path.exists(target):
        if path is not None:
            raise ConfigError(f"Config file not found: {target}")
        return copy.deepcopy(DEFAULT_CONFIG)
    with open(target, 'r', encoding='utf-8') as f:
        raw = yaml.safe_load(f) or {}
    if not isinstance(raw, dict):
        raise ConfigError(f"Config root must be a mapping, got {type(raw).__name__}")
    return _deep_merge(DEFAULT_CONFIG, raw)


# ===================================================================
# Validation
# ===================================================================

def _require_bool(section: str, key: str, value: Any) -> bool:
    if not isinstance(value, bool):
        raise ConfigError(f"{section}.{key} must be a bool, got {value!r}")
    return value


def validate_model_settings(section: dict) -> ModelSettings:
    confidence = section.get("detection_confidence")
    if isinstance(confidence, bool) or not isinstance(confidence, (int, float)) or not 0.0 <= confidence <= 1.0:
        raise ConfigError(f"model.detection_confidence must be in [0, 1], got {confidence!r}")

    max_faces = section.get("max_faces")
    if isinstance(max_faces, bool) or not isinstance(max_faces, int) or max_faces < 1:
        raise ConfigError(f"model.max_faces must be a positive integer, got {max_faces!r}")

    return ModelSettings(
        detection_confidence=float(confidence),
        max_faces=max_faces,
        landmarks_enabled=_require_bool("model", "landmarks_enabled", section.get("landmarks_enabled")),
        expressions_enabled=_require_bool("model", "expressions_enabled", section.get("expressions_enabled")),
    )


def validate_performance(section: dict) -> PerformanceConfig:
    level = section.get("throttling_level")
    alternate = _require_bool(
        "performance", "use_alternate_execution_context",
        section.get("use_alternate_execution_context"),
    )
    try:
        return PerformanceConfig.from_level(level, use_alternate_execution_context=alternate)
    except ValueError as e:
        raise ConfigError(f"performance.{e}") from e


@dataclass(frozen=True)
class LiveguardConfig:
    """Validated runtime configuration."""
    model: ModelSettings = field(default_factory=ModelSettings)
    performance: PerformanceConfig = field(default_factory=PerformanceConfig)
    target_fps: float = 30.0
    step_timeout_ms: float = DEFAULT_STEP_TIMEOUT_MS
    advance_delay_ms: float = 1200.0
    detector_asset: str = DEFAULT_CONFIG["models"]["detector_asset"]
    landmarker_asset: str = DEFAULT_CONFIG["models"]["landmarker_asset"]
    init_retries: int = 3
    init_backoff_ms: float = 2000.0
    log_level: str = "INFO"
    audit_dir: str = "logs"

    @classmethod
    def from_dict(cls, raw: dict) -> "LiveguardConfig":
        cfg = _deep_merge(DEFAULT_CONFIG, raw)
        perf = cfg["performance"]
        liveness = cfg["liveness"]
        models = cfg["models"]

        target_fps = perf.get("target_fps")
        if not isinstance(target_fps, (int, float)) or target_fps <= 0:
            raise ConfigError(f"performance.target_fps must be positive, got {target_fps!r}")
        timeout = liveness.get("step_timeout_ms")
        if not isinstance(timeout, (int, float)) or timeout <= 0:
            raise ConfigError(f"liveness.step_timeout_ms must be positive, got {timeout!r}")
        retries = models.get("init_retries")
        if isinstance(retries, bool) or not isinstance(retries, int) or retries < 0:
            raise ConfigError(f"models.init_retries must be a non-negative integer, got {retries!r}")

        return cls(
            model=validate_model_settings(cfg["model"]),
            performance=validate_performance(perf),
            target_fps=float(target_fps),
            step_timeout_ms=float(timeout),
            advance_delay_ms=float(liveness.get("advance_delay_ms", 1200)),
            detector_asset=str(models["detector_asset"]),
            landmarker_asset=str(models["landmarker_asset"]),
            init_retries=retries,
            init_backoff_ms=float(models.get("init_backoff_ms", 2000)),
            log_level=str(cfg["logging"].get("level", "INFO")).upper(),
            audit_dir=str(cfg["logging"].get("audit_dir", "logs")),
        )

    @classmethod
    def load(cls, path: Optional[str] = None) -> "LiveguardConfig":
        return cls.from_dict(load_config(path))

    @property
    def target_frame_interval_ms(self) -> float:
        return 1000.0 / self.target_fps
