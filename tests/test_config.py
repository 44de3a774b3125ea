"""
Liveguard — Configuration Tests
===============================
YAML loading, default merge, throttling presets and validation.
"""

from __future__ import annotations

import sys
from pathlib import Path

import pytest
import yaml

# Project root
_project_root = str(Path(__file__).resolve().parent.parent)
if _project_root not in sys.path:
    sys.path.insert(0, _project_root)

from liveguard_config import DEFAULT_CONFIG, ConfigError, LiveguardConfig, load_config
from liveguard_types import THROTTLING_PRESETS, PerformanceConfig


def _write(tmp_path, data) -> str:
    path = tmp_path / "config.yaml"
    path.write_text(yaml.safe_dump(data), encoding="utf-8")
    return str(path)


def test_repository_config_loads():
    cfg = LiveguardConfig.load()
    assert cfg.performance.throttling_level == 1
    assert cfg.step_timeout_ms == 15000
    assert cfg.target_frame_interval_ms == pytest.approx(1000.0 / 30)


def test_partial_file_is_merged_over_defaults(tmp_path):
    raw = load_config(_write(tmp_path, {"performance": {"throttling_level": 3}}))
    assert raw["performance"]["throttling_level"] == 3
    assert raw["model"] == DEFAULT_CONFIG["model"]

    cfg = LiveguardConfig.from_dict(raw)
    assert cfg.performance.landmark_throttle_ms == 300
    assert cfg.performance.expression_throttle_ms == 600
    assert cfg.performance.max_skip_frames == 3


def test_missing_explicit_path_raises(tmp_path):
    with pytest.raises(ConfigError):
        load_config(str(tmp_path / "nope.yaml"))


def test_empty_file_gives_defaults(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text("", encoding="utf-8")
    assert load_config(str(path)) == DEFAULT_CONFIG


def test_non_mapping_root_rejected(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text("- 1\n- 2\n", encoding="utf-8")
    with pytest.raises(ConfigError):
        load_config(str(path))


@pytest.mark.parametrize("level,expected", sorted(THROTTLING_PRESETS.items()))
def test_throttling_presets(level, expected):
    perf = PerformanceConfig.from_level(level)
    assert (perf.landmark_throttle_ms, perf.expression_throttle_ms, perf.max_skip_frames) == expected


@pytest.mark.parametrize("level", [0, 4, "2", True, None])
def test_bad_throttling_level(level):
    with pytest.raises(ConfigError):
        LiveguardConfig.from_dict({"performance": {"throttling_level": level}})


@pytest.mark.parametrize("section,key,value", [
    ("model", "detection_confidence", 1.5),
    ("model", "detection_confidence", -0.1),
    ("model", "max_faces", 0),
    ("model", "max_faces", 2.5),
    ("model", "landmarks_enabled", "yes"),
    ("model", "expressions_enabled", 1),
    ("performance", "use_alternate_execution_context", "false"),
    ("performance", "target_fps", 0),
    ("liveness", "step_timeout_ms", -1),
    ("models", "init_retries", -1),
])
def test_out_of_range_values_rejected(section, key, value):
    with pytest.raises(ConfigError):
        LiveguardConfig.from_dict({section: {key: value}})


def test_config_error_is_value_error():
    assert issubclass(ConfigError, ValueError)


def test_alternate_execution_context_flag():
    cfg = LiveguardConfig.from_dict({"performance": {"use_alternate_execution_context": True}})
    assert cfg.performance.use_alternate_execution_context is True
