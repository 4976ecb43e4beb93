from __future__ import annotations

import copy
from pathlib import Path
from typing import Any, Dict, Optional

import yaml


DEFAULT_CONFIG_PATH = "config/params.yaml"

# Used as-is when config/params.yaml is missing; YAML values are merged on top.
DEFAULTS: Dict[str, Any] = {
    "estimator": {
        "loop_period_s": 0.01,
        "lock_applies_immediately": False,
        "stale_after_cycles": 50,
        "lock_wait_s": 5.0,
    },
    "navigation": {
        "position_tolerance_cm": 1.0,
        "heading_tolerance_deg": 1.0,
        "poll_interval_s": 0.02,
        "timeout_s": 30.0,
        "face_scale": 30.0,
        "limits": {"forward": 0.5, "strafe": 0.5, "turn": 0.3},
        "gains": {"forward": 0.02, "strafe": 0.015, "turn": 0.01},
    },
    "sim": {
        "start": [0.0, 0.0, 0.0],
        "dt_s": 0.02,
        "max_speed_cm_s": 50.0,
        "max_turn_dps": 180.0,
        "gyro_bias_deg": 0.0,
        "gyro_drift_dps": 0.0,
        "gyro_noise_deg": 0.0,
        "vision_noise_cm": 0.0,
        "vision_heading_noise_deg": 0.0,
        "vision_range_cm": 150.0,
        "vision_dropout": 0.0,
        "seed": 1234,
    },
    "vision": {
        "source": "sim",
        "camera": 0,
        "size": "640x480",
        "tag_family": "36h11",
        "tag_size_cm": 10.16,
        "intrinsics": {"fx": 578.272, "fy": 578.272, "cx": 402.145, "cy": 221.506, "dist": [0, 0, 0, 0, 0]},
        "decimation": {"high_accuracy": 1.0, "balanced": 3.0},
        "field_tags": {},
    },
    "telemetry": {"enabled": False, "host": "127.0.0.1", "port": 8000},
    "logging": {"level": "INFO"},
}


def _deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    out = copy.deepcopy(base)
    for k, v in (override or {}).items():
        if isinstance(v, dict) and isinstance(out.get(k), dict):
            out[k] = _deep_merge(out[k], v)
        else:
            out[k] = copy.deepcopy(v)
    return out


def load_config(path: Optional[str] = DEFAULT_CONFIG_PATH) -> Dict[str, Any]:
    """
    Load YAML params merged over DEFAULTS.
    A missing file (or path=None) yields the defaults; a non-mapping document is an error.
    """
    if not path or not Path(path).exists():
        return copy.deepcopy(DEFAULTS)
    with open(path, "r") as f:
        P = yaml.safe_load(f) or {}
    if not isinstance(P, dict):
        raise ValueError(f"Config {path} must be a YAML mapping")
    return _deep_merge(DEFAULTS, P)
