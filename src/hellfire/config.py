"""Configuration loading for Hellfire."""

import copy
import os
from pathlib import Path
from typing import Any, Dict, Optional

import yaml


class ConfigError(Exception):
    """Invalid or unreadable configuration."""

    pass


DEFAULT_CONFIG: Dict[str, Any] = {
    "logging": {
        "level": "INFO",
    },
    "telemetry": {
        "interval": 1.0,
        "log_dir": "logs/hellfire",
        "command_timeout": 5,
    },
    "load": {
        "ram_fraction": 0.9,
        "furnace_ram_fraction": 0.7,
        "furnace_vm_workers_max": 8,
        "gpu_resolution": "1920x1080",
        "gpu_msaa": 0,
        "furnace_gpu_resolution": "1920x1080",
        "terminate_grace": 5.0,
        "gpu_terminate_grace": 10.0,
    },
    "safety": {
        "cpu_temp_limit": 100.0,
        "cpu_temp_debounce": 5,
        "gpu_vram_limit": 90.0,
        "gpu_hotspot_limit": 100.0,
        "gpu_hotspot_debounce": 2,
        "gpu_power_limit_factor": 1.10,
        "gpu_fan_min_percent": 20.0,
        "gpu_fan_debounce": 5,
        "gpu_fan_guard_edge": 65.0,
        "gpu_fan_guard_hotspot": 70.0,
        "warnings": {
            "cpu_temp": 85.0,
            "gpu_hotspot": 95.0,
            "gpu_vram": 85.0,
            "interval": 5.0,
        },
    },
    "orchestrator": {
        "confirmation_phrase": "YES",
        "countdown": 5,
        "preflight_warn_temp": 70.0,
        "early_exit_tolerance": 5,
        "min_duration": 10,
        "default_duration": {
            "cpu": 300,
            "ram": 300,
            "gpu": 300,
            "furnace": 180,
        },
    },
}


def _deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    merged = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def parse_resolution(value: str) -> tuple[int, int]:
    """Parse a WIDTHxHEIGHT string."""
    try:
        width, height = value.lower().split("x")
        return int(width), int(height)
    except (AttributeError, ValueError):
        raise ConfigError(f"Invalid resolution '{value}', expected WIDTHxHEIGHT")


def load_config(config_path: Optional[str] = None) -> Dict[str, Any]:
    """
    Load configuration from YAML, merged over the built-in defaults.

    Environment overrides (also picked up from .env):
        HELLFIRE_LOG_DIR          telemetry.log_dir
        HELLFIRE_GPU_RESOLUTION   load.furnace_gpu_resolution

    Raises:
        ConfigError: If the file cannot be read or parsed
    """
    cfg = copy.deepcopy(DEFAULT_CONFIG)

    if config_path:
        path = Path(config_path)
        try:
            with open(path, "r") as f:
                user_cfg = yaml.safe_load(f) or {}
        except FileNotFoundError:
            raise ConfigError(f"Config file not found: {path}")
        except yaml.YAMLError as e:
            raise ConfigError(f"Error parsing config file: {e}")

        if not isinstance(user_cfg, dict):
            raise ConfigError(f"Config file {path} must contain a mapping")
        cfg = _deep_merge(cfg, user_cfg)

    log_dir = os.environ.get("HELLFIRE_LOG_DIR")
    if log_dir:
        cfg["telemetry"]["log_dir"] = log_dir

    gpu_res = os.environ.get("HELLFIRE_GPU_RESOLUTION")
    if gpu_res:
        parse_resolution(gpu_res)
        cfg["load"]["furnace_gpu_resolution"] = gpu_res

    return cfg
