"""Runtime configuration for the workflow engine.

Values come from runtime.yaml next to this module. Environment variables take
precedence over YAML config.

Usage:
    from guideflow.config.runtime_config import get_device_class, get_max_forward_hops

    device = get_device_class()        # "desktop" unless GUIDEFLOW_DEVICE_CLASS is set
    hops = get_max_forward_hops()      # 100 by default

Environment variables:
    GUIDEFLOW_DEVICE_CLASS                 mobile | tablet | desktop
    GUIDEFLOW_MAX_FORWARD_HOPS             integer, 1..1000
    GUIDEFLOW_LAYER_CLOSE_DELAY_MS         integer, 0..5000
    GUIDEFLOW_DEFAULT_FALLBACK_COMPONENT   component id
    GUIDEFLOW_EVENT_SOURCE                 meta.source on emitted events
    GUIDEFLOW_LOG_LEVEL                    DEBUG | INFO | WARNING | ERROR
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

logger = logging.getLogger(__name__)

_CONFIG_PATH = Path(__file__).parent / "runtime.yaml"
_cached_config: Optional[Dict[str, Any]] = None

VALID_DEVICE_CLASSES = ("mobile", "tablet", "desktop")
VALID_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")

MAX_FORWARD_HOPS_MIN = 1
MAX_FORWARD_HOPS_MAX = 1000
CLOSE_DELAY_MS_MAX = 5000


def _load_config() -> Dict[str, Any]:
    """Load runtime.yaml configuration, with caching."""
    global _cached_config
    if _cached_config is not None:
        return _cached_config

    if _CONFIG_PATH.exists():
        with open(_CONFIG_PATH, encoding="utf-8") as f:
            _cached_config = yaml.safe_load(f) or _default_config()
    else:
        _cached_config = _default_config()

    return _cached_config


def _default_config() -> Dict[str, Any]:
    """Return default configuration if runtime.yaml doesn't exist."""
    return {
        "version": "1.0",
        "presentation": {
            "device_class": "desktop",
            "layer_close_delay_ms": 100,
            "default_fallback_component": "default-fallback",
        },
        "navigation": {"max_forward_hops": 100},
        "events": {"source": "flow-runner"},
        "logging": {"level": "INFO"},
    }


def reset_config() -> None:
    """Reset cached config (for testing)."""
    global _cached_config
    _cached_config = None


def _section(name: str) -> Dict[str, Any]:
    value = _load_config().get(name)
    if isinstance(value, dict):
        return value
    return _default_config()[name]


def _clamp_int(value: Any, name: str, min_val: int, max_val: int, default: int) -> int:
    try:
        number = int(value)
    except (TypeError, ValueError):
        logger.warning("Invalid %s value %r. Falling back to %d.", name, value, default)
        return default
    if number < min_val:
        logger.warning("%s value %d is below minimum %d. Clamping.", name, number, min_val)
        return min_val
    if number > max_val:
        logger.warning("%s value %d exceeds maximum %d. Clamping.", name, number, max_val)
        return max_val
    return number


def get_device_class() -> str:
    """Device class used when the application does not supply one."""
    env_value = os.environ.get("GUIDEFLOW_DEVICE_CLASS")
    value = env_value or _section("presentation").get("device_class") or "desktop"
    value = str(value).lower()
    if value not in VALID_DEVICE_CLASSES:
        logger.warning(
            "Invalid device class '%s' (valid: %s). Falling back to 'desktop'.",
            value,
            ", ".join(VALID_DEVICE_CLASSES),
        )
        return "desktop"
    return value


def get_max_forward_hops() -> int:
    env_value = os.environ.get("GUIDEFLOW_MAX_FORWARD_HOPS")
    value = env_value if env_value else _section("navigation").get("max_forward_hops", 100)
    return _clamp_int(value, "max_forward_hops", MAX_FORWARD_HOPS_MIN, MAX_FORWARD_HOPS_MAX, 100)


def get_layer_close_delay_seconds() -> float:
    env_value = os.environ.get("GUIDEFLOW_LAYER_CLOSE_DELAY_MS")
    value = env_value if env_value else _section("presentation").get("layer_close_delay_ms", 100)
    return _clamp_int(value, "layer_close_delay_ms", 0, CLOSE_DELAY_MS_MAX, 100) / 1000.0


def get_default_fallback_component() -> str:
    env_value = os.environ.get("GUIDEFLOW_DEFAULT_FALLBACK_COMPONENT")
    if env_value:
        return env_value
    return str(_section("presentation").get("default_fallback_component") or "default-fallback")


def get_event_source() -> str:
    env_value = os.environ.get("GUIDEFLOW_EVENT_SOURCE")
    if env_value:
        return env_value
    return str(_section("events").get("source") or "flow-runner")


def get_log_level() -> str:
    env_value = os.environ.get("GUIDEFLOW_LOG_LEVEL")
    value = str(env_value or _section("logging").get("level") or "INFO").upper()
    if value not in VALID_LOG_LEVELS:
        logger.warning("Invalid log level '%s'. Falling back to 'INFO'.", value)
        return "INFO"
    return value
