"""Centralized configuration loader for the analytics client."""

import copy
import os
from pathlib import Path
from functools import lru_cache

import yaml


CONFIG_DIR = Path(__file__).resolve().parent.parent.parent / "config"

DEFAULTS = {
    "collector": {
        "endpoint": "",
        "request_timeout_seconds": 30,
    },
    "buffer": {
        "max_batch_size": 100,
        "failure_penalty": 20,
        "submit_workers": 1,
    },
    "session": {
        "idle_timeout_seconds": 600,
        "use_timer": True,
    },
    "persistence": {
        "directory": None,
        "name": "PersistedAnalytics",
    },
    "device": {
        "id_path": "~/.simple_analytics/device_id",
    },
    "logging": {
        "level": "info",
    },
    "app": {
        "name": "",
        "version": "",
        "platform": None,
        "submit_at_dismiss": True,
    },
}


def _merge(base: dict, override: dict) -> dict:
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(base.get(key), dict):
            _merge(base[key], value)
        else:
            base[key] = value
    return base


@lru_cache(maxsize=1)
def load_config(config_path: str | None = None) -> dict:
    """Load client configuration from YAML file, layered over the defaults."""
    config = copy.deepcopy(DEFAULTS)
    path = Path(config_path) if config_path else CONFIG_DIR / "analytics.yml"
    if config_path or path.exists():
        with open(path) as f:
            _merge(config, yaml.safe_load(f) or {})

    # Allow environment variable overrides
    overrides = {
        "collector.endpoint": os.getenv("ANALYTICS_ENDPOINT"),
        "buffer.max_batch_size": os.getenv("ANALYTICS_MAX_BATCH_SIZE"),
        "buffer.failure_penalty": os.getenv("ANALYTICS_FAILURE_PENALTY"),
        "session.idle_timeout_seconds": os.getenv("ANALYTICS_SESSION_TIMEOUT"),
        "logging.level": os.getenv("ANALYTICS_LOG_LEVEL"),
        "persistence.directory": os.getenv("ANALYTICS_PERSISTENCE_DIR"),
    }
    for dotted_key, value in overrides.items():
        if value is not None:
            keys = dotted_key.split(".")
            d = config
            for k in keys[:-1]:
                d = d[k]
            if value.isdigit():
                d[keys[-1]] = int(value)
            else:
                d[keys[-1]] = value

    return config


def get_logging_config() -> dict:
    return load_config()["logging"]
