"""Load processor settings from config/settings.yaml."""

import os
from pathlib import Path
from typing import Any

import yaml

CONFIG_DIR_ENV = "EVENT_PROCESSOR_CONFIG_DIR"

_DEFAULTS: dict[str, Any] = {
    "database": {
        "path": "data/event_processor.db",
        "busy_timeout": 5000,
    },
    "event_store": {
        "max_attempts": 5,
        "stale_timeout": 300.0,
        "backoff_base": 5.0,
        "max_backoff": 300.0,
    },
    "processor": {
        "default_consumer": "cold_agent_enroller",
        "default_event_type": "lead_created",
        "default_limit": 10,
        "max_limit": 100,
        "default_max_ms": 8000,
        # Must stay below the host's hard execution ceiling.
        "max_ms_ceiling": 55000,
    },
    "http": {
        "host": "127.0.0.1",
        "port": 8080,
    },
    "logging": {
        "file": "logs/event_processor.log",
        "run_log_file": "logs/run_log.jsonl",
        "level": "INFO",
        "log_to_console": True,
        "max_bytes": 10485760,  # 10 MB
        "backup_count": 3,
    },
}

_cached: dict[str, Any] | None = None


def _deep_merge(base: dict[str, Any], overlay: dict[str, Any]) -> dict[str, Any]:
    """Merge overlay into base recursively. Mutates base."""
    for key, value in overlay.items():
        if value is None:
            continue
        if key in base and isinstance(base[key], dict) and isinstance(value, dict):
            _deep_merge(base[key], value)
        else:
            base[key] = value
    return base


def get_default_settings() -> dict[str, Any]:
    """Return a deep copy of default settings."""
    return _deep_copy_nested(_DEFAULTS)


def get_setting(settings: dict[str, Any], path: str, default: Any = None) -> Any:
    """Get a nested value by dot path (e.g. 'processor.max_limit')."""
    current: Any = settings
    for part in path.split("."):
        if not isinstance(current, dict) or part not in current:
            return default
        current = current[part]
    return current


def reload_settings() -> None:
    """Clear the settings cache."""
    global _cached
    _cached = None


def _resolve_config_dir(config_dir: Path | None) -> Path:
    if config_dir is not None:
        return config_dir
    from_env = os.environ.get(CONFIG_DIR_ENV)
    if from_env:
        return Path(from_env)
    return Path(__file__).resolve().parent.parent / "config"


def load_settings(config_dir: Path | None = None) -> dict[str, Any]:
    """Load settings from settings.yaml. Returns merged defaults + file values."""
    global _cached
    if _cached is not None:
        return _cached

    path = _resolve_config_dir(config_dir) / "settings.yaml"

    result = get_default_settings()
    if path.exists():
        try:
            data = yaml.safe_load(path.read_text(encoding="utf-8"))
            if isinstance(data, dict):
                _deep_merge(result, data)
        except (yaml.YAMLError, OSError):
            pass

    _cached = result
    return result


def _deep_copy_nested(obj: Any) -> Any:
    """Return a deep copy of nested dicts/lists for defaults."""
    if isinstance(obj, dict):
        return {k: _deep_copy_nested(v) for k, v in obj.items()}
    if isinstance(obj, list):
        return [_deep_copy_nested(x) for x in obj]
    return obj
