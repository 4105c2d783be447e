from __future__ import annotations

import json
import os
import time
from pathlib import Path
from typing import Any, Dict

from .settings_schema import SETTINGS_VALIDATOR

from .paths import get_default_settings_paths, get_logs_dir

__all__ = [
    "DEFAULT_SETTINGS",
    "SETTINGS_VERSION",
    "apply_env_overrides",
    "load_settings",
    "merge_defaults",
    "save_settings",
    "update_settings",
]

SETTINGS_VERSION = 1

_ENV_OVERRIDES = {
    "BACKUPCONSOLE_GATEWAY_URL": ("gateway", "base_url"),
    "BACKUPCONSOLE_ANON_KEY": ("gateway", "anon_key"),
    "BACKUPCONSOLE_SERVICE_KEY": ("gateway", "service_key"),
}


DEFAULT_SETTINGS: Dict[str, Any] = {
    "version": SETTINGS_VERSION,
    "gateway": {
        "base_url": None,
        "anon_key": None,
        "service_key": None,
        "user_id": None,
        "timeout_s": 30,
    },
    "polling": {
        "max_attempts": 300,
        "final_checks": 3,
        "final_check_delay_ms": 5000,
        "finalization_threshold": 2,
        "schedule_ms": [[20, 1000], [50, 2000], [100, 5000]],
        "max_interval_ms": 10000,
        "finalizing_fast_polls": 10,
        "finalizing_fast_ms": 1500,
        "finalizing_slow_base_ms": 3000,
        "finalizing_step_ms": 1000,
        "transient_base_ms": 1000,
        "history_lookup_limit": 10,
    },
    "monitor": {
        "interval_s": 30,
        "max_checks": 120,
        "self_heal_after": 10,
        "log_every": 5,
    },
    "history": {
        "interval_s": 2,
        "refetch_throttle_s": 2,
        "page_limit": 5,
        "min_progress_delta": 1,
    },
    "restore": {
        "max_bytes": 500 * 1024 * 1024,
    },
    "auto_download": {
        "enable": False,
        "interval_s": 300,
        "recent_window_s": 3600,
        "remember": 10,
    },
    "api": {
        "host": "127.0.0.1",
        "port": 8766,
        "api_key": None,
        "cors_origins": ["http://localhost", "http://127.0.0.1"],
    },
}


def merge_defaults(data: Dict[str, Any]) -> Dict[str, Any]:
    def _merge(default: Dict[str, Any], payload: Dict[str, Any]) -> Dict[str, Any]:
        result: Dict[str, Any] = {}
        for key, value in default.items():
            if isinstance(value, dict):
                current = payload.get(key)
                if isinstance(current, dict):
                    result[key] = _merge(value, current)
                else:
                    result[key] = _merge(value, {})
            elif isinstance(value, list):
                current = payload.get(key)
                result[key] = list(current) if isinstance(current, list) else list(value)
            else:
                result[key] = payload.get(key, value)
        for key, value in payload.items():
            if key not in result:
                result[key] = value
        return result

    return _merge(DEFAULT_SETTINGS, data or {})


def _apply_migrations(settings: Dict[str, Any], working_dir: Path) -> Dict[str, Any]:
    version = settings.get("version")
    try:
        version_int = int(version)
    except (TypeError, ValueError):
        version_int = 0
    if version_int < SETTINGS_VERSION:
        settings["version"] = SETTINGS_VERSION
    return settings


def apply_env_overrides(settings: Dict[str, Any]) -> Dict[str, Any]:
    """Overlay gateway secrets taken from the environment."""

    for env_name, (section, key) in _ENV_OVERRIDES.items():
        value = os.environ.get(env_name)
        if not value:
            continue
        block = settings.setdefault(section, {})
        if isinstance(block, dict):
            block[key] = value.strip()
    return settings


def _log_unknown_keys(settings: Dict[str, Any], working_dir: Path) -> None:
    unknown = list(SETTINGS_VALIDATOR.unknown_keys(settings))
    if not unknown:
        return
    logs_dir = get_logs_dir(working_dir)
    logs_dir.mkdir(parents=True, exist_ok=True)
    payload = {
        "ts": time.time(),
        "unknown": unknown,
    }
    target = logs_dir / "settings_unknown.json"
    try:
        with open(target, "w", encoding="utf-8") as handle:
            json.dump(payload, handle, ensure_ascii=False, indent=2)
    except OSError:
        return


def _read_settings(working_dir: Path) -> Dict[str, Any]:
    data: Dict[str, Any] = {}
    for candidate in get_default_settings_paths(working_dir):
        try:
            with open(candidate, "r", encoding="utf-8") as handle:
                loaded = json.load(handle)
        except FileNotFoundError:
            continue
        except json.JSONDecodeError:
            continue
        except OSError:
            continue
        if isinstance(loaded, dict):
            data = loaded
            break
    merged = merge_defaults(data)
    merged = _apply_migrations(merged, working_dir)
    merged.setdefault("working_dir", str(working_dir))
    _log_unknown_keys(merged, working_dir)
    return merged


def load_settings(working_dir: Path) -> Dict[str, Any]:
    return apply_env_overrides(_read_settings(working_dir))


def save_settings(settings: Dict[str, Any], working_dir: Path) -> None:
    merged = merge_defaults(dict(settings))
    merged = _apply_migrations(merged, working_dir)
    merged.setdefault("working_dir", str(working_dir))
    path = working_dir / "settings.json"
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w", encoding="utf-8") as handle:
        json.dump(merged, handle, ensure_ascii=False, indent=2)


def update_settings(working_dir: Path, **values: Any) -> None:
    """Persist ``values`` over the file contents; environment secrets stay out of the file."""

    current = _read_settings(working_dir)
    current.update(values)
    save_settings(current, working_dir)
