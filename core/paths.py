from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any, Dict, Optional

__all__ = [
    "ensure_working_dir_structure",
    "get_data_dir",
    "get_default_settings_paths",
    "get_downloads_dir",
    "get_logs_dir",
    "resolve_working_dir",
]

_PROJECT_ROOT = Path(__file__).resolve().parent.parent
_HOME_ENV = "BACKUPCONSOLE_HOME"


def _expand_path(value: str) -> Path:
    expanded = os.path.expandvars(os.path.expanduser(value))
    return Path(expanded).resolve()


def _ensure_writable_dir(path: Path) -> bool:
    try:
        path.mkdir(parents=True, exist_ok=True)
    except OSError:
        return False
    test_file = path / f".write_test_{os.getpid()}"
    try:
        with open(test_file, "w", encoding="utf-8") as handle:
            handle.write("ok")
        test_file.unlink(missing_ok=True)
        return True
    except OSError:
        try:
            if test_file.exists():
                test_file.unlink()
        except OSError:  # pragma: no cover - best effort cleanup
            pass
        return False


def _prepare_working_dir(candidate: Path) -> Optional[Path]:
    if not _ensure_writable_dir(candidate):
        return None
    try:
        ensure_working_dir_structure(candidate)
        return candidate
    except OSError:
        return None


def _read_settings(path: Path) -> Optional[Dict[str, Any]]:
    try:
        with open(path, "r", encoding="utf-8") as handle:
            data = json.load(handle)
        if isinstance(data, dict):
            return data
    except FileNotFoundError:
        return None
    except (OSError, ValueError):
        return None
    return None


def resolve_working_dir() -> Path:
    """Resolve the console working directory, creating it if required.

    Resolution order: ``$BACKUPCONSOLE_HOME``, a ``working_dir`` entry in a
    ``settings.json`` next to the project, then ``~/.backupconsole``.
    """

    env_home = os.environ.get(_HOME_ENV)
    if env_home:
        try:
            env_path = _expand_path(env_home)
        except (OSError, RuntimeError):
            env_path = None
        if env_path:
            prepared = _prepare_working_dir(env_path)
            if prepared is not None:
                return prepared

    data = _read_settings(_PROJECT_ROOT / "settings.json")
    if data:
        working_dir_value = data.get("working_dir")
        if isinstance(working_dir_value, str) and working_dir_value.strip():
            try:
                prepared = _prepare_working_dir(_expand_path(working_dir_value))
            except (OSError, RuntimeError):
                prepared = None
            if prepared is not None:
                return prepared

    fallback = Path.home() / ".backupconsole"
    ensure_working_dir_structure(fallback)
    return fallback


def get_data_dir(working_dir: Path) -> Path:
    return working_dir / "data"


def get_logs_dir(working_dir: Path) -> Path:
    return working_dir / "logs"


def get_downloads_dir(working_dir: Path) -> Path:
    return working_dir / "downloads"


def ensure_working_dir_structure(working_dir: Path) -> None:
    for directory in (
        working_dir,
        get_data_dir(working_dir),
        get_logs_dir(working_dir),
        get_downloads_dir(working_dir),
    ):
        directory.mkdir(parents=True, exist_ok=True)


def get_default_settings_paths(working_dir: Path) -> list[Path]:
    """Return the search order for settings.json files."""

    paths = [working_dir / "settings.json"]
    project_settings = _PROJECT_ROOT / "settings.json"
    if project_settings not in paths:
        paths.append(project_settings)
    return paths
