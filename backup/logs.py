"""Structured JSONL log of backup console events."""
from __future__ import annotations

import json
import logging
from collections import deque
from datetime import datetime, timezone
from pathlib import Path
from threading import Lock
from typing import Any, Dict, List, Optional

from core.paths import get_logs_dir

LOGGER = logging.getLogger("backupconsole.backup")


class BackupLogger:
    """Append one JSON object per line to ``logs/backup.jsonl``.

    ``bind()`` returns a logger sharing the same file that stamps every entry
    with fixed context such as ``attempt_id`` or ``dispatch_handle``.
    """

    def __init__(self, working_dir: Path, *, context: Optional[Dict[str, Any]] = None, _lock: Optional[Lock] = None) -> None:
        self._working_dir = Path(working_dir)
        self._log_path = get_logs_dir(self._working_dir) / "backup.jsonl"
        self._log_path.parent.mkdir(parents=True, exist_ok=True)
        self._context = {key: value for key, value in (context or {}).items() if value is not None}
        self._lock = _lock or Lock()

    @property
    def path(self) -> Path:
        return self._log_path

    def bind(self, **context: Any) -> "BackupLogger":
        merged = dict(self._context)
        merged.update(context)
        return BackupLogger(self._working_dir, context=merged, _lock=self._lock)

    # ------------------------------------------------------------------
    def _write(self, event: str, extra: Dict[str, Any], *, ok: bool, level: int) -> None:
        payload: Dict[str, Any] = {"ts": datetime.now(timezone.utc).isoformat(), "event": event, "ok": ok}
        payload.update(self._context)
        payload.update(extra)
        line = json.dumps(payload, sort_keys=True, default=str)
        with self._lock:
            with self._log_path.open("a", encoding="utf-8") as handle:
                handle.write(line + "\n")
        LOGGER.log(level, "%s", line)

    def info(self, event: str, **extra: Any) -> None:
        self._write(event, extra, ok=True, level=logging.INFO)

    def warning(self, event: str, **extra: Any) -> None:
        self._write(event, extra, ok=False, level=logging.WARNING)

    def error(self, event: str, **extra: Any) -> None:
        self._write(event, extra, ok=False, level=logging.ERROR)

    def tail(self, limit: int = 50) -> List[Dict[str, Any]]:
        """Return the newest ``limit`` entries, oldest first."""

        if not self._log_path.exists():
            return []
        lines: deque[str] = deque(maxlen=max(1, int(limit)))
        with self._lock:
            with self._log_path.open("r", encoding="utf-8") as handle:
                for line in handle:
                    if line.strip():
                        lines.append(line)
        entries: List[Dict[str, Any]] = []
        for line in lines:
            try:
                entries.append(json.loads(line))
            except json.JSONDecodeError:
                LOGGER.debug("Skipping malformed backup log line")
        return entries


__all__ = ["BackupLogger"]
