"""Structured logging helpers for the backup watchers.

Event id ranges: 1xxx engine lifecycle, 2xxx polling, 3xxx background
monitor, 4xxx history tracker, 5xxx auto-download, 9xxx errors.
"""
from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from threading import Lock
from typing import Any, Dict, Optional

from core.paths import get_logs_dir

LOGGER = logging.getLogger("backupconsole.orchestrator.logs")


class OrchestratorLogger:
    """Write structured JSONL events to ``logs/orchestrator.jsonl``."""

    def __init__(self, working_dir: Path) -> None:
        self._working_dir = Path(working_dir)
        self._log_path = get_logs_dir(self._working_dir) / "orchestrator.jsonl"
        self._log_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = Lock()

    @property
    def path(self) -> Path:
        return self._log_path

    # ------------------------------------------------------------------
    def log_event(
        self,
        *,
        level: str,
        event_id: int,
        phase: str,
        ok: bool,
        dispatch_handle: Optional[str] = None,
        attempt_id: Optional[str] = None,
        data: Optional[Dict[str, Any]] = None,
    ) -> None:
        payload: Dict[str, Any] = {
            "ts": datetime.now(timezone.utc).isoformat(),
            "level": level,
            "event_id": int(event_id),
            "phase": phase,
            "ok": ok,
            "dispatch_handle": dispatch_handle,
            "attempt_id": attempt_id,
        }
        if data:
            payload.update(data)
        line = json.dumps(payload, sort_keys=True, default=str)
        with self._lock:
            with self._log_path.open("a", encoding="utf-8") as fh:
                fh.write(line + "\n")
        LOGGER.log(getattr(logging, level, logging.INFO), "%s", line)

    # ------------------------------------------------------------------
    def log_poll(self, event_id: int, ok: bool, *, dispatch_handle: Optional[str], attempt_id: Optional[str] = None, **data: Any) -> None:
        self.log_event(
            level="INFO",
            event_id=event_id,
            phase="poll",
            ok=ok,
            dispatch_handle=dispatch_handle,
            attempt_id=attempt_id,
            data=data,
        )

    def log_monitor(self, event_id: int, ok: bool, *, dispatch_handle: Optional[str], attempt_id: Optional[str] = None, **data: Any) -> None:
        self.log_event(
            level="INFO",
            event_id=event_id,
            phase="monitor",
            ok=ok,
            dispatch_handle=dispatch_handle,
            attempt_id=attempt_id,
            data=data,
        )

    def log_tracker(self, event_id: int, ok: bool, *, attempt_id: Optional[str] = None, **data: Any) -> None:
        self.log_event(level="INFO", event_id=event_id, phase="tracker", ok=ok, attempt_id=attempt_id, data=data)

    def log_download(self, event_id: int, ok: bool, *, attempt_id: Optional[str] = None, **data: Any) -> None:
        self.log_event(level="INFO", event_id=event_id, phase="autodownload", ok=ok, attempt_id=attempt_id, data=data)

    def log_error(
        self,
        event_id: int,
        phase: str,
        err: Exception,
        *,
        dispatch_handle: Optional[str] = None,
        attempt_id: Optional[str] = None,
        **data: Any,
    ) -> None:
        payload = dict(data)
        payload["err"] = type(err).__name__
        payload["err_msg"] = str(err)
        self.log_event(
            level="ERROR",
            event_id=event_id,
            phase=phase,
            ok=False,
            dispatch_handle=dispatch_handle,
            attempt_id=attempt_id,
            data=payload,
        )


__all__ = ["OrchestratorLogger"]
