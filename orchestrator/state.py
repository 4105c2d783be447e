"""Run state mirrored to the console."""
from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Any, Dict, Optional


@dataclass(slots=True)
class BackupConsoleState:
    is_running: bool = False
    progress: float = 0.0
    dispatch_handle: Optional[str] = None
    attempt_id: Optional[str] = None
    timed_out: bool = False
    current_step: Optional[str] = None
    last_error: Optional[str] = None

    def begin_run(self) -> None:
        self.is_running = True
        self.progress = 0.0
        self.dispatch_handle = None
        self.attempt_id = None
        self.timed_out = False
        self.current_step = None
        self.last_error = None

    def attach_dispatch(self, dispatch_handle: str, attempt_id: Optional[str] = None) -> None:
        self.dispatch_handle = dispatch_handle
        if attempt_id:
            self.attempt_id = attempt_id

    def update_progress(self, progress: float, *, current_step: Optional[str] = None, attempt_id: Optional[str] = None) -> None:
        self.progress = max(self.progress, min(100.0, float(progress)))
        if current_step:
            self.current_step = current_step
        if attempt_id and not self.attempt_id:
            self.attempt_id = attempt_id

    def hand_off(self) -> None:
        """The foreground run stopped polling; a background watch owns it now."""

        self.timed_out = True

    def finish_run(self, *, error: Optional[str] = None) -> None:
        self.is_running = False
        if error:
            self.last_error = error

    def finish_background(self) -> None:
        self.is_running = False
        self.timed_out = False

    def clear_timed_out(self) -> None:
        self.timed_out = False

    def snapshot(self) -> Dict[str, Any]:
        return asdict(self)


__all__ = ["BackupConsoleState"]
