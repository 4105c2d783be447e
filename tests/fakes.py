from __future__ import annotations

import asyncio
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path
from types import SimpleNamespace
from typing import Any, Callable, Dict, List, Optional

from backup.errors import GatewayError
from backup.types import (
    BackupAttempt,
    BackupSettingsSnapshot,
    BackupStatus,
    CancelResult,
    DispatchReceipt,
    DownloadTicket,
    HistoryQuery,
    ShareResult,
    StatusReport,
)
from orchestrator.announce import AnnouncementLedger, Announcer, NotificationFeed
from orchestrator.clock import Clock
from orchestrator.history import HistoryView
from orchestrator.monitor import BackgroundMonitor, MonitorSettings
from orchestrator.polling import PollingEngine, PollingPolicy
from orchestrator.progress import HistoryProgressTracker
from orchestrator.state import BackupConsoleState

EPOCH = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)
ATTEMPT_A = "0b9f3c1e-2d4a-4c5b-9e6f-7a8b9c0d1e2f"
ATTEMPT_B = "5c6d7e8f-9a0b-4c1d-8e2f-3a4b5c6d7e8f"


class FakeClock(Clock):
    """Instant clock: sleeping advances virtual time and yields once."""

    def __init__(self) -> None:
        self.now_s = 0.0
        self.sleeps: List[float] = []
        self.on_sleep: Optional[Callable[[float], None]] = None

    def monotonic(self) -> float:
        return self.now_s

    def now(self) -> datetime:
        return EPOCH + timedelta(seconds=self.now_s)

    def advance(self, seconds: float) -> None:
        self.now_s += seconds

    async def sleep(self, seconds: float, *, wake: Optional[asyncio.Event] = None) -> bool:
        self.sleeps.append(seconds)
        if self.on_sleep is not None:
            self.on_sleep(seconds)
        if wake is not None and wake.is_set():
            return True
        self.now_s += seconds
        await asyncio.sleep(0)
        return bool(wake and wake.is_set())


def status(value: str, progress: Optional[float] = None, **extra: Any) -> StatusReport:
    return StatusReport(status=BackupStatus(value), progress=progress, **extra)


def attempt(
    attempt_id: str,
    value: str,
    *,
    key: Optional[str] = None,
    handle: Optional[str] = None,
    error_text: Optional[str] = None,
    created_at: Optional[datetime] = None,
) -> BackupAttempt:
    return BackupAttempt(
        id=attempt_id,
        status=BackupStatus(value),
        artifact_key=key,
        dispatch_handle=handle,
        error_text=error_text,
        created_at=created_at or EPOCH,
    )


@dataclass
class FakeGateway:
    """In-memory stand-in for the edge function client.

    ``statuses`` maps a dispatch handle to scripted reports; the last entry
    repeats. An exception instance in the script is raised instead.
    """

    statuses: Dict[str, List[Any]] = field(default_factory=dict)
    records: List[BackupAttempt] = field(default_factory=list)
    dispatch_handle: str = "run-1"
    sign_error: Optional[Exception] = None
    restore_payload: Dict[str, Any] = field(default_factory=dict)
    backup_enabled: bool = True
    calls: List[tuple] = field(default_factory=list)
    updates: List[Dict[str, Any]] = field(default_factory=list)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def _record(self, name: str, *args: Any) -> None:
        with self._lock:
            self.calls.append((name,) + args)

    def count(self, name: str) -> int:
        return sum(1 for call in self.calls if call[0] == name)

    def dispatch_backup(self) -> DispatchReceipt:
        self._record("dispatch_backup")
        return DispatchReceipt(dispatch_handle=self.dispatch_handle, status_url=None)

    def query_status(self, dispatch_handle: str) -> StatusReport:
        self._record("query_status", dispatch_handle)
        script = self.statuses.get(dispatch_handle)
        if not script:
            raise GatewayError(f"unknown dispatch {dispatch_handle}")
        item = script.pop(0) if len(script) > 1 else script[0]
        if isinstance(item, Exception):
            raise item
        return item

    def list_history(self, query: Optional[HistoryQuery] = None) -> List[BackupAttempt]:
        self._record("list_history")
        limit = query.limit if query else 5
        return list(self.records)[:limit]

    def find_attempt(self, *, attempt_id=None, dispatch_handle=None, limit: int = 10) -> Optional[BackupAttempt]:
        self._record("find_attempt", attempt_id, dispatch_handle)
        for row in self.records:
            if attempt_id and row.id == attempt_id:
                return row
        for row in self.records:
            if dispatch_handle and row.dispatch_handle == dispatch_handle:
                return row
        return None

    def sign_artifact_url(self, artifact_key: str) -> str:
        self._record("sign_artifact_url", artifact_key)
        if self.sign_error is not None:
            raise self.sign_error
        return f"https://signed.example/{artifact_key}"

    def cancel(self, attempt_ids) -> CancelResult:
        self._record("cancel", list(attempt_ids))
        return CancelResult(cancelled_count=len(attempt_ids), message=f"Cancelled {len(attempt_ids)} backup(s)")

    def delete(self, attempt_id: str) -> None:
        self._record("delete", attempt_id)
        self.records = [row for row in self.records if row.id != attempt_id]

    def update_attempt(self, attempt_id, *, dispatch_handle, artifact_key, status, size_bytes=None, error_text=None):
        self._record("update_attempt", attempt_id)
        self.updates.append(
            {"attempt_id": attempt_id, "dispatch_handle": dispatch_handle, "artifact_key": artifact_key, "status": status}
        )
        return {"success": True}

    def restore(self, archive_b64: str, *, file_name: str, file_type: str) -> Dict[str, Any]:
        self._record("restore", file_name, file_type, len(archive_b64))
        return self.restore_payload

    def get_settings(self) -> BackupSettingsSnapshot:
        self._record("get_settings")
        return BackupSettingsSnapshot(backup_enabled=self.backup_enabled, last_backup_at=EPOCH)

    def set_backup_enabled(self, enabled: bool) -> None:
        self._record("set_backup_enabled", enabled)
        self.backup_enabled = enabled

    def share(self, attempt_id: str, *, method: str, recipient: str) -> ShareResult:
        self._record("share", attempt_id, method, recipient)
        return ShareResult(success=True, message="Shared")

    def download_ticket(self, attempt_id: str) -> DownloadTicket:
        self._record("download_ticket", attempt_id)
        return DownloadTicket(download_url=f"https://signed.example/{attempt_id}", expires_in=3600, attempt_id=attempt_id)

    def fetch_artifact(self, url: str, destination: Path) -> Path:
        self._record("fetch_artifact", url)
        destination = Path(destination)
        destination.parent.mkdir(parents=True, exist_ok=True)
        destination.write_bytes(b"PK\x03\x04")
        return destination

    def close(self) -> None:
        self._record("close")


def build_harness(
    gateway: FakeGateway,
    *,
    clock: Optional[FakeClock] = None,
    policy: Optional[PollingPolicy] = None,
    monitor_settings: Optional[MonitorSettings] = None,
    logger=None,
) -> SimpleNamespace:
    """Wire the watchers the way the service does, around fakes."""

    clock = clock or FakeClock()
    state = BackupConsoleState()
    feed = NotificationFeed()
    ledger = AnnouncementLedger()
    announcer = Announcer(ledger, feed)
    history = HistoryView(gateway, throttle_s=2.0, clock=clock)
    monitor = BackgroundMonitor(
        gateway,
        state=state,
        announcer=announcer,
        history=history,
        settings=monitor_settings or MonitorSettings(),
        clock=clock,
        logger=logger,
    )
    engine = PollingEngine(
        gateway,
        state=state,
        announcer=announcer,
        monitor=monitor,
        policy=policy or PollingPolicy(),
        clock=clock,
        logger=logger,
    )
    tracker = HistoryProgressTracker(gateway, history, announcer, clock=clock, logger=logger)
    return SimpleNamespace(
        gateway=gateway,
        clock=clock,
        state=state,
        feed=feed,
        ledger=ledger,
        announcer=announcer,
        history=history,
        monitor=monitor,
        engine=engine,
        tracker=tracker,
    )


def levels(feed: NotificationFeed, level: str) -> List[Any]:
    return [item for item in feed.recent() if item.level == level]
