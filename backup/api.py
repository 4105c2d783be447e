"""Public API for backup console operations."""
from __future__ import annotations

import asyncio
import logging
import re
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

from core.paths import resolve_working_dir
from core.settings import load_settings

from orchestrator.announce import AnnouncementLedger, Announcer, NotificationFeed, Notifier, attempt_keys
from orchestrator.autodownload import AutoDownloadWatcher
from orchestrator.clock import Clock, SYSTEM_CLOCK
from orchestrator.history import HistoryView
from orchestrator.logs import OrchestratorLogger
from orchestrator.monitor import BackgroundMonitor, MonitorSettings
from orchestrator.polling import PollingEngine, PollingPolicy
from orchestrator.progress import HistoryProgressTracker
from orchestrator.state import BackupConsoleState

from .errors import BackupCancelledError, BackupRequestError, GatewayError
from .gateway import EdgeFunctionClient
from .logs import BackupLogger
from .restore import MAX_ARCHIVE_BYTES, restore_archive
from .types import (
    BackupAttempt,
    BackupSettingsSnapshot,
    BackupStatus,
    CancelResult,
    DownloadTicket,
    HistoryQuery,
    RestoreReport,
    ShareResult,
)

LOGGER = logging.getLogger("backupconsole.backup.service")

_UUID_RE = re.compile(r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$", re.IGNORECASE)
_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
_UNSAFE_KEY_CHARS = re.compile(r"[<>\"']")
SHARE_METHODS = ("email", "whatsapp")


def is_attempt_id(value: Any) -> bool:
    return isinstance(value, str) and bool(_UUID_RE.match(value))


def _require_attempt_id(value: Any) -> str:
    if not is_attempt_id(value):
        raise BackupRequestError("Invalid backup ID format")
    return str(value)


def _validate_artifact_key(key: Optional[str]) -> str:
    if not key:
        raise BackupRequestError("No backup file available")
    if len(key) > 1024 or _UNSAFE_KEY_CHARS.search(key):
        raise BackupRequestError("Invalid backup file reference")
    return key


def _block(settings: Dict[str, Any], name: str) -> Dict[str, Any]:
    value = settings.get(name)
    return value if isinstance(value, dict) else {}


class BackupService:
    """Coordinate manual backups, background watchers, history and restore."""

    def __init__(
        self,
        *,
        working_dir: Optional[Path] = None,
        settings: Optional[Dict[str, Any]] = None,
        gateway: Optional[EdgeFunctionClient] = None,
        notifier: Optional[Notifier] = None,
        clock: Clock = SYSTEM_CLOCK,
    ) -> None:
        self._working_dir = Path(working_dir or resolve_working_dir())
        self._settings = dict(settings) if settings is not None else load_settings(self._working_dir)
        self._gateway = gateway or EdgeFunctionClient.from_settings(self._settings)
        self._logger = BackupLogger(self._working_dir)
        self._events = OrchestratorLogger(self._working_dir)
        self._clock = clock
        self._run_task: Optional[asyncio.Task] = None

        self.notifications = notifier or NotificationFeed()
        self.state = BackupConsoleState()
        self.ledger = AnnouncementLedger()
        self.announcer = Announcer(self.ledger, self.notifications)

        history = _block(self._settings, "history")
        self.history = HistoryView(
            self._gateway,
            query=HistoryQuery(limit=int(history.get("page_limit", 5))),
            throttle_s=float(history.get("refetch_throttle_s", 2.0)),
            clock=clock,
        )
        self.history.subscribe(self._forget_unlisted)
        self.monitor = BackgroundMonitor(
            self._gateway,
            state=self.state,
            announcer=self.announcer,
            history=self.history,
            settings=MonitorSettings.from_settings(self._settings),
            clock=clock,
            logger=self._events,
        )
        self.engine = PollingEngine(
            self._gateway,
            state=self.state,
            announcer=self.announcer,
            monitor=self.monitor,
            policy=PollingPolicy.from_settings(self._settings),
            clock=clock,
            logger=self._events,
        )
        self.tracker = HistoryProgressTracker.from_settings(
            self._gateway,
            self.history,
            self.announcer,
            self._settings,
            clock=clock,
            logger=self._events,
        )
        self.auto_download: Optional[AutoDownloadWatcher] = None
        if _block(self._settings, "auto_download").get("enable"):
            self.auto_download = AutoDownloadWatcher.from_settings(
                self._gateway,
                self.notifications,
                self._settings,
                working_dir=self._working_dir,
                clock=clock,
                logger=self._events,
            )

    # ------------------------------------------------------------------
    @property
    def working_dir(self) -> Path:
        return self._working_dir

    @property
    def gateway(self) -> EdgeFunctionClient:
        return self._gateway

    @property
    def logger(self) -> BackupLogger:
        return self._logger

    async def start(self) -> None:
        """Load the history and start the watchers that run on their own."""

        await self._refresh_quietly()
        self.tracker.start()
        if self.auto_download is not None:
            await self.auto_download.start()
        self._logger.info("service_start", auto_download=self.auto_download is not None)

    async def close(self) -> None:
        self.engine.cancel()
        if self._run_task is not None:
            await asyncio.gather(self._run_task, return_exceptions=True)
        await self.tracker.stop()
        await self.monitor.shutdown()
        if self.auto_download is not None:
            await self.auto_download.stop()
        self._gateway.close()
        self._logger.info("service_stop")

    def _forget_unlisted(self, rows: List[BackupAttempt]) -> None:
        keep = [key for row in rows for key in attempt_keys(row.dispatch_handle, row.id)]
        dropped = self.ledger.prune(keep)
        if dropped:
            LOGGER.debug("Forgot %s announcement keys no longer in history", dropped)

    async def refresh_history(self, **filters: Any) -> List[BackupAttempt]:
        try:
            if filters:
                return await self.history.set_query(**filters)
            return await self.history.refresh()
        except GatewayError as exc:
            self._logger.warning("history_refresh_failed", error=str(exc))
            raise

    async def _refresh_quietly(self) -> None:
        try:
            await self.history.refresh()
        except GatewayError as exc:
            self._logger.warning("history_refresh_failed", error=str(exc))

    # ------------------------------------------------------------------
    async def run_manual_backup(self) -> Optional[str]:
        """Run one manual backup; the user cancelling yields ``None``."""

        self._logger.info("manual_backup_start")
        try:
            url = await self.engine.start_manual_backup()
        except BackupCancelledError:
            self._logger.info("manual_backup_cancelled", dispatch_handle=self.state.dispatch_handle)
            return None
        except GatewayError as exc:
            self.notifications.failure(str(exc))
            self._logger.error("manual_backup_error", error=str(exc))
            raise
        finally:
            await self._refresh_quietly()
        self._logger.info(
            "manual_backup_done",
            dispatch_handle=self.state.dispatch_handle,
            attempt_id=self.state.attempt_id,
            has_url=bool(url),
            timed_out=self.state.timed_out,
        )
        return url

    async def start_manual_backup_task(self) -> asyncio.Task:
        """Run a manual backup in the background and return its task."""

        if self.engine.active:
            raise BackupRequestError("A backup is already running")
        loop = asyncio.get_running_loop()
        task = loop.create_task(self._run_manual_backup_logged(), name="backup-manual-run")
        self._run_task = task
        await asyncio.sleep(0)
        return task

    async def _run_manual_backup_logged(self) -> Optional[str]:
        try:
            return await self.run_manual_backup()
        except Exception as exc:
            self._logger.error("manual_backup_task_failed", error=str(exc), err=type(exc).__name__)
            return None

    async def cancel_manual_backup(self) -> bool:
        """Stop the local run and ask the server to mark the attempt cancelled.

        The remote cancel is best effort: the runner may finish anyway.
        """

        session = self.engine.session
        dispatch_handle = session.dispatch_handle if session else self.state.dispatch_handle
        attempt_id = session.attempt_id if session else self.state.attempt_id
        if not self.engine.cancel():
            return False
        self.announcer.silence(attempt_keys(dispatch_handle, attempt_id))
        self.notifications.info("Backup cancelled", attempt_id=attempt_id)
        log = self._logger.bind(dispatch_handle=dispatch_handle, attempt_id=attempt_id)
        try:
            if not attempt_id and dispatch_handle:
                record = await asyncio.to_thread(self._gateway.find_attempt, dispatch_handle=dispatch_handle)
                if record is not None and record.active:
                    attempt_id = record.id
            if attempt_id:
                await asyncio.to_thread(self._gateway.cancel, [attempt_id])
                log.info("remote_cancel", cancelled=attempt_id)
        except GatewayError as exc:
            log.warning("remote_cancel_failed", error=str(exc))
            self.notifications.warning(
                f"Backup stopped locally, but the server could not mark it cancelled: {exc}",
                attempt_id=attempt_id,
            )
        await self._refresh_quietly()
        return True

    # ------------------------------------------------------------------
    async def download_from_history(self, artifact_key: Optional[str]) -> str:
        key = _validate_artifact_key(artifact_key)
        url = await asyncio.to_thread(self._gateway.sign_artifact_url, key)
        if not url.startswith(("http://", "https://")):
            raise GatewayError("Invalid download URL received", function="generate-signed-url")
        self._logger.info("download_signed", artifact_key=key)
        return url

    async def download_ticket(self, attempt_id: str) -> DownloadTicket:
        return await asyncio.to_thread(self._gateway.download_ticket, _require_attempt_id(attempt_id))

    async def cancel_attempts(self, attempt_ids: Sequence[str]) -> CancelResult:
        ids = [_require_attempt_id(item) for item in attempt_ids]
        if not ids:
            raise BackupRequestError("No backup ids to cancel")
        for attempt_id in ids:
            self.announcer.silence(attempt_keys(attempt_id=attempt_id))
        result = await asyncio.to_thread(self._gateway.cancel, ids)
        self._logger.info("attempts_cancelled", ids=ids, cancelled=result.cancelled_count)
        self.notifications.info(result.message or f"Cancelled {result.cancelled_count} backup(s)")
        await self._refresh_quietly()
        return result

    async def cancel_all_stuck(self) -> CancelResult:
        """Cancel every running row in the visible history."""

        candidates = [row.id for row in self.history.rows if row.status is BackupStatus.IN_PROGRESS]
        if not candidates:
            return CancelResult(cancelled_count=0, message="No stuck backups found")
        ids = [item for item in candidates if is_attempt_id(item)]
        if not ids:
            raise BackupRequestError("No valid backup IDs found to cancel")
        return await self.cancel_attempts(ids)

    async def delete_attempt(self, attempt_id: str) -> None:
        attempt_id = _require_attempt_id(attempt_id)
        await asyncio.to_thread(self._gateway.delete, attempt_id)
        self._logger.info("attempt_deleted", attempt_id=attempt_id)
        await self._refresh_quietly()

    @property
    def restore_max_bytes(self) -> int:
        return int(_block(self._settings, "restore").get("max_bytes", MAX_ARCHIVE_BYTES))

    async def restore(self, file_name: str, data: bytes, *, content_type: Optional[str] = None) -> RestoreReport:
        max_bytes = self.restore_max_bytes
        report = await asyncio.to_thread(
            restore_archive,
            self._gateway,
            file_name,
            data,
            content_type=content_type,
            max_bytes=max_bytes,
            logger=self._logger,
        )
        await self._refresh_quietly()
        return report

    async def share(self, attempt_id: str, *, method: str, recipient: str) -> ShareResult:
        attempt_id = _require_attempt_id(attempt_id)
        if method not in SHARE_METHODS:
            raise BackupRequestError(f"Unsupported share method: {method}")
        recipient = (recipient or "").strip()
        if not recipient:
            raise BackupRequestError("Please enter an email address" if method == "email" else "Please enter a WhatsApp number")
        if method == "email" and not _EMAIL_RE.match(recipient):
            raise BackupRequestError("Invalid email address")
        result = await asyncio.to_thread(self._gateway.share, attempt_id, method=method, recipient=recipient)
        self._logger.info("backup_shared", attempt_id=attempt_id, method=method)
        return result

    async def get_settings(self) -> BackupSettingsSnapshot:
        return await asyncio.to_thread(self._gateway.get_settings)

    async def set_backup_enabled(self, enabled: bool) -> BackupSettingsSnapshot:
        await asyncio.to_thread(self._gateway.set_backup_enabled, enabled)
        self._logger.info("backup_toggle", enabled=bool(enabled))
        return await self.get_settings()


__all__ = ["BackupService", "SHARE_METHODS", "is_attempt_id"]
