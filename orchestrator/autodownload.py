"""Download the newest successful backup without user interaction."""
from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Any, List, Mapping, Optional, TYPE_CHECKING

from backup.errors import GatewayError
from backup.types import BackupStatus, HistoryQuery

from core.paths import get_data_dir, get_downloads_dir

from .announce import Notifier
from .clock import Clock, SYSTEM_CLOCK
from .logs import OrchestratorLogger

if TYPE_CHECKING:  # pragma: no cover - typing guard
    from backup.gateway import EdgeFunctionClient

LOGGER = logging.getLogger("backupconsole.orchestrator.autodownload")


class AutoDownloadWatcher:
    """Poll the newest history row and fetch fresh successes once."""

    def __init__(
        self,
        gateway: "EdgeFunctionClient",
        notifier: Notifier,
        *,
        working_dir: Path,
        interval_s: float = 300.0,
        recent_window_s: float = 3600.0,
        remember: int = 10,
        clock: Clock = SYSTEM_CLOCK,
        logger: Optional[OrchestratorLogger] = None,
    ) -> None:
        self._gateway = gateway
        self._notifier = notifier
        self._working_dir = Path(working_dir)
        self._interval_s = max(1.0, float(interval_s))
        self._recent_window_s = float(recent_window_s)
        self._remember = max(1, int(remember))
        self._clock = clock
        self._logger = logger
        self._state_path = get_data_dir(self._working_dir) / "downloaded_backups.json"
        self._downloaded: List[str] = self._load()
        self._stop_event = asyncio.Event()
        self._task: Optional[asyncio.Task[None]] = None

    @classmethod
    def from_settings(
        cls,
        gateway: "EdgeFunctionClient",
        notifier: Notifier,
        settings: Mapping[str, Any],
        *,
        working_dir: Path,
        **kwargs: Any,
    ) -> "AutoDownloadWatcher":
        raw = settings.get("auto_download") if isinstance(settings.get("auto_download"), Mapping) else {}
        return cls(
            gateway,
            notifier,
            working_dir=working_dir,
            interval_s=float(raw.get("interval_s", 300)),
            recent_window_s=float(raw.get("recent_window_s", 3600)),
            remember=int(raw.get("remember", 10)),
            **kwargs,
        )

    # ------------------------------------------------------------------
    @property
    def downloaded(self) -> List[str]:
        return list(self._downloaded)

    def _load(self) -> List[str]:
        if not self._state_path.exists():
            return []
        try:
            payload = json.loads(self._state_path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            LOGGER.warning("Ignoring unreadable %s: %s", self._state_path, exc)
            return []
        if not isinstance(payload, list):
            return []
        return [str(item) for item in payload][-self._remember:]

    def _remember_download(self, attempt_id: str) -> None:
        self._downloaded.append(attempt_id)
        self._downloaded = self._downloaded[-self._remember:]
        self._state_path.parent.mkdir(parents=True, exist_ok=True)
        self._state_path.write_text(json.dumps(self._downloaded, indent=2), encoding="utf-8")

    # ------------------------------------------------------------------
    async def start(self) -> None:
        if self._task and not self._task.done():
            return
        self._stop_event.clear()
        loop = asyncio.get_running_loop()
        self._task = loop.create_task(self._run(), name="backup-auto-download")

    async def stop(self) -> None:
        self._stop_event.set()
        task = self._task
        if task:
            await task
        self._task = None

    async def _run(self) -> None:
        LOGGER.info("Auto-download watcher started (every %.0fs)", self._interval_s)
        while not self._stop_event.is_set():
            try:
                await self.check_once()
            except (GatewayError, OSError) as exc:
                LOGGER.warning("Auto-download check failed: %s", exc)
                if self._logger:
                    self._logger.log_error(9501, "autodownload", exc)
            if await self._clock.sleep(self._interval_s, wake=self._stop_event):
                break
        LOGGER.info("Auto-download watcher stopped")

    async def check_once(self) -> Optional[Path]:
        rows = await asyncio.to_thread(self._gateway.list_history, HistoryQuery(limit=1))
        if not rows:
            return None
        latest = rows[0]
        if latest.status is not BackupStatus.SUCCESS or not latest.artifact_key:
            return None
        if latest.id in self._downloaded or latest.created_at is None:
            return None
        now = self._clock.now()
        created = latest.created_at
        if created.tzinfo is None:
            now = now.replace(tzinfo=None)
        if (now - created).total_seconds() > self._recent_window_s:
            return None
        url = await asyncio.to_thread(self._gateway.sign_artifact_url, latest.artifact_key)
        destination = get_downloads_dir(self._working_dir) / f"backup-{now.date().isoformat()}.zip"
        path = await asyncio.to_thread(self._gateway.fetch_artifact, url, destination)
        self._remember_download(latest.id)
        self._notifier.success(f"Backup downloaded to {path}", attempt_id=latest.id)
        if self._logger:
            self._logger.log_download(5001, True, attempt_id=latest.id, path=str(path))
        return path


__all__ = ["AutoDownloadWatcher"]
