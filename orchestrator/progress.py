"""Animate progress for running attempts shown in the history list."""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional, TYPE_CHECKING

from backup.errors import GatewayError
from backup.reconcile import Verdict, VerdictKind, reconcile
from backup.types import BackupAttempt

from .announce import Announcer, attempt_keys
from .clock import Clock, SYSTEM_CLOCK
from .logs import OrchestratorLogger
from .polling import estimate_progress

if TYPE_CHECKING:  # pragma: no cover - typing guard
    from backup.gateway import EdgeFunctionClient

    from .history import HistoryView

LOGGER = logging.getLogger("backupconsole.orchestrator.progress")


@dataclass(slots=True)
class HistoryProgressEntry:
    attempt_id: str
    display_progress: float = 0.0
    settled: bool = False

    def advance(self, value: float, *, min_delta: float = 1.0) -> bool:
        """Move the displayed value up; small or backward moves are ignored."""

        target = min(100.0, float(value))
        if target >= 100.0 > self.display_progress or target - self.display_progress >= min_delta:
            self.display_progress = target
            return True
        return False


class HistoryProgressTracker:
    """One shared loop that refreshes every running row of the history."""

    def __init__(
        self,
        gateway: "EdgeFunctionClient",
        history: "HistoryView",
        announcer: Announcer,
        *,
        interval_s: float = 2.0,
        min_delta: float = 1.0,
        clock: Clock = SYSTEM_CLOCK,
        logger: Optional[OrchestratorLogger] = None,
    ) -> None:
        self._gateway = gateway
        self._history = history
        self._announcer = announcer
        self._interval_s = max(0.0, float(interval_s))
        self._min_delta = float(min_delta)
        self._clock = clock
        self._logger = logger
        self._entries: Dict[str, HistoryProgressEntry] = {}
        self._refetch_pending = False
        self._stop_event = asyncio.Event()
        self._task: Optional[asyncio.Task[None]] = None
        self._unsubscribe = None

    @classmethod
    def from_settings(
        cls,
        gateway: "EdgeFunctionClient",
        history: "HistoryView",
        announcer: Announcer,
        settings: Optional[Mapping[str, Any]],
        **kwargs: Any,
    ) -> "HistoryProgressTracker":
        raw = (settings or {}).get("history")
        raw = raw if isinstance(raw, Mapping) else {}
        return cls(
            gateway,
            history,
            announcer,
            interval_s=float(raw.get("interval_s", 2.0)),
            min_delta=float(raw.get("min_progress_delta", 1.0)),
            **kwargs,
        )

    # ------------------------------------------------------------------
    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def entries(self) -> Dict[str, HistoryProgressEntry]:
        return dict(self._entries)

    def progress_of(self, attempt_id: str) -> Optional[float]:
        entry = self._entries.get(attempt_id)
        return entry.display_progress if entry else None

    def start(self) -> None:
        """Follow history replacements; the loop runs only while rows are active."""

        if self._unsubscribe is None:
            self._unsubscribe = self._history.subscribe(self._on_history)
        self._stop_event.clear()
        self._on_history(self._history.rows)

    async def stop(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        self._stop_event.set()
        task = self._task
        if task:
            await task
        self._task = None

    def _on_history(self, rows: List[BackupAttempt]) -> None:
        active = {row.id for row in rows if row.active}
        for attempt_id in list(self._entries):
            if attempt_id not in active:
                del self._entries[attempt_id]
        if active and not self.running and not self._stop_event.is_set():
            loop = asyncio.get_running_loop()
            self._task = loop.create_task(self._run(), name="backup-history-tracker")
            if self._logger:
                self._logger.log_tracker(4001, True, active=len(active))

    def _tracked_rows(self) -> List[BackupAttempt]:
        return [
            row
            for row in self._history.active_rows()
            if not (row.id in self._entries and self._entries[row.id].settled)
        ]

    async def _run(self) -> None:
        LOGGER.debug("History progress tracker started")
        try:
            while not self._stop_event.is_set():
                rows = self._tracked_rows()
                if not rows and not self._refetch_pending:
                    break
                await self.tick(rows)
                if await self._clock.sleep(self._interval_s, wake=self._stop_event):
                    break
        finally:
            LOGGER.debug("History progress tracker idle")
            if self._logger:
                self._logger.log_tracker(4002, True, entries=len(self._entries))

    # ------------------------------------------------------------------
    async def tick(self, rows: Optional[List[BackupAttempt]] = None) -> None:
        """Update every tracked row once and refetch history if any settled."""

        settled = 0
        for row in rows if rows is not None else self._tracked_rows():
            entry = self._entries.get(row.id)
            if entry is None:
                entry = self._entries[row.id] = HistoryProgressEntry(row.id)
            if entry.settled:
                continue
            verdict = reconcile(None, row)
            progress: Optional[float] = None
            if not verdict.terminal and row.dispatch_handle:
                try:
                    report = await asyncio.to_thread(self._gateway.query_status, row.dispatch_handle)
                except GatewayError as exc:
                    LOGGER.debug("Status for %s unavailable: %s", row.id, exc)
                else:
                    verdict = reconcile(report, row)
                    progress = report.progress
            if verdict.terminal:
                await self._settle(entry, row, verdict)
                settled += 1
                continue
            if progress is None:
                progress = self._estimate(row)
            if progress is not None:
                entry.advance(progress, min_delta=self._min_delta)
        if settled or self._refetch_pending:
            await self._refetch()

    def _estimate(self, row: BackupAttempt) -> Optional[float]:
        if row.created_at is None:
            return None
        created = row.created_at
        now = self._clock.now()
        if created.tzinfo is None:
            now = now.replace(tzinfo=None)
        return estimate_progress((now - created).total_seconds())

    async def _settle(self, entry: HistoryProgressEntry, row: BackupAttempt, verdict: Verdict) -> None:
        keys = attempt_keys(row.dispatch_handle, row.id)
        url = None
        owned = self._announcer.ledger.owner_of(keys) is not None
        if not owned and verdict.kind is VerdictKind.SUCCESS and verdict.artifact_key and not verdict.signed_url:
            try:
                url = await asyncio.to_thread(self._gateway.sign_artifact_url, verdict.artifact_key)
            except GatewayError as exc:
                LOGGER.warning("Signing %s failed: %s", verdict.artifact_key, exc)
        entry.settled = True
        if verdict.kind is VerdictKind.SUCCESS:
            entry.display_progress = 100.0
        if self._announcer.ledger.owner_of(keys) is None:
            self._announcer.announce(verdict, keys, url=url or verdict.signed_url)
        if self._logger:
            self._logger.log_tracker(4003, verdict.kind is not VerdictKind.FAILURE, attempt_id=row.id, outcome=verdict.kind.value)

    async def _refetch(self) -> None:
        try:
            refreshed = await self._history.request_refresh()
        except GatewayError as exc:
            LOGGER.warning("History refetch failed: %s", exc)
            refreshed = False
        self._refetch_pending = not refreshed


__all__ = ["HistoryProgressEntry", "HistoryProgressTracker"]
