"""Long-horizon watcher for attempts the polling engine let go of."""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Tuple, TYPE_CHECKING

from backup.errors import GatewayError
from backup.reconcile import Verdict, VerdictKind, needs_record, reconcile
from backup.types import BackupAttempt, BackupStatus, StatusReport

from .announce import Announcer, attempt_keys
from .clock import Clock, SYSTEM_CLOCK
from .logs import OrchestratorLogger
from .state import BackupConsoleState

if TYPE_CHECKING:  # pragma: no cover - typing guard
    from backup.gateway import EdgeFunctionClient

    from .history import HistoryView

LOGGER = logging.getLogger("backupconsole.orchestrator.monitor")

MONITOR_OWNER = "monitor"


@dataclass(slots=True)
class BackgroundWatch:
    dispatch_handle: str
    attempt_id: Optional[str] = None
    checks_performed: int = 0
    max_checks: int = 120
    stopped: bool = False
    outcome: Optional[VerdictKind] = None
    task: Optional[asyncio.Task] = field(default=None, repr=False)
    wake: asyncio.Event = field(default_factory=asyncio.Event, repr=False)

    @property
    def keys(self) -> Tuple[str, ...]:
        return attempt_keys(self.dispatch_handle, self.attempt_id)

    def stop(self) -> bool:
        """Stop the watch; only the first call has an effect."""

        if self.stopped:
            return False
        self.stopped = True
        self.wake.set()
        return True


@dataclass(slots=True)
class MonitorSettings:
    interval_s: float = 30.0
    max_checks: int = 120
    self_heal_after: int = 10
    log_every: int = 5
    history_lookup_limit: int = 10

    @classmethod
    def from_settings(cls, settings: Optional[Mapping[str, Any]]) -> "MonitorSettings":
        raw = (settings or {}).get("monitor")
        polling = (settings or {}).get("polling")
        defaults = cls()
        if not isinstance(raw, Mapping):
            raw = {}
        lookup = defaults.history_lookup_limit
        if isinstance(polling, Mapping) and polling.get("history_lookup_limit"):
            lookup = int(polling["history_lookup_limit"])
        return cls(
            interval_s=float(raw.get("interval_s", defaults.interval_s)),
            max_checks=int(raw.get("max_checks", defaults.max_checks)),
            self_heal_after=max(1, int(raw.get("self_heal_after", defaults.self_heal_after))),
            log_every=max(1, int(raw.get("log_every", defaults.log_every))),
            history_lookup_limit=lookup,
        )


class BackgroundMonitor:
    """Check handed-off attempts at a fixed interval until they settle."""

    def __init__(
        self,
        gateway: "EdgeFunctionClient",
        *,
        state: BackupConsoleState,
        announcer: Announcer,
        history: Optional["HistoryView"] = None,
        settings: Optional[MonitorSettings] = None,
        clock: Clock = SYSTEM_CLOCK,
        logger: Optional[OrchestratorLogger] = None,
    ) -> None:
        self._gateway = gateway
        self._state = state
        self._announcer = announcer
        self._history = history
        self.settings = settings or MonitorSettings()
        self._clock = clock
        self._logger = logger
        self._watches: Dict[str, BackgroundWatch] = {}

    # ------------------------------------------------------------------
    @property
    def watches(self) -> List[BackgroundWatch]:
        return [watch for watch in self._watches.values() if not watch.stopped]

    def get(self, dispatch_handle: str) -> Optional[BackgroundWatch]:
        watch = self._watches.get(dispatch_handle)
        return watch if watch and not watch.stopped else None

    def watch(self, dispatch_handle: str, attempt_id: Optional[str] = None) -> BackgroundWatch:
        """Start watching ``dispatch_handle`` or return the watch already running."""

        existing = self.get(dispatch_handle)
        if existing is not None:
            if attempt_id and not existing.attempt_id:
                existing.attempt_id = attempt_id
                self._announcer.ledger.acquire(existing.keys, MONITOR_OWNER)
            return existing
        watch = BackgroundWatch(
            dispatch_handle=dispatch_handle,
            attempt_id=attempt_id,
            max_checks=self.settings.max_checks,
        )
        self._watches[dispatch_handle] = watch
        self._announcer.ledger.acquire(watch.keys, MONITOR_OWNER)
        loop = asyncio.get_running_loop()
        watch.task = loop.create_task(self._run(watch), name=f"backup-monitor-{dispatch_handle}")
        self._log(3001, True, watch, interval_s=self.settings.interval_s, max_checks=watch.max_checks)
        return watch

    def stop(self, dispatch_handle: str) -> bool:
        watch = self._watches.get(dispatch_handle)
        return bool(watch and watch.stop())

    async def shutdown(self) -> None:
        watches = list(self._watches.values())
        for watch in watches:
            watch.stop()
        tasks = [watch.task for watch in watches if watch.task is not None]
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    # ------------------------------------------------------------------
    async def _run(self, watch: BackgroundWatch) -> None:
        try:
            while not watch.stopped:
                if watch.checks_performed >= watch.max_checks:
                    self._expire(watch)
                    return
                await self._clock.sleep(self.settings.interval_s, wake=watch.wake)
                if watch.stopped:
                    return
                watch.checks_performed += 1
                try:
                    verdict = await self._check(watch)
                    url = await self._resolve_url(verdict) if verdict.kind is VerdictKind.SUCCESS else None
                except GatewayError as exc:
                    LOGGER.warning("Background check %s for %s failed: %s", watch.checks_performed, watch.dispatch_handle, exc)
                    continue
                except Exception as exc:  # pragma: no cover - unexpected failure guard
                    LOGGER.exception("Background check for %s crashed", watch.dispatch_handle)
                    if self._logger:
                        self._logger.log_error(9301, "monitor", exc, dispatch_handle=watch.dispatch_handle, attempt_id=watch.attempt_id)
                    continue
                if watch.stopped:
                    return
                if watch.checks_performed % self.settings.log_every == 0:
                    self._log(3002, True, watch, checks=watch.checks_performed, verdict=verdict.kind.value)
                if verdict.terminal:
                    self._finish(watch, verdict, url)
                    await self._refresh_history()
                    return
        finally:
            self._announcer.ledger.release(watch.keys, MONITOR_OWNER)
            if self._watches.get(watch.dispatch_handle) is watch:
                del self._watches[watch.dispatch_handle]

    async def _check(self, watch: BackgroundWatch) -> Verdict:
        record = None
        if watch.attempt_id:
            record = await self._find(attempt_id=watch.attempt_id)
        report = None
        if record is None or record.active:
            report = await self._status(watch)
            if report is not None and needs_record(report):
                record = await self._find(attempt_id=watch.attempt_id, dispatch_handle=watch.dispatch_handle) or record
        if record is not None:
            self._adopt_attempt(watch, record.id)
        verdict = reconcile(report, record)
        await self._maybe_self_heal(watch, report, record)
        return verdict

    async def _status(self, watch: BackgroundWatch) -> Optional[StatusReport]:
        try:
            report = await asyncio.to_thread(self._gateway.query_status, watch.dispatch_handle)
        except GatewayError as exc:
            LOGGER.debug("Status for %s unavailable: %s", watch.dispatch_handle, exc)
            return None
        self._adopt_attempt(watch, report.attempt_id)
        return report

    async def _find(self, *, attempt_id: Optional[str] = None, dispatch_handle: Optional[str] = None) -> Optional[BackupAttempt]:
        try:
            return await asyncio.to_thread(
                self._gateway.find_attempt,
                attempt_id=attempt_id,
                dispatch_handle=dispatch_handle,
                limit=self.settings.history_lookup_limit,
            )
        except GatewayError as exc:
            LOGGER.debug("Record lookup for %s unavailable: %s", attempt_id or dispatch_handle, exc)
            return None

    def _adopt_attempt(self, watch: BackgroundWatch, attempt_id: Optional[str]) -> None:
        if attempt_id and not watch.attempt_id:
            watch.attempt_id = attempt_id
            self._announcer.ledger.acquire(watch.keys, MONITOR_OWNER)

    async def _maybe_self_heal(
        self,
        watch: BackgroundWatch,
        report: Optional[StatusReport],
        record: Optional[BackupAttempt],
    ) -> None:
        every = self.settings.self_heal_after
        if watch.checks_performed < every or watch.checks_performed % every:
            return
        key = (report.artifact_key if report else None) or (record.artifact_key if record else None)
        if not key or (record is not None and record.status.terminal):
            return
        try:
            await asyncio.to_thread(
                self._gateway.update_attempt,
                watch.attempt_id,
                dispatch_handle=watch.dispatch_handle,
                artifact_key=key,
                status=BackupStatus.SUCCESS,
                size_bytes=record.size_bytes if record else None,
            )
        except GatewayError as exc:
            LOGGER.warning("Self-heal of %s failed: %s", watch.attempt_id or watch.dispatch_handle, exc)
            if self._logger:
                self._logger.log_error(9302, "monitor", exc, dispatch_handle=watch.dispatch_handle, attempt_id=watch.attempt_id)
            return
        self._log(3005, True, watch, artifact_key=key, checks=watch.checks_performed)

    async def _resolve_url(self, verdict: Verdict) -> Optional[str]:
        if verdict.signed_url or not verdict.artifact_key:
            return verdict.signed_url
        try:
            return await asyncio.to_thread(self._gateway.sign_artifact_url, verdict.artifact_key)
        except GatewayError as exc:
            LOGGER.warning("Signing %s failed: %s", verdict.artifact_key, exc)
            return None

    def _finish(self, watch: BackgroundWatch, verdict: Verdict, url: Optional[str]) -> None:
        watch.stop()
        watch.outcome = verdict.kind
        self._announcer.announce(verdict, watch.keys, url=url)
        if self._state.dispatch_handle == watch.dispatch_handle:
            self._state.finish_background()
        self._log(3003, verdict.kind is not VerdictKind.FAILURE, watch, outcome=verdict.kind.value, checks=watch.checks_performed)

    def _expire(self, watch: BackgroundWatch) -> None:
        watch.stop()
        if self._state.dispatch_handle == watch.dispatch_handle:
            self._state.clear_timed_out()
        self._log(3004, True, watch, outcome="expired", checks=watch.checks_performed)

    async def _refresh_history(self) -> None:
        if self._history is None:
            return
        try:
            await self._history.request_refresh()
        except GatewayError as exc:
            LOGGER.warning("History refresh after background completion failed: %s", exc)

    def _log(self, event_id: int, ok: bool, watch: BackgroundWatch, **data: Any) -> None:
        if self._logger:
            self._logger.log_monitor(
                event_id,
                ok,
                dispatch_handle=watch.dispatch_handle,
                attempt_id=watch.attempt_id,
                **data,
            )


__all__ = ["BackgroundMonitor", "BackgroundWatch", "MonitorSettings"]
