"""Client-side mirror of the backup history list."""
from __future__ import annotations

import asyncio
import dataclasses
import logging
from typing import Callable, List, Optional, TYPE_CHECKING

from backup.types import BackupAttempt, HistoryQuery, can_transition

from .clock import Clock, SYSTEM_CLOCK

if TYPE_CHECKING:  # pragma: no cover - typing guard
    from backup.gateway import EdgeFunctionClient

LOGGER = logging.getLogger("backupconsole.orchestrator.history")

HistoryListener = Callable[[List[BackupAttempt]], None]


class HistoryView:
    """Hold the visible history rows; every refresh replaces them wholesale.

    A row already mirrored in a terminal state keeps that state when a lagging
    read reports the same attempt as running again.
    """

    def __init__(
        self,
        gateway: "EdgeFunctionClient",
        *,
        query: Optional[HistoryQuery] = None,
        throttle_s: float = 2.0,
        clock: Clock = SYSTEM_CLOCK,
    ) -> None:
        self._gateway = gateway
        self._query = query or HistoryQuery()
        self._throttle_s = max(0.0, float(throttle_s))
        self._clock = clock
        self._rows: List[BackupAttempt] = []
        self._listeners: List[HistoryListener] = []
        self._last_fetch: Optional[float] = None

    @property
    def rows(self) -> List[BackupAttempt]:
        return list(self._rows)

    @property
    def query(self) -> HistoryQuery:
        return self._query

    def active_rows(self) -> List[BackupAttempt]:
        return [row for row in self._rows if row.active]

    def get(self, attempt_id: str) -> Optional[BackupAttempt]:
        for row in self._rows:
            if row.id == attempt_id:
                return row
        return None

    def subscribe(self, listener: HistoryListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    # ------------------------------------------------------------------
    async def refresh(self) -> List[BackupAttempt]:
        fetched = await asyncio.to_thread(self._gateway.list_history, self._query)
        self._last_fetch = self._clock.monotonic()
        self.replace(fetched)
        return self.rows

    async def request_refresh(self) -> bool:
        """Refresh unless the previous fetch is younger than the throttle."""

        if self._last_fetch is not None and self._clock.monotonic() - self._last_fetch < self._throttle_s:
            return False
        await self.refresh()
        return True

    async def set_query(self, **changes) -> List[BackupAttempt]:
        self._query = dataclasses.replace(self._query, **changes)
        return await self.refresh()

    def replace(self, fetched: List[BackupAttempt]) -> None:
        previous = {row.id: row for row in self._rows}
        merged: List[BackupAttempt] = []
        for row in fetched:
            known = previous.get(row.id)
            if known is not None and not can_transition(known.status, row.status):
                LOGGER.debug("Keeping %s as %s over stale %s", row.id, known.status.value, row.status.value)
                merged.append(known)
            else:
                merged.append(row)
        self._rows = merged
        for listener in list(self._listeners):
            try:
                listener(self.rows)
            except Exception:
                LOGGER.exception("History listener failed")


__all__ = ["HistoryListener", "HistoryView"]
