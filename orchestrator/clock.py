"""Time source shared by the orchestrator loops."""
from __future__ import annotations

import asyncio
import time
from datetime import datetime, timezone
from typing import Optional


class Clock:
    """Wall/monotonic time plus an interruptible sleep."""

    def monotonic(self) -> float:
        return time.monotonic()

    def now(self) -> datetime:
        return datetime.now(timezone.utc)

    async def sleep(self, seconds: float, *, wake: Optional[asyncio.Event] = None) -> bool:
        """Suspend for ``seconds``; return True if ``wake`` fired first."""

        if seconds <= 0:
            await asyncio.sleep(0)
            return bool(wake and wake.is_set())
        if wake is None:
            await asyncio.sleep(seconds)
            return False
        if wake.is_set():
            return True
        try:
            await asyncio.wait_for(wake.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            return False
        return True


SYSTEM_CLOCK = Clock()

__all__ = ["Clock", "SYSTEM_CLOCK"]
