"""Foreground polling of a manually triggered backup.

The engine dispatches one job and follows it with an adaptive delay until the
attempt settles, the user cancels, or polling has to stop. Stopping is never
a failure: a soft timeout or a stall at 100 % hands the attempt over to the
background monitor.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Mapping, Optional, Sequence, Tuple, TYPE_CHECKING

from backup.errors import (
    BackupCancelledError,
    BackupError,
    BackupFailedError,
    GatewayError,
    TransientGatewayError,
)
from backup.reconcile import Verdict, VerdictKind, needs_record, reconcile
from backup.types import BackupAttempt, BackupStatus, StatusReport

from .announce import Announcer, attempt_keys
from .clock import Clock, SYSTEM_CLOCK
from .logs import OrchestratorLogger
from .state import BackupConsoleState

if TYPE_CHECKING:  # pragma: no cover - typing guard
    from backup.gateway import EdgeFunctionClient

    from .monitor import BackgroundMonitor

LOGGER = logging.getLogger("backupconsole.orchestrator.polling")

ENGINE_OWNER = "engine"
HANDOFF_MESSAGE = "Backup is still running in the background. You will be notified when it completes."


def estimate_progress(elapsed_seconds: float) -> float:
    """Time-based estimate for when the status endpoint gives no number.

    Starts at 10 and approaches 95 over fifteen minutes; never reports done.
    """

    minutes = max(0.0, elapsed_seconds) / 60.0
    return min(10.0 + minutes / 15.0 * 85.0, 95.0)


def _ms(value: Any, default: float) -> float:
    try:
        return float(value) / 1000.0
    except (TypeError, ValueError):
        return default


@dataclass(slots=True)
class PollingPolicy:
    max_attempts: int = 300
    final_checks: int = 3
    final_check_delay_s: float = 5.0
    finalization_threshold: int = 2
    schedule: Tuple[Tuple[int, float], ...] = ((20, 1.0), (50, 2.0), (100, 5.0))
    max_interval_s: float = 10.0
    finalizing_fast_polls: int = 10
    finalizing_fast_s: float = 1.5
    finalizing_slow_base_s: float = 3.0
    finalizing_step_s: float = 1.0
    transient_base_s: float = 1.0
    history_lookup_limit: int = 10

    @classmethod
    def from_settings(cls, settings: Optional[Mapping[str, Any]]) -> "PollingPolicy":
        raw = (settings or {}).get("polling")
        if not isinstance(raw, Mapping):
            return cls()
        defaults = cls()
        schedule = defaults.schedule
        raw_schedule = raw.get("schedule_ms")
        if isinstance(raw_schedule, Sequence) and raw_schedule:
            try:
                schedule = tuple((int(limit), float(delay) / 1000.0) for limit, delay in raw_schedule)
            except (TypeError, ValueError):
                LOGGER.warning("Ignoring malformed polling.schedule_ms: %r", raw_schedule)
        return cls(
            max_attempts=int(raw.get("max_attempts", defaults.max_attempts)),
            final_checks=int(raw.get("final_checks", defaults.final_checks)),
            final_check_delay_s=_ms(raw.get("final_check_delay_ms"), defaults.final_check_delay_s),
            finalization_threshold=int(raw.get("finalization_threshold", defaults.finalization_threshold)),
            schedule=schedule,
            max_interval_s=_ms(raw.get("max_interval_ms"), defaults.max_interval_s),
            finalizing_fast_polls=int(raw.get("finalizing_fast_polls", defaults.finalizing_fast_polls)),
            finalizing_fast_s=_ms(raw.get("finalizing_fast_ms"), defaults.finalizing_fast_s),
            finalizing_slow_base_s=_ms(raw.get("finalizing_slow_base_ms"), defaults.finalizing_slow_base_s),
            finalizing_step_s=_ms(raw.get("finalizing_step_ms"), defaults.finalizing_step_s),
            transient_base_s=_ms(raw.get("transient_base_ms"), defaults.transient_base_s),
            history_lookup_limit=int(raw.get("history_lookup_limit", defaults.history_lookup_limit)),
        )

    def running_delay(self, attempts: int) -> float:
        for limit, delay in self.schedule:
            if attempts <= limit:
                return delay
        return self.max_interval_s

    def finalizing_delay(self, finalizing_polls: int) -> float:
        if finalizing_polls <= self.finalizing_fast_polls:
            return self.finalizing_fast_s
        extra = (finalizing_polls - self.finalizing_fast_polls) * self.finalizing_step_s
        return min(self.finalizing_slow_base_s + extra, self.max_interval_s)

    def transient_delay(self, attempts: int) -> float:
        return min(self.transient_base_s * (2 ** (attempts // 10)), self.max_interval_s)


@dataclass(slots=True)
class PollSession:
    dispatch_handle: str
    started_at: float
    attempt_id: Optional[str] = None
    attempts_made: int = 0
    last_known_progress: float = 0.0
    consecutive_full_progress_polls: int = 0
    finalizing_polls: int = 0
    cancel_event: asyncio.Event = field(default_factory=asyncio.Event, repr=False)

    @property
    def is_cancelled(self) -> bool:
        return self.cancel_event.is_set()

    @property
    def keys(self) -> Tuple[str, ...]:
        return attempt_keys(self.dispatch_handle, self.attempt_id)

    def update_progress(self, value: float) -> float:
        self.last_known_progress = max(self.last_known_progress, min(100.0, float(value)))
        return self.last_known_progress


@dataclass(slots=True)
class _Step:
    done: bool = False
    url: Optional[str] = None
    delay: float = 0.0


class PollingEngine:
    """Drive one in-flight manual backup from dispatch to its outcome."""

    def __init__(
        self,
        gateway: "EdgeFunctionClient",
        *,
        state: BackupConsoleState,
        announcer: Announcer,
        monitor: "BackgroundMonitor",
        policy: Optional[PollingPolicy] = None,
        clock: Clock = SYSTEM_CLOCK,
        logger: Optional[OrchestratorLogger] = None,
    ) -> None:
        self._gateway = gateway
        self._state = state
        self._announcer = announcer
        self._monitor = monitor
        self.policy = policy or PollingPolicy()
        self._clock = clock
        self._logger = logger
        self._session: Optional[PollSession] = None
        self._cancel_event: Optional[asyncio.Event] = None

    # ------------------------------------------------------------------
    @property
    def session(self) -> Optional[PollSession]:
        return self._session

    @property
    def active(self) -> bool:
        return self._cancel_event is not None

    def cancel(self) -> bool:
        """Request a cooperative stop; return False when nothing is running."""

        if self._cancel_event is None:
            return False
        self._cancel_event.set()
        return True

    # ------------------------------------------------------------------
    async def start_manual_backup(self) -> Optional[str]:
        """Dispatch a backup and follow it.

        Returns the signed download URL, or ``None`` when the attempt
        succeeded without a downloadable URL, was cancelled remotely, or was
        handed to the background monitor. Raises :class:`BackupFailedError`
        when the job failed and :class:`BackupCancelledError` when the user
        cancelled.
        """

        if self._cancel_event is not None:
            raise BackupError("A backup is already running")
        cancel_event = asyncio.Event()
        self._cancel_event = cancel_event
        self._state.begin_run()
        session: Optional[PollSession] = None
        try:
            receipt = await asyncio.to_thread(self._gateway.dispatch_backup)
            session = PollSession(
                dispatch_handle=receipt.dispatch_handle,
                started_at=self._clock.monotonic(),
                cancel_event=cancel_event,
            )
            self._session = session
            self._state.attach_dispatch(receipt.dispatch_handle)
            self._announcer.ledger.acquire(session.keys, ENGINE_OWNER)
            self._log(1001, True, session, status_url=receipt.status_url)
            self._raise_if_cancelled(session)
            return await self._poll(session)
        except BackupFailedError as exc:
            self._state.finish_run(error=str(exc))
            raise
        except BackupCancelledError:
            raise
        except BackupError as exc:
            self._state.finish_run(error=str(exc))
            if self._logger:
                self._logger.log_error(
                    9001,
                    "poll",
                    exc,
                    dispatch_handle=session.dispatch_handle if session else None,
                    attempt_id=session.attempt_id if session else None,
                )
            raise
        finally:
            if session is not None:
                self._announcer.ledger.release(session.keys, ENGINE_OWNER)
            self._session = None
            self._cancel_event = None
            self._state.finish_run()

    # ------------------------------------------------------------------
    async def _poll(self, session: PollSession) -> Optional[str]:
        policy = self.policy
        while session.attempts_made < policy.max_attempts:
            step = await self._check(session)
            if step.done:
                return step.url
            await self._sleep(session, step.delay)
        for _ in range(policy.final_checks):
            await self._sleep(session, policy.final_check_delay_s)
            step = await self._check(session)
            if step.done:
                return step.url
        return self._hand_off(session, reason="soft_timeout")

    async def _check(self, session: PollSession) -> _Step:
        self._raise_if_cancelled(session)
        session.attempts_made += 1
        elapsed = self._clock.monotonic() - session.started_at
        try:
            report = await asyncio.to_thread(self._gateway.query_status, session.dispatch_handle)
        except TransientGatewayError as exc:
            self._raise_if_cancelled(session)
            delay = self.policy.transient_delay(session.attempts_made)
            LOGGER.warning("Status check %s failed, retrying in %.1fs: %s", session.attempts_made, delay, exc)
            self._log(2002, False, session, attempt=session.attempts_made, retry_in_s=delay, err_msg=str(exc))
            self._state.update_progress(session.update_progress(estimate_progress(elapsed)))
            return _Step(delay=delay)
        self._raise_if_cancelled(session)

        self._remember_attempt(session, report.attempt_id)
        raw = report.progress if report.progress is not None else estimate_progress(elapsed)
        self._state.update_progress(
            session.update_progress(raw),
            current_step=report.current_step,
            attempt_id=session.attempt_id,
        )

        record = None
        if needs_record(report):
            record = await self._lookup_record(session)
            self._raise_if_cancelled(session)
        verdict = reconcile(report, record)
        self._remember_attempt(session, verdict.attempt_id)
        self._log(
            2001,
            True,
            session,
            attempt=session.attempts_made,
            status=report.status.value,
            progress=report.progress,
            verdict=verdict.kind.value,
        )

        if verdict.kind is VerdictKind.SUCCESS:
            return _Step(done=True, url=await self._finish_success(session, verdict))
        if verdict.kind is VerdictKind.FAILURE:
            self._finish_failure(session, verdict)
        if verdict.kind is VerdictKind.CANCELLED:
            self._announcer.announce(verdict, session.keys)
            self._log(1004, True, session, outcome="cancelled_remote")
            return _Step(done=True)

        if self._pinned(report):
            session.consecutive_full_progress_polls += 1
            session.finalizing_polls += 1
            if session.consecutive_full_progress_polls > self.policy.finalization_threshold:
                return _Step(done=True, url=self._hand_off(session, reason="finalization_stall"))
            return _Step(delay=self.policy.finalizing_delay(session.finalizing_polls))
        session.consecutive_full_progress_polls = 0
        return _Step(delay=self.policy.running_delay(session.attempts_made))

    @staticmethod
    def _pinned(report: StatusReport) -> bool:
        if report.status is BackupStatus.SUCCESS:
            return True
        return report.progress is not None and report.progress >= 100

    async def _lookup_record(self, session: PollSession) -> Optional[BackupAttempt]:
        try:
            return await asyncio.to_thread(
                self._gateway.find_attempt,
                attempt_id=session.attempt_id,
                dispatch_handle=session.dispatch_handle,
                limit=self.policy.history_lookup_limit,
            )
        except GatewayError as exc:
            LOGGER.warning("History lookup for %s failed: %s", session.dispatch_handle, exc)
            return None

    def _remember_attempt(self, session: PollSession, attempt_id: Optional[str]) -> None:
        if not attempt_id or session.attempt_id:
            return
        session.attempt_id = attempt_id
        self._announcer.ledger.acquire(session.keys, ENGINE_OWNER)

    async def _finish_success(self, session: PollSession, verdict: Verdict) -> Optional[str]:
        url = verdict.signed_url
        if not url and verdict.artifact_key:
            try:
                url = await asyncio.to_thread(self._gateway.sign_artifact_url, verdict.artifact_key)
            except GatewayError as exc:
                LOGGER.warning("Signing %s failed: %s", verdict.artifact_key, exc)
        self._raise_if_cancelled(session)
        self._state.update_progress(100.0)
        self._announcer.announce(verdict, session.keys, url=url)
        self._log(1002, True, session, outcome="success", artifact_key=verdict.artifact_key, has_url=bool(url))
        return url

    def _finish_failure(self, session: PollSession, verdict: Verdict) -> None:
        message = verdict.message or "Backup failed"
        self._announcer.announce(verdict, session.keys)
        self._log(1003, False, session, outcome="failed", err_msg=message)
        raise BackupFailedError(message, attempt_id=session.attempt_id, announced=True)

    def _hand_off(self, session: PollSession, *, reason: str) -> None:
        self._state.hand_off()
        self._announcer.ledger.release(session.keys, ENGINE_OWNER)
        self._monitor.watch(session.dispatch_handle, session.attempt_id)
        self._announcer.notifier.info(HANDOFF_MESSAGE, attempt_id=session.attempt_id)
        self._log(1005, True, session, outcome="handed_off", reason=reason, attempts=session.attempts_made)
        return None

    # ------------------------------------------------------------------
    def _raise_if_cancelled(self, session: PollSession) -> None:
        if session.is_cancelled:
            self._announcer.silence(session.keys)
            self._log(1006, True, session, outcome="cancelled_local", attempts=session.attempts_made)
            raise BackupCancelledError("Backup cancelled")

    async def _sleep(self, session: PollSession, delay: float) -> None:
        self._raise_if_cancelled(session)
        await self._clock.sleep(delay, wake=session.cancel_event)
        self._raise_if_cancelled(session)

    def _log(self, event_id: int, ok: bool, session: PollSession, **data: Any) -> None:
        if self._logger:
            self._logger.log_poll(
                event_id,
                ok,
                dispatch_handle=session.dispatch_handle,
                attempt_id=session.attempt_id,
                **data,
            )


__all__ = ["PollSession", "PollingEngine", "PollingPolicy", "estimate_progress"]
