"""Classify a backup attempt from the live status report and the stored row.

The status endpoint and the history store disagree routinely: the runner can
upload the artifact and write the row while the dispatch status still says
``in_progress``, or the status signal can disappear altogether. Every watcher
(polling engine, background monitor, history tracker) calls :func:`reconcile`
so they all reach the same verdict for the same evidence.
"""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional

from .types import BackupAttempt, BackupStatus, StatusReport

GENERIC_FAILURE = "Unknown error"


class VerdictKind(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    RUNNING = "running"
    CANCELLED = "cancelled"


@dataclass(slots=True)
class Verdict:
    kind: VerdictKind
    artifact_key: Optional[str] = None
    signed_url: Optional[str] = None
    message: Optional[str] = None
    progress: Optional[float] = None
    attempt_id: Optional[str] = None

    @property
    def terminal(self) -> bool:
        return self.kind is not VerdictKind.RUNNING


def reconcile(report: Optional[StatusReport], record: Optional[BackupAttempt]) -> Verdict:
    """Return the verdict for one attempt; the first matching rule wins.

    1. stored success with an artifact key
    2. stored pending/in_progress with an artifact key (upload finished, row lagging)
    3. live success carrying a key or a signed URL
    4. failed on either side, stored ``error_text`` preferred
    5. cancelled on either side
    6. still running
    """

    attempt_id = (record.id if record else None) or (report.attempt_id if report else None)
    progress = report.progress if report else None

    if record is not None and record.artifact_key:
        if record.status is BackupStatus.SUCCESS or not record.status.terminal:
            return Verdict(
                VerdictKind.SUCCESS,
                artifact_key=record.artifact_key,
                progress=100.0,
                attempt_id=attempt_id,
            )

    if report is not None and report.status is BackupStatus.SUCCESS and (report.artifact_key or report.signed_url):
        return Verdict(
            VerdictKind.SUCCESS,
            artifact_key=report.artifact_key,
            signed_url=report.signed_url,
            progress=100.0,
            attempt_id=attempt_id,
        )

    record_failed = record is not None and record.status is BackupStatus.FAILED
    report_failed = report is not None and report.status is BackupStatus.FAILED
    if record_failed or report_failed:
        text = (record.error_text if record else None) or (report.error if report else None) or GENERIC_FAILURE
        return Verdict(
            VerdictKind.FAILURE,
            message=f"Backup failed: {text}",
            progress=progress,
            attempt_id=attempt_id,
        )

    record_cancelled = record is not None and record.status is BackupStatus.CANCELLED
    report_cancelled = report is not None and report.status is BackupStatus.CANCELLED
    if record_cancelled or report_cancelled:
        return Verdict(VerdictKind.CANCELLED, progress=progress, attempt_id=attempt_id)

    return Verdict(VerdictKind.RUNNING, progress=progress, attempt_id=attempt_id)


def needs_record(report: Optional[StatusReport]) -> bool:
    """Return True when the live report alone cannot settle the attempt.

    The stored row is consulted only for terminal or finalizing reports and
    for a success that arrived without a key.
    """

    if report is None:
        return True
    if report.status.terminal:
        return True
    return report.progress is not None and report.progress >= 100


__all__ = ["GENERIC_FAILURE", "Verdict", "VerdictKind", "needs_record", "reconcile"]
