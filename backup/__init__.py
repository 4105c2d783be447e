"""Backup lifecycle primitives for the backup console.

``BackupService`` lives in :mod:`backup.api` and is imported from there; it
depends on the ``orchestrator`` package, which in turn uses the modules below.
"""
from __future__ import annotations

from .errors import (
    BackupCancelledError,
    BackupError,
    BackupFailedError,
    BackupRequestError,
    BackupRestoreError,
    GatewayError,
    RestoreValidationError,
    TransientGatewayError,
)
from .reconcile import Verdict, VerdictKind, reconcile
from .types import BackupAttempt, BackupStatus, RestoreReport, StatusReport

__all__ = [
    "BackupAttempt",
    "BackupCancelledError",
    "BackupError",
    "BackupFailedError",
    "BackupRequestError",
    "BackupRestoreError",
    "BackupStatus",
    "GatewayError",
    "RestoreReport",
    "RestoreValidationError",
    "StatusReport",
    "TransientGatewayError",
    "Verdict",
    "VerdictKind",
    "reconcile",
]
