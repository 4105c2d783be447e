"""Error hierarchy for backup operations."""
from __future__ import annotations

from typing import Optional


class BackupError(RuntimeError):
    """Base exception for backup related failures."""


class GatewayError(BackupError):
    """Raised when an edge function call fails or returns an unusable payload."""

    def __init__(self, message: str, *, function: Optional[str] = None, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.function = function
        self.status_code = status_code


class BackupRequestError(BackupError):
    """Raised for malformed ids, artifact keys or share recipients."""


class TransientGatewayError(GatewayError):
    """Network failure, timeout, throttling or a 5xx answer; safe to retry."""


class BackupFailedError(BackupError):
    """The remote backup job reached a failed terminal state."""

    def __init__(self, message: str, *, attempt_id: Optional[str] = None, announced: bool = False) -> None:
        super().__init__(message)
        self.attempt_id = attempt_id
        self.announced = announced


class BackupCancelledError(BackupError):
    """Local observation was cancelled by the user. Never shown as an error."""


class BackupRestoreError(BackupError):
    """Raised when uploading a restore archive fails."""


class RestoreValidationError(BackupRestoreError):
    """Raised when a restore archive is rejected before upload."""


__all__ = [
    "BackupCancelledError",
    "BackupError",
    "BackupFailedError",
    "BackupRequestError",
    "BackupRestoreError",
    "GatewayError",
    "RestoreValidationError",
    "TransientGatewayError",
]
