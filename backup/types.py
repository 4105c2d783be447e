"""Common dataclasses shared across backup modules."""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional

from .errors import GatewayError


class BackupStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    SUCCESS = "success"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def terminal(self) -> bool:
        return self in _TERMINAL

    @classmethod
    def parse(cls, value: Any) -> "BackupStatus":
        text = str(value or "").strip().lower().replace("-", "_").replace(" ", "_")
        if text == "canceled":
            text = "cancelled"
        try:
            return cls(text)
        except ValueError as exc:
            raise GatewayError(f"Unknown backup status: {value!r}") from exc


_TERMINAL = frozenset({BackupStatus.SUCCESS, BackupStatus.FAILED, BackupStatus.CANCELLED})

_RANK = {
    BackupStatus.PENDING: 0,
    BackupStatus.IN_PROGRESS: 1,
}


def can_transition(current: BackupStatus, new: BackupStatus) -> bool:
    """Return True when ``current -> new`` moves forward (or stays put)."""

    if current == new:
        return True
    if current.terminal:
        return False
    if new.terminal:
        return True
    return _RANK[new] > _RANK[current]


def _parse_timestamp(value: Any) -> Optional[datetime]:
    if isinstance(value, datetime):
        return value
    if not value or not isinstance(value, str):
        return None
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        return datetime.fromisoformat(text)
    except ValueError:
        return None


def _optional_text(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _optional_int(value: Any) -> Optional[int]:
    if value is None or value == "":
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _optional_progress(value: Any) -> Optional[float]:
    if value is None or value == "":
        return None
    try:
        progress = float(value)
    except (TypeError, ValueError):
        return None
    return max(0.0, min(100.0, progress))


@dataclass(slots=True)
class BackupAttempt:
    """One row of the durable backup history."""

    id: str
    status: BackupStatus
    artifact_key: Optional[str] = None
    dispatch_handle: Optional[str] = None
    size_bytes: Optional[int] = None
    error_text: Optional[str] = None
    created_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "BackupAttempt":
        attempt_id = _optional_text(payload.get("id"))
        if not attempt_id:
            raise GatewayError("Backup history row is missing its id")
        return cls(
            id=attempt_id,
            status=BackupStatus.parse(payload.get("status")),
            artifact_key=_optional_text(payload.get("s3_key")),
            dispatch_handle=_optional_text(payload.get("dispatch_id")),
            size_bytes=_optional_int(payload.get("size_bytes")),
            error_text=_optional_text(payload.get("error_text")),
            created_at=_parse_timestamp(payload.get("created_at")),
            finished_at=_parse_timestamp(payload.get("finished_at")),
        )

    @property
    def active(self) -> bool:
        return not self.status.terminal

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "status": self.status.value,
            "artifact_key": self.artifact_key,
            "dispatch_handle": self.dispatch_handle,
            "size_bytes": self.size_bytes,
            "error_text": self.error_text,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
        }


@dataclass(slots=True)
class DispatchReceipt:
    dispatch_handle: str
    status_url: Optional[str] = None

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "DispatchReceipt":
        handle = _optional_text(payload.get("dispatch_id"))
        if not handle:
            raise GatewayError("trigger-backup response is missing dispatch_id")
        return cls(dispatch_handle=handle, status_url=_optional_text(payload.get("status_url")))


@dataclass(slots=True)
class StatusReport:
    """Live status of a dispatched job as reported by the status endpoint."""

    status: BackupStatus
    progress: Optional[float] = None
    artifact_key: Optional[str] = None
    signed_url: Optional[str] = None
    error: Optional[str] = None
    attempt_id: Optional[str] = None
    current_step: Optional[str] = None

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "StatusReport":
        return cls(
            status=BackupStatus.parse(payload.get("status")),
            progress=_optional_progress(payload.get("progress")),
            artifact_key=_optional_text(payload.get("s3_key")),
            signed_url=_optional_text(payload.get("signed_url")),
            error=_optional_text(payload.get("error")),
            attempt_id=_optional_text(payload.get("backup_id")),
            current_step=_optional_text(payload.get("current_step")),
        )

    @property
    def finalizing(self) -> bool:
        return self.progress is not None and self.progress >= 100 and not self.status.terminal


@dataclass(slots=True)
class HistoryQuery:
    limit: int = 5
    status: Optional[str] = None
    start_date: Optional[str] = None
    end_date: Optional[str] = None
    search: Optional[str] = None

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"limit": int(self.limit)}
        if self.status and self.status != "all":
            payload["status"] = BackupStatus.parse(self.status).value
        if self.start_date:
            payload["start_date"] = self.start_date
        if self.end_date:
            payload["end_date"] = self.end_date
        if self.search and self.search.strip():
            payload["search"] = self.search.strip()
        return payload


@dataclass(slots=True)
class CancelResult:
    cancelled_count: int
    message: str = ""


@dataclass(slots=True)
class ShareResult:
    success: bool
    message: str = ""
    whatsapp_url: Optional[str] = None
    note: Optional[str] = None


@dataclass(slots=True)
class BackupSettingsSnapshot:
    backup_enabled: bool
    last_backup_at: Optional[datetime] = None

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "BackupSettingsSnapshot":
        return cls(
            backup_enabled=bool(payload.get("backup_enabled")),
            last_backup_at=_parse_timestamp(payload.get("last_backup_at")),
        )


@dataclass(slots=True)
class DownloadTicket:
    download_url: str
    expires_in: int
    attempt_id: str
    size_bytes: Optional[int] = None


@dataclass(slots=True)
class DatabaseRestoreResult:
    restored: bool
    message: Optional[str] = None
    rows_affected: Optional[int] = None
    note: Optional[str] = None
    sql_converted: bool = False
    sql_size: Optional[int] = None


@dataclass(slots=True)
class AuthUsersRestoreResult:
    restored: bool
    users_merged: int = 0
    users_skipped: int = 0


@dataclass(slots=True)
class StorageRestoreResult:
    restored: bool
    files_uploaded: int = 0
    files_skipped: int = 0


@dataclass(slots=True)
class RestoreReport:
    """Outcome of a merge-only restore; each section succeeds independently."""

    ok: bool
    message: str
    database: Optional[DatabaseRestoreResult] = None
    auth_users: Optional[AuthUsersRestoreResult] = None
    storage: Optional[StorageRestoreResult] = None
    warnings: List[str] = field(default_factory=list)

    @property
    def clean(self) -> bool:
        return self.ok and not self.warnings


def format_file_size(size_bytes: Optional[int]) -> str:
    if not size_bytes:
        return "-"
    megabytes = size_bytes / (1024 * 1024)
    if megabytes < 1:
        return f"{size_bytes / 1024:.2f} KB"
    return f"{megabytes:.2f} MB"


__all__ = [
    "AuthUsersRestoreResult",
    "BackupAttempt",
    "BackupSettingsSnapshot",
    "BackupStatus",
    "CancelResult",
    "DatabaseRestoreResult",
    "DispatchReceipt",
    "DownloadTicket",
    "HistoryQuery",
    "RestoreReport",
    "ShareResult",
    "StatusReport",
    "StorageRestoreResult",
    "can_transition",
    "format_file_size",
]
