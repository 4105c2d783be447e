"""Pydantic schemas for the backup console local API."""
from __future__ import annotations

from dataclasses import asdict
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field

from backup.types import BackupAttempt, RestoreReport


class HealthResponse(BaseModel):
    ok: bool = Field(True, description="Indicates the API server is reachable.")
    version: str = Field(..., description="Application version string.")
    time_utc: str = Field(..., description="Current UTC timestamp in ISO8601 format.")
    running: bool = Field(..., description="True while a manual backup is being polled.")
    background_watches: int = Field(0, ge=0, description="Attempts followed by the background monitor.")


class StateResponse(BaseModel):
    """Mirror of the console run state."""

    is_running: bool
    progress: float = Field(..., ge=0, le=100)
    dispatch_handle: Optional[str] = None
    attempt_id: Optional[str] = None
    timed_out: bool = Field(False, description="Polling stopped and a background watch took over.")
    current_step: Optional[str] = None
    last_error: Optional[str] = None


class RunAcceptedResponse(BaseModel):
    accepted: bool = True
    state: StateResponse


class CancelRunResponse(BaseModel):
    cancelled: bool = Field(..., description="False when no manual backup was running.")


class NotificationItem(BaseModel):
    level: Literal["success", "failure", "info", "warning"]
    message: str
    attempt_id: Optional[str] = None
    url: Optional[str] = None
    ts: str


class NotificationsResponse(BaseModel):
    items: List[NotificationItem]


class HistoryRow(BaseModel):
    id: str
    status: str
    artifact_key: Optional[str] = None
    dispatch_handle: Optional[str] = None
    size_bytes: Optional[int] = None
    size_label: str = "-"
    error_text: Optional[str] = None
    created_at: Optional[str] = None
    finished_at: Optional[str] = None
    display_progress: Optional[float] = Field(
        None, description="Smoothed progress for running rows; null once settled or unknown."
    )

    @classmethod
    def from_attempt(cls, attempt: BackupAttempt, *, progress: Optional[float], size_label: str) -> "HistoryRow":
        return cls(**attempt.to_dict(), size_label=size_label, display_progress=progress)


class HistoryResponse(BaseModel):
    rows: List[HistoryRow]


class CancelAttemptsRequest(BaseModel):
    ids: List[str] = Field(..., min_length=1, description="Attempt ids (UUID) to cancel.")


class CancelAttemptsResponse(BaseModel):
    cancelled_count: int
    message: str = ""


class DownloadRequest(BaseModel):
    artifact_key: str = Field(..., min_length=1, max_length=1024)


class DownloadResponse(BaseModel):
    url: str


class DownloadTicketResponse(BaseModel):
    download_url: str
    expires_in: int
    attempt_id: str
    size_bytes: Optional[int] = None


class ShareRequest(BaseModel):
    method: Literal["email", "whatsapp"]
    recipient: str = Field(..., min_length=1)


class ShareResponse(BaseModel):
    success: bool
    message: str = ""
    whatsapp_url: Optional[str] = None
    note: Optional[str] = None


class BackupSettingsResponse(BaseModel):
    backup_enabled: bool
    last_backup_at: Optional[str] = None


class BackupToggleRequest(BaseModel):
    backup_enabled: bool


class RestoreResponse(BaseModel):
    ok: bool
    clean: bool
    message: str
    database: Optional[Dict[str, Any]] = None
    auth_users: Optional[Dict[str, Any]] = None
    storage: Optional[Dict[str, Any]] = None
    warnings: List[str] = Field(default_factory=list)

    @classmethod
    def from_report(cls, report: RestoreReport) -> "RestoreResponse":
        def _section(value: Any) -> Optional[Dict[str, Any]]:
            if value is None:
                return None
            return asdict(value)

        return cls(
            ok=report.ok,
            clean=report.clean,
            message=report.message,
            database=_section(report.database),
            auth_users=_section(report.auth_users),
            storage=_section(report.storage),
            warnings=list(report.warnings),
        )


class EventLogResponse(BaseModel):
    events: List[Dict[str, Any]]
