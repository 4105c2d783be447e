"""FastAPI application exposing the backup console over HTTP."""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import List, Optional, Sequence

from fastapi import Depends, FastAPI, HTTPException, Query, Request, Response, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from backup.api import BackupService
from backup.errors import (
    BackupError,
    BackupFailedError,
    BackupRequestError,
    GatewayError,
    RestoreValidationError,
)
from backup.restore import validate_archive
from backup.types import format_file_size

from .auth import APIKeyAuth
from .models import (
    BackupSettingsResponse,
    BackupToggleRequest,
    CancelAttemptsRequest,
    CancelAttemptsResponse,
    CancelRunResponse,
    DownloadRequest,
    DownloadResponse,
    DownloadTicketResponse,
    EventLogResponse,
    HealthResponse,
    HistoryResponse,
    HistoryRow,
    NotificationItem,
    NotificationsResponse,
    RestoreResponse,
    RunAcceptedResponse,
    ShareRequest,
    ShareResponse,
    StateResponse,
)

LOGGER = logging.getLogger("backupconsole.api")


@dataclass(slots=True)
class APIServerConfig:
    """Runtime configuration for the FastAPI application."""

    service: BackupService
    api_key: Optional[str]
    cors_origins: Sequence[str]
    app_version: str = "dev"
    lan_only: bool = True


_LOCAL_CLIENT_SENTINELS = {
    "127.0.0.1",
    "::1",
    "localhost",
    "testclient",
}


def _is_loopback_host(host: Optional[str]) -> bool:
    if host is None:
        return True
    value = host.strip().lower()
    if not value:
        return True
    if value.startswith("::ffff:"):
        value = value.rsplit(":", 1)[-1]
    if value.startswith("[") and value.endswith("]"):
        value = value[1:-1]
    if "%" in value:  # strip IPv6 scope id
        value = value.split("%", 1)[0]
    return value in _LOCAL_CLIENT_SENTINELS or value.startswith("127.")


def _state_response(service: BackupService) -> StateResponse:
    return StateResponse(**service.state.snapshot())


def create_app(config: APIServerConfig) -> FastAPI:
    """Create a FastAPI application bound to the given configuration."""

    app = FastAPI(
        title="Backup Console Local API",
        version=config.app_version,
        docs_url="/docs",
        openapi_url="/openapi.json",
    )

    allowed_origins: List[str] = [origin for origin in config.cors_origins if origin]
    if allowed_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=allowed_origins,
            allow_methods=["GET", "POST", "PUT", "DELETE"],
            allow_headers=["*"],
        )

    auth_dependency = APIKeyAuth(config.api_key)
    service = config.service
    lan_only = bool(config.lan_only)

    @app.on_event("startup")
    async def _startup() -> None:
        await service.start()

    @app.on_event("shutdown")
    async def _shutdown() -> None:
        await service.close()

    @app.middleware("http")
    async def log_requests(request: Request, call_next):  # type: ignore[override]
        start = time.perf_counter()
        response: Optional[Response] = None
        client_host = request.client.host if request.client else None
        try:
            if lan_only and not _is_loopback_host(client_host):
                LOGGER.warning("Rejected non-local HTTP request from %s", client_host or "<unknown>")
                response = JSONResponse(status_code=status.HTTP_403_FORBIDDEN, content={"error": "LAN access disabled"})
            else:
                response = await call_next(request)
            return response
        finally:
            duration_ms = (time.perf_counter() - start) * 1000
            status_code = response.status_code if response is not None else 500
            LOGGER.info(
                "%s %s -> %s (%.1f ms) ip=%s",
                request.method,
                request.url.path,
                status_code,
                duration_ms,
                client_host or "-",
            )

    @app.exception_handler(HTTPException)
    async def http_exception_handler(_request: Request, exc: HTTPException):
        detail = exc.detail if isinstance(exc.detail, str) else str(exc.detail)
        return JSONResponse(status_code=exc.status_code, content={"error": detail})

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(_request: Request, exc: RequestValidationError):
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={"error": "invalid parameters", "details": exc.errors()},
        )

    @app.exception_handler(BackupError)
    async def backup_exception_handler(_request: Request, exc: BackupError):
        if isinstance(exc, (BackupRequestError, RestoreValidationError)):
            code = status.HTTP_400_BAD_REQUEST
        elif isinstance(exc, BackupFailedError):
            code = status.HTTP_409_CONFLICT
        elif isinstance(exc, GatewayError):
            code = status.HTTP_502_BAD_GATEWAY
        else:
            code = status.HTTP_500_INTERNAL_SERVER_ERROR
        return JSONResponse(status_code=code, content={"error": str(exc)})

    # ------------------------------------------------------------------
    @app.get("/v1/health", response_model=HealthResponse)
    def health_check(_: str = Depends(auth_dependency)) -> HealthResponse:
        return HealthResponse(
            ok=True,
            version=config.app_version,
            time_utc=datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ"),
            running=service.state.is_running,
            background_watches=len(service.monitor.watches),
        )

    @app.get("/v1/backup/state", response_model=StateResponse)
    def backup_state(_: str = Depends(auth_dependency)) -> StateResponse:
        return _state_response(service)

    @app.post("/v1/backup/run", response_model=RunAcceptedResponse, status_code=status.HTTP_202_ACCEPTED)
    async def backup_run(_: str = Depends(auth_dependency)) -> RunAcceptedResponse:
        if service.engine.active:
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="A backup is already running")
        await service.start_manual_backup_task()
        return RunAcceptedResponse(accepted=True, state=_state_response(service))

    @app.post("/v1/backup/cancel", response_model=CancelRunResponse)
    async def backup_cancel(_: str = Depends(auth_dependency)) -> CancelRunResponse:
        return CancelRunResponse(cancelled=await service.cancel_manual_backup())

    @app.get("/v1/backup/notifications", response_model=NotificationsResponse)
    def backup_notifications(
        limit: int = Query(20, ge=1, le=200),
        _: str = Depends(auth_dependency),
    ) -> NotificationsResponse:
        items = [NotificationItem(**item.to_dict()) for item in service.notifications.recent(limit)]
        return NotificationsResponse(items=items)

    @app.get("/v1/backup/events", response_model=EventLogResponse)
    def backup_events(
        limit: int = Query(50, ge=1, le=500),
        _: str = Depends(auth_dependency),
    ) -> EventLogResponse:
        return EventLogResponse(events=service.logger.tail(limit))

    @app.get("/v1/backup/history", response_model=HistoryResponse)
    async def backup_history(
        status_filter: Optional[str] = Query(None, alias="status"),
        start_date: Optional[str] = Query(None),
        end_date: Optional[str] = Query(None),
        search: Optional[str] = Query(None, max_length=200),
        limit: Optional[int] = Query(None, ge=1, le=100),
        refresh: bool = Query(True),
        _: str = Depends(auth_dependency),
    ) -> HistoryResponse:
        filters = {
            "status": status_filter,
            "start_date": start_date,
            "end_date": end_date,
            "search": search,
        }
        if limit is not None:
            filters["limit"] = limit
        if refresh:
            await service.refresh_history(**filters)
        rows = [
            HistoryRow.from_attempt(
                row,
                progress=service.tracker.progress_of(row.id) if row.active else None,
                size_label=format_file_size(row.size_bytes),
            )
            for row in service.history.rows
        ]
        return HistoryResponse(rows=rows)

    @app.post("/v1/backup/history/cancel", response_model=CancelAttemptsResponse)
    async def backup_history_cancel(
        request: CancelAttemptsRequest,
        _: str = Depends(auth_dependency),
    ) -> CancelAttemptsResponse:
        result = await service.cancel_attempts(request.ids)
        return CancelAttemptsResponse(cancelled_count=result.cancelled_count, message=result.message)

    @app.post("/v1/backup/history/cancel-stuck", response_model=CancelAttemptsResponse)
    async def backup_history_cancel_stuck(_: str = Depends(auth_dependency)) -> CancelAttemptsResponse:
        result = await service.cancel_all_stuck()
        return CancelAttemptsResponse(cancelled_count=result.cancelled_count, message=result.message)

    @app.delete("/v1/backup/history/{attempt_id}", status_code=status.HTTP_204_NO_CONTENT)
    async def backup_history_delete(attempt_id: str, _: str = Depends(auth_dependency)) -> Response:
        await service.delete_attempt(attempt_id)
        return Response(status_code=status.HTTP_204_NO_CONTENT)

    @app.post("/v1/backup/history/download", response_model=DownloadResponse)
    async def backup_history_download(
        request: DownloadRequest,
        _: str = Depends(auth_dependency),
    ) -> DownloadResponse:
        return DownloadResponse(url=await service.download_from_history(request.artifact_key))

    @app.get("/v1/backup/history/{attempt_id}/ticket", response_model=DownloadTicketResponse)
    async def backup_history_ticket(attempt_id: str, _: str = Depends(auth_dependency)) -> DownloadTicketResponse:
        ticket = await service.download_ticket(attempt_id)
        return DownloadTicketResponse(
            download_url=ticket.download_url,
            expires_in=ticket.expires_in,
            attempt_id=ticket.attempt_id,
            size_bytes=ticket.size_bytes,
        )

    @app.post("/v1/backup/history/{attempt_id}/share", response_model=ShareResponse)
    async def backup_history_share(
        attempt_id: str,
        request: ShareRequest,
        _: str = Depends(auth_dependency),
    ) -> ShareResponse:
        result = await service.share(attempt_id, method=request.method, recipient=request.recipient)
        return ShareResponse(
            success=result.success,
            message=result.message,
            whatsapp_url=result.whatsapp_url,
            note=result.note,
        )

    @app.post("/v1/backup/restore", response_model=RestoreResponse)
    async def backup_restore(
        request: Request,
        file_name: str = Query(..., min_length=1, max_length=255),
        _: str = Depends(auth_dependency),
    ) -> RestoreResponse:
        content_type = request.headers.get("content-type")
        declared = request.headers.get("content-length", "")
        if declared.isdigit():
            validate_archive(file_name, int(declared), content_type, max_bytes=service.restore_max_bytes)
        data = await request.body()
        report = await service.restore(file_name, data, content_type=content_type)
        return RestoreResponse.from_report(report)

    @app.get("/v1/backup/settings", response_model=BackupSettingsResponse)
    async def backup_settings(_: str = Depends(auth_dependency)) -> BackupSettingsResponse:
        snapshot = await service.get_settings()
        return BackupSettingsResponse(
            backup_enabled=snapshot.backup_enabled,
            last_backup_at=snapshot.last_backup_at.isoformat() if snapshot.last_backup_at else None,
        )

    @app.put("/v1/backup/settings", response_model=BackupSettingsResponse)
    async def backup_settings_update(
        request: BackupToggleRequest,
        _: str = Depends(auth_dependency),
    ) -> BackupSettingsResponse:
        snapshot = await service.set_backup_enabled(request.backup_enabled)
        return BackupSettingsResponse(
            backup_enabled=snapshot.backup_enabled,
            last_backup_at=snapshot.last_backup_at.isoformat() if snapshot.last_backup_at else None,
        )

    return app


__all__ = ["APIServerConfig", "create_app"]
