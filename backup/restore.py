"""Upload a backup archive for a merge-only restore."""
from __future__ import annotations

import base64
import mimetypes
import re
from pathlib import Path
from typing import Any, Mapping, Optional, TYPE_CHECKING

from .errors import BackupRestoreError, GatewayError, RestoreValidationError
from .logs import BackupLogger
from .types import (
    AuthUsersRestoreResult,
    DatabaseRestoreResult,
    RestoreReport,
    StorageRestoreResult,
)

if TYPE_CHECKING:  # pragma: no cover - typing guard
    from .gateway import EdgeFunctionClient

MAX_ARCHIVE_BYTES = 500 * 1024 * 1024
ZIP_CONTENT_TYPES = frozenset({"application/zip", "application/x-zip-compressed", "application/x-zip"})
_SUSPICIOUS_NAMES = (
    re.compile(r"\.\."),
    re.compile(r'[<>:"|?*]'),
    re.compile(r"^(CON|PRN|AUX|NUL|COM[1-9]|LPT[1-9])(\.|$)", re.IGNORECASE),
)


def validate_archive(
    file_name: str,
    size_bytes: int,
    content_type: Optional[str] = None,
    *,
    max_bytes: int = MAX_ARCHIVE_BYTES,
) -> None:
    """Reject archives that are not zips, too large, or oddly named."""

    name = (file_name or "").strip()
    if not name:
        raise RestoreValidationError("Invalid file name. Please use a valid filename.")
    if (content_type or "").lower() not in ZIP_CONTENT_TYPES and not name.lower().endswith(".zip"):
        raise RestoreValidationError("Invalid file type. Please select a ZIP file.")
    if size_bytes > max_bytes:
        limit_mb = max_bytes // (1024 * 1024)
        raise RestoreValidationError(f"File size exceeds {limit_mb}MB limit. Please select a smaller backup file.")
    if any(pattern.search(name) for pattern in _SUSPICIOUS_NAMES):
        raise RestoreValidationError("Invalid file name. Please use a valid filename.")


def _section(payload: Mapping[str, Any], key: str) -> Optional[Mapping[str, Any]]:
    value = payload.get(key)
    return value if isinstance(value, Mapping) else None


def parse_restore_response(payload: Mapping[str, Any]) -> RestoreReport:
    """Build a report where every section stands on its own."""

    results = _section(payload, "results") or {}
    warnings = []

    database = None
    raw = _section(results, "database")
    if raw is not None:
        database = DatabaseRestoreResult(
            restored=bool(raw.get("restored")),
            message=raw.get("message"),
            rows_affected=raw.get("rows_affected"),
            note=raw.get("note"),
            sql_converted=bool(raw.get("sql_converted")),
            sql_size=raw.get("sql_size"),
        )
        if not database.restored:
            warnings.append(f"database: {database.message or 'not restored'}")

    auth_users = None
    raw = _section(results, "auth_users")
    if raw is not None:
        auth_users = AuthUsersRestoreResult(
            restored=bool(raw.get("restored")),
            users_merged=int(raw.get("users_merged") or 0),
            users_skipped=int(raw.get("users_skipped") or 0),
        )
        if not auth_users.restored:
            warnings.append("auth_users: not restored")

    storage = None
    raw = _section(results, "storage")
    if raw is not None:
        storage = StorageRestoreResult(
            restored=bool(raw.get("restored")),
            files_uploaded=int(raw.get("files_uploaded") or 0),
            files_skipped=int(raw.get("files_skipped") or 0),
        )
        if not storage.restored:
            warnings.append("storage: not restored")

    if payload.get("success") is False:
        warnings.insert(0, str(payload.get("message") or "Restore completed with warnings"))

    return RestoreReport(
        ok=True,
        message=str(payload.get("message") or "Backup restore completed (merge mode)"),
        database=database,
        auth_users=auth_users,
        storage=storage,
        warnings=warnings,
    )


def restore_archive(
    gateway: "EdgeFunctionClient",
    file_name: str,
    data: bytes,
    *,
    content_type: Optional[str] = None,
    max_bytes: int = MAX_ARCHIVE_BYTES,
    logger: Optional[BackupLogger] = None,
) -> RestoreReport:
    """Validate and upload ``data``; only a transport failure raises."""

    validate_archive(file_name, len(data), content_type, max_bytes=max_bytes)
    file_type = content_type or mimetypes.guess_type(file_name)[0] or "application/zip"
    encoded = base64.b64encode(data).decode("ascii")
    if logger:
        logger.info("restore_upload", file_name=file_name, size_bytes=len(data))
    try:
        payload = gateway.restore(encoded, file_name=file_name, file_type=file_type)
    except GatewayError as exc:
        if logger:
            logger.error("restore_failed", file_name=file_name, error=str(exc))
        raise BackupRestoreError(str(exc) or "Failed to restore backup") from exc
    report = parse_restore_response(payload)
    if logger:
        log = logger.info if report.clean else logger.warning
        log("restore_complete", file_name=file_name, warnings=report.warnings)
    return report


def restore_archive_file(
    gateway: "EdgeFunctionClient",
    path: Path,
    *,
    max_bytes: int = MAX_ARCHIVE_BYTES,
    logger: Optional[BackupLogger] = None,
) -> RestoreReport:
    path = Path(path)
    if not path.exists():
        raise RestoreValidationError(f"Backup archive not found: {path}")
    # Size is checked before reading so an oversized file is never loaded.
    validate_archive(path.name, path.stat().st_size, max_bytes=max_bytes)
    return restore_archive(gateway, path.name, path.read_bytes(), max_bytes=max_bytes, logger=logger)


__all__ = [
    "MAX_ARCHIVE_BYTES",
    "parse_restore_response",
    "restore_archive",
    "restore_archive_file",
    "validate_archive",
]
