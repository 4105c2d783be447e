"""HTTP client for the backup edge functions.

Every remote collaborator of the orchestrator (job dispatcher, status
endpoint, history store, URL signer, cancel/delete/update endpoints, restore
and sharing) is an edge function reached with a JSON ``POST`` to
``{base_url}/functions/v1/<name>``. The client is synchronous; async callers
off-load it with :func:`asyncio.to_thread`.
"""
from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

import requests

from core.logging_utils import redact_secret

from .errors import GatewayError, TransientGatewayError
from .types import (
    BackupAttempt,
    BackupSettingsSnapshot,
    BackupStatus,
    CancelResult,
    DispatchReceipt,
    DownloadTicket,
    HistoryQuery,
    ShareResult,
    StatusReport,
)

LOGGER = logging.getLogger("backupconsole.backup.gateway")

_TRANSIENT_STATUS = frozenset({408, 425, 429, 500, 502, 503, 504})
_CHUNK_SIZE = 1024 * 256


def _error_message(function: str, response: requests.Response, payload: Any) -> str:
    if isinstance(payload, Mapping):
        message = str(payload.get("error") or "Unknown error")
        detail = payload.get("message")
        if detail and detail != payload.get("error"):
            message += f": {detail}"
        if payload.get("details"):
            message += f" ({payload['details']})"
    else:
        message = f"HTTP {response.status_code}: {response.reason}"
    return f"Edge Function {function} failed: {message}"


class EdgeFunctionClient:
    """Thin JSON client for the backup edge functions."""

    def __init__(
        self,
        base_url: str,
        *,
        anon_key: str,
        service_key: Optional[str] = None,
        user_id: Optional[str] = None,
        timeout: float = 30.0,
        session: Optional[requests.Session] = None,
    ) -> None:
        if not base_url or not anon_key:
            raise GatewayError("Gateway configuration is missing base_url or anon_key")
        self.base_url = base_url.rstrip("/")
        self._anon_key = anon_key.strip()
        self._service_key = service_key.strip() if service_key else None
        self.user_id = user_id
        self.timeout = float(timeout)
        self._session = session or requests.Session()

    @classmethod
    def from_settings(cls, settings: Mapping[str, Any], *, session: Optional[requests.Session] = None) -> "EdgeFunctionClient":
        gateway = settings.get("gateway") if isinstance(settings.get("gateway"), Mapping) else {}
        client = cls(
            str(gateway.get("base_url") or ""),
            anon_key=str(gateway.get("anon_key") or ""),
            service_key=gateway.get("service_key"),
            user_id=gateway.get("user_id"),
            timeout=float(gateway.get("timeout_s") or 30),
            session=session,
        )
        LOGGER.info("Edge function client configured for %s (key %s)", client.base_url, redact_secret(client._anon_key))
        return client

    def close(self) -> None:
        self._session.close()

    # ------------------------------------------------------------------
    def _call(self, function: str, body: Optional[Dict[str, Any]] = None, *, service: bool = False) -> Any:
        payload = dict(body or {})
        if self.user_id:
            payload.setdefault("user_id", self.user_id)
        key = self._anon_key
        if service:
            key = self._service_key or self._anon_key
        headers = {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {key}",
            "apikey": self._anon_key,
        }
        url = f"{self.base_url}/functions/v1/{function}"
        try:
            response = self._session.post(url, json=payload, headers=headers, timeout=self.timeout)
        except (requests.ConnectionError, requests.Timeout) as exc:
            raise TransientGatewayError(
                f"Edge Function '{function}' not reachable: {exc}", function=function
            ) from exc
        except requests.RequestException as exc:
            raise GatewayError(f"Edge Function {function} request failed: {exc}", function=function) from exc

        text = response.text
        try:
            data = response.json() if text else None
        except ValueError as exc:
            if response.status_code in _TRANSIENT_STATUS:
                raise TransientGatewayError(
                    f"Edge Function {function} failed: HTTP {response.status_code}",
                    function=function,
                    status_code=response.status_code,
                ) from exc
            raise GatewayError(
                f"Edge Function {function} returned invalid response: {text[:200]}",
                function=function,
                status_code=response.status_code,
            ) from exc

        if not response.ok:
            error_cls = TransientGatewayError if response.status_code in _TRANSIENT_STATUS else GatewayError
            raise error_cls(
                _error_message(function, response, data),
                function=function,
                status_code=response.status_code,
            )
        return data

    def _expect_mapping(self, function: str, data: Any) -> Mapping[str, Any]:
        if not isinstance(data, Mapping):
            raise GatewayError(f"Edge Function {function} returned an unexpected payload", function=function)
        return data

    # ------------------------------------------------------------------
    def dispatch_backup(self) -> DispatchReceipt:
        data = self._expect_mapping("trigger-backup", self._call("trigger-backup"))
        return DispatchReceipt.from_payload(data)

    def query_status(self, dispatch_handle: str) -> StatusReport:
        data = self._expect_mapping("backup-status", self._call("backup-status", {"dispatch_id": dispatch_handle}))
        return StatusReport.from_payload(data)

    def list_history(self, query: Optional[HistoryQuery] = None) -> List[BackupAttempt]:
        query = query or HistoryQuery()
        data = self._call("backup-history", query.to_payload())
        if not isinstance(data, list):
            raise GatewayError("Edge Function backup-history returned an unexpected payload", function="backup-history")
        return [BackupAttempt.from_payload(row) for row in data if isinstance(row, Mapping)]

    def find_attempt(
        self,
        *,
        attempt_id: Optional[str] = None,
        dispatch_handle: Optional[str] = None,
        limit: int = 10,
    ) -> Optional[BackupAttempt]:
        """Look a recent attempt up by id, falling back to its dispatch handle."""

        if not attempt_id and not dispatch_handle:
            return None
        rows = self.list_history(HistoryQuery(limit=limit))
        if attempt_id:
            for row in rows:
                if row.id == attempt_id:
                    return row
        if dispatch_handle:
            for row in rows:
                if row.dispatch_handle == dispatch_handle:
                    return row
        return None

    def cancel(self, attempt_ids: Sequence[str]) -> CancelResult:
        ids = [str(item) for item in attempt_ids if item]
        if not ids:
            raise GatewayError("No backup ids to cancel", function="cancel-backup")
        body: Dict[str, Any] = {"backup_id": ids[0]} if len(ids) == 1 else {"backup_ids": ids}
        data = self._expect_mapping("cancel-backup", self._call("cancel-backup", body))
        if data.get("success") is False:
            raise GatewayError(str(data.get("message") or "Failed to cancel backup"), function="cancel-backup")
        return CancelResult(
            cancelled_count=int(data.get("cancelled_count") or 0),
            message=str(data.get("message") or ""),
        )

    def delete(self, attempt_id: str) -> None:
        data = self._expect_mapping("delete-backup", self._call("delete-backup", {"backup_id": attempt_id}))
        if data.get("success") is False:
            raise GatewayError(str(data.get("message") or "Failed to delete backup"), function="delete-backup")

    def sign_artifact_url(self, artifact_key: str) -> str:
        data = self._expect_mapping(
            "generate-signed-url", self._call("generate-signed-url", {"s3_key": artifact_key})
        )
        signed_url = data.get("signed_url")
        if not signed_url:
            raise GatewayError(
                "Invalid response from generate-signed-url function: missing signed_url",
                function="generate-signed-url",
            )
        return str(signed_url)

    def update_attempt(
        self,
        attempt_id: Optional[str],
        *,
        dispatch_handle: Optional[str],
        artifact_key: Optional[str],
        status: BackupStatus,
        size_bytes: Optional[int] = None,
        error_text: Optional[str] = None,
    ) -> Mapping[str, Any]:
        body = {
            "backup_id": attempt_id,
            "dispatch_id": dispatch_handle,
            "s3_key": artifact_key,
            "status": status.value,
            "size_bytes": size_bytes,
            "error_text": error_text,
        }
        return self._expect_mapping("update-backup", self._call("update-backup", body, service=True))

    def restore(self, archive_b64: str, *, file_name: str, file_type: str) -> Mapping[str, Any]:
        body = {"backup_file": archive_b64, "file_name": file_name, "file_type": file_type}
        return self._expect_mapping("restore-backup", self._call("restore-backup", body))

    def get_settings(self) -> BackupSettingsSnapshot:
        data = self._expect_mapping("settings-toggle", self._call("settings-toggle"))
        return BackupSettingsSnapshot.from_payload(data)

    def set_backup_enabled(self, enabled: bool) -> None:
        self._call("settings-toggle", {"backup_enabled": bool(enabled)})

    def share(self, attempt_id: str, *, method: str, recipient: str) -> ShareResult:
        data = self._expect_mapping(
            "share-backup",
            self._call("share-backup", {"backup_id": attempt_id, "method": method, "recipient": recipient}),
        )
        return ShareResult(
            success=bool(data.get("success")),
            message=str(data.get("message") or ""),
            whatsapp_url=data.get("whatsapp_url"),
            note=data.get("note"),
        )

    def download_ticket(self, attempt_id: str) -> DownloadTicket:
        data = self._expect_mapping("download-backup", self._call("download-backup", {"backup_id": attempt_id}))
        url = data.get("download_url")
        if not url:
            raise GatewayError("download-backup response is missing download_url", function="download-backup")
        size = data.get("size_bytes")
        return DownloadTicket(
            download_url=str(url),
            expires_in=int(data.get("expires_in") or 0),
            attempt_id=str(data.get("backup_id") or attempt_id),
            size_bytes=int(size) if size is not None else None,
        )

    def fetch_artifact(self, url: str, destination: Path) -> Path:
        """Stream a signed artifact URL to ``destination``."""

        destination = Path(destination)
        destination.parent.mkdir(parents=True, exist_ok=True)
        partial = destination.with_suffix(destination.suffix + ".part")
        try:
            with self._session.get(url, stream=True, timeout=self.timeout) as response:
                if response.status_code in _TRANSIENT_STATUS:
                    raise TransientGatewayError(f"Artifact download failed: HTTP {response.status_code}")
                response.raise_for_status()
                with partial.open("wb") as handle:
                    for chunk in response.iter_content(chunk_size=_CHUNK_SIZE):
                        if chunk:
                            handle.write(chunk)
        except (requests.ConnectionError, requests.Timeout) as exc:
            partial.unlink(missing_ok=True)
            raise TransientGatewayError(f"Artifact download failed: {exc}") from exc
        except requests.RequestException as exc:
            partial.unlink(missing_ok=True)
            raise GatewayError(f"Artifact download failed: {exc}") from exc
        except GatewayError:
            partial.unlink(missing_ok=True)
            raise
        partial.replace(destination)
        return destination


def active_attempts(rows: Iterable[BackupAttempt]) -> List[BackupAttempt]:
    return [row for row in rows if row.active]


__all__ = ["EdgeFunctionClient", "active_attempts"]
