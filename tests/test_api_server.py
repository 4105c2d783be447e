from __future__ import annotations

import time

import pytest
from fastapi.testclient import TestClient

from api.server import APIServerConfig, _is_loopback_host, create_app
from backup.api import BackupService
from backup.errors import GatewayError
from core.settings import merge_defaults

from fakes import ATTEMPT_A, ATTEMPT_B, FakeClock, FakeGateway, attempt, status

API_KEY = "local-test-key"
HEADERS = {"X-API-Key": API_KEY}


def _app(working_dir, gateway, **overrides):
    service = BackupService(
        working_dir=working_dir,
        settings=merge_defaults(overrides),
        gateway=gateway,
        clock=FakeClock(),
    )
    config = APIServerConfig(service=service, api_key=API_KEY, cors_origins=["http://localhost"], app_version="test")
    return create_app(config), service


@pytest.fixture()
def gateway() -> FakeGateway:
    return FakeGateway(
        statuses={"run-1": [status("success", 100, artifact_key="k1")]},
        records=[
            attempt(ATTEMPT_A, "success", key="backups/a.zip", handle="run-0"),
            attempt(ATTEMPT_B, "failed", error_text="disk full"),
        ],
        restore_payload={"success": True, "results": {"database": {"restored": False, "message": "no dump"}}},
    )


def test_requests_without_key_are_rejected(working_dir, gateway):
    app, _ = _app(working_dir, gateway)
    with TestClient(app) as client:
        response = client.get("/v1/health")
        assert response.status_code == 401
        assert response.json() == {"error": "Invalid or missing API key."}

        wrong = client.get("/v1/health", headers={"X-API-Key": "nope"})
        assert wrong.status_code == 401


def test_health_and_state(working_dir, gateway):
    app, _ = _app(working_dir, gateway)
    with TestClient(app) as client:
        health = client.get("/v1/health", headers=HEADERS).json()
        assert health["ok"] is True
        assert health["version"] == "test"
        assert health["running"] is False
        assert health["background_watches"] == 0

        state = client.get("/v1/backup/state", headers=HEADERS).json()
        assert state["is_running"] is False
        assert state["progress"] == 0.0


def test_history_rows(working_dir, gateway):
    gateway.records[0].size_bytes = 5 * 1024 * 1024
    app, _ = _app(working_dir, gateway)
    with TestClient(app) as client:
        response = client.get("/v1/backup/history", headers=HEADERS, params={"limit": 20, "status": "all"})
        assert response.status_code == 200
        rows = response.json()["rows"]
        assert [row["id"] for row in rows] == [ATTEMPT_A, ATTEMPT_B]
        assert rows[0]["size_label"] == "5.00 MB"
        assert rows[1]["error_text"] == "disk full"
        assert rows[0]["display_progress"] is None

        bad = client.get("/v1/backup/history", headers=HEADERS, params={"limit": 0})
        assert bad.status_code == 400
        assert bad.json()["error"] == "invalid parameters"


def test_manual_run_is_accepted_and_finishes_on_shutdown(working_dir, gateway):
    app, service = _app(working_dir, gateway)
    with TestClient(app) as client:
        response = client.post("/v1/backup/run", headers=HEADERS)
        assert response.status_code == 202
        assert response.json()["accepted"] is True
        for _ in range(500):
            if not client.get("/v1/backup/state", headers=HEADERS).json()["is_running"]:
                break
            time.sleep(0.01)

    assert gateway.count("dispatch_backup") == 1
    assert service.state.is_running is False
    assert [item.level for item in service.notifications.recent()] == ["success"]


def test_cancel_without_run_and_notifications(working_dir, gateway):
    app, service = _app(working_dir, gateway)
    with TestClient(app) as client:
        assert client.post("/v1/backup/cancel", headers=HEADERS).json() == {"cancelled": False}
        service.notifications.info("hello")
        items = client.get("/v1/backup/notifications", headers=HEADERS, params={"limit": 5}).json()["items"]
        assert [item["message"] for item in items] == ["hello"]

        events = client.get("/v1/backup/events", headers=HEADERS).json()["events"]
        assert events[0]["event"] == "service_start"


def test_history_actions(working_dir, gateway):
    app, _ = _app(working_dir, gateway)
    with TestClient(app) as client:
        invalid = client.post("/v1/backup/history/cancel", headers=HEADERS, json={"ids": ["run-1"]})
        assert invalid.status_code == 400
        assert invalid.json() == {"error": "Invalid backup ID format"}

        empty = client.post("/v1/backup/history/cancel", headers=HEADERS, json={"ids": []})
        assert empty.status_code == 400

        cancelled = client.post("/v1/backup/history/cancel", headers=HEADERS, json={"ids": [ATTEMPT_B]})
        assert cancelled.json()["cancelled_count"] == 1

        stuck = client.post("/v1/backup/history/cancel-stuck", headers=HEADERS)
        assert stuck.json() == {"cancelled_count": 0, "message": "No stuck backups found"}

        download = client.post("/v1/backup/history/download", headers=HEADERS, json={"artifact_key": "backups/a.zip"})
        assert download.json() == {"url": "https://signed.example/backups/a.zip"}

        unsafe = client.post("/v1/backup/history/download", headers=HEADERS, json={"artifact_key": "<a>"})
        assert unsafe.status_code == 400

        ticket = client.get(f"/v1/backup/history/{ATTEMPT_A}/ticket", headers=HEADERS).json()
        assert ticket["attempt_id"] == ATTEMPT_A
        assert ticket["expires_in"] == 3600

        shared = client.post(
            f"/v1/backup/history/{ATTEMPT_A}/share",
            headers=HEADERS,
            json={"method": "whatsapp", "recipient": "+15550100"},
        )
        assert shared.json()["success"] is True

        bad_method = client.post(
            f"/v1/backup/history/{ATTEMPT_A}/share",
            headers=HEADERS,
            json={"method": "sms", "recipient": "+15550100"},
        )
        assert bad_method.status_code == 400

        deleted = client.delete(f"/v1/backup/history/{ATTEMPT_A}", headers=HEADERS)
        assert deleted.status_code == 204
        assert ("delete", ATTEMPT_A) in gateway.calls


def test_restore_upload(working_dir, gateway):
    app, _ = _app(working_dir, gateway)
    with TestClient(app) as client:
        response = client.post(
            "/v1/backup/restore",
            headers={**HEADERS, "Content-Type": "application/zip"},
            params={"file_name": "backup.zip"},
            content=b"PK\x03\x04",
        )
        assert response.status_code == 200
        body = response.json()
        assert body["ok"] is True
        assert body["clean"] is False
        assert body["warnings"] == ["database: no dump"]
        assert body["database"]["restored"] is False

        rejected = client.post(
            "/v1/backup/restore",
            headers={**HEADERS, "Content-Type": "text/plain"},
            params={"file_name": "notes.txt"},
            content=b"hello",
        )
        assert rejected.status_code == 400
        assert rejected.json() == {"error": "Invalid file type. Please select a ZIP file."}



def test_restore_rejects_oversized_upload_before_reading_it(working_dir, gateway, monkeypatch):
    app, service = _app(working_dir, gateway, restore={"max_bytes": 1024 * 1024})

    async def unreachable(*_args, **_kwargs):
        raise AssertionError("oversized upload reached the service")

    monkeypatch.setattr(service, "restore", unreachable)
    with TestClient(app) as client:
        response = client.post(
            "/v1/backup/restore",
            headers={**HEADERS, "Content-Type": "application/zip"},
            params={"file_name": "backup.zip"},
            content=b"PK" + b"\0" * (2 * 1024 * 1024),
        )

    assert response.status_code == 400
    assert response.json() == {"error": "File size exceeds 1MB limit. Please select a smaller backup file."}
    assert gateway.count("restore") == 0


def test_settings_toggle(working_dir, gateway):
    app, _ = _app(working_dir, gateway)
    with TestClient(app) as client:
        current = client.get("/v1/backup/settings", headers=HEADERS).json()
        assert current["backup_enabled"] is True
        assert current["last_backup_at"].startswith("2024-05-01")

        updated = client.put("/v1/backup/settings", headers=HEADERS, json={"backup_enabled": False}).json()
        assert updated["backup_enabled"] is False


def test_gateway_errors_map_to_bad_gateway(working_dir):
    class SettingsDown(FakeGateway):
        def get_settings(self):
            raise GatewayError("Edge Function settings-toggle failed: HTTP 500", function="settings-toggle")

    app, _ = _app(working_dir, SettingsDown())
    with TestClient(app) as client:
        response = client.get("/v1/backup/settings", headers=HEADERS)
        assert response.status_code == 502
        assert "settings-toggle" in response.json()["error"]


@pytest.mark.parametrize(
    "host, expected",
    [
        ("127.0.0.1", True),
        ("::1", True),
        ("::ffff:127.0.0.1", True),
        ("testclient", True),
        (None, True),
        ("10.0.0.5", False),
        ("192.168.1.20", False),
    ],
)
def test_loopback_detection(host, expected):
    assert _is_loopback_host(host) is expected
