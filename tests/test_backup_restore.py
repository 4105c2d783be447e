import base64

import pytest

from backup.errors import BackupRestoreError, GatewayError, RestoreValidationError
from backup.restore import (
    MAX_ARCHIVE_BYTES,
    ZIP_CONTENT_TYPES,
    parse_restore_response,
    restore_archive,
    restore_archive_file,
    validate_archive,
)

from fakes import FakeGateway


class StubLogger:
    def __init__(self) -> None:
        self.events = []

    def info(self, event: str, **extra):  # pragma: no cover - recorder
        self.events.append(("info", event, extra))

    def warning(self, event: str, **extra):  # pragma: no cover - recorder
        self.events.append(("warning", event, extra))

    def error(self, event: str, **extra):  # pragma: no cover - recorder
        self.events.append(("error", event, extra))


FULL_RESPONSE = {
    "success": True,
    "message": "Backup restored successfully",
    "results": {
        "database": {"restored": True, "rows_affected": 42, "sql_converted": True, "sql_size": 2048},
        "auth_users": {"restored": True, "users_merged": 3, "users_skipped": 1},
        "storage": {"restored": True, "files_uploaded": 5, "files_skipped": 0},
    },
}


@pytest.mark.parametrize(
    "name, size, content_type, message",
    [
        ("backup.tar.gz", 10, None, "Invalid file type. Please select a ZIP file."),
        ("backup.zip", MAX_ARCHIVE_BYTES + 1, None, "File size exceeds 500MB limit. Please select a smaller backup file."),
        ("../backup.zip", 10, None, "Invalid file name. Please use a valid filename."),
        ("CON.zip", 10, None, "Invalid file name. Please use a valid filename."),
        ("back|up.zip", 10, None, "Invalid file name. Please use a valid filename."),
        ("   ", 10, None, "Invalid file name. Please use a valid filename."),
    ],
)
def test_validate_archive_rejects(name, size, content_type, message):
    with pytest.raises(RestoreValidationError) as excinfo:
        validate_archive(name, size, content_type)
    assert str(excinfo.value) == message


def test_validate_archive_accepts_zip_by_name_or_type():
    validate_archive("backup-2024-05-01.zip", 1024, "application/octet-stream")
    validate_archive("export", 1024, "application/x-zip-compressed")
    validate_archive("backup.ZIP", MAX_ARCHIVE_BYTES)


def test_restore_uploads_base64_and_reports_sections():
    gateway = FakeGateway(restore_payload=FULL_RESPONSE)
    logger = StubLogger()
    data = b"PK\x03\x04archive"

    report = restore_archive(gateway, "backup.zip", data, logger=logger)

    name, file_name, file_type, encoded_len = gateway.calls[-1]
    assert (name, file_name) == ("restore", "backup.zip")
    assert file_type in ZIP_CONTENT_TYPES
    assert encoded_len == len(base64.b64encode(data))
    assert report.clean
    assert report.database.rows_affected == 42
    assert report.auth_users.users_merged == 3
    assert report.storage.files_uploaded == 5
    assert [event[1] for event in logger.events] == ["restore_upload", "restore_complete"]


def test_partial_restore_is_not_an_error():
    payload = {
        "success": True,
        "message": "Backup restore completed (merge mode)",
        "results": {
            "database": {"restored": False, "message": "No SQL dump in archive"},
            "auth_users": {"restored": False},
            "storage": {"restored": True, "files_uploaded": 2},
        },
    }

    report = parse_restore_response(payload)

    assert report.ok
    assert not report.clean
    assert report.warnings == ["database: No SQL dump in archive", "auth_users: not restored"]
    assert report.storage.restored


def test_server_reported_failure_becomes_leading_warning():
    report = parse_restore_response({"success": False, "message": "Storage bucket missing", "results": {}})
    assert report.ok
    assert report.warnings == ["Storage bucket missing"]
    assert report.database is None


def test_transport_failure_raises_restore_error():
    class BrokenGateway(FakeGateway):
        def restore(self, archive_b64, *, file_name, file_type):
            raise GatewayError("Failed to restore backup", function="restore-backup", status_code=500)

    logger = StubLogger()
    with pytest.raises(BackupRestoreError) as excinfo:
        restore_archive(BrokenGateway(), "backup.zip", b"PK", logger=logger)

    assert "Failed to restore backup" in str(excinfo.value)
    assert logger.events[-1][:2] == ("error", "restore_failed")


def test_invalid_archive_is_never_uploaded():
    gateway = FakeGateway()
    with pytest.raises(RestoreValidationError):
        restore_archive(gateway, "notes.txt", b"hello")
    assert gateway.calls == []


def test_restore_archive_file(tmp_path):
    archive = tmp_path / "backup.zip"
    archive.write_bytes(b"PK\x03\x04")
    gateway = FakeGateway(restore_payload=FULL_RESPONSE)

    report = restore_archive_file(gateway, archive)

    assert report.clean
    assert gateway.count("restore") == 1

    with pytest.raises(RestoreValidationError):
        restore_archive_file(gateway, tmp_path / "missing.zip")
    with pytest.raises(RestoreValidationError):
        restore_archive_file(gateway, archive, max_bytes=2)
