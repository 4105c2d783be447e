from __future__ import annotations

from backup.reconcile import GENERIC_FAILURE, VerdictKind, needs_record, reconcile

from fakes import ATTEMPT_A, attempt, status


def test_stored_success_with_key_wins_over_running_status():
    verdict = reconcile(status("in_progress", 40), attempt(ATTEMPT_A, "success", key="backups/a.zip"))
    assert verdict.kind is VerdictKind.SUCCESS
    assert verdict.artifact_key == "backups/a.zip"
    assert verdict.attempt_id == ATTEMPT_A
    assert verdict.progress == 100.0


def test_running_row_with_key_means_upload_finished():
    verdict = reconcile(status("in_progress", 100), attempt(ATTEMPT_A, "in_progress", key="backups/a.zip"))
    assert verdict.kind is VerdictKind.SUCCESS
    assert verdict.artifact_key == "backups/a.zip"

    pending = reconcile(None, attempt(ATTEMPT_A, "pending", key="backups/b.zip"))
    assert pending.kind is VerdictKind.SUCCESS


def test_failed_row_with_leftover_key_is_still_a_failure():
    verdict = reconcile(None, attempt(ATTEMPT_A, "failed", key="backups/a.zip", error_text="disk full"))
    assert verdict.kind is VerdictKind.FAILURE
    assert verdict.message == "Backup failed: disk full"


def test_live_success_needs_a_key_or_url():
    keyed = reconcile(status("success", 100, artifact_key="k1"), None)
    assert keyed.kind is VerdictKind.SUCCESS
    assert keyed.artifact_key == "k1"

    signed = reconcile(status("success", 100, signed_url="https://signed.example/x"), None)
    assert signed.kind is VerdictKind.SUCCESS
    assert signed.signed_url == "https://signed.example/x"

    bare = reconcile(status("success", 100), None)
    assert bare.kind is VerdictKind.RUNNING


def test_failure_prefers_stored_error_text():
    verdict = reconcile(
        status("failed", error="transport error"),
        attempt(ATTEMPT_A, "failed", error_text="disk full"),
    )
    assert verdict.kind is VerdictKind.FAILURE
    assert "disk full" in verdict.message
    assert "transport" not in verdict.message


def test_failure_falls_back_to_report_error_then_generic():
    assert reconcile(status("failed", error="runner crashed"), None).message == "Backup failed: runner crashed"
    assert reconcile(status("failed"), None).message == f"Backup failed: {GENERIC_FAILURE}"


def test_cancelled_on_either_side():
    assert reconcile(status("cancelled"), None).kind is VerdictKind.CANCELLED
    assert reconcile(status("in_progress", 30), attempt(ATTEMPT_A, "cancelled")).kind is VerdictKind.CANCELLED


def test_no_evidence_is_still_running():
    verdict = reconcile(None, None)
    assert verdict.kind is VerdictKind.RUNNING
    assert not verdict.terminal


def test_attempt_id_comes_from_record_or_report():
    assert reconcile(status("in_progress", attempt_id="from-report"), None).attempt_id == "from-report"
    assert reconcile(status("in_progress", attempt_id="from-report"), attempt(ATTEMPT_A, "in_progress")).attempt_id == ATTEMPT_A


def test_record_lookup_only_when_report_cannot_settle():
    assert needs_record(None)
    assert needs_record(status("success"))
    assert needs_record(status("failed"))
    assert needs_record(status("in_progress", 100))
    assert not needs_record(status("in_progress", 99))
    assert not needs_record(status("pending"))
