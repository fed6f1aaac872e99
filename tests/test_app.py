from __future__ import annotations

from pathlib import Path
from unittest.mock import Mock

from fakes import FakeClock
from rds_backup_replicator.app import (
    _actionable_next_step,
    _build_config_rows,
    _build_history_rows,
    _build_result_rows,
    _build_workflow_rows,
    _failed_stage,
    _run_backup_now,
)
from rds_backup_replicator.errors import BackupStageError
from rds_backup_replicator.models import BackupResult, CleanupOutcome
from rds_backup_replicator.scheduler import BackupRunGuard, BackupRuntime, run_lock_path


def _failed_result(message: str, **fields: str) -> BackupResult:
    return BackupResult(
        db_identifier="orders-db",
        backup_time="2024-03-15T00:00:00+00:00",
        finished_at="2024-03-15T00:40:00+00:00",
        error_message=message,
        **fields,
    )


def _successful_result() -> BackupResult:
    return BackupResult(
        db_identifier="orders-db",
        backup_time="2024-03-15T00:00:00+00:00",
        snapshot_id="backup-orders-db-2024-03-15-00-00-00",
        target_snapshot_id="copy-backup-orders-db-2024-03-15-00-00-00",
        locations=["s3://target-bucket/export-copy-backup-orders-db-2024-03-15-00-00-00"],
        finished_at="2024-03-15T01:30:00+00:00",
        cleanup=CleanupOutcome(deleted=["backup-orders-db-2024-02-01-00-00-00"]),
    )


def test_build_config_rows_with_config_lists_described_settings(make_config) -> None:
    rows = _build_config_rows(make_config())

    assert {"setting": "database", "value": "orders-db"} in rows
    assert {"setting": "target_region", "value": "us-west-2"} in rows


def test_build_result_rows_with_export_failure_includes_export_hint() -> None:
    rows = _build_result_rows(_failed_result("export stage failed: export task export-x failed: disk full"))

    assert rows[0]["status"] == "failed"
    assert "disk full" in rows[0]["actionable_message"]
    assert "EXPORT_ROLE_ARN" in rows[0]["actionable_message"]


def test_build_result_rows_with_success_reports_locations_and_cleanup() -> None:
    rows = _build_result_rows(_successful_result())

    assert rows[0]["actionable_message"] == "Backup completed successfully."
    assert rows[0]["locations"] == "s3://target-bucket/export-copy-backup-orders-db-2024-03-15-00-00-00"
    assert rows[0]["cleanup"] == "deleted=1 failures=0"


def test_actionable_next_step_with_unknown_message_uses_generic_hint() -> None:
    assert _actionable_next_step("") == "No follow-up action required."
    assert "RDS console events" in _actionable_next_step("something odd happened")
    assert "KMS_KEY_ID" in _actionable_next_step("kms stage failed: KMS key arn:x is disabled")


def test_build_history_rows_with_success_and_failure_sets_expected_actionable_messages() -> None:
    rows = _build_history_rows(
        [
            {
                "db_identifier": "orders-db",
                "status": "success",
                "snapshot_id": "backup-orders-db-2024-03-15-00-00-00",
                "target_snapshot_id": "copy-backup-orders-db-2024-03-15-00-00-00",
                "locations": ["s3://a/export-1", "s3://b/export-2"],
                "error_message": "",
                "finished_at": "2024-03-15T01:30:00+00:00",
            },
            {
                "db_identifier": "orders-db",
                "status": "failed",
                "snapshot_id": None,
                "target_snapshot_id": None,
                "locations": [],
                "error_message": "copy stage failed: AccessDenied",
                "finished_at": "2024-03-14T00:10:00+00:00",
            },
        ]
    )

    assert rows[0]["locations"] == "s3://a/export-1, s3://b/export-2"
    assert rows[0]["actionable_message"] == "Backup completed successfully."
    assert rows[1]["snapshot_id"] == ""
    assert "cross-region copy" in rows[1]["actionable_message"]


def test_failed_stage_with_stage_message_extracts_stage_name() -> None:
    assert _failed_stage("copy stage failed: AccessDenied") == "copy"
    assert _failed_stage("unexpected backup failure: boom") is None


def test_build_workflow_rows_without_result_marks_first_step_ready() -> None:
    rows = _build_workflow_rows(None)

    assert [row["state"] for row in rows] == ["Ready", "Waiting", "Waiting", "Waiting"]


def test_build_workflow_rows_with_copy_failure_marks_copy_failed() -> None:
    rows = _build_workflow_rows(
        _failed_result("copy stage failed: AccessDenied", snapshot_id="backup-orders-db-2024-03-15-00-00-00")
    )

    assert [row["state"] for row in rows] == ["Done", "Done", "Failed", "Waiting"]


def test_build_workflow_rows_with_key_failure_blocks_later_steps() -> None:
    rows = _build_workflow_rows(_failed_result("kms stage failed: KMS key arn:x is disabled"))

    assert [row["state"] for row in rows] == ["Failed", "Waiting", "Waiting", "Waiting"]


def test_build_workflow_rows_with_cleanup_warning_marks_cleanup_step() -> None:
    result = _successful_result()
    result.cleanup = CleanupOutcome(failures=["snap: InvalidDBSnapshotState"])

    rows = _build_workflow_rows(result)

    assert [row["state"] for row in rows] == ["Done", "Done", "Done", "Done with warnings"]


def _runtime(make_config, tmp_path: Path, orchestrator: Mock) -> BackupRuntime:
    return BackupRuntime(
        config=make_config(),
        orchestrator=orchestrator,
        notifier=Mock(),
        metadata_store=Mock(),
        clock=FakeClock(),
        guard=BackupRunGuard(run_lock_path(tmp_path / "backups.db")),
    )


def test_run_backup_now_with_scheduled_run_in_progress_refuses_to_start(make_config, tmp_path: Path) -> None:
    orchestrator = Mock()
    daemon_guard = BackupRunGuard(run_lock_path(tmp_path / "backups.db"))
    assert daemon_guard.acquire() is True

    try:
        result, message = _run_backup_now(_runtime(make_config, tmp_path, orchestrator))
    finally:
        daemon_guard.release()

    assert result is None
    assert "already in progress" in message
    orchestrator.perform.assert_not_called()


def test_run_backup_now_with_failed_run_returns_result_and_failure_message(make_config, tmp_path: Path) -> None:
    orchestrator = Mock()
    orchestrator.perform.side_effect = BackupStageError(stage="copy", reason="AccessDenied")

    result, message = _run_backup_now(_runtime(make_config, tmp_path, orchestrator))

    assert result is not None and result.error_message == "copy stage failed: AccessDenied"
    assert message == "Backup failed. Review actionable details below."
