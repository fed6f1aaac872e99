from pathlib import Path

import pytest

from rds_backup_replicator.metadata import BackupMetadataStore
from rds_backup_replicator.models import BackupResult


def _result(
    *,
    db_identifier: str = "orders-db",
    finished_at: str,
    error_message: str = "",
    snapshot_id: str = "",
    target_snapshot_id: str = "",
    locations: list[str] | None = None,
    backup_time: str = "2024-03-15T00:00:00+00:00",
) -> BackupResult:
    return BackupResult(
        db_identifier=db_identifier,
        backup_time=backup_time,
        snapshot_id=snapshot_id,
        target_snapshot_id=target_snapshot_id,
        locations=list(locations or []),
        error_message=error_message,
        finished_at=finished_at,
    )


def _store(tmp_path: Path) -> BackupMetadataStore:
    store = BackupMetadataStore(tmp_path / "state" / "backups.db")
    store.initialize()
    return store


def test_get_last_success_map_with_mixed_statuses_returns_latest_success_per_database(tmp_path: Path) -> None:
    store = _store(tmp_path)

    store.record_result(_result(finished_at="2024-03-13T01:00:00+00:00"))
    store.record_result(_result(finished_at="2024-03-14T01:00:00+00:00"))
    store.record_result(_result(finished_at="2024-03-15T01:00:00+00:00", error_message="export stage failed: disk full"))
    store.record_result(_result(db_identifier="inventory", finished_at="2024-03-15T02:00:00+00:00", error_message="boom"))

    last_success = store.get_last_success_map()

    assert last_success == {"orders-db": "2024-03-14T01:00:00+00:00"}


def test_get_last_success_map_with_empty_history_returns_empty_map(tmp_path: Path) -> None:
    assert _store(tmp_path).get_last_success_map() == {}


def test_get_recent_results_returns_most_recent_first_with_split_locations(tmp_path: Path) -> None:
    store = _store(tmp_path)

    store.record_result(_result(finished_at="2024-03-14T01:00:00+00:00", snapshot_id="backup-orders-db-2024-03-14-00-00-00"))
    store.record_result(
        _result(
            finished_at="2024-03-15T01:00:00+00:00",
            snapshot_id="backup-orders-db-2024-03-15-00-00-00",
            target_snapshot_id="copy-backup-orders-db-2024-03-15-00-00-00",
            locations=[
                "s3://source-bucket/export-backup-orders-db-2024-03-15-00-00-00",
                "s3://target-bucket/export-copy-backup-orders-db-2024-03-15-00-00-00",
            ],
        )
    )

    rows = store.get_recent_results(limit=10)

    assert [row["snapshot_id"] for row in rows] == [
        "backup-orders-db-2024-03-15-00-00-00",
        "backup-orders-db-2024-03-14-00-00-00",
    ]
    assert rows[0]["status"] == "success"
    assert rows[0]["locations"] == [
        "s3://source-bucket/export-backup-orders-db-2024-03-15-00-00-00",
        "s3://target-bucket/export-copy-backup-orders-db-2024-03-15-00-00-00",
    ]
    assert rows[1]["locations"] == []
    assert rows[1]["target_snapshot_id"] is None


def test_get_recent_results_with_failed_run_keeps_error_message(tmp_path: Path) -> None:
    store = _store(tmp_path)
    store.record_result(_result(finished_at="2024-03-15T01:00:00+00:00", error_message="kms stage failed: key disabled"))

    rows = store.get_recent_results(limit=5)

    assert rows[0]["status"] == "failed"
    assert rows[0]["error_message"] == "kms stage failed: key disabled"


def test_get_recent_results_with_same_timestamp_orders_by_latest_insert(tmp_path: Path) -> None:
    store = _store(tmp_path)

    timestamp = "2024-03-15T01:00:00+00:00"
    store.record_result(_result(finished_at=timestamp, snapshot_id="first"))
    store.record_result(_result(finished_at=timestamp, snapshot_id="second"))

    rows = store.get_recent_results(limit=2)

    assert [rows[0]["snapshot_id"], rows[1]["snapshot_id"]] == ["second", "first"]


def test_get_recent_results_with_non_positive_limit_returns_empty_list(tmp_path: Path) -> None:
    store = _store(tmp_path)
    store.record_result(_result(finished_at="2024-03-15T01:00:00+00:00"))

    assert store.get_recent_results(limit=0) == []
    assert store.get_recent_results(limit=-1) == []


def test_record_result_without_finished_at_falls_back_to_backup_time(tmp_path: Path) -> None:
    store = _store(tmp_path)
    result = _result(finished_at="")
    result.finished_at = None

    store.record_result(result)

    assert store.get_recent_results(limit=1)[0]["finished_at"] == "2024-03-15T00:00:00+00:00"


def test_count_results_returns_total_history_rows(tmp_path: Path) -> None:
    store = _store(tmp_path)
    store.record_result(_result(finished_at="2024-03-14T01:00:00+00:00"))
    store.record_result(_result(finished_at="2024-03-15T01:00:00+00:00", error_message="boom"))

    assert store.count_results() == 2


def test_prune_history_with_keep_latest_removes_oldest_rows(tmp_path: Path) -> None:
    store = _store(tmp_path)
    for day in (12, 13, 14, 15):
        store.record_result(_result(finished_at=f"2024-03-{day}T01:00:00+00:00", snapshot_id=f"day-{day}"))

    removed = store.prune_history(keep_latest=2)

    assert removed == 2
    assert [row["snapshot_id"] for row in store.get_recent_results(limit=10)] == ["day-15", "day-14"]
    assert store.prune_history(keep_latest=2) == 0


def test_get_retention_candidate_ids_with_negative_keep_latest_raises_value_error(tmp_path: Path) -> None:
    with pytest.raises(ValueError):
        _store(tmp_path).get_retention_candidate_ids(keep_latest=-1)
