from __future__ import annotations

from pathlib import Path
import sqlite3
from typing import Any

from .models import BackupResult


class BackupMetadataStore:
    def __init__(self, db_path: Path) -> None:
        self.db_path = db_path
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

    def initialize(self) -> None:
        with sqlite3.connect(self.db_path) as connection:
            connection.execute(
                """
                CREATE TABLE IF NOT EXISTS backup_runs (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    db_identifier TEXT NOT NULL,
                    snapshot_id TEXT,
                    target_snapshot_id TEXT,
                    status TEXT NOT NULL,
                    locations TEXT,
                    error_message TEXT,
                    backup_time TEXT NOT NULL,
                    finished_at TEXT NOT NULL
                )
                """
            )
            connection.execute(
                """
                CREATE INDEX IF NOT EXISTS idx_backup_runs_lookup
                ON backup_runs(db_identifier, status, finished_at)
                """
            )
            connection.commit()

    def record_result(self, result: BackupResult) -> None:
        with sqlite3.connect(self.db_path) as connection:
            connection.execute(
                """
                INSERT INTO backup_runs (
                    db_identifier,
                    snapshot_id,
                    target_snapshot_id,
                    status,
                    locations,
                    error_message,
                    backup_time,
                    finished_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    result.db_identifier,
                    result.snapshot_id or None,
                    result.target_snapshot_id or None,
                    result.status,
                    result.s3_location,
                    result.error_message,
                    result.backup_time,
                    result.finished_at or result.backup_time,
                ),
            )
            connection.commit()

    def get_last_success_map(self) -> dict[str, str]:
        with sqlite3.connect(self.db_path) as connection:
            cursor = connection.execute(
                """
                SELECT db_identifier, MAX(finished_at)
                FROM backup_runs
                WHERE status = 'success'
                GROUP BY db_identifier
                """
            )
            rows = cursor.fetchall()

        return {db_identifier: last_success for db_identifier, last_success in rows}

    def get_recent_results(self, limit: int = 50) -> list[dict[str, Any]]:
        if limit <= 0:
            return []

        with sqlite3.connect(self.db_path) as connection:
            cursor = connection.execute(
                """
                SELECT db_identifier, snapshot_id, target_snapshot_id, status, locations,
                       error_message, backup_time, finished_at
                FROM backup_runs
                ORDER BY finished_at DESC, id DESC
                LIMIT ?
                """,
                (limit,),
            )
            rows = cursor.fetchall()

        return [
            {
                "db_identifier": row[0],
                "snapshot_id": row[1],
                "target_snapshot_id": row[2],
                "status": row[3],
                "locations": [location for location in (row[4] or "").splitlines() if location],
                "error_message": row[5],
                "backup_time": row[6],
                "finished_at": row[7],
            }
            for row in rows
        ]

    def count_results(self) -> int:
        with sqlite3.connect(self.db_path) as connection:
            cursor = connection.execute("SELECT COUNT(*) FROM backup_runs")
            row = cursor.fetchone()

        return int(row[0]) if row else 0

    def get_retention_candidate_ids(self, keep_latest: int) -> list[int]:
        if keep_latest < 0:
            raise ValueError("keep_latest must be >= 0")

        with sqlite3.connect(self.db_path) as connection:
            cursor = connection.execute(
                """
                SELECT id
                FROM backup_runs
                ORDER BY finished_at DESC, id DESC
                LIMIT -1 OFFSET ?
                """,
                (keep_latest,),
            )
            rows = cursor.fetchall()

        return [int(row[0]) for row in rows]

    def prune_history(self, keep_latest: int) -> int:
        candidate_ids = self.get_retention_candidate_ids(keep_latest)
        if not candidate_ids:
            return 0

        with sqlite3.connect(self.db_path) as connection:
            connection.executemany("DELETE FROM backup_runs WHERE id = ?", [(row_id,) for row_id in candidate_ids])
            connection.commit()
        return len(candidate_ids)
