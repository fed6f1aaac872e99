"""Age-based pruning of replicated snapshots.

Deletion is best-effort: every outcome is reported through a
:class:`~rds_backup_replicator.models.CleanupOutcome` and nothing here raises
into the backup workflow.
"""

from __future__ import annotations

from datetime import datetime, timedelta
import logging

from botocore.exceptions import BotoCoreError, ClientError

from .aws import SnapshotStore
from .errors import error_message
from .models import CleanupOutcome, SnapshotRecord, source_snapshot_prefix, target_snapshot_prefix
from .polling import Clock

logger = logging.getLogger(__name__)

DEFAULT_RETENTION_DAYS = 15


class RetentionSweeper:
    def __init__(
        self,
        *,
        source_store: SnapshotStore,
        target_store: SnapshotStore,
        retention_days: int = DEFAULT_RETENTION_DAYS,
        clock: Clock | None = None,
    ) -> None:
        if retention_days <= 0:
            raise ValueError("retention_days must be positive")
        self.source_store = source_store
        self.target_store = target_store
        self.retention_days = retention_days
        self.clock = clock or Clock()

    def cleanup_old_snapshots(self, db_identifier: str) -> CleanupOutcome:
        cutoff = self.clock.now() - timedelta(days=self.retention_days)
        outcome = CleanupOutcome()
        sides = (
            ("source", self.source_store, source_snapshot_prefix(db_identifier)),
            ("target", self.target_store, target_snapshot_prefix(db_identifier)),
        )

        for index, (side, store, prefix) in enumerate(sides):
            try:
                self._sweep(store=store, prefix=prefix, cutoff=cutoff, outcome=outcome)
            except (ClientError, BotoCoreError) as error:
                outcome.list_error = f"failed to list {side} region snapshots: {error_message(error)}"
                outcome.skipped_sides.extend(name for name, _, _ in sides[index + 1 :])
                logger.error("Failed to cleanup %s region snapshots: %s", side, error_message(error))
                break

        logger.info("Snapshot cleanup finished: %s", outcome.summary())
        return outcome

    def _sweep(self, *, store: SnapshotStore, prefix: str, cutoff: datetime, outcome: CleanupOutcome) -> None:
        for page in store.iter_manual_snapshot_pages():
            for snapshot in page:
                if not is_expired(snapshot, prefix=prefix, cutoff=cutoff):
                    continue

                logger.info(
                    "Deleting old snapshot: %s (created: %s)",
                    snapshot.identifier,
                    snapshot.created_at.isoformat() if snapshot.created_at else "unknown",
                )
                try:
                    store.delete_snapshot(snapshot.identifier)
                except (ClientError, BotoCoreError) as error:
                    logger.warning("Failed to delete snapshot %s: %s", snapshot.identifier, error_message(error))
                    outcome.failures.append(f"{snapshot.identifier}: {error_message(error)}")
                    continue
                outcome.deleted.append(snapshot.identifier)


def is_expired(snapshot: SnapshotRecord, *, prefix: str, cutoff: datetime) -> bool:
    # "backup-orders" must not match "backup-orders2-...".
    if not snapshot.identifier.startswith(f"{prefix}-"):
        return False
    if snapshot.created_at is None:
        return False
    return snapshot.created_at < cutoff


def delete_snapshot_best_effort(store: SnapshotStore, snapshot_id: str) -> CleanupOutcome:
    outcome = CleanupOutcome()
    try:
        store.delete_snapshot(snapshot_id)
    except (ClientError, BotoCoreError) as error:
        outcome.failures.append(f"{snapshot_id}: {error_message(error)}")
        return outcome

    logger.info("Deleted source snapshot %s", snapshot_id)
    outcome.deleted.append(snapshot_id)
    return outcome
