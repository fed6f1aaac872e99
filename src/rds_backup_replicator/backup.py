from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import Callable, TypeVar

from botocore.exceptions import BotoCoreError, ClientError

from .aws import AwsClients, ExportClient, KeyResolver, SnapshotStore, is_transient_error
from .config import AppConfig
from .errors import (
    BackupCancelledError,
    BackupError,
    BackupStageError,
    BackupTimeoutError,
    RetryExhaustedError,
    SnapshotNotFoundError,
    error_message,
)
from .models import (
    BackupResult,
    DBInstanceState,
    SnapshotRecord,
    SnapshotState,
    export_task_id,
    s3_location,
    same_day_prefix,
    source_snapshot_id,
    target_snapshot_id,
)
from .polling import Clock, PollState, next_export_poll_step, poll_until
from .retention import RetentionSweeper, delete_snapshot_best_effort

logger = logging.getLogger(__name__)

T = TypeVar("T")

SNAPSHOT_TAG_CREATED_BY = "rds-backup-replicator"


@dataclass(frozen=True)
class RegionEndpoints:
    region: str
    store: SnapshotStore
    exports: ExportClient


class BackupOrchestrator:
    def __init__(
        self,
        *,
        config: AppConfig,
        source: RegionEndpoints,
        target: RegionEndpoints,
        key_resolver: KeyResolver,
        sweeper: RetentionSweeper | None = None,
        clock: Clock | None = None,
    ) -> None:
        self.config = config
        self.source = source
        self.target = target
        self.key_resolver = key_resolver
        self.clock = clock or Clock()
        self.sweeper = sweeper or RetentionSweeper(
            source_store=source.store,
            target_store=target.store,
            retention_days=config.retention_days,
            clock=self.clock,
        )

    @classmethod
    def from_clients(cls, *, config: AppConfig, clients: AwsClients, clock: Clock | None = None) -> BackupOrchestrator:
        return cls(
            config=config,
            source=RegionEndpoints(
                region=config.source_region,
                store=SnapshotStore(clients.source_rds, region=config.source_region),
                exports=ExportClient(clients.source_rds, region=config.source_region),
            ),
            target=RegionEndpoints(
                region=config.target_region,
                store=SnapshotStore(clients.target_rds, region=config.target_region),
                exports=ExportClient(clients.target_rds, region=config.target_region),
            ),
            key_resolver=KeyResolver(clients.client_factory),
            clock=clock,
        )

    def perform(self, result: BackupResult) -> None:
        """Run the whole workflow. Raises ``BackupError`` when the primary backup fails.

        Cleanup and optional source snapshot deletion are best-effort and never raise.
        """

        source_key_arn = self.key_resolver.resolve_and_verify(self.source.region, self.config.kms_key_id)
        target_key_arn = self.key_resolver.resolve_and_verify(self.target.region, self.config.kms_key_id)

        source_id = self.create_and_export_source_snapshot(result, source_key_arn)
        result.snapshot_id = source_id

        result.target_snapshot_id = self.copy_and_export_to_target(result, source_id, target_key_arn)

        result.cleanup = self.sweeper.cleanup_old_snapshots(self.config.db_identifier)
        if not result.cleanup.succeeded:
            logger.warning("Failed to cleanup old snapshots: %s", result.cleanup.summary())

        if not self.config.keep_source_snapshot:
            outcome = delete_snapshot_best_effort(self.source.store, source_id)
            if not outcome.succeeded:
                logger.warning("Failed to delete source snapshot %s: %s", source_id, "; ".join(outcome.failures))

        logger.info("Backup completed successfully for %s", self.config.db_identifier)
        logger.info("Snapshot ID: %s", result.target_snapshot_id)
        logger.info("S3 Location: %s", result.s3_location)

    def create_and_export_source_snapshot(self, result: BackupResult, kms_key_arn: str) -> str:
        db_identifier = self.config.db_identifier
        attempts = self.config.max_attempts
        last_error: BaseException | None = None

        for attempt in range(1, attempts + 1):
            try:
                state = self.source.store.describe_instance_state(db_identifier)
            except (ClientError, BotoCoreError) as error:
                if not is_transient_error(error):
                    raise BackupStageError(stage="instance", reason=error_message(error)) from error
                last_error = error
                logger.warning(
                    "Describing instance %s failed (attempt %s/%s): %s",
                    db_identifier,
                    attempt,
                    attempts,
                    error_message(error),
                )
                self._backoff(attempt)
                continue

            if state is DBInstanceState.BACKING_UP:
                try:
                    existing = self._find_same_day_snapshot()
                except (ClientError, BotoCoreError) as error:
                    if not is_transient_error(error):
                        raise BackupStageError(stage="snapshot", reason=error_message(error)) from error
                    last_error = error
                    logger.warning("Listing snapshots for %s failed: %s", db_identifier, error_message(error))
                    self._backoff(attempt)
                    continue

                if existing is None:
                    logger.info(
                        "Instance %s is backing up with no snapshot from today yet (attempt %s/%s)",
                        db_identifier,
                        attempt,
                        attempts,
                    )
                    self._backoff(attempt)
                    continue

                logger.info("Instance %s is backing up, resuming snapshot %s", db_identifier, existing.identifier)
                return self._finish_source_snapshot(result, existing.identifier, kms_key_arn)

            if state is DBInstanceState.AVAILABLE:
                snapshot_id = source_snapshot_id(db_identifier, self.clock.now())
                logger.info("Creating snapshot: %s", snapshot_id)
                _run_stage(
                    "create",
                    self.source.store.create_snapshot,
                    db_identifier=db_identifier,
                    snapshot_id=snapshot_id,
                    tags={"CreatedBy": SNAPSHOT_TAG_CREATED_BY, "BackupDatabase": db_identifier},
                )
                return self._finish_source_snapshot(result, snapshot_id, kms_key_arn)

            if state is DBInstanceState.FAILED:
                raise BackupStageError(stage="instance", reason=f"DB instance {db_identifier} is in a failed state")

            logger.info(
                "Instance %s is not ready for a snapshot (attempt %s/%s), retrying",
                db_identifier,
                attempt,
                attempts,
            )
            self._backoff(attempt)

        if last_error is not None:
            raise RetryExhaustedError(stage="snapshot", attempts=attempts, last_error=last_error) from last_error
        raise BackupTimeoutError(
            stage="snapshot",
            reason=f"instance {db_identifier} did not become ready for a snapshot after {attempts} attempts",
        )

    def copy_and_export_to_target(self, result: BackupResult, source_snapshot_id: str, target_kms_key_arn: str) -> str:
        copy_id = self._copy_snapshot_to_target(source_snapshot_id, target_kms_key_arn)

        export_task = self.export_snapshot_to_storage(
            self.target,
            copy_id,
            bucket=self.config.target_bucket,
            kms_key_arn=target_kms_key_arn,
            iam_role_arn=self.config.export_role_arn,
        )
        result.add_location(s3_location(self.config.target_bucket, export_task))
        return copy_id

    def export_snapshot_to_storage(
        self,
        endpoints: RegionEndpoints,
        snapshot_id: str,
        *,
        bucket: str,
        kms_key_arn: str,
        iam_role_arn: str,
    ) -> str:
        snapshot = _run_stage("export", endpoints.store.get_snapshot, snapshot_id)
        if snapshot is None or not snapshot.arn:
            raise SnapshotNotFoundError(stage="export", reason=f"snapshot {snapshot_id} not found in {endpoints.region}")

        task_id = export_task_id(snapshot_id)
        logger.info("Starting export task %s for snapshot %s", task_id, snapshot_id)
        started = _run_stage(
            "export",
            endpoints.exports.start_export_task,
            export_task_id=task_id,
            source_arn=snapshot.arn,
            bucket=bucket,
            kms_key_id=kms_key_arn,
            iam_role_arn=iam_role_arn,
        )
        if not started:
            existing = _run_stage("export", endpoints.exports.describe_export_task, task_id)
            if existing is not None and existing.source_arn != snapshot.arn:
                raise BackupStageError(
                    stage="export",
                    reason=f"export task {task_id} already exists for {existing.source_arn}, not {snapshot.arn}",
                )
            logger.info("Export task %s already exists, resuming", task_id)

        def _step(state: PollState, task, _elapsed: float):
            return next_export_poll_step(
                state,
                task,
                export_task_id=task_id,
                max_attempts=self.config.export_poll_max_attempts,
            )

        poll_until(
            lambda: _run_stage("export", endpoints.exports.describe_export_task, task_id),
            _step,
            clock=self.clock,
            interval_seconds=self.config.export_poll_interval_seconds,
            on_continue=lambda state: logger.info("Export task status: %s", state.last_status),
        )
        logger.info("Export task %s complete", task_id)
        return task_id

    def _finish_source_snapshot(self, result: BackupResult, snapshot_id: str, kms_key_arn: str) -> str:
        self._wait_for_snapshot(self.source, snapshot_id)

        if self.config.store_to_source_s3:
            logger.info("Exporting snapshot %s to S3", snapshot_id)
            export_task = self.export_snapshot_to_storage(
                self.source,
                snapshot_id,
                bucket=self.config.source_bucket,
                kms_key_arn=kms_key_arn,
                iam_role_arn=self.config.export_role_arn,
            )
            result.add_location(s3_location(self.config.source_bucket, export_task))
        return snapshot_id

    def _find_same_day_snapshot(self) -> SnapshotRecord | None:
        prefix = same_day_prefix(self.config.db_identifier, self.clock.now())
        candidates = [
            snapshot
            for snapshot in self.source.store.list_manual_snapshots(self.config.db_identifier)
            if snapshot.identifier.startswith(prefix)
        ]
        if not candidates:
            return None
        # Identifiers embed the creation timestamp, so the lexicographic max is the newest.
        return max(candidates, key=lambda snapshot: snapshot.identifier)

    def _copy_snapshot_to_target(self, source_id: str, target_kms_key_arn: str) -> str:
        copy_id = target_snapshot_id(source_id)

        existing = _run_stage("copy", self.target.store.get_snapshot, copy_id)
        if existing is not None:
            if existing.state is SnapshotState.AVAILABLE:
                logger.info("Snapshot %s already exists in %s, reusing it", copy_id, self.target.region)
                return copy_id

            if existing.is_deleting:
                logger.info("Snapshot %s is being deleted in %s, waiting before copying", copy_id, self.target.region)
                self._wait_for_deletion(self.target, copy_id)
            else:
                logger.info(
                    "Snapshot %s exists in %s with status %s, waiting",
                    copy_id,
                    self.target.region,
                    existing.status,
                )
                try:
                    self._wait_for_snapshot(self.target, copy_id)
                    return copy_id
                except BackupCancelledError:
                    raise
                except BackupError as error:
                    logger.warning("Existing copy %s is unusable (%s), deleting and copying again", copy_id, error)
                    current = _run_stage("delete", self.target.store.get_snapshot, copy_id)
                    if current is not None and not current.is_deleting:
                        _run_stage("delete", self.target.store.delete_snapshot, copy_id)
                    self._wait_for_deletion(self.target, copy_id)

        source_snapshot = _run_stage("copy", self.source.store.get_snapshot, source_id)
        if source_snapshot is None or not source_snapshot.arn:
            raise SnapshotNotFoundError(stage="copy", reason=f"no snapshot found with ID: {source_id}")

        logger.info("Copying snapshot to target region %s: %s", self.target.region, copy_id)
        _run_stage(
            "copy",
            self.target.store.copy_snapshot,
            source_snapshot_arn=source_snapshot.arn,
            target_snapshot_id=copy_id,
            kms_key_id=target_kms_key_arn,
            source_region=self.source.region,
        )
        self._wait_for_snapshot(self.target, copy_id)
        return copy_id

    def _wait_for_snapshot(self, endpoints: RegionEndpoints, snapshot_id: str) -> SnapshotRecord:
        return _run_stage(
            "wait",
            endpoints.store.wait_until_available,
            snapshot_id,
            clock=self.clock,
            timeout_seconds=self.config.snapshot_wait_timeout_seconds,
            poll_interval_seconds=self.config.snapshot_poll_interval_seconds,
        )

    def _wait_for_deletion(self, endpoints: RegionEndpoints, snapshot_id: str) -> None:
        _run_stage(
            "delete",
            endpoints.store.wait_until_deleted,
            snapshot_id,
            clock=self.clock,
            timeout_seconds=self.config.snapshot_wait_timeout_seconds,
            poll_interval_seconds=self.config.snapshot_poll_interval_seconds,
        )

    def _backoff(self, attempt: int) -> None:
        if attempt < self.config.max_attempts:
            self.clock.sleep(self.config.retry_backoff_seconds)


def _run_stage(stage: str, func: Callable[..., T], *args, **kwargs) -> T:
    try:
        return func(*args, **kwargs)
    except BackupError:
        raise
    except (ClientError, BotoCoreError) as error:
        raise BackupStageError(stage=stage, reason=error_message(error)) from error
