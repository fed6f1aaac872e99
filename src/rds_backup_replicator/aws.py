from __future__ import annotations

from collections.abc import Iterator
from dataclasses import dataclass
from datetime import datetime
import logging
from typing import Any, Callable

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError

from .errors import KeyResolutionError, SnapshotNotFoundError, error_message
from .models import DBInstanceState, ExportTaskRecord, SnapshotRecord
from .polling import Clock, PollState, next_snapshot_delete_step, next_snapshot_wait_step, poll_until

logger = logging.getLogger(__name__)

DB_INSTANCE_NOT_FOUND_CODES = frozenset({"DBInstanceNotFound", "DBInstanceNotFoundFault"})
DB_SNAPSHOT_NOT_FOUND_CODES = frozenset({"DBSnapshotNotFound", "DBSnapshotNotFoundFault"})
EXPORT_TASK_NOT_FOUND_CODES = frozenset({"ExportTaskNotFound", "ExportTaskNotFoundFault"})
EXPORT_TASK_EXISTS_CODES = frozenset({"ExportTaskAlreadyExists", "ExportTaskAlreadyExistsFault"})
KMS_ARN_PREFIX = "arn:"
ALIAS_PREFIX = "alias/"

_BOTO_CONFIG = BotoConfig(retries={"max_attempts": 5, "mode": "standard"})

ClientFactory = Callable[[str, str], Any]


@dataclass(frozen=True)
class AwsClients:
    source_rds: Any
    target_rds: Any
    client_factory: ClientFactory


def load_aws_clients(*, source_region: str, target_region: str, session: boto3.Session | None = None) -> AwsClients:
    active_session = session or boto3.Session()

    def _client(service: str, region: str) -> Any:
        return active_session.client(service, region_name=region, config=_BOTO_CONFIG)

    return AwsClients(
        source_rds=_client("rds", source_region),
        target_rds=_client("rds", target_region),
        client_factory=_client,
    )


def error_code(error: BaseException) -> str | None:
    if isinstance(error, ClientError):
        return error.response.get("Error", {}).get("Code")
    return None


def is_transient_error(error: BaseException) -> bool:
    if isinstance(error, BotoCoreError):
        return True
    if isinstance(error, ClientError):
        code = error_code(error) or ""
        return code not in DB_INSTANCE_NOT_FOUND_CODES | DB_SNAPSHOT_NOT_FOUND_CODES
    return False


class SnapshotStore:
    """Snapshot operations against the RDS API of a single region."""

    def __init__(self, rds_client: Any, *, region: str) -> None:
        self.rds_client = rds_client
        self.region = region

    def describe_instance_state(self, db_identifier: str) -> DBInstanceState:
        try:
            response = self.rds_client.describe_db_instances(DBInstanceIdentifier=db_identifier)
        except ClientError as error:
            if error_code(error) in DB_INSTANCE_NOT_FOUND_CODES:
                raise SnapshotNotFoundError(
                    stage="instance",
                    reason=f"DB instance {db_identifier} not found in {self.region}",
                ) from error
            raise

        instances = response.get("DBInstances") or []
        if not instances:
            raise SnapshotNotFoundError(
                stage="instance",
                reason=f"DB instance {db_identifier} not found in {self.region}",
            )
        return DBInstanceState.from_status(instances[0].get("DBInstanceStatus"))

    def get_snapshot(self, snapshot_id: str) -> SnapshotRecord | None:
        try:
            response = self.rds_client.describe_db_snapshots(DBSnapshotIdentifier=snapshot_id)
        except ClientError as error:
            if error_code(error) in DB_SNAPSHOT_NOT_FOUND_CODES:
                return None
            raise

        snapshots = response.get("DBSnapshots") or []
        if not snapshots:
            return None
        return _snapshot_record(snapshots[0])

    def iter_manual_snapshot_pages(self, db_identifier: str | None = None) -> Iterator[list[SnapshotRecord]]:
        request: dict[str, str] = {"SnapshotType": "manual"}
        if db_identifier:
            request["DBInstanceIdentifier"] = db_identifier

        paginator = self.rds_client.get_paginator("describe_db_snapshots")
        for page in paginator.paginate(**request):
            yield [_snapshot_record(raw) for raw in page.get("DBSnapshots") or []]

    def list_manual_snapshots(self, db_identifier: str | None = None) -> list[SnapshotRecord]:
        records: list[SnapshotRecord] = []
        for page in self.iter_manual_snapshot_pages(db_identifier):
            records.extend(page)
        return records

    def create_snapshot(self, *, db_identifier: str, snapshot_id: str, tags: dict[str, str] | None = None) -> None:
        request: dict[str, Any] = {
            "DBInstanceIdentifier": db_identifier,
            "DBSnapshotIdentifier": snapshot_id,
        }
        if tags:
            request["Tags"] = _tag_list(tags)
        self.rds_client.create_db_snapshot(**request)

    def copy_snapshot(
        self,
        *,
        source_snapshot_arn: str,
        target_snapshot_id: str,
        kms_key_id: str,
        source_region: str,
        copy_tags: bool = True,
    ) -> None:
        self.rds_client.copy_db_snapshot(
            SourceDBSnapshotIdentifier=source_snapshot_arn,
            TargetDBSnapshotIdentifier=target_snapshot_id,
            KmsKeyId=kms_key_id,
            CopyTags=copy_tags,
            SourceRegion=source_region,
        )

    def delete_snapshot(self, snapshot_id: str) -> None:
        self.rds_client.delete_db_snapshot(DBSnapshotIdentifier=snapshot_id)

    def wait_until_available(
        self,
        snapshot_id: str,
        *,
        clock: Clock,
        timeout_seconds: float,
        poll_interval_seconds: float,
    ) -> SnapshotRecord:
        def _step(state: PollState, snapshot: SnapshotRecord | None, elapsed: float):
            return next_snapshot_wait_step(
                state,
                snapshot,
                snapshot_id=snapshot_id,
                elapsed_seconds=elapsed,
                timeout_seconds=timeout_seconds,
            )

        def _log_progress(state: PollState) -> None:
            logger.debug(
                "Waiting for snapshot %s in %s (status=%s, poll=%s)",
                snapshot_id,
                self.region,
                state.last_status,
                state.attempt,
            )

        return poll_until(
            lambda: self.get_snapshot(snapshot_id),
            _step,
            clock=clock,
            interval_seconds=poll_interval_seconds,
            on_continue=_log_progress,
        )

    def wait_until_deleted(
        self,
        snapshot_id: str,
        *,
        clock: Clock,
        timeout_seconds: float,
        poll_interval_seconds: float,
    ) -> None:
        def _step(state: PollState, snapshot: SnapshotRecord | None, elapsed: float):
            return next_snapshot_delete_step(
                state,
                snapshot,
                snapshot_id=snapshot_id,
                elapsed_seconds=elapsed,
                timeout_seconds=timeout_seconds,
            )

        poll_until(
            lambda: self.get_snapshot(snapshot_id),
            _step,
            clock=clock,
            interval_seconds=poll_interval_seconds,
        )


class ExportClient:
    """Snapshot-to-S3 export tasks against the RDS API of a single region."""

    def __init__(self, rds_client: Any, *, region: str) -> None:
        self.rds_client = rds_client
        self.region = region

    def start_export_task(
        self,
        *,
        export_task_id: str,
        source_arn: str,
        bucket: str,
        kms_key_id: str,
        iam_role_arn: str,
    ) -> bool:
        """Start the export; returns False when a task with this identifier already exists."""

        try:
            self.rds_client.start_export_task(
                ExportTaskIdentifier=export_task_id,
                SourceArn=source_arn,
                S3BucketName=bucket,
                IamRoleArn=iam_role_arn,
                KmsKeyId=kms_key_id,
            )
        except ClientError as error:
            if error_code(error) in EXPORT_TASK_EXISTS_CODES:
                return False
            raise
        return True

    def describe_export_task(self, export_task_id: str) -> ExportTaskRecord | None:
        try:
            response = self.rds_client.describe_export_tasks(ExportTaskIdentifier=export_task_id)
        except ClientError as error:
            if error_code(error) in EXPORT_TASK_NOT_FOUND_CODES:
                return None
            raise

        tasks = response.get("ExportTasks") or []
        if not tasks:
            return None
        raw = tasks[0]
        return ExportTaskRecord(
            identifier=raw.get("ExportTaskIdentifier", export_task_id),
            status=raw.get("Status", ""),
            failure_cause=raw.get("FailureCause") or None,
            source_arn=raw.get("SourceArn"),
            s3_bucket=raw.get("S3Bucket"),
            percent_progress=raw.get("PercentProgress"),
        )


class KeyResolver:
    def __init__(self, client_factory: ClientFactory) -> None:
        self.client_factory = client_factory
        self._identity: tuple[str, str] | None = None

    def resolve_key_arn(self, region: str, key_id: str) -> str:
        normalized = key_id.strip()
        if not normalized:
            raise KeyResolutionError("KMS key id is empty")
        if normalized.startswith(KMS_ARN_PREFIX):
            return normalized

        partition, account = self._caller_identity(region)
        if normalized.startswith(ALIAS_PREFIX):
            return f"arn:{partition}:kms:{region}:{account}:{normalized}"
        # Multi-region short ids and bare key ids both resolve against the caller account.
        return f"arn:{partition}:kms:{region}:{account}:key/{normalized}"

    def verify_key_usable(self, region: str, key_arn: str) -> None:
        kms_client = self.client_factory("kms", region)
        try:
            response = kms_client.describe_key(KeyId=key_arn)
        except (ClientError, BotoCoreError) as error:
            raise KeyResolutionError(f"failed to describe KMS key {key_arn}: {error_message(error)}") from error

        metadata = response.get("KeyMetadata") or {}
        if not metadata.get("Enabled", False):
            raise KeyResolutionError(f"KMS key {key_arn} is disabled")

    def resolve_and_verify(self, region: str, key_id: str) -> str:
        key_arn = self.resolve_key_arn(region, key_id)
        self.verify_key_usable(region, key_arn)
        return key_arn

    def _caller_identity(self, region: str) -> tuple[str, str]:
        if self._identity is None:
            sts_client = self.client_factory("sts", region)
            try:
                identity = sts_client.get_caller_identity()
            except (ClientError, BotoCoreError) as error:
                raise KeyResolutionError(f"unable to get caller identity: {error_message(error)}") from error
            caller_arn = str(identity.get("Arn", ""))
            partition = caller_arn.split(":")[1] if caller_arn.count(":") >= 2 else "aws"
            self._identity = (partition or "aws", str(identity["Account"]))
        return self._identity


def _snapshot_record(raw: dict[str, Any]) -> SnapshotRecord:
    created_at = raw.get("SnapshotCreateTime")
    return SnapshotRecord(
        identifier=raw.get("DBSnapshotIdentifier", ""),
        arn=raw.get("DBSnapshotArn"),
        status=raw.get("Status", ""),
        created_at=created_at if isinstance(created_at, datetime) else None,
        snapshot_type=raw.get("SnapshotType"),
        db_identifier=raw.get("DBInstanceIdentifier"),
    )


def _tag_list(tags: dict[str, str]) -> list[dict[str, str]]:
    return [{"Key": key, "Value": value} for key, value in sorted(tags.items())]
