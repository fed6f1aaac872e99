from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
import hashlib

SOURCE_SNAPSHOT_PREFIX = "backup"
TARGET_SNAPSHOT_PREFIX = "copy"
EXPORT_TASK_PREFIX = "export"
SNAPSHOT_TIMESTAMP_FORMAT = "%Y-%m-%d-%H-%M-%S"
SNAPSHOT_DAY_FORMAT = "%Y-%m-%d"
MAX_EXPORT_TASK_IDENTIFIER_LENGTH = 60
EXPORT_TASK_DIGEST_LENGTH = 10


class DBInstanceState(str, Enum):
    AVAILABLE = "available"
    BACKING_UP = "backing-up"
    TRANSIENT = "transient"
    FAILED = "failed"

    @classmethod
    def from_status(cls, status: str | None) -> DBInstanceState:
        normalized = (status or "").strip().lower()
        if normalized == "available":
            return cls.AVAILABLE
        if normalized == "backing-up":
            return cls.BACKING_UP
        if normalized in _TERMINAL_INSTANCE_STATUSES:
            return cls.FAILED
        return cls.TRANSIENT


_TERMINAL_INSTANCE_STATUSES = frozenset(
    {
        "failed",
        "deleting",
        "inaccessible-encryption-credentials",
        "inaccessible-encryption-credentials-recoverable",
        "incompatible-network",
        "incompatible-option-group",
        "incompatible-parameters",
        "incompatible-restore",
        "insufficient-capacity",
        "restore-error",
        "storage-full",
    }
)


class SnapshotState(str, Enum):
    CREATING = "creating"
    AVAILABLE = "available"
    FAILED = "failed"

    @classmethod
    def from_status(cls, status: str | None) -> SnapshotState:
        normalized = (status or "").strip().lower()
        if normalized == "available":
            return cls.AVAILABLE
        if normalized in {"failed", "error", "deleted", "deleting"} or normalized.startswith("incompatible"):
            return cls.FAILED
        return cls.CREATING


class ExportState(str, Enum):
    IN_PROGRESS = "in-progress"
    COMPLETE = "complete"
    FAILED = "failed"

    @classmethod
    def from_status(cls, status: str | None) -> ExportState:
        normalized = (status or "").strip().upper()
        if normalized == "COMPLETE":
            return cls.COMPLETE
        if normalized in {"FAILED", "CANCELED", "CANCELLED"}:
            return cls.FAILED
        return cls.IN_PROGRESS


@dataclass(frozen=True)
class SnapshotRecord:
    identifier: str
    arn: str | None
    status: str
    created_at: datetime | None
    snapshot_type: str | None = None
    db_identifier: str | None = None

    @property
    def state(self) -> SnapshotState:
        return SnapshotState.from_status(self.status)

    @property
    def is_deleting(self) -> bool:
        return self.status.strip().lower() == "deleting"


@dataclass(frozen=True)
class ExportTaskRecord:
    identifier: str
    status: str
    failure_cause: str | None = None
    source_arn: str | None = None
    s3_bucket: str | None = None
    percent_progress: int | None = None

    @property
    def state(self) -> ExportState:
        return ExportState.from_status(self.status)


@dataclass
class CleanupOutcome:
    """Logged outcome of a best-effort operation. Never raised to the caller."""

    deleted: list[str] = field(default_factory=list)
    failures: list[str] = field(default_factory=list)
    list_error: str | None = None
    skipped_sides: list[str] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return not self.failures and self.list_error is None

    def summary(self) -> str:
        parts = [f"deleted={len(self.deleted)}", f"failures={len(self.failures)}"]
        if self.list_error:
            parts.append(f"list_error={self.list_error}")
        if self.skipped_sides:
            parts.append(f"skipped={','.join(self.skipped_sides)}")
        return " ".join(parts)


@dataclass
class BackupResult:
    db_identifier: str
    backup_time: str
    snapshot_id: str = ""
    target_snapshot_id: str = ""
    locations: list[str] = field(default_factory=list)
    error_message: str = ""
    finished_at: str | None = None
    cleanup: CleanupOutcome | None = None

    def add_location(self, location: str) -> None:
        self.locations.append(location)

    @property
    def s3_location(self) -> str:
        return "\n".join(self.locations)

    @property
    def status(self) -> str:
        return "failed" if self.error_message else "success"


def source_snapshot_id(db_identifier: str, moment: datetime) -> str:
    return f"{source_snapshot_prefix(db_identifier)}-{moment.strftime(SNAPSHOT_TIMESTAMP_FORMAT)}"


def source_snapshot_prefix(db_identifier: str) -> str:
    return f"{SOURCE_SNAPSHOT_PREFIX}-{db_identifier}"


def same_day_prefix(db_identifier: str, moment: datetime) -> str:
    return f"{source_snapshot_prefix(db_identifier)}-{moment.strftime(SNAPSHOT_DAY_FORMAT)}"


def target_snapshot_id(source_id: str) -> str:
    return f"{TARGET_SNAPSHOT_PREFIX}-{source_id}"


def target_snapshot_prefix(db_identifier: str) -> str:
    return target_snapshot_id(source_snapshot_prefix(db_identifier))


def export_task_id(snapshot_id: str) -> str:
    identifier = f"{EXPORT_TASK_PREFIX}-{snapshot_id}"
    if len(identifier) <= MAX_EXPORT_TASK_IDENTIFIER_LENGTH:
        return identifier

    # Truncated ids carry a digest of the full snapshot id so distinct snapshots never share a task.
    digest = hashlib.sha256(snapshot_id.encode("utf-8")).hexdigest()[:EXPORT_TASK_DIGEST_LENGTH]
    head = identifier[: MAX_EXPORT_TASK_IDENTIFIER_LENGTH - EXPORT_TASK_DIGEST_LENGTH - 1].rstrip("-")
    return f"{head}-{digest}"


def s3_location(bucket: str, export_task: str) -> str:
    return f"s3://{bucket}/{export_task}"
