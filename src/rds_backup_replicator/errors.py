from __future__ import annotations


class BackupError(RuntimeError):
    def __init__(self, *, stage: str, reason: str) -> None:
        normalized_reason = reason.strip() or "unknown error"
        super().__init__(f"{stage} stage failed: {normalized_reason}")
        self.stage = stage
        self.reason = normalized_reason


class BackupStageError(BackupError):
    """A remote call inside a workflow stage failed."""


class SnapshotNotFoundError(BackupError):
    """The instance, snapshot or export task does not exist. Not retryable."""


class BackupTimeoutError(BackupError):
    """A bounded wait or retry budget ran out without a recorded error."""


class RetryExhaustedError(BackupError):
    def __init__(self, *, stage: str, attempts: int, last_error: BaseException) -> None:
        super().__init__(
            stage=stage,
            reason=f"gave up after {attempts} attempts, last error: {error_message(last_error)}",
        )
        self.attempts = attempts
        self.last_error = last_error


class ExportTaskFailedError(BackupError):
    def __init__(self, *, export_task_id: str, failure_cause: str) -> None:
        super().__init__(stage="export", reason=f"export task {export_task_id} failed: {failure_cause}")
        self.export_task_id = export_task_id
        self.failure_cause = failure_cause


class BackupCancelledError(BackupError):
    def __init__(self, reason: str = "shutdown requested") -> None:
        super().__init__(stage="cancel", reason=reason)


class KeyResolutionError(BackupError):
    def __init__(self, reason: str) -> None:
        super().__init__(stage="kms", reason=reason)


def error_message(error: BaseException) -> str:
    message = str(error).strip()
    return message or error.__class__.__name__
