"""Wait and poll loops expressed as explicit state transitions.

Each remote wait is split into a pure step function, which maps the current
poll state plus the latest observation to ``continue``, ``done`` or a failure,
and :func:`poll_until`, which drives the step function with an injected
:class:`Clock`. Tests substitute a fake clock so no real time passes.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import UTC, datetime
from enum import Enum
import threading
import time
from typing import Callable, TypeVar

from .errors import (
    BackupCancelledError,
    BackupError,
    BackupStageError,
    BackupTimeoutError,
    ExportTaskFailedError,
    SnapshotNotFoundError,
)
from .models import ExportState, ExportTaskRecord, SnapshotRecord, SnapshotState

T = TypeVar("T")

UNKNOWN_EXPORT_FAILURE = "Unknown failure"


class Clock:
    """Wall clock with a cancellable sleep."""

    def __init__(self, cancel_event: threading.Event | None = None) -> None:
        self.cancel_event = cancel_event or threading.Event()

    def now(self) -> datetime:
        return datetime.now(tz=UTC)

    def monotonic(self) -> float:
        return time.monotonic()

    def sleep(self, seconds: float) -> None:
        self.check_cancelled()
        if self.cancel_event.wait(timeout=max(0.0, seconds)):
            raise BackupCancelledError()

    def check_cancelled(self) -> None:
        if self.cancel_event.is_set():
            raise BackupCancelledError()


class PollOutcome(str, Enum):
    CONTINUE = "continue"
    DONE = "done"
    FAILED = "failed"


@dataclass(frozen=True)
class PollState:
    started_at: float
    attempt: int = 0
    last_status: str | None = None


@dataclass(frozen=True)
class PollStep:
    outcome: PollOutcome
    state: PollState
    error: BackupError | None = None


def next_snapshot_wait_step(
    state: PollState,
    snapshot: SnapshotRecord | None,
    *,
    snapshot_id: str,
    elapsed_seconds: float,
    timeout_seconds: float,
) -> PollStep:
    attempt = replace(state, attempt=state.attempt + 1)
    if snapshot is None:
        return PollStep(
            outcome=PollOutcome.FAILED,
            state=attempt,
            error=SnapshotNotFoundError(stage="wait", reason=f"snapshot {snapshot_id} not found"),
        )

    advanced = replace(attempt, last_status=snapshot.status)
    if snapshot.state is SnapshotState.AVAILABLE:
        return PollStep(outcome=PollOutcome.DONE, state=advanced)
    if snapshot.state is SnapshotState.FAILED:
        return PollStep(
            outcome=PollOutcome.FAILED,
            state=advanced,
            error=BackupStageError(stage="wait", reason=f"snapshot {snapshot_id} entered status {snapshot.status}"),
        )
    if elapsed_seconds >= timeout_seconds:
        return PollStep(
            outcome=PollOutcome.FAILED,
            state=advanced,
            error=BackupTimeoutError(
                stage="wait",
                reason=(
                    f"snapshot {snapshot_id} not available after {int(timeout_seconds)}s "
                    f"(last observed status={snapshot.status})"
                ),
            ),
        )
    return PollStep(outcome=PollOutcome.CONTINUE, state=advanced)


def next_snapshot_delete_step(
    state: PollState,
    snapshot: SnapshotRecord | None,
    *,
    snapshot_id: str,
    elapsed_seconds: float,
    timeout_seconds: float,
) -> PollStep:
    attempt = replace(state, attempt=state.attempt + 1)
    if snapshot is None:
        return PollStep(outcome=PollOutcome.DONE, state=attempt)

    advanced = replace(attempt, last_status=snapshot.status)
    if elapsed_seconds >= timeout_seconds:
        return PollStep(
            outcome=PollOutcome.FAILED,
            state=advanced,
            error=BackupTimeoutError(
                stage="delete",
                reason=f"snapshot {snapshot_id} still present after {int(timeout_seconds)}s (status={snapshot.status})",
            ),
        )
    return PollStep(outcome=PollOutcome.CONTINUE, state=advanced)


def next_export_poll_step(
    state: PollState,
    task: ExportTaskRecord | None,
    *,
    export_task_id: str,
    max_attempts: int | None = None,
) -> PollStep:
    attempt = replace(state, attempt=state.attempt + 1)
    if task is None:
        return PollStep(
            outcome=PollOutcome.FAILED,
            state=attempt,
            error=SnapshotNotFoundError(
                stage="export",
                reason=f"no export task found with identifier {export_task_id}",
            ),
        )

    advanced = replace(attempt, last_status=task.status)
    if task.state is ExportState.COMPLETE:
        return PollStep(outcome=PollOutcome.DONE, state=advanced)
    if task.state is ExportState.FAILED:
        return PollStep(
            outcome=PollOutcome.FAILED,
            state=advanced,
            error=ExportTaskFailedError(
                export_task_id=export_task_id,
                failure_cause=task.failure_cause or UNKNOWN_EXPORT_FAILURE,
            ),
        )
    if max_attempts is not None and advanced.attempt >= max_attempts:
        return PollStep(
            outcome=PollOutcome.FAILED,
            state=advanced,
            error=BackupTimeoutError(
                stage="export",
                reason=(
                    f"export task {export_task_id} still {task.status} after {advanced.attempt} polls"
                ),
            ),
        )
    return PollStep(outcome=PollOutcome.CONTINUE, state=advanced)


def poll_until(
    observe: Callable[[], T],
    step: Callable[[PollState, T, float], PollStep],
    *,
    clock: Clock,
    interval_seconds: float,
    on_continue: Callable[[PollState], None] | None = None,
) -> T:
    """Observe, step, sleep; repeat until the step function reports a terminal outcome."""

    state = PollState(started_at=clock.monotonic())
    while True:
        clock.check_cancelled()
        observation = observe()
        elapsed = clock.monotonic() - state.started_at
        result = step(state, observation, elapsed)
        state = result.state
        if result.outcome is PollOutcome.DONE:
            return observation
        if result.outcome is PollOutcome.FAILED:
            raise result.error or BackupError(stage="poll", reason=f"gave up at status {state.last_status}")
        if on_continue is not None:
            on_continue(state)
        clock.sleep(interval_seconds)
