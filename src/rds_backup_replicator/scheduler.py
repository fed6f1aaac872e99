from __future__ import annotations

from dataclasses import dataclass
import logging
from pathlib import Path
import sqlite3
import threading
from typing import Any, Callable

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
import boto3
from filelock import FileLock, Timeout

from .aws import load_aws_clients
from .backup import BackupOrchestrator
from .config import AppConfig
from .errors import BackupError, error_message
from .metadata import BackupMetadataStore
from .models import BackupResult
from .notification import Notifier, build_notifier
from .polling import Clock

logger = logging.getLogger(__name__)

SCHEDULED_JOB_ID = "daily_backup"
INITIAL_JOB_ID = "initial_backup"
MISFIRE_GRACE_SECONDS = 60 * 60
RUN_LOCK_SUFFIX = ".run.lock"


def run_backup_job(
    *,
    config: AppConfig,
    orchestrator: BackupOrchestrator,
    notifier: Notifier,
    metadata_store: BackupMetadataStore | None = None,
    clock: Clock | None = None,
) -> BackupResult:
    active_clock = clock or orchestrator.clock
    result = BackupResult(db_identifier=config.db_identifier, backup_time=_utc_iso(active_clock))

    logger.info("Starting database backup for %s", config.db_identifier)
    success = False
    try:
        orchestrator.perform(result)
        success = True
    except BackupError as error:
        result.error_message = str(error)
        logger.error("Backup failed: %s", error)
    except Exception as error:  # pylint: disable=broad-except
        result.error_message = f"unexpected backup failure: {error_message(error)}"
        logger.exception("Backup failed unexpectedly")
    finally:
        result.finished_at = _utc_iso(active_clock)

    try:
        notifier.deliver(result, success=success)
    except Exception as error:  # pylint: disable=broad-except
        kind = "success" if success else "failure"
        logger.error("Failed to send %s notification: %s", kind, error_message(error))

    if metadata_store is not None:
        try:
            metadata_store.record_result(result)
            pruned = metadata_store.prune_history(config.history_keep)
        except (sqlite3.Error, OSError) as error:
            logger.error("Failed to record backup run: %s", error_message(error))
        else:
            if pruned:
                logger.info("Pruned %s old backup run(s) from history", pruned)

    if success:
        logger.info("Backup completed successfully for %s", config.db_identifier)
    return result


def run_lock_path(metadata_db_path: Path) -> Path:
    return metadata_db_path.with_name(f"{metadata_db_path.name}{RUN_LOCK_SUFFIX}")


class BackupRunGuard:
    """Lock file shared by every process that runs backups against one metadata database."""

    def __init__(self, lock_path: Path) -> None:
        self.lock_path = lock_path
        self._lock = FileLock(str(lock_path))

    def acquire(self) -> bool:
        try:
            self._lock.acquire(timeout=0)
        except Timeout:
            return False
        return True

    def release(self) -> None:
        self._lock.release()


@dataclass
class BackupRuntime:
    config: AppConfig
    orchestrator: BackupOrchestrator
    notifier: Notifier
    metadata_store: BackupMetadataStore
    clock: Clock
    guard: BackupRunGuard

    def run_once(self) -> BackupResult | None:
        """Run one backup, or return None when another process is already running one."""

        if not self.guard.acquire():
            logger.warning("Another backup run holds %s, not starting a new one", self.guard.lock_path)
            return None
        try:
            return run_backup_job(
                config=self.config,
                orchestrator=self.orchestrator,
                notifier=self.notifier,
                metadata_store=self.metadata_store,
                clock=self.clock,
            )
        finally:
            self.guard.release()


def build_runtime(
    config: AppConfig,
    *,
    cancel_event: threading.Event | None = None,
    session: boto3.Session | None = None,
) -> BackupRuntime:
    clock = Clock(cancel_event)
    clients = load_aws_clients(
        source_region=config.source_region,
        target_region=config.target_region,
        session=session,
    )
    metadata_store = BackupMetadataStore(config.metadata_db_path)
    metadata_store.initialize()
    return BackupRuntime(
        config=config,
        orchestrator=BackupOrchestrator.from_clients(config=config, clients=clients, clock=clock),
        notifier=build_notifier(
            recipient=config.admin_email,
            sender=config.sender_email,
            region=config.notification_region,
            client_factory=clients.client_factory,
        ),
        metadata_store=metadata_store,
        clock=clock,
        guard=BackupRunGuard(run_lock_path(config.metadata_db_path)),
    )


class BackupScheduler:
    """Cron-triggered backups with at most one run in flight.

    A trigger that fires while a run is still in progress is skipped, never queued.
    """

    def __init__(
        self,
        *,
        job: Callable[[], Any],
        schedule: str,
        cancel_event: threading.Event | None = None,
        scheduler: BackgroundScheduler | None = None,
    ) -> None:
        self._job = job
        self.schedule = schedule
        self.cancel_event = cancel_event or threading.Event()
        self._scheduler = scheduler or BackgroundScheduler(timezone="UTC")
        self._run_lock = threading.Lock()
        self.skipped_runs = 0

    @property
    def is_running_backup(self) -> bool:
        return self._run_lock.locked()

    def run_guarded(self) -> bool:
        if not self._run_lock.acquire(blocking=False):
            self.skipped_runs += 1
            logger.warning("Previous backup is still running, skipping this trigger")
            return False
        try:
            self._job()
        finally:
            self._run_lock.release()
        return True

    def start(self, *, run_on_start: bool = True) -> None:
        trigger = CronTrigger.from_crontab(self.schedule, timezone="UTC")
        self._scheduler.add_job(
            self.run_guarded,
            trigger=trigger,
            id=SCHEDULED_JOB_ID,
            max_instances=1,
            coalesce=True,
            misfire_grace_time=MISFIRE_GRACE_SECONDS,
            replace_existing=True,
        )
        if run_on_start:
            self._scheduler.add_job(self.run_guarded, id=INITIAL_JOB_ID, max_instances=1, replace_existing=True)
        self._scheduler.start()
        logger.info("Backup scheduler started (schedule=%s UTC, run_on_start=%s)", self.schedule, run_on_start)

    def next_run_time(self) -> Any:
        job = self._scheduler.get_job(SCHEDULED_JOB_ID)
        return job.next_run_time if job is not None else None

    def shutdown(self, *, wait: bool = True) -> None:
        self.cancel_event.set()
        self._scheduler.shutdown(wait=wait)


def _utc_iso(clock: Clock) -> str:
    return clock.now().replace(microsecond=0).isoformat()
