from __future__ import annotations

import argparse
import logging
import signal
import sqlite3
import sys
import threading

from botocore.exceptions import BotoCoreError

from .config import ensure_directories, find_dotenv_file, load_config
from .logging_config import configure_logging
from .scheduler import BackupScheduler, build_runtime

logger = logging.getLogger("rds_backup_replicator")

EXIT_OK = 0
EXIT_BACKUP_FAILED = 1
EXIT_CONFIG_ERROR = 2
EXIT_ALREADY_RUNNING = 3


def _parse_args(argv: list[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="rds-backup-replicator",
        description="Snapshot an RDS instance, replicate it to a second region and export it to S3.",
    )
    parser.add_argument("--config", default=None, help="Optional YAML file with configuration defaults.")
    parser.add_argument("--once", action="store_true", help="Run a single backup and exit.")
    parser.add_argument(
        "--no-run-on-start",
        action="store_true",
        help="Wait for the first scheduled trigger instead of backing up immediately.",
    )
    parser.add_argument("--log-level", default=None, help="Override the configured log level.")
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    args = _parse_args(argv)

    try:
        config = load_config(args.config)
        configure_logging(log_level=args.log_level or config.log_level, log_dir=config.log_dir)
    except ValueError as error:
        print(f"Configuration error: {error}", file=sys.stderr)
        return EXIT_CONFIG_ERROR

    if find_dotenv_file() is None:
        logger.warning(".env file not found, using existing environment variables")

    cancel_event = threading.Event()
    try:
        ensure_directories(config)
        runtime = build_runtime(config, cancel_event=cancel_event)
    except (OSError, sqlite3.Error, BotoCoreError) as error:
        logger.error("Unable to initialize backup runtime: %s", error)
        return EXIT_CONFIG_ERROR

    if args.once:
        result = runtime.run_once()
        if result is None:
            return EXIT_ALREADY_RUNNING
        return EXIT_OK if result.status == "success" else EXIT_BACKUP_FAILED

    scheduler = BackupScheduler(job=runtime.run_once, schedule=config.schedule, cancel_event=cancel_event)
    stop_requested = threading.Event()

    def _handle_signal(signum: int, _frame) -> None:
        logger.info("Received %s, shutting down", signal.Signals(signum).name)
        stop_requested.set()

    signal.signal(signal.SIGINT, _handle_signal)
    signal.signal(signal.SIGTERM, _handle_signal)

    try:
        scheduler.start(run_on_start=config.run_on_start and not args.no_run_on_start)
    except ValueError as error:
        logger.error("Invalid schedule %r: %s", config.schedule, error)
        return EXIT_CONFIG_ERROR

    logger.info("Next scheduled backup at %s", scheduler.next_run_time())
    while not stop_requested.wait(timeout=1.0):
        pass

    logger.info("Shutting down backup scheduler...")
    scheduler.shutdown(wait=True)
    logger.info("Backup scheduler stopped")
    return EXIT_OK


if __name__ == "__main__":
    sys.exit(main())
