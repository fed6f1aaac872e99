"""Process-wide logging setup for the backup daemon and console.

Console output always; rotating file output plus an error-only file when a log
directory is configured. Safe to call more than once.
"""

from __future__ import annotations

import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"
LOG_FILENAME = "rds-backup-replicator.log"
NOISY_LOGGERS = ("botocore", "boto3", "urllib3", "apscheduler")

_CONFIGURED_FLAG = "_rds_backup_replicator_logging_configured"


def configure_logging(
    *,
    log_level: str = "INFO",
    log_dir: Path | None = None,
    max_bytes: int = 10 * 1024 * 1024,
    backup_count: int = 5,
) -> None:
    root = logging.getLogger()
    if getattr(root, _CONFIGURED_FLAG, False):
        return

    level = getattr(logging, (log_level or "INFO").strip().upper(), None)
    if not isinstance(level, int):
        raise ValueError(f"Invalid log level: {log_level}")
    root.setLevel(level)

    formatter = logging.Formatter(fmt=LOG_FORMAT, datefmt=LOG_DATE_FORMAT)
    console_handler = logging.StreamHandler()
    console_handler.setLevel(level)
    console_handler.setFormatter(formatter)
    root.addHandler(console_handler)

    if log_dir is not None:
        try:
            log_dir.mkdir(parents=True, exist_ok=True)
            file_handler = RotatingFileHandler(
                filename=str(log_dir / LOG_FILENAME),
                maxBytes=max_bytes,
                backupCount=backup_count,
                encoding="utf-8",
            )
            file_handler.setLevel(level)
            file_handler.setFormatter(formatter)
            root.addHandler(file_handler)

            error_path = log_dir / LOG_FILENAME.replace(".log", ".error.log")
            error_handler = RotatingFileHandler(
                filename=str(error_path),
                maxBytes=max_bytes,
                backupCount=backup_count,
                encoding="utf-8",
            )
            error_handler.setLevel(logging.ERROR)
            error_handler.setFormatter(formatter)
            root.addHandler(error_handler)
        except OSError:
            logging.getLogger(__name__).warning(
                "Failed to configure file logging under %s; continuing with console-only logging",
                log_dir,
            )

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))

    logging.captureWarnings(True)
    setattr(root, _CONFIGURED_FLAG, True)
