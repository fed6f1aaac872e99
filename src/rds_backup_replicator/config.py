from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path
import logging
import os

from dotenv import dotenv_values
import yaml

logger = logging.getLogger(__name__)

REQUIRED_ENV_VARS: tuple[str, ...] = (
    "SOURCE_REGION",
    "TARGET_REGION",
    "DB_IDENTIFIER",
    "SOURCE_BUCKET",
    "TARGET_BUCKET",
    "KMS_KEY_ID",
    "EXPORT_ROLE_ARN",
    "ADMIN_EMAIL",
    "KEEP_SOURCE_SNAPSHOT",
    "STORE_TO_SOURCE_S3",
)
CONFIG_FILE_ENV_VAR = "RDSBR_CONFIG_FILE"
DOTENV_PARENT_SEARCH_DEPTH = 3

_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off"}


class ConfigurationError(ValueError):
    """Raised when required configuration is missing or malformed."""


@dataclass(frozen=True)
class AppConfig:
    source_region: str
    target_region: str
    db_identifier: str
    source_bucket: str
    target_bucket: str
    kms_key_id: str
    export_role_arn: str
    admin_email: str
    keep_source_snapshot: bool
    store_to_source_s3: bool
    sender_email: str = "RDS Backup <noreply@example.com>"
    ses_region: str | None = None
    schedule: str = "0 0 * * *"
    run_on_start: bool = True
    retention_days: int = 15
    max_attempts: int = 12
    retry_backoff_seconds: int = 300
    snapshot_wait_timeout_seconds: int = 2 * 60 * 60
    snapshot_poll_interval_seconds: int = 30
    export_poll_interval_seconds: int = 300
    export_poll_max_attempts: int | None = None
    metadata_db_path: Path = Path("./data/backups.db")
    history_keep: int = 365
    log_dir: Path | None = None
    log_level: str = "INFO"

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> AppConfig:
        values = dict(os.environ if environ is None else environ)

        missing = [name for name in REQUIRED_ENV_VARS if not values.get(name, "").strip()]
        if missing:
            raise ConfigurationError(f"Missing required environment variable(s): {', '.join(missing)}")

        log_dir = values.get("RDSBR_LOG_DIR", "").strip()
        return cls(
            source_region=values["SOURCE_REGION"].strip(),
            target_region=values["TARGET_REGION"].strip(),
            db_identifier=values["DB_IDENTIFIER"].strip(),
            source_bucket=values["SOURCE_BUCKET"].strip(),
            target_bucket=values["TARGET_BUCKET"].strip(),
            kms_key_id=values["KMS_KEY_ID"].strip(),
            export_role_arn=values["EXPORT_ROLE_ARN"].strip(),
            admin_email=values["ADMIN_EMAIL"].strip(),
            keep_source_snapshot=_parse_bool("KEEP_SOURCE_SNAPSHOT", values["KEEP_SOURCE_SNAPSHOT"]),
            store_to_source_s3=_parse_bool("STORE_TO_SOURCE_S3", values["STORE_TO_SOURCE_S3"]),
            sender_email=values.get("RDSBR_SENDER_EMAIL", "").strip() or cls.sender_email,
            ses_region=values.get("RDSBR_SES_REGION", "").strip() or None,
            schedule=values.get("RDSBR_SCHEDULE", "").strip() or cls.schedule,
            run_on_start=_parse_bool("RDSBR_RUN_ON_START", values.get("RDSBR_RUN_ON_START", "true")),
            retention_days=_parse_positive_int(values, "RDSBR_RETENTION_DAYS", cls.retention_days),
            max_attempts=_parse_positive_int(values, "RDSBR_MAX_ATTEMPTS", cls.max_attempts),
            retry_backoff_seconds=_parse_positive_int(values, "RDSBR_RETRY_BACKOFF_SECONDS", cls.retry_backoff_seconds),
            snapshot_wait_timeout_seconds=_parse_positive_int(
                values, "RDSBR_SNAPSHOT_WAIT_TIMEOUT_SECONDS", cls.snapshot_wait_timeout_seconds
            ),
            snapshot_poll_interval_seconds=_parse_positive_int(
                values, "RDSBR_SNAPSHOT_POLL_INTERVAL_SECONDS", cls.snapshot_poll_interval_seconds
            ),
            export_poll_interval_seconds=_parse_positive_int(
                values, "RDSBR_EXPORT_POLL_INTERVAL_SECONDS", cls.export_poll_interval_seconds
            ),
            export_poll_max_attempts=_parse_positive_int(values, "RDSBR_EXPORT_POLL_MAX_ATTEMPTS", None),
            metadata_db_path=Path(values.get("RDSBR_METADATA_DB_PATH", "").strip() or cls.metadata_db_path),
            history_keep=_parse_positive_int(values, "RDSBR_HISTORY_KEEP", cls.history_keep),
            log_dir=Path(log_dir) if log_dir else None,
            log_level=values.get("RDSBR_LOG_LEVEL", "").strip().upper() or cls.log_level,
        )

    @property
    def notification_region(self) -> str:
        return self.ses_region or self.source_region

    def describe(self) -> dict[str, str]:
        return {
            "database": self.db_identifier,
            "source_region": self.source_region,
            "target_region": self.target_region,
            "source_bucket": self.source_bucket,
            "target_bucket": self.target_bucket,
            "store_to_source_s3": str(self.store_to_source_s3).lower(),
            "keep_source_snapshot": str(self.keep_source_snapshot).lower(),
            "schedule": f"{self.schedule} (UTC)",
            "retention_days": str(self.retention_days),
            "recipient": self.admin_email,
        }


def load_config(
    config_file: str | Path | None = None,
    environ: Mapping[str, str] | None = None,
    *,
    dotenv_start: Path | None = None,
) -> AppConfig:
    """Build the configuration from environment, ``.env`` and an optional YAML file.

    Precedence, highest first: process environment, ``.env`` values, YAML file.
    """

    environment = dict(os.environ if environ is None else environ)

    merged: dict[str, str] = {}
    file_path = config_file or environment.get(CONFIG_FILE_ENV_VAR, "").strip() or None
    if file_path:
        merged.update(load_config_file(Path(file_path)))
    merged.update(_load_dotenv_values(dotenv_start))
    merged.update(environment)
    return AppConfig.from_env(merged)


def load_config_file(path: Path) -> dict[str, str]:
    expanded = path.expanduser()
    if not expanded.is_file():
        raise ConfigurationError(f"Config file does not exist: {expanded}")

    try:
        parsed = yaml.safe_load(expanded.read_text(encoding="utf-8"))
    except yaml.YAMLError as error:
        raise ConfigurationError(f"Config file {expanded} must be valid YAML: {error.__class__.__name__}") from error

    if parsed is None:
        return {}
    if not isinstance(parsed, dict):
        raise ConfigurationError(f"Config file {expanded} must be a YAML mapping")

    values: dict[str, str] = {}
    for key, value in parsed.items():
        if value is None:
            continue
        if isinstance(value, bool):
            value = "true" if value else "false"
        values[str(key).strip().upper()] = str(value)
    return values


def ensure_directories(config: AppConfig) -> None:
    config.metadata_db_path.parent.mkdir(parents=True, exist_ok=True)
    if config.log_dir is not None:
        config.log_dir.mkdir(parents=True, exist_ok=True)


def find_dotenv_file(start: Path | None = None) -> Path | None:
    directory = start or Path.cwd()
    for _ in range(DOTENV_PARENT_SEARCH_DEPTH + 1):
        candidate = directory / ".env"
        if candidate.is_file():
            return candidate
        directory = directory.parent
    return None


def _load_dotenv_values(start: Path | None) -> dict[str, str]:
    path = find_dotenv_file(start)
    if path is None:
        return {}
    logger.debug("Loading environment defaults from %s", path)
    return _clean_dotenv(dotenv_values(path))


def _clean_dotenv(values: Mapping[str, str | None]) -> dict[str, str]:
    return {key: value for key, value in values.items() if value is not None}


def _parse_bool(name: str, raw: str) -> bool:
    normalized = raw.strip().lower()
    if normalized in _TRUE_VALUES:
        return True
    if normalized in _FALSE_VALUES:
        return False
    raise ConfigurationError(f"{name} must be a boolean (true/false), got {raw!r}")


def _parse_positive_int(values: Mapping[str, str], name: str, default: int | None) -> int | None:
    raw = values.get(name, "").strip()
    if not raw:
        return default
    try:
        parsed = int(raw)
    except ValueError as error:
        raise ConfigurationError(f"{name} must be an integer, got {raw!r}") from error
    if parsed <= 0:
        raise ConfigurationError(f"{name} must be positive, got {parsed}")
    return parsed
