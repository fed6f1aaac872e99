from __future__ import annotations

from typing import Any

import streamlit as st

from rds_backup_replicator.config import REQUIRED_ENV_VARS, AppConfig, ConfigurationError, ensure_directories, load_config
from rds_backup_replicator.logging_config import configure_logging
from rds_backup_replicator.metadata import BackupMetadataStore
from rds_backup_replicator.models import BackupResult
from rds_backup_replicator.scheduler import BackupRuntime, build_runtime

_WORKFLOW_STATE_LABELS = {
    "done": "Done",
    "warning": "Done with warnings",
    "failed": "Failed",
    "active": "Ready",
    "blocked": "Waiting",
}

_STAGE_HINTS: tuple[tuple[str, str], ...] = (
    (
        "kms stage failed",
        "Confirm KMS_KEY_ID exists and is enabled in both regions and the caller may describe it.",
    ),
    (
        "instance stage failed",
        "Check DB_IDENTIFIER and the instance status in the source region console.",
    ),
    (
        "snapshot stage failed",
        "The instance never became ready for a snapshot; review RDS events for long maintenance or backups.",
    ),
    (
        "create stage failed",
        "Verify the IAM principal may call CreateDBSnapshot and the manual snapshot quota is not exhausted.",
    ),
    (
        "wait stage failed",
        "Inspect the snapshot status in the RDS console and consider raising the snapshot wait timeout.",
    ),
    (
        "copy stage failed",
        "Confirm cross-region copy is permitted and the target region KMS key grants the copy.",
    ),
    (
        "delete stage failed",
        "A stale target copy could not be removed; delete it manually before the next run.",
    ),
    (
        "export stage failed",
        "Check EXPORT_ROLE_ARN trust policy, bucket permissions and the export task failure cause.",
    ),
    (
        "cancel stage failed",
        "The process was stopped mid-run; the next run resumes from the existing snapshots.",
    ),
    (
        "unexpected backup failure",
        "Inspect the application logs for the full traceback of this run.",
    ),
)


def _initialize_state() -> None:
    defaults: dict[str, Any] = {
        "last_result": None,
    }
    for key, value in defaults.items():
        if key not in st.session_state:
            st.session_state[key] = value


def _build_config_rows(config: AppConfig) -> list[dict[str, str]]:
    return [{"setting": key, "value": value} for key, value in config.describe().items()]


def _failed_stage(message: str) -> str | None:
    marker = " stage failed"
    if marker not in message:
        return None
    return message.split(marker, 1)[0].strip() or None


def _build_workflow_rows(result: BackupResult | None) -> list[dict[str, str]]:
    if result is None:
        states = ["active", "blocked", "blocked", "blocked"]
    else:
        failed_stage = _failed_stage(result.error_message)
        failed = bool(result.error_message)

        keys_state = "failed" if failed_stage == "kms" else "done"
        if result.snapshot_id:
            source_state = "done"
        else:
            source_state = "failed" if failed and keys_state == "done" else "blocked"

        if result.target_snapshot_id:
            target_state = "done"
        else:
            target_state = "failed" if failed and source_state == "done" else "blocked"

        if result.cleanup is None:
            cleanup_state = "blocked"
        else:
            cleanup_state = "done" if result.cleanup.succeeded else "warning"
        states = [keys_state, source_state, target_state, cleanup_state]

    descriptions = (
        ("1. Keys", "Resolve and verify the KMS key in both regions."),
        ("2. Source snapshot", "Create or resume today's snapshot and optionally export it to the source bucket."),
        ("3. Cross-region copy", "Copy the snapshot to the target region and export it to the target bucket."),
        ("4. Cleanup", "Prune replicated snapshots older than the retention window."),
    )
    return [
        {"step": step, "state": _WORKFLOW_STATE_LABELS[state], "description": description}
        for (step, description), state in zip(descriptions, states, strict=True)
    ]


def _actionable_next_step(message: str) -> str:
    normalized = message.strip()
    if not normalized:
        return "No follow-up action required."

    for stage, hint in _STAGE_HINTS:
        if stage in normalized:
            return f"{normalized} | Next step: {hint}"
    return f"{normalized} | Next step: Check the RDS console events and application logs for more detail."


def _build_result_rows(result: BackupResult) -> list[dict[str, str]]:
    actionable_message = "Backup completed successfully."
    if result.status != "success":
        actionable_message = _actionable_next_step(result.error_message)

    return [
        {
            "database": result.db_identifier,
            "status": result.status,
            "snapshot_id": result.snapshot_id,
            "target_snapshot_id": result.target_snapshot_id,
            "locations": ", ".join(result.locations),
            "cleanup": result.cleanup.summary() if result.cleanup is not None else "",
            "backup_time": result.backup_time,
            "finished_at": result.finished_at or "",
            "actionable_message": actionable_message,
        }
    ]


def _build_history_rows(rows: list[dict[str, Any]]) -> list[dict[str, str]]:
    rendered_rows: list[dict[str, str]] = []
    for row in rows:
        status = str(row.get("status", ""))
        message = str(row.get("error_message", "") or "")
        actionable_message = "Backup completed successfully."
        if status != "success":
            actionable_message = _actionable_next_step(message)

        rendered_rows.append(
            {
                "database": str(row.get("db_identifier", "")),
                "status": status,
                "snapshot_id": str(row.get("snapshot_id", "") or ""),
                "target_snapshot_id": str(row.get("target_snapshot_id", "") or ""),
                "locations": ", ".join(row.get("locations") or []),
                "finished_at": str(row.get("finished_at", "")),
                "actionable_message": actionable_message,
            }
        )
    return rendered_rows


def _run_backup_now(runtime: BackupRuntime) -> tuple[BackupResult | None, str]:
    result = runtime.run_once()
    if result is None:
        return None, "Another backup run is already in progress. Try again once it finishes."
    if result.status == "success":
        return result, f"Backup finished: {result.target_snapshot_id}"
    return result, "Backup failed. Review actionable details below."


def main() -> None:
    st.set_page_config(page_title="RDS Backup Replicator", layout="wide")
    _initialize_state()

    st.title("RDS Backup Replicator")
    st.caption("Daily RDS snapshots, replicated across regions and exported to S3.")

    try:
        config = load_config()
    except ConfigurationError as error:
        st.error(str(error))
        st.info(f"Set these variables in the environment or a .env file: {', '.join(REQUIRED_ENV_VARS)}")
        return

    configure_logging(log_level=config.log_level, log_dir=config.log_dir)
    ensure_directories(config)
    metadata_store = BackupMetadataStore(config.metadata_db_path)
    metadata_store.initialize()

    st.sidebar.header("Configuration")
    st.sidebar.dataframe(_build_config_rows(config), use_container_width=True, hide_index=True)

    last_success = metadata_store.get_last_success_map().get(config.db_identifier)
    summary_columns = st.columns(3)
    summary_columns[0].metric("Database", config.db_identifier)
    summary_columns[1].metric("Recorded runs", metadata_store.count_results())
    summary_columns[2].metric("Last success", last_success or "never")

    if st.sidebar.button("Run backup now", type="primary"):
        with st.spinner(f"Backing up {config.db_identifier} from {config.source_region} to {config.target_region}..."):
            try:
                result, message = _run_backup_now(build_runtime(config))
            except Exception as error:  # pylint: disable=broad-except
                st.error(f"Unable to start backup: {error}")
            else:
                if result is None:
                    st.warning(message)
                elif result.status == "success":
                    st.session_state.last_result = result
                    st.success(message)
                else:
                    st.session_state.last_result = result
                    st.error(message)

    st.subheader("Workflow Status")
    st.dataframe(_build_workflow_rows(st.session_state.last_result), use_container_width=True, hide_index=True)

    if st.session_state.last_result is not None:
        st.subheader("Latest Backup Run")
        latest_rows = _build_result_rows(st.session_state.last_result)
        st.dataframe(latest_rows, use_container_width=True, hide_index=True)
        if latest_rows[0]["status"] != "success":
            st.markdown("**Actionable Failure**")
            st.error(latest_rows[0]["actionable_message"])

    st.subheader("Recent Backup History")
    history_rows = _build_history_rows(metadata_store.get_recent_results(limit=100))
    if history_rows:
        st.dataframe(history_rows, use_container_width=True, hide_index=True)
    else:
        st.info("No backup history yet. Run your first backup to populate this table.")


if __name__ == "__main__":
    main()
