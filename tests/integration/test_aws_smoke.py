from __future__ import annotations

import os

import pytest

from rds_backup_replicator.aws import KeyResolver, SnapshotStore, load_aws_clients
from rds_backup_replicator.config import ConfigurationError, load_config
from rds_backup_replicator.models import DBInstanceState

_ENV_RUN_FLAG = "RDSBR_RUN_AWS_INTEGRATION"

pytestmark = pytest.mark.integration


def _flag_enabled(value: str | None) -> bool:
    if value is None:
        return False
    return value.strip().lower() in {"1", "true", "yes", "on"}


if not _flag_enabled(os.getenv(_ENV_RUN_FLAG)):
    pytest.skip(
        "Live AWS integration tests are disabled by default. "
        f"Set {_ENV_RUN_FLAG}=1 and the replicator environment variables to run them.",
        allow_module_level=True,
    )


@pytest.fixture(scope="module")
def live_setup():
    try:
        config = load_config()
    except ConfigurationError as error:
        pytest.skip(f"Replicator configuration is incomplete: {error}")
    clients = load_aws_clients(source_region=config.source_region, target_region=config.target_region)
    return config, clients


def test_live_key_resolves_and_is_enabled_in_both_regions(live_setup) -> None:
    config, clients = live_setup
    resolver = KeyResolver(clients.client_factory)

    source_arn = resolver.resolve_and_verify(config.source_region, config.kms_key_id)
    target_arn = resolver.resolve_and_verify(config.target_region, config.kms_key_id)

    assert source_arn.startswith("arn:")
    assert target_arn.startswith("arn:")


def test_live_instance_state_and_snapshot_listing_are_readable(live_setup) -> None:
    config, clients = live_setup
    store = SnapshotStore(clients.source_rds, region=config.source_region)

    state = store.describe_instance_state(config.db_identifier)
    snapshots = store.list_manual_snapshots(config.db_identifier)

    assert state in set(DBInstanceState)
    assert all(snapshot.identifier for snapshot in snapshots)
