from __future__ import annotations

from dataclasses import replace
from typing import Any, Callable

import pytest

from fakes import FakeClock
from rds_backup_replicator.config import AppConfig


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def make_config() -> Callable[..., AppConfig]:
    base = AppConfig(
        source_region="us-east-1",
        target_region="us-west-2",
        db_identifier="orders-db",
        source_bucket="source-bucket",
        target_bucket="target-bucket",
        kms_key_id="mrk-1234abcd",
        export_role_arn="arn:aws:iam::123456789012:role/rds-export",
        admin_email="ops@example.com",
        keep_source_snapshot=True,
        store_to_source_s3=True,
    )

    def _make(**overrides: Any) -> AppConfig:
        return replace(base, **overrides)

    return _make
