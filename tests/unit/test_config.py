"""
Unit tests for configuration and connection-string handling.
"""

from datetime import timedelta

import pytest
from pydantic import ValidationError

from jobdispatch.config import Settings
from jobdispatch.constants import PRIORITY_WEIGHTS, JobPriority
from jobdispatch.db.connection import normalize_url
from jobdispatch.db.repository import _FETCH_JOB_SQL, compute_backoff


class TestSettings:
    """Tests for Settings."""

    def test_connection_string_required(self, monkeypatch):
        monkeypatch.delenv("CONNECTION_STRING", raising=False)

        with pytest.raises(ValidationError):
            Settings(_env_file=None)

    def test_env_overrides(self, monkeypatch):
        monkeypatch.setenv("CONNECTION_STRING", "postgres://u:p@db/app")
        monkeypatch.setenv("CONCURRENCY", "12")
        monkeypatch.setenv("POLL_INTERVAL_MS", "250")
        monkeypatch.setenv("TASK_MODULES", "app.tasks, billing.tasks ,")

        settings = Settings(_env_file=None)

        assert settings.connection_string == "postgres://u:p@db/app"
        assert settings.concurrency == 12
        assert settings.poll_interval_seconds == 0.25
        assert settings.task_module_names == ["app.tasks", "billing.tasks"]

    def test_concurrency_must_be_positive(self, monkeypatch):
        monkeypatch.setenv("CONCURRENCY", "0")

        with pytest.raises(ValidationError):
            Settings(_env_file=None)


class TestNormalizeUrl:
    """Tests for normalize_url."""

    @pytest.mark.parametrize(
        "url",
        [
            "postgres://u:p@localhost:5432/app",
            "postgresql://u:p@localhost:5432/app",
            "postgresql+asyncpg://u:p@localhost:5432/app",
        ],
    )
    def test_uses_asyncpg_driver(self, url: str):
        assert normalize_url(url) == "postgresql+asyncpg://u:p@localhost:5432/app"


class TestComputeBackoff:
    """Tests for retry backoff."""

    def test_exponential(self):
        assert compute_backoff(1, 2.0, 3600.0) == timedelta(seconds=2)
        assert compute_backoff(3, 2.0, 3600.0) == timedelta(seconds=8)

    def test_capped(self):
        assert compute_backoff(20, 2.0, 60.0) == timedelta(seconds=60)

    def test_overflow_is_capped(self):
        assert compute_backoff(10_000, 10.0, 60.0) == timedelta(seconds=60)

    def test_zero_base_means_no_delay(self):
        assert compute_backoff(5, 0, 60.0) == timedelta(0)


class TestPriorityWeights:
    """Tests for the priority order used by fetch."""

    def test_every_priority_weighted(self):
        assert set(PRIORITY_WEIGHTS) == set(JobPriority)

    def test_fetch_orders_by_weights(self):
        for priority, weight in PRIORITY_WEIGHTS.items():
            assert f"WHEN '{priority.value}' THEN {weight}" in _FETCH_JOB_SQL.text
