# tests/test_infrastructure.py
"""Tests for infrastructure components"""
import json
import logging

import pytest
from unittest.mock import AsyncMock, patch
from asyncpg.exceptions import PostgresError, UniqueViolationError

from tripod.infra.db_resilience_async import is_transient_error, retry_on_transient_error
from tripod.infra.logging_config import JSONFormatter
from tripod.infra.metrics import MetricsCollector


class TestDatabaseResilience:
    def test_connection_errors_are_transient(self):
        assert is_transient_error(ConnectionResetError("reset by peer")) is True
        assert is_transient_error(OSError("server closed the connection unexpectedly")) is True

    def test_postgres_errors_are_not_transient_by_message(self):
        assert is_transient_error(UniqueViolationError("duplicate key, connection ok")) is False
        assert is_transient_error(PostgresError("syntax error")) is False

    def test_non_transient(self):
        assert is_transient_error(ValueError("some other error")) is False

    @pytest.mark.asyncio
    async def test_retry_succeeds_after_transient_error(self):
        call_count = 0

        @retry_on_transient_error(max_retries=3, initial_delay=0)
        async def load():
            nonlocal call_count
            call_count += 1
            if call_count < 2:
                raise ConnectionResetError("connection reset")
            return "success"

        assert await load() == "success"
        assert call_count == 2

    @pytest.mark.asyncio
    async def test_retry_raises_non_transient_immediately(self):
        call_count = 0

        @retry_on_transient_error(max_retries=3, initial_delay=0)
        async def load():
            nonlocal call_count
            call_count += 1
            raise ValueError("not a transient error")

        with pytest.raises(ValueError):
            await load()
        assert call_count == 1

    @pytest.mark.asyncio
    async def test_retry_gives_up(self):
        call_count = 0

        @retry_on_transient_error(max_retries=2, initial_delay=0)
        async def load():
            nonlocal call_count
            call_count += 1
            raise ConnectionRefusedError("connection refused")

        with pytest.raises(ConnectionRefusedError):
            await load()
        assert call_count == 3


class TestMetrics:
    def test_metrics_counter_increment(self):
        collector = MetricsCollector()
        collector.inc_counter("jobs_submitted_total", 1)
        collector.inc_counter("jobs_submitted_total", 2)
        assert collector.get_metrics()["counters"]["jobs_submitted_total"] == 3

    def test_metrics_histogram_observe(self):
        collector = MetricsCollector()
        for value in (0.1, 0.2, 0.5):
            collector.observe_histogram("automation_run_seconds", value)

        stats = collector.get_metrics()["histograms"]["automation_run_seconds"]
        assert stats["count"] == 3
        assert stats["min"] == 0.1
        assert stats["max"] == 0.5

    def test_metrics_with_sorted_labels(self):
        collector = MetricsCollector()
        collector.inc_counter("jobs_submitted_total", 1, {"priority": "urgent", "kind": "ad_hoc"})
        assert "jobs_submitted_total{kind=ad_hoc,priority=urgent}" in collector.get_metrics()["counters"]

    def test_reset(self):
        collector = MetricsCollector()
        collector.inc_counter("x")
        collector.reset()
        assert collector.get_metrics() == {"counters": {}, "histograms": {}}


class TestJSONFormatter:
    def test_context_fields_included(self):
        record = logging.LogRecord("tripod.test", logging.INFO, __file__, 10, "Job completed", None, None)
        record.service_request_id = "req-1"

        data = json.loads(JSONFormatter().format(record))

        assert data["message"] == "Job completed"
        assert data["level"] == "INFO"
        assert data["service_request_id"] == "req-1"


class TestRunModeConfig:
    def test_defaults(self):
        from tripod.config import Settings
        s = Settings(_env_file=None)
        assert s.run_mode == "all"
        assert s.job_worker_enabled is False
        assert s.automation_timezone == "UTC"

    def test_invalid_run_mode_rejected(self):
        from pydantic import ValidationError
        from tripod.config import Settings
        with pytest.raises(ValidationError):
            Settings(run_mode="poller", _env_file=None)

    def test_production_requires_token_and_database(self):
        from tripod.config import Settings
        s = Settings(app_env="prod", _env_file=None)
        assert set(s.validate_required_for_production()) == {"admin_token", "database_url"}

    def test_risky_config_warnings(self):
        from tripod.config import Settings, warn_on_risky_config
        s = Settings(run_mode="worker", operator_webhook_url="https://hooks.example.com", _env_file=None)
        warnings = warn_on_risky_config(s)
        assert any("job_worker_enabled=False" in w for w in warnings)
        assert any("unsigned" in w for w in warnings)


class TestHealthChecker:
    @pytest.mark.asyncio
    async def test_critical_failure_is_unhealthy(self):
        from tripod.infra.health_checks_async import AsyncHealthCheck, AsyncHealthChecker

        db = AsyncHealthCheck("database", critical=True)
        db.check = AsyncMock(return_value={"status": "unhealthy"})
        backlog = AsyncHealthCheck("assignment_backlog", critical=False)
        backlog.check = AsyncMock(return_value={"status": "degraded"})

        with patch("tripod.infra.health_checks_async.get_schema_info", new_callable=AsyncMock, return_value={}):
            result = await AsyncHealthChecker([db, backlog]).run_checks()

        assert result["status"] == "unhealthy"
        assert set(result["checks"]) == {"database", "assignment_backlog"}

    @pytest.mark.asyncio
    async def test_readiness_skips_non_critical(self):
        from tripod.infra.health_checks_async import AsyncHealthCheck, AsyncHealthChecker

        db = AsyncHealthCheck("database", critical=True)
        db.check = AsyncMock(return_value={"status": "healthy"})
        backlog = AsyncHealthCheck("assignment_backlog", critical=False)
        backlog.check = AsyncMock(return_value={"status": "degraded"})

        with patch("tripod.infra.health_checks_async.get_schema_info", new_callable=AsyncMock, return_value={}):
            result = await AsyncHealthChecker([db, backlog]).run_checks(include_non_critical=False)

        assert result["status"] == "healthy"
        backlog.check.assert_not_called()
