"""Tests for handler health tracking."""

import pytest
from structlog.testing import capture_logs

from servers.event_harvester.resilience.health import HealthMonitor


class TestHealthMonitor:
    """Failure streaks and the degraded report."""

    @pytest.fixture
    def monitor(self) -> HealthMonitor:
        return HealthMonitor(failure_threshold=3)

    def test_untracked_component_is_healthy(self, monitor: HealthMonitor):
        assert monitor.is_healthy("refresh") is True
        assert monitor.get_status()["summary"] == {"healthy": 0, "unhealthy": 0, "total": 0}

    def test_success_ends_streak(self, monitor: HealthMonitor):
        monitor.record_failure("fetchCity", error="UpstreamError: HTTP 503")
        monitor.record_failure("fetchCity", error="UpstreamError: HTTP 503")
        monitor.record_success("fetchCity")

        component = monitor.get_status()["components"]["fetchCity"]
        assert component["healthy"] is True
        assert component["consecutive_failures"] == 0
        assert component["processed"] == 3
        assert component["last_error"] is None

    def test_degraded_reported_once_at_threshold(self, monitor: HealthMonitor):
        with capture_logs() as logs:
            results = [monitor.record_failure("refresh", error=f"Error {n}") for n in range(5)]

        assert results == [False, False, True, False, False]
        degraded = [entry for entry in logs if entry["event"] == "component_degraded"]
        assert len(degraded) == 1
        assert degraded[0]["component"] == "refresh"
        assert degraded[0]["error"] == "Error 2"
        assert degraded[0]["health"]["components"]["refresh"]["consecutive_failures"] == 3

    def test_recovery_logged_after_degradation(self, monitor: HealthMonitor):
        for _ in range(3):
            monitor.record_failure("remote", error="Timeout")

        with capture_logs() as logs:
            monitor.record_success("remote")

        assert [entry["event"] for entry in logs] == ["component_recovered"]
        assert monitor.is_healthy("remote") is True

    def test_status_summary(self, monitor: HealthMonitor):
        monitor.record_success("fetchCity")
        monitor.record_failure("refresh", error="Error")

        status = monitor.get_status()

        assert status["summary"] == {"healthy": 1, "unhealthy": 1, "total": 2}
        assert status["timestamp"].endswith("+00:00")

    def test_status_is_a_snapshot(self, monitor: HealthMonitor):
        monitor.record_failure("refresh", error="Error")
        snapshot = monitor.get_status()

        monitor.record_success("refresh")

        assert snapshot["components"]["refresh"]["healthy"] is False
