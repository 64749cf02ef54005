"""Unit tests for IdleMonitor.

Tests the idle state machine, the psutil connection probe and the async poll
loop with a scripted probe.
"""

from types import SimpleNamespace
from unittest.mock import AsyncMock, patch

import psutil
import pytest

from caiconnect.cdswctl import CdswctlResult
from caiconnect.endpoint.idle_monitor import (
    IdleMonitor,
    IdlePhase,
    has_active_connections,
    stop_remote_sessions,
)


def _conn(status, lport, rport=None):
    return SimpleNamespace(
        status=status,
        laddr=SimpleNamespace(ip="127.0.0.1", port=lport),
        raddr=SimpleNamespace(ip="127.0.0.1", port=rport) if rport else (),
    )


class TestIdleThreshold:
    """Test threshold arithmetic."""

    def test_default_five_minutes(self):
        assert IdleMonitor("2223", 5).threshold == 10

    def test_rounds_up(self):
        assert IdleMonitor("2223", 1, poll_interval=45).threshold == 2

    def test_at_least_one_poll(self):
        assert IdleMonitor("2223", 0.1, poll_interval=30).threshold == 1

    def test_disabled_when_zero(self):
        assert not IdleMonitor("2223", 0).enabled
        assert IdleMonitor("2223", 5).enabled

    def test_shutdown_message(self):
        assert IdleMonitor("2223", 5).shutdown_message == "Shut down after 5 minutes of inactivity."


class TestIdleStateMachine:
    """Test IdleMonitor.observe transitions."""

    @pytest.fixture
    def monitor(self):
        """Monitor that shuts down after 3 idle polls."""
        return IdleMonitor("2223", 1.5, poll_interval=30)

    def test_no_counting_before_first_connection(self, monitor):
        for _ in range(50):
            assert monitor.observe(False) is IdlePhase.AWAITING_FIRST_CONNECTION

        assert monitor.idle_polls == 0

    def test_shutdown_after_threshold(self, monitor):
        monitor.observe(True)

        assert monitor.observe(False) is IdlePhase.IDLE
        assert monitor.observe(False) is IdlePhase.IDLE
        assert monitor.observe(False) is IdlePhase.SHUTDOWN

    def test_activity_resets_counter(self, monitor):
        monitor.observe(True)
        monitor.observe(False)
        monitor.observe(False)

        assert monitor.observe(True) is IdlePhase.ACTIVE
        assert monitor.idle_polls == 0
        assert monitor.observe(False) is IdlePhase.IDLE

    def test_shutdown_is_final(self, monitor):
        monitor.observe(True)
        for _ in range(3):
            monitor.observe(False)

        assert monitor.observe(True) is IdlePhase.SHUTDOWN


class TestConnectionProbe:
    """Test has_active_connections against psutil snapshots."""

    def test_established_local_port(self):
        conns = [_conn(psutil.CONN_ESTABLISHED, 2223, 51000)]
        with patch("caiconnect.endpoint.idle_monitor.psutil.net_connections", return_value=conns):
            assert has_active_connections("2223") is True

    def test_established_remote_port(self):
        conns = [_conn(psutil.CONN_ESTABLISHED, 51000, 2223)]
        with patch("caiconnect.endpoint.idle_monitor.psutil.net_connections", return_value=conns):
            assert has_active_connections("2223") is True

    def test_listening_socket_is_not_a_connection(self):
        conns = [_conn(psutil.CONN_LISTEN, 2223)]
        with patch("caiconnect.endpoint.idle_monitor.psutil.net_connections", return_value=conns):
            assert has_active_connections("2223") is False

    def test_other_port(self):
        conns = [_conn(psutil.CONN_ESTABLISHED, 22, 51000)]
        with patch("caiconnect.endpoint.idle_monitor.psutil.net_connections", return_value=conns):
            assert has_active_connections("2223") is False

    def test_probe_failure_counts_as_idle(self):
        with patch(
            "caiconnect.endpoint.idle_monitor.psutil.net_connections",
            side_effect=psutil.AccessDenied(),
        ):
            assert has_active_connections("2223") is False


class TestStopRemoteSessions:
    """Test the best-effort remote session stop."""

    def test_success(self):
        with patch(
            "caiconnect.endpoint.idle_monitor.stop_sessions", return_value=CdswctlResult(0)
        ) as mock_stop:
            assert stop_remote_sessions("/opt/cdswctl", "alice/proj") is True

        mock_stop.assert_called_once_with("/opt/cdswctl", "alice/proj")

    def test_failure_is_logged_not_raised(self):
        with patch(
            "caiconnect.endpoint.idle_monitor.stop_sessions",
            return_value=CdswctlResult(1, stderr="forbidden"),
        ):
            assert stop_remote_sessions("/opt/cdswctl", "alice/proj") is False

    def test_no_project(self):
        with patch("caiconnect.endpoint.idle_monitor.stop_sessions") as mock_stop:
            assert stop_remote_sessions("/opt/cdswctl", "") is False

        mock_stop.assert_not_called()


class TestIdleMonitorRun:
    """Test the async poll loop."""

    @pytest.mark.asyncio
    async def test_disabled_returns_immediately(self):
        on_shutdown = AsyncMock()

        assert await IdleMonitor("2223", 0).run(on_shutdown) is False
        on_shutdown.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_shutdown_then_remote_stop(self):
        # 0.015 s timeout at 0.01 s polls: threshold of 2
        probes = iter([False, True, False, False])
        monitor = IdleMonitor(
            "2223",
            0.015 / 60,
            poll_interval=0.01,
            connection_probe=lambda port: next(probes),
        )
        calls = []

        async def on_shutdown(message):
            calls.append(("shutdown", message))

        with patch(
            "caiconnect.endpoint.idle_monitor.stop_remote_sessions",
            side_effect=lambda path, project: calls.append(("stop", path, project)),
        ):
            result = await monitor.run(on_shutdown, cdswctl_path="/opt/cdswctl", project="alice/proj")

        assert result is True
        assert monitor.phase is IdlePhase.SHUTDOWN
        assert calls[0][0] == "shutdown"
        assert "inactivity" in calls[0][1]
        assert calls[1] == ("stop", "/opt/cdswctl", "alice/proj")
