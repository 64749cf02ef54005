"""CLI tests using click's CliRunner.

Session flows are patched at the cli module boundary; config, state and log
files live under a temporary CAICONNECT_HOME.
"""

from unittest.mock import patch

import pytest
from click.testing import CliRunner

from caiconnect.cli import main
from caiconnect.endpoint.controller import LOG_FILE, STATE_FILE
from caiconnect.endpoint.state_channel import SessionState, SessionStatus, write_state
from caiconnect.session_manager import SessionError


@pytest.fixture
def runner(caiconnect_home):
    return CliRunner()


class TestConfigCommands:
    """Test `caiconnect config`."""

    def test_set_and_show(self, runner):
        result = runner.invoke(main, ["config", "set", "idle_timeout_minutes", "0"])
        assert result.exit_code == 0
        assert "Set idle_timeout_minutes = 0" in result.output

        result = runner.invoke(main, ["config", "show"])
        assert result.exit_code == 0
        assert "idle_timeout_minutes" in result.output

    def test_set_unknown_key(self, runner):
        result = runner.invoke(main, ["config", "set", "region", "eastus"])

        assert result.exit_code == 1
        assert "Error: Unknown config key" in result.output

    def test_broken_config_file(self, runner, caiconnect_home):
        (caiconnect_home / "config.toml").write_text("default_cpus = [\n")

        result = runner.invoke(main, ["status"])

        assert result.exit_code == 1
        assert "Error:" in result.output


class TestConnectCommands:
    """Test connect / reconnect / disconnect wiring."""

    def test_connect(self, runner):
        with patch(
            "caiconnect.cli.resolve_and_login", return_value="/opt/cdswctl"
        ), patch("caiconnect.cli.connect") as mock_connect, patch(
            "caiconnect.cli.open_remote_window"
        ) as mock_open:
            result = runner.invoke(main, ["connect", "alice/proj", "-r", "7", "--gpus", "1"])

        assert result.exit_code == 0, result.output
        params = mock_connect.call_args[0][1]
        assert params.project == "alice/proj"
        assert params.runtime_id == 7
        assert params.cpus == 2
        assert params.memory_gb == 4
        assert params.gpus == 1
        assert params.cdswctl_path == "/opt/cdswctl"
        assert params.stop_sessions == "prompt"
        assert "ssh cml" in result.output
        mock_open.assert_called_once_with("cml", "/home/cdsw")

    def test_connect_no_open(self, runner):
        with patch(
            "caiconnect.cli.resolve_and_login", return_value="/opt/cdswctl"
        ), patch("caiconnect.cli.connect"), patch("caiconnect.cli.open_remote_window") as mock_open:
            result = runner.invoke(
                main, ["connect", "alice/proj", "-r", "7", "--stop-sessions", "never", "--no-open"]
            )

        assert result.exit_code == 0, result.output
        mock_open.assert_not_called()

    def test_connect_requires_runtime(self, runner):
        result = runner.invoke(main, ["connect", "alice/proj"])

        assert result.exit_code != 0

    def test_connect_failure(self, runner):
        with patch("caiconnect.cli.resolve_and_login", return_value="/opt/cdswctl"), patch(
            "caiconnect.cli.connect",
            side_effect=SessionError("Failed to establish SSH endpoint: Timed out"),
        ):
            result = runner.invoke(main, ["connect", "alice/proj", "-r", "7", "--no-open"])

        assert result.exit_code == 1
        assert "Error: Failed to establish SSH endpoint" in result.output

    def test_reconnect_without_history(self, runner):
        with patch("caiconnect.cli.resolve_and_login", return_value="/opt/cdswctl"):
            result = runner.invoke(main, ["reconnect", "--no-open"])

        assert result.exit_code == 1
        assert "No previous session found" in result.output

    def test_disconnect(self, runner):
        with patch("caiconnect.cli.disconnect") as mock_disconnect:
            result = runner.invoke(main, ["disconnect"])

        assert result.exit_code == 0
        assert "Disconnected." in result.output
        mock_disconnect.assert_called_once()


class TestStatusCommands:
    """Test status, logs, cleanup and login."""

    def test_status_idle(self, runner):
        result = runner.invoke(main, ["status"])

        assert result.exit_code == 0
        assert "No active endpoint." in result.output

    def test_status_last_error(self, runner, caiconnect_home):
        write_state(
            caiconnect_home / STATE_FILE,
            SessionState(status=SessionStatus.ERROR, message="Session timed out after 10 hours."),
        )

        result = runner.invoke(main, ["status"])

        assert "Last error: Session timed out after 10 hours." in result.output

    def test_status_active(self, runner, caiconnect_home, ready_state):
        write_state(caiconnect_home / STATE_FILE, ready_state)

        with patch("caiconnect.endpoint.controller.is_process_alive", return_value=True):
            result = runner.invoke(main, ["status"])

        assert result.exit_code == 0
        assert "2223" in result.output

    def test_logs(self, runner, caiconnect_home):
        (caiconnect_home / LOG_FILE).write_text("first\nsecond\nthird\n")

        result = runner.invoke(main, ["logs", "-n", "2"])

        assert result.exit_code == 0
        assert result.output == "second\nthird\n"

    def test_logs_missing(self, runner):
        result = runner.invoke(main, ["logs"])

        assert result.exit_code == 1
        assert "Log file not found" in result.output

    def test_cleanup(self, runner):
        with patch("caiconnect.endpoint.controller.reap_orphans", return_value=[321]):
            result = runner.invoke(main, ["cleanup"])

        assert result.exit_code == 0
        assert "321" in result.output

    def test_login_requires_url(self, runner):
        result = runner.invoke(main, ["login"])

        assert result.exit_code == 1
        assert "cml_url is not set" in result.output
