"""
Shared test fixtures and configuration for caiconnect tests.

This module provides common fixtures used across all test types:
- Temporary home, data and SSH directories
- Fake cdswctl executables
- Sample state records
"""

import os
import sys
from pathlib import Path

import pytest

from caiconnect.endpoint.state_channel import SessionState, SessionStatus

# ============================================================================
# DIRECTORY FIXTURES
# ============================================================================


@pytest.fixture
def temp_home_dir(tmp_path, monkeypatch):
    """Temporary home directory.

    Sets HOME so ~/.ssh and ~/.caiconnect never touch the real home directory.
    """
    home_dir = tmp_path / "home"
    home_dir.mkdir()
    monkeypatch.setenv("HOME", str(home_dir))
    return home_dir


@pytest.fixture
def caiconnect_home(tmp_path, monkeypatch):
    """Temporary data directory exported as CAICONNECT_HOME."""
    data_dir = tmp_path / ".caiconnect"
    data_dir.mkdir(mode=0o700)
    monkeypatch.setenv("CAICONNECT_HOME", str(data_dir))
    return data_dir


@pytest.fixture
def ssh_config_path(tmp_path):
    """SSH config path inside a temporary .ssh directory (not created)."""
    return tmp_path / ".ssh" / "config"


# ============================================================================
# FAKE CDSWCTL
# ============================================================================


@pytest.fixture
def fake_cdswctl(tmp_path):
    """Factory for executable stand-ins for cdswctl.

    The body is Python source run by the current interpreter; arguments are
    ignored unless the body reads sys.argv.
    """
    if sys.platform == "win32":
        pytest.skip("fake cdswctl scripts need a POSIX shebang")

    def _make(body: str, name: str = "cdswctl") -> Path:
        script = tmp_path / "bin" / name
        script.parent.mkdir(exist_ok=True)
        script.write_text(f"#!{sys.executable}\nimport sys, time\n{body}\n")
        os.chmod(script, 0o755)
        return script

    return _make


# ============================================================================
# STATE FIXTURES
# ============================================================================


@pytest.fixture
def ready_state():
    """A ready record as written by a supervisor."""
    return SessionState(
        status=SessionStatus.READY,
        ssh_command="ssh -p 2223 cdsw@localhost",
        user_and_host="cdsw@localhost",
        port="2223",
        supervisor_pid=1111,
        endpoint_pid=2222,
    )
