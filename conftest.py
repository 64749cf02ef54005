"""Pytest configuration and fixtures for caiconnect tests.

CRITICAL: Protects the real ~/.caiconnect and ~/.ssh/config from tests.
"""

import pytest


@pytest.fixture(autouse=True)
def isolate_user_files(tmp_path_factory, monkeypatch):
    """Point HOME and CAICONNECT_HOME at a throwaway directory.

    Every test gets its own home, so state files, the last session and the
    SSH config block written by a test never reach the user's real files.
    The API key is removed so no test can log in to a real CML instance.
    """
    home = tmp_path_factory.mktemp("home")
    monkeypatch.setenv("HOME", str(home))
    monkeypatch.setenv("CAICONNECT_HOME", str(home / ".caiconnect"))
    monkeypatch.delenv("CML_API_KEY", raising=False)
    return home
