"""Unit tests for ssh_config module.

Tests cover block rendering, in-place replacement, duplicate recovery,
idempotence and file permissions.
"""

import os
import sys

import pytest

from caiconnect.ssh_config import (
    SSHConfigError,
    apply_host_block,
    count_host_blocks,
    render_host_block,
    upsert_host_block,
)

BLOCK_2223 = "Host cml\n  HostName localhost\n  Port 2223\n  User cdsw"


class TestRenderHostBlock:
    """Test block rendering."""

    def test_render(self):
        assert render_host_block("cml", "2223", "cdsw") == BLOCK_2223

    def test_custom_alias(self):
        block = render_host_block("cml-gpu", "40000", "alice")

        assert block.startswith("Host cml-gpu\n")
        assert "  User alice" in block


class TestApplyHostBlock:
    """Test pure content transformation."""

    def test_empty_file(self):
        assert apply_host_block("", "cml", BLOCK_2223) == BLOCK_2223 + "\n"

    def test_append_after_existing_hosts(self):
        content = "Host other\n  HostName example.com\n"

        result = apply_host_block(content, "cml", BLOCK_2223)

        assert result == "Host other\n  HostName example.com\n\n" + BLOCK_2223 + "\n"

    def test_append_without_trailing_newline(self):
        content = "Host other\n  HostName example.com"

        result = apply_host_block(content, "cml", BLOCK_2223)

        assert result == "Host other\n  HostName example.com\n\n" + BLOCK_2223 + "\n"

    def test_replace_in_place(self):
        content = (
            "Host a\n  HostName a.example.com\n\n"
            "Host cml\n  HostName localhost\n  Port 1111\n  User cdsw\n\n"
            "Host b\n  HostName b.example.com\n"
        )

        result = apply_host_block(content, "cml", BLOCK_2223)

        assert result == (
            "Host a\n  HostName a.example.com\n\n"
            + BLOCK_2223
            + "\n\n"
            + "Host b\n  HostName b.example.com\n"
        )

    def test_field_order_does_not_matter(self):
        content = "Host cml\n  Port 1111\n  User cdsw\n  HostName localhost\n"

        result = apply_host_block(content, "cml", BLOCK_2223)

        assert result == BLOCK_2223 + "\n"

    def test_duplicates_collapse_to_one(self):
        content = (
            "Host a\n  HostName a.example.com\n\n"
            "Host cml\n  Port 1111\n\n"
            "Host cml\n  Port 2222\n"
        )

        result = apply_host_block(content, "cml", BLOCK_2223)

        assert count_host_blocks(result, "cml") == 1
        assert "Port 2223" in result
        assert "Port 1111" not in result
        assert "Port 2222" not in result
        assert result.startswith("Host a\n  HostName a.example.com\n")

    def test_similar_alias_untouched(self):
        content = "Host cml2\n  Port 9999\n"

        result = apply_host_block(content, "cml", BLOCK_2223)

        assert result.startswith(content)
        assert count_host_blocks(result, "cml") == 1
        assert count_host_blocks(result, "cml2") == 1


class TestUpsertHostBlock:
    """Test file-level upsert."""

    def test_creates_directory_and_file(self, ssh_config_path):
        assert upsert_host_block("2223", config_path=ssh_config_path) is True

        assert ssh_config_path.read_text() == BLOCK_2223 + "\n"
        if sys.platform != "win32":
            assert ssh_config_path.parent.stat().st_mode & 0o777 == 0o700
            assert ssh_config_path.stat().st_mode & 0o777 == 0o600

    def test_idempotent(self, ssh_config_path):
        ssh_config_path.parent.mkdir(mode=0o700)
        ssh_config_path.write_text("Host other\n  HostName example.com\n")

        upsert_host_block("2223", config_path=ssh_config_path)
        first = ssh_config_path.read_bytes()
        upsert_host_block("2223", config_path=ssh_config_path)

        assert ssh_config_path.read_bytes() == first

    def test_port_change(self, ssh_config_path):
        upsert_host_block("2223", config_path=ssh_config_path)
        upsert_host_block("40123", config_path=ssh_config_path)

        content = ssh_config_path.read_text()
        assert count_host_blocks(content, "cml") == 1
        assert "Port 40123" in content

    def test_recovers_from_duplicates(self, ssh_config_path):
        ssh_config_path.parent.mkdir(mode=0o700)
        ssh_config_path.write_text("Host cml\n  Port 1\n\nHost cml\n  Port 2\n")

        assert upsert_host_block("2223", config_path=ssh_config_path) is True
        assert ssh_config_path.read_text() == BLOCK_2223 + "\n"

    @pytest.mark.parametrize("port", ["", "abc", "22; rm -rf /"])
    def test_invalid_port(self, ssh_config_path, port):
        assert upsert_host_block(port, config_path=ssh_config_path) is False
        assert not ssh_config_path.exists()

    def test_custom_user(self, ssh_config_path):
        upsert_host_block("2223", alias="cml", user="alice", config_path=ssh_config_path)

        assert "  User alice" in ssh_config_path.read_text()

    def test_unwritable_path(self, tmp_path):
        blocker = tmp_path / "blocker"
        blocker.write_text("not a directory")

        with pytest.raises(SSHConfigError):
            upsert_host_block("2223", config_path=blocker / "config")

    def test_default_path_under_home(self, temp_home_dir):
        upsert_host_block("2223")

        assert (temp_home_dir / ".ssh" / "config").read_text() == BLOCK_2223 + "\n"
        assert os.path.isdir(temp_home_dir / ".ssh")
