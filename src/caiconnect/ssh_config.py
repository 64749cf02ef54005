"""SSH client config block management.

This module keeps exactly one `Host <alias>` block in ~/.ssh/config pointing
at the locally forwarded endpoint port. It is a small anchored-block scanner,
not a general ssh_config parser:

- A block starts at a line that is exactly `Host <alias>`
- It continues over the following indented, non-blank lines
- Field order inside the block does not matter

Duplicate blocks left by an earlier crashed run are all removed before the
fresh block is written.

Security:
- Port validation (digits only)
- ~/.ssh created with 0700
- No shell execution
"""

import logging
import os
import re
from pathlib import Path

logger = logging.getLogger(__name__)

DEFAULT_ALIAS = "cml"
DEFAULT_USER = "cdsw"
DEFAULT_HOSTNAME = "localhost"

_EXCESS_BLANK_LINES = re.compile(r"\n{3,}")


class SSHConfigError(Exception):
    """Raised when the SSH config file cannot be written."""

    pass


def default_config_path() -> Path:
    """~/.ssh/config"""
    return Path.home() / ".ssh" / "config"


def host_block_pattern(alias: str) -> re.Pattern:
    """Pattern matching one `Host <alias>` block with its indented lines."""
    return re.compile(
        rf"^Host[ \t]+{re.escape(alias)}[ \t]*\r?(?:\n|\Z)"
        r"(?:[ \t]+\S[^\n]*(?:\n|\Z))*",
        re.MULTILINE,
    )


def render_host_block(alias: str, port: str, user: str, hostname: str = DEFAULT_HOSTNAME) -> str:
    """Render the managed block (no trailing newline).

    Example output:
        Host cml
          HostName localhost
          Port 2223
          User cdsw
    """
    return "\n".join(
        [
            f"Host {alias}",
            f"  HostName {hostname}",
            f"  Port {port}",
            f"  User {user}",
        ]
    )


def count_host_blocks(content: str, alias: str) -> int:
    return len(host_block_pattern(alias).findall(content))


def apply_host_block(content: str, alias: str, block: str) -> str:
    """Return `content` with exactly one copy of `block` for `alias`."""
    pattern = host_block_pattern(alias)
    updated = content

    if len(pattern.findall(updated)) > 1:
        logger.warning(f"Found duplicate 'Host {alias}' blocks, removing all of them")
        updated = pattern.sub("", updated)
        updated = _EXCESS_BLANK_LINES.sub("\n\n", updated)

    match = pattern.search(updated)
    if match:
        replacement = block + "\n" if match.group(0).endswith("\n") else block
        return updated[: match.start()] + replacement + updated[match.end() :]

    if updated.strip():
        if not updated.endswith("\n\n"):
            updated += "\n" if updated.endswith("\n") else "\n\n"
        return updated + block + "\n"
    return block + "\n"


def upsert_host_block(
    port: str,
    alias: str = DEFAULT_ALIAS,
    user: str = DEFAULT_USER,
    hostname: str = DEFAULT_HOSTNAME,
    config_path: Path | None = None,
) -> bool:
    """Create or update the `Host <alias>` block.

    Args:
        port: Forwarded local port
        alias: SSH host alias
        user: Remote user
        hostname: Host the alias resolves to
        config_path: SSH config file (default: ~/.ssh/config)

    Returns:
        True if the file now holds exactly one block for the alias

    Raises:
        SSHConfigError: If the file or its directory cannot be written
    """
    port = str(port).strip()
    if not port.isdigit():
        logger.warning(f"Refusing to write SSH config for invalid port {port!r}")
        return False

    path = config_path or default_config_path()
    try:
        if not path.parent.exists():
            path.parent.mkdir(mode=0o700, parents=True)
            logger.debug(f"Created SSH directory: {path.parent}")

        content = path.read_text(encoding="utf-8") if path.exists() else ""
        updated = apply_host_block(content, alias, render_host_block(alias, port, user, hostname))
        if updated != content:
            path.write_text(updated, encoding="utf-8")
            if os.name != "nt":
                os.chmod(path, 0o600)
            logger.info(f"Updated SSH config entry for {alias} (port {port})")

        written = path.read_text(encoding="utf-8")
    except OSError as e:
        raise SSHConfigError(f"Failed to update SSH config {path}: {e}") from e

    return count_host_blocks(written, alias) == 1


__all__ = [
    "SSHConfigError",
    "default_config_path",
    "host_block_pattern",
    "render_host_block",
    "count_host_blocks",
    "apply_host_block",
    "upsert_host_block",
]
