"""cdswctl command wrapper.

This module wraps the external `cdswctl` CLI that talks to Cloudera AI:
- Executable discovery (configured path or PATH)
- Bounded command execution with captured output
- Login with API key redaction
- ssh-endpoint argument construction
- Remote session stop

Security:
- No shell execution, arguments are passed as a list
- API keys are masked in every returned or logged text
- Subprocess timeout enforcement
"""

import getpass
import logging
import os
import shutil
import subprocess
import sys
from dataclasses import dataclass
from pathlib import Path

logger = logging.getLogger(__name__)

CDSWCTL_TIMEOUT_SECONDS = 30
EXECUTABLE_NAMES = ["cdswctl", "cdswctl.exe"]
REDACTED = "***"


class CdswctlError(Exception):
    """Raised when a cdswctl operation fails."""

    pass


class CdswctlNotFoundError(CdswctlError):
    """Raised when the cdswctl executable cannot be located."""

    pass


@dataclass
class CdswctlResult:
    """Outcome of one cdswctl invocation."""

    exit_code: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


def find_cdswctl(configured_path: str | None = None) -> str:
    """Locate the cdswctl executable.

    Args:
        configured_path: Explicit path from configuration (optional)

    Returns:
        str: Path to the executable

    Raises:
        CdswctlNotFoundError: If the configured path is missing or nothing is on PATH
    """
    override = (configured_path or "").strip()
    if override:
        path = Path(override).expanduser()
        if not path.exists():
            raise CdswctlNotFoundError(f"Configured cdswctl not found: {path}")
        logger.debug(f"Using cdswctl from config: {path}")
        return str(path)

    for name in EXECUTABLE_NAMES:
        found = shutil.which(name)
        if found:
            logger.debug(f"Using cdswctl from PATH: {found}")
            return found

    raise CdswctlNotFoundError(
        "cdswctl not found. Install it and add it to your PATH, "
        "or set it with: caiconnect config set cdswctl_path <path>"
    )


def redact(text: str, secret: str | None) -> str:
    """Mask every occurrence of a secret."""
    if not secret:
        return text
    return text.replace(secret, REDACTED)


def run_cdswctl(
    cdswctl_path: str,
    args: list[str],
    timeout: float = CDSWCTL_TIMEOUT_SECONDS,
    env: dict[str, str] | None = None,
) -> CdswctlResult:
    """Run cdswctl and capture its output.

    Never raises for process failures: a missing executable, an OS error or a
    timeout produce a non-zero CdswctlResult.
    """
    if not os.path.exists(cdswctl_path):
        return CdswctlResult(exit_code=1, stderr=f"cdswctl not found: {cdswctl_path}")

    kwargs = {}
    if sys.platform == "win32":
        kwargs["creationflags"] = subprocess.CREATE_NO_WINDOW

    try:
        completed = subprocess.run(
            [cdswctl_path, *args],
            capture_output=True,
            text=True,
            timeout=timeout,
            cwd=os.path.dirname(os.path.abspath(cdswctl_path)),
            env={**os.environ, **env} if env else None,
            stdin=subprocess.DEVNULL,
            **kwargs,
        )
    except subprocess.TimeoutExpired:
        logger.warning(f"cdswctl {args[0] if args else ''} timed out after {timeout}s")
        return CdswctlResult(exit_code=1, stderr=f"cdswctl timed out after {timeout} seconds")
    except OSError as e:
        logger.warning(f"cdswctl failed to start: {e}")
        return CdswctlResult(exit_code=1, stderr=str(e))

    return CdswctlResult(
        exit_code=completed.returncode,
        stdout=completed.stdout or "",
        stderr=completed.stderr or "",
    )


def current_username() -> str:
    """Local account name, lower-cased (CML usernames are lower case)."""
    return (os.environ.get("USERNAME") or getpass.getuser()).lower()


def qualify_project(project: str, username: str | None = None) -> str:
    """Return `owner/project`, defaulting the owner to the current user."""
    project = project.strip()
    if "/" in project:
        return project
    return f"{username or current_username()}/{project}"


def login(cdswctl_path: str, cml_url: str, api_key: str, username: str | None = None) -> None:
    """Log cdswctl in to a CML instance.

    Raises:
        CdswctlError: If the URL is invalid or login fails
    """
    if not cml_url or not cml_url.startswith("https://"):
        raise CdswctlError(f"CML URL must start with https:// (got {cml_url!r})")
    if not api_key:
        raise CdswctlError("No API key available. Set the CML_API_KEY environment variable.")

    user = username or current_username()
    logger.info(f"Logging in to {cml_url} as {user}...")
    result = run_cdswctl(cdswctl_path, ["login", "-n", user, "-u", cml_url, "-y", api_key])
    if not result.ok:
        detail = redact((result.stderr or result.stdout).strip(), api_key)
        raise CdswctlError(f"Login failed: {detail}")


def build_endpoint_args(
    project: str,
    runtime_id: int,
    cpus: int,
    memory_gb: int,
    gpus: int = 0,
    addon_id: int | None = None,
) -> list[str]:
    """Arguments for `cdswctl ssh-endpoint`."""
    args = [
        "ssh-endpoint",
        "-p",
        project,
        "-r",
        str(runtime_id),
        "-c",
        str(cpus),
        "-m",
        str(memory_gb),
        "-g",
        str(gpus),
    ]
    if addon_id is not None:
        args.append(f"--addons={addon_id}")
    return args


def stop_sessions(
    cdswctl_path: str, project: str, timeout: float = CDSWCTL_TIMEOUT_SECONDS
) -> CdswctlResult:
    """Stop every running session of a project."""
    return run_cdswctl(cdswctl_path, ["sessions", "stop", "/p", project, "/a"], timeout=timeout)


__all__ = [
    "CdswctlError",
    "CdswctlNotFoundError",
    "CdswctlResult",
    "find_cdswctl",
    "run_cdswctl",
    "redact",
    "current_username",
    "qualify_project",
    "login",
    "build_endpoint_args",
    "stop_sessions",
]
