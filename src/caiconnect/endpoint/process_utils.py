"""Process Utilities - Shared process and signal plumbing.

Philosophy:
- Ruthless simplicity: psutil for every pid lookup, no shelling out
- Single responsibility: Process liveness, termination and spawn flags
- Self-contained: Used by the supervisor, the controller and the reaper

Public API (Studs):
    is_process_alive - Check whether a pid belongs to a live process
    safe_kill - Terminate a pid, ignoring processes that are already gone
    detached_popen_kwargs - Popen flags for a child that outlives its parent
    hidden_spawn_kwargs - Spawn flags for a child without a controlling terminal
    utc_timestamp - ISO-8601 UTC timestamp
"""

import logging
import subprocess
import sys
from datetime import UTC, datetime
from typing import Any, Dict, Optional

import psutil

logger = logging.getLogger(__name__)


def is_process_alive(pid: Optional[int]) -> bool:
    """Check if a process is running.

    Zombies count as dead: a detached supervisor that exited but was never
    reaped by its (gone) parent must not block a new session.
    """
    if not pid:
        return False
    try:
        proc = psutil.Process(pid)
        return proc.status() != psutil.STATUS_ZOMBIE
    except (psutil.NoSuchProcess, psutil.AccessDenied):
        # AccessDenied on status() still means the pid exists
        return psutil.pid_exists(pid)


def safe_kill(pid: Optional[int], force: bool = False) -> bool:
    """Terminate a process by pid.

    Args:
        pid: Process id (None or 0 is a no-op)
        force: SIGKILL instead of SIGTERM

    Returns:
        True if a signal was delivered, False otherwise
    """
    if not pid:
        return False
    try:
        proc = psutil.Process(pid)
        if force:
            proc.kill()
        else:
            proc.terminate()
        return True
    except psutil.NoSuchProcess:
        logger.debug(f"Process {pid} already gone")
        return False
    except psutil.AccessDenied as e:
        logger.debug(f"Not allowed to signal process {pid}: {e}")
        return False


def detached_popen_kwargs() -> Dict[str, Any]:
    """Popen keyword arguments for a fire-and-forget detached child.

    The child gets its own session (POSIX) or process group without a console
    (Windows), and all standard streams are discarded.
    """
    kwargs: Dict[str, Any] = {
        "stdin": subprocess.DEVNULL,
        "stdout": subprocess.DEVNULL,
        "stderr": subprocess.DEVNULL,
        "close_fds": True,
    }
    if sys.platform == "win32":
        kwargs["creationflags"] = (
            subprocess.DETACHED_PROCESS
            | subprocess.CREATE_NEW_PROCESS_GROUP
            | subprocess.CREATE_NO_WINDOW
        )
    else:
        kwargs["start_new_session"] = True
    return kwargs


def hidden_spawn_kwargs() -> Dict[str, Any]:
    """Spawn keyword arguments for a child that must not get a terminal."""
    if sys.platform == "win32":
        return {"creationflags": subprocess.CREATE_NO_WINDOW}
    return {"start_new_session": True}


def utc_timestamp() -> str:
    """Current time as an ISO-8601 UTC string."""
    return datetime.now(UTC).isoformat().replace("+00:00", "Z")


__all__ = [
    "is_process_alive",
    "safe_kill",
    "detached_popen_kwargs",
    "hidden_spawn_kwargs",
    "utc_timestamp",
]
