"""Orphan Reaper - Kill supervisors left behind by earlier controllers.

Philosophy:
- Ruthless simplicity: Match on the supervisor module name in the command line
- Best effort: Nothing here may block starting a new session
- Never suicide: The caller's own pid is always excluded

Public API (Studs):
    ProcessInfo - pid + command line snapshot
    list_processes - Enumerate OS processes
    find_orphans - Pure filter over a process list
    reap_orphans - Find and terminate orphaned supervisors
"""

import logging
import os
from dataclasses import dataclass, field
from typing import Iterable, List, Optional

import psutil

logger = logging.getLogger(__name__)

SUPERVISOR_SIGNATURE = "caiconnect.endpoint.supervisor"
TERMINATE_WAIT_SECONDS = 5.0


@dataclass(frozen=True)
class ProcessInfo:
    """Snapshot of a process command line."""

    pid: int
    cmdline: List[str] = field(default_factory=list)

    def is_supervisor(self) -> bool:
        return SUPERVISOR_SIGNATURE in self.cmdline


def list_processes() -> List[ProcessInfo]:
    """Enumerate processes whose command line is readable."""
    processes = []
    for proc in psutil.process_iter(["pid", "cmdline"]):
        cmdline = proc.info.get("cmdline")
        if not cmdline:
            continue
        processes.append(ProcessInfo(pid=proc.info["pid"], cmdline=list(cmdline)))
    return processes


def find_orphans(processes: Iterable[ProcessInfo], own_pid: int) -> List[int]:
    """Pids of supervisor processes other than the caller."""
    return [proc.pid for proc in processes if proc.is_supervisor() and proc.pid != own_pid]


def _kill_tree(proc: psutil.Process, children: List[psutil.Process]) -> None:
    for child in children:
        try:
            child.kill()
        except psutil.NoSuchProcess:
            pass
        except Exception as e:
            logger.warning(f"Failed to kill child process {child.pid}: {e}")
    try:
        proc.kill()
    except psutil.NoSuchProcess:
        pass


def reap_orphans(
    own_pid: Optional[int] = None,
    processes: Optional[Iterable[ProcessInfo]] = None,
    timeout: float = TERMINATE_WAIT_SECONDS,
) -> List[int]:
    """Terminate every orphaned supervisor.

    Each orphan is sent SIGTERM so it can kill its own cdswctl. Orphans still
    running after the timeout are force-killed together with their children.

    Args:
        own_pid: Pid to exclude (defaults to the current process)
        processes: Process snapshot (defaults to a fresh enumeration)
        timeout: Seconds to wait for a graceful exit before killing

    Returns:
        Pids that were stopped. Enumeration and kill failures are logged and
        swallowed.
    """
    own_pid = os.getpid() if own_pid is None else own_pid

    try:
        snapshot = list_processes() if processes is None else list(processes)
    except Exception as e:
        logger.warning(f"Failed to enumerate processes for orphan cleanup: {e}")
        return []

    stopping = {}
    for pid in find_orphans(snapshot, own_pid):
        logger.info(f"Stopping orphaned supervisor process (PID {pid})...")
        try:
            proc = psutil.Process(pid)
            # Children must be listed before the parent exits and they are reparented
            children = proc.children(recursive=True)
            proc.terminate()
            stopping[pid] = (proc, children)
        except psutil.NoSuchProcess:
            logger.debug(f"Orphaned supervisor {pid} already exited")
        except Exception as e:
            logger.warning(f"Failed to stop orphaned supervisor {pid}: {e}")

    if not stopping:
        return []

    try:
        _, alive = psutil.wait_procs([proc for proc, _ in stopping.values()], timeout=timeout)
    except Exception as e:
        logger.warning(f"Failed to wait for orphaned supervisors: {e}")
        alive = [proc for proc, _ in stopping.values()]

    alive_pids = {proc.pid for proc in alive}
    for pid, (proc, children) in stopping.items():
        if pid in alive_pids:
            logger.warning(f"Orphaned supervisor {pid} ignored SIGTERM, killing it")
            try:
                _kill_tree(proc, children)
            except Exception as e:
                logger.warning(f"Failed to kill orphaned supervisor {pid}: {e}")
            continue
        # Exited cleanly; anything it left running is killed too
        for child in children:
            try:
                if child.is_running():
                    child.kill()
            except psutil.NoSuchProcess:
                pass
            except Exception as e:
                logger.warning(f"Failed to kill child process {child.pid}: {e}")

    return list(stopping)


__all__ = [
    "ProcessInfo",
    "list_processes",
    "find_orphans",
    "reap_orphans",
    "SUPERVISOR_SIGNATURE",
    "TERMINATE_WAIT_SECONDS",
]
