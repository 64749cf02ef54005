"""Endpoint Controller - Controller-side supervisor management.

Philosophy:
- Ruthless simplicity: Launch, poll, kill. No sockets, no waiting on children
- Single responsibility: Supervisor lifecycle as seen from the controller
- Read-only channel: The controller never writes a state record, it only
  resets or removes the file

Public API (Studs):
    EndpointController - Launch / wait / stop / cleanup interface
    ControllerError - Supervisor control errors
"""

import logging
import subprocess
import sys
from collections import deque
from pathlib import Path
from typing import List, Optional

from caiconnect.endpoint.host_config import SupervisorConfig, SupervisorConfigError
from caiconnect.endpoint.orphan_reaper import SUPERVISOR_SIGNATURE, reap_orphans
from caiconnect.endpoint.process_utils import (
    detached_popen_kwargs,
    is_process_alive,
    safe_kill,
)
from caiconnect.endpoint.state_channel import (
    POLL_INTERVAL_SECONDS,
    READY_TIMEOUT_SECONDS,
    SessionState,
    SessionStatus,
    StateChannelError,
    clear_state,
    read_state,
    reset_state,
    wait_for_ready,
)

logger = logging.getLogger(__name__)

STATE_FILE = "endpoint_state.json"
LOG_FILE = "endpoint_host.log"
CONFIG_FILE = "endpoint_host_config.json"


class ControllerError(Exception):
    """Raised when supervisor control operations fail."""

    pass


class EndpointController:
    """Control interface for the detached session supervisor.

    Example:
        >>> controller = EndpointController(Path("~/.caiconnect").expanduser())
        >>> controller.cleanup_existing()
        >>> controller.start_supervisor(config)
        >>> state = controller.wait_for_ready()
    """

    def __init__(self, data_dir: Path):
        """Initialize controller.

        Args:
            data_dir: Directory holding the state, log and supervisor config files
        """
        self.data_dir = Path(data_dir)
        self.state_path = self.data_dir / STATE_FILE
        self.log_path = self.data_dir / LOG_FILE
        self.config_path = self.data_dir / CONFIG_FILE

    def build_config(
        self, cdswctl_path: str, args: List[str], project: str, idle_timeout_minutes: float
    ) -> SupervisorConfig:
        """SupervisorConfig pointing at this controller's files."""
        return SupervisorConfig(
            cdswctl_path=cdswctl_path,
            args=list(args),
            state_path=str(self.state_path),
            log_path=str(self.log_path),
            project=project,
            idle_timeout_minutes=idle_timeout_minutes,
        )

    def supervisor_command(self) -> List[str]:
        return [sys.executable, "-m", SUPERVISOR_SIGNATURE, str(self.config_path)]

    def start_supervisor(self, config: SupervisorConfig) -> int:
        """Launch a detached supervisor for one session.

        The state file is emptied first so a record left by an earlier session
        is never mistaken for this one. The supervisor is not waited on.

        Returns:
            Supervisor pid

        Raises:
            ControllerError: If the files cannot be prepared or the launch fails
        """
        logger.info(f"Idle timeout: {config.idle_timeout_minutes:g} min (0 = disabled)")
        try:
            reset_state(self.state_path)
            self.log_path.parent.mkdir(parents=True, exist_ok=True)
            self.log_path.write_text("", encoding="utf-8")
            config.save(self.config_path)

            process = subprocess.Popen(self.supervisor_command(), **detached_popen_kwargs())
        except (OSError, StateChannelError, SupervisorConfigError) as e:
            raise ControllerError(f"Failed to start endpoint host: {e}") from e

        logger.info(f"Endpoint host started (PID {process.pid})")
        return process.pid

    def wait_for_ready(
        self,
        timeout: float = READY_TIMEOUT_SECONDS,
        poll_interval: float = POLL_INTERVAL_SECONDS,
    ) -> SessionState:
        """Block until the supervisor reports ready.

        Raises:
            EndpointFailedError: If the supervisor wrote an error state
            ReadinessWaitTimeout: If no terminal state appeared in time
        """
        return wait_for_ready(self.state_path, timeout=timeout, poll_interval=poll_interval)

    def read_state(self) -> Optional[SessionState]:
        return read_state(self.state_path)

    def stop_supervisor(self) -> bool:
        """Kill the recorded supervisor and endpoint processes.

        Returns:
            True if a state file was found, False if there was nothing to stop
        """
        if not self.state_path.exists():
            logger.info("No endpoint state file found. Nothing to stop.")
            return False

        state = read_state(self.state_path)
        if state is not None:
            if state.supervisor_pid:
                logger.info(f"Killing supervisor process (PID {state.supervisor_pid})...")
                safe_kill(state.supervisor_pid)
            if state.endpoint_pid:
                logger.info(f"Killing endpoint process (PID {state.endpoint_pid})...")
                safe_kill(state.endpoint_pid)

        clear_state(self.state_path)
        return True

    def cleanup_existing(self) -> List[int]:
        """Stop a previous session and reap orphaned supervisors.

        Best effort: never raises.

        Returns:
            Pids of orphaned supervisors that were killed
        """
        if self.state_path.exists():
            existing = read_state(self.state_path)
            if existing and is_process_alive(existing.supervisor_pid):
                logger.info("Cleaning up existing endpoint before reconnecting...")
                self.stop_supervisor()
            else:
                clear_state(self.state_path)
        return reap_orphans()

    def active_endpoint(self) -> Optional[SessionState]:
        """Ready state of a supervisor that is still running.

        A ready record whose supervisor died is stale and gets removed.
        """
        state = read_state(self.state_path)
        if state is None or state.status is not SessionStatus.READY:
            return None
        if not is_process_alive(state.supervisor_pid):
            logger.debug("Removing stale endpoint state file")
            clear_state(self.state_path)
            return None
        return state

    def read_log(self, lines: int = 50) -> List[str]:
        """Last lines of the supervisor log.

        Raises:
            ControllerError: If the log file doesn't exist
        """
        if not self.log_path.exists():
            raise ControllerError(f"Log file not found: {self.log_path}")
        with open(self.log_path, encoding="utf-8", errors="replace") as f:
            return [line.rstrip("\n") for line in deque(f, maxlen=lines)]


__all__ = [
    "EndpointController",
    "ControllerError",
    "STATE_FILE",
    "LOG_FILE",
    "CONFIG_FILE",
]
