"""State Channel - Supervisor status shared through a polled JSON file.

Philosophy:
- Ruthless simplicity: One JSON object, rewritten whole on every change
- Single writer: Only the supervisor writes, controllers only read
- Crash resilient: The last terminal state survives the process that wrote it

The file is replaced atomically (temp file + rename), but readers still treat
anything that does not parse as "not yet available" and retry on the next
poll tick. A torn read can therefore hide an `error` state for up to one poll
interval.

Public API (Studs):
    SessionStatus - starting / ready / error
    SessionState - The persisted record
    write_state - Overwrite the state file
    read_state - Read the state file, None if unavailable
    clear_state - Remove the state file
    reset_state - Truncate the state file before a launch
    wait_for_ready - Poll until a terminal state or timeout
    StateChannelError - Invalid records and I/O failures
    EndpointFailedError - Supervisor reported an error state
    ReadinessWaitTimeout - No terminal state within the wait bound
"""

import json
import logging
import os
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, Optional

from caiconnect.endpoint.process_utils import utc_timestamp

logger = logging.getLogger(__name__)

POLL_INTERVAL_SECONDS = 0.5
READY_TIMEOUT_SECONDS = 60.0

# Python attribute -> JSON key
_FIELD_KEYS = {
    "status": "status",
    "message": "message",
    "ssh_command": "sshCommand",
    "user_and_host": "userAndHost",
    "port": "port",
    "supervisor_pid": "supervisorProcessId",
    "endpoint_pid": "endpointProcessId",
    "timestamp": "timestamp",
}


class StateChannelError(Exception):
    """Raised when a state record is invalid or cannot be written."""

    pass


class EndpointFailedError(StateChannelError):
    """Raised when the supervisor wrote an `error` state."""

    def __init__(self, state: "SessionState"):
        self.state = state
        super().__init__(state.message or "Endpoint host reported an error.")


class ReadinessWaitTimeout(StateChannelError):
    """Raised when no terminal state appeared within the wait bound."""

    pass


class SessionStatus(str, Enum):
    """Supervisor status values."""

    STARTING = "starting"
    READY = "ready"
    ERROR = "error"

    @property
    def is_terminal(self) -> bool:
        return self is not SessionStatus.STARTING


@dataclass
class SessionState:
    """The single record persisted to the state file."""

    status: SessionStatus
    message: Optional[str] = None
    ssh_command: Optional[str] = None
    user_and_host: Optional[str] = None
    port: Optional[str] = None
    supervisor_pid: Optional[int] = None
    endpoint_pid: Optional[int] = None
    timestamp: str = field(default_factory=utc_timestamp)

    def __post_init__(self):
        try:
            self.status = SessionStatus(self.status)
        except ValueError as e:
            raise StateChannelError(f"Unknown session status: {self.status!r}") from e
        if self.status is SessionStatus.READY and not (self.port and self.user_and_host):
            raise StateChannelError("A ready state requires both port and userAndHost")

    def to_dict(self) -> Dict[str, Any]:
        """Convert to the JSON shape, omitting unset fields."""
        data: Dict[str, Any] = {}
        for attr, key in _FIELD_KEYS.items():
            value = getattr(self, attr)
            if value is None:
                continue
            data[key] = value.value if isinstance(value, SessionStatus) else value
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SessionState":
        """Create from the JSON shape.

        Raises:
            StateChannelError: If the record is not a valid state
        """
        if not isinstance(data, dict) or "status" not in data:
            raise StateChannelError("State record has no status")
        kwargs = {attr: data[key] for attr, key in _FIELD_KEYS.items() if data.get(key) is not None}
        if "port" in kwargs:
            kwargs["port"] = str(kwargs["port"])
        for attr in ("supervisor_pid", "endpoint_pid"):
            if attr not in kwargs:
                continue
            try:
                kwargs[attr] = int(kwargs[attr])
            except (TypeError, ValueError) as e:
                raise StateChannelError(f"Invalid {_FIELD_KEYS[attr]}: {kwargs[attr]!r}") from e
        return cls(**kwargs)


def write_state(state_path: Path, state: SessionState) -> None:
    """Overwrite the state file with a single record.

    The record is written to a sibling temp file and renamed over the target,
    so the file is never appended to or patched in place.

    Raises:
        StateChannelError: If the file cannot be written
    """
    state_path = Path(state_path)
    temp_path = state_path.with_name(f".{state_path.name}.{os.getpid()}.tmp")
    try:
        state_path.parent.mkdir(parents=True, exist_ok=True)
        temp_path.write_text(json.dumps(state.to_dict(), indent=2), encoding="utf-8")
        os.replace(temp_path, state_path)
    except OSError as e:
        if temp_path.exists():
            temp_path.unlink()
        raise StateChannelError(f"Failed to write state file {state_path}: {e}") from e


def read_state(state_path: Path) -> Optional[SessionState]:
    """Read the current state record.

    Returns:
        SessionState, or None when the file is missing, empty or unparsable
    """
    try:
        raw = Path(state_path).read_text(encoding="utf-8").strip()
    except FileNotFoundError:
        return None
    except (OSError, UnicodeDecodeError) as e:
        logger.debug(f"Failed to read state file {state_path}: {e}")
        return None

    if not raw:
        return None

    try:
        return SessionState.from_dict(json.loads(raw))
    except (json.JSONDecodeError, StateChannelError, TypeError) as e:
        logger.debug(f"Ignoring unparsable state file {state_path}: {e}")
        return None


def clear_state(state_path: Path) -> None:
    """Remove the state file if present."""
    try:
        Path(state_path).unlink(missing_ok=True)
    except OSError as e:
        logger.debug(f"Failed to remove state file {state_path}: {e}")


def reset_state(state_path: Path) -> None:
    """Create an empty state file so a stale record is never read.

    Raises:
        StateChannelError: If the file cannot be written
    """
    state_path = Path(state_path)
    try:
        state_path.parent.mkdir(parents=True, exist_ok=True)
        state_path.write_text("", encoding="utf-8")
    except OSError as e:
        raise StateChannelError(f"Failed to reset state file {state_path}: {e}") from e


def wait_for_ready(
    state_path: Path,
    timeout: float = READY_TIMEOUT_SECONDS,
    poll_interval: float = POLL_INTERVAL_SECONDS,
    sleep: Callable[[float], None] = time.sleep,
    clock: Callable[[], float] = time.monotonic,
) -> SessionState:
    """Poll the state file until the supervisor reaches a terminal status.

    Read-only: the state file is never modified here.

    Args:
        state_path: State file written by the supervisor
        timeout: Maximum seconds to wait
        poll_interval: Seconds between reads

    Returns:
        The `ready` SessionState

    Raises:
        EndpointFailedError: If the supervisor wrote an `error` state
        ReadinessWaitTimeout: If no terminal state appeared in time
    """
    started = clock()
    while clock() - started < timeout:
        state = read_state(state_path)
        if state is not None:
            if state.status is SessionStatus.READY:
                return state
            if state.status is SessionStatus.ERROR:
                raise EndpointFailedError(state)
        sleep(poll_interval)

    raise ReadinessWaitTimeout(f"Timed out waiting for SSH endpoint after {timeout:g} seconds.")


__all__ = [
    "SessionStatus",
    "SessionState",
    "write_state",
    "read_state",
    "clear_state",
    "reset_state",
    "wait_for_ready",
    "StateChannelError",
    "EndpointFailedError",
    "ReadinessWaitTimeout",
    "POLL_INTERVAL_SECONDS",
    "READY_TIMEOUT_SECONDS",
]
