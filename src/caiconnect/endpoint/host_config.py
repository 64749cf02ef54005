"""Supervisor launch payload.

The controller writes one of these per connect attempt and hands its path to
the supervisor as the only command line argument. It is never modified after
the supervisor starts.
"""

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)


class SupervisorConfigError(Exception):
    """Raised when the supervisor config cannot be read or written."""

    pass


@dataclass(frozen=True)
class SupervisorConfig:
    """Everything a supervisor needs to run one session."""

    cdswctl_path: str
    args: list[str] = field(default_factory=list)
    state_path: str = ""
    log_path: str = ""
    project: str = ""
    idle_timeout_minutes: float = 0

    def __post_init__(self):
        if not self.cdswctl_path:
            raise SupervisorConfigError("cdswctl_path is required")
        if not self.state_path or not self.log_path:
            raise SupervisorConfigError("state_path and log_path are required")
        if self.idle_timeout_minutes < 0:
            raise SupervisorConfigError("idle_timeout_minutes must be >= 0")

    def to_dict(self) -> dict[str, Any]:
        return {
            "cdswctlPath": self.cdswctl_path,
            "args": list(self.args),
            "statePath": self.state_path,
            "logPath": self.log_path,
            "project": self.project,
            "idleTimeoutMinutes": self.idle_timeout_minutes,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "SupervisorConfig":
        try:
            return cls(
                cdswctl_path=data["cdswctlPath"],
                args=[str(arg) for arg in data.get("args", [])],
                state_path=data["statePath"],
                log_path=data["logPath"],
                project=data.get("project", ""),
                idle_timeout_minutes=data.get("idleTimeoutMinutes", 0) or 0,
            )
        except (KeyError, TypeError) as e:
            raise SupervisorConfigError(f"Invalid supervisor config: {e}") from e

    def save(self, path: Path) -> None:
        """Write the payload as JSON."""
        path = Path(path)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(json.dumps(self.to_dict(), indent=2), encoding="utf-8")
        except OSError as e:
            raise SupervisorConfigError(f"Failed to write supervisor config: {e}") from e
        logger.debug(f"Supervisor config written to {path}")

    @classmethod
    def load(cls, path: Path) -> "SupervisorConfig":
        """Read the payload written by `save`."""
        try:
            data = json.loads(Path(path).read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            raise SupervisorConfigError(f"Failed to read supervisor config {path}: {e}") from e
        return cls.from_dict(data)


__all__ = ["SupervisorConfig", "SupervisorConfigError"]
