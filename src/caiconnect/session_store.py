"""Last session store for reconnect.

Remembers the parameters of the last successful connect in
<data dir>/last_session.toml so `caiconnect reconnect` can recreate it.
"""

import logging
import os
from dataclasses import asdict, dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

try:
    import tomli  # type: ignore[import]
except ImportError:
    try:
        import tomllib as tomli  # type: ignore[import]
    except ImportError as e:
        raise ImportError("toml library not available. Install with: pip install tomli") from e

try:
    import tomli_w
except ImportError as e:
    raise ImportError("tomli-w library not available. Install with: pip install tomli-w") from e

logger = logging.getLogger(__name__)

SESSION_FILE = "last_session.toml"


class SessionStoreError(Exception):
    """Raised when the last session cannot be saved."""

    pass


@dataclass
class LastSession:
    """Parameters of the last successful connect."""

    project: str
    runtime_id: int
    cpus: int
    memory_gb: int
    gpus: int = 0
    addon_id: int | None = None
    timestamp: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {k: v for k, v in asdict(self).items() if v is not None}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "LastSession":
        return cls(
            project=data["project"],
            runtime_id=int(data["runtime_id"]),
            cpus=int(data["cpus"]),
            memory_gb=int(data["memory_gb"]),
            gpus=int(data.get("gpus", 0)),
            addon_id=int(data["addon_id"]) if data.get("addon_id") is not None else None,
            timestamp=data.get("timestamp", ""),
        )


class SessionStore:
    """Persist the last session in a TOML file."""

    def __init__(self, directory: Path):
        self.path = Path(directory) / SESSION_FILE

    def save(self, session: LastSession) -> None:
        """Save atomically with secure permissions.

        Raises:
            SessionStoreError: If the file cannot be written
        """
        if not session.timestamp:
            session.timestamp = datetime.now(UTC).isoformat()

        temp_path = self.path.with_suffix(".tmp")
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with open(temp_path, "wb") as f:
                tomli_w.dump(session.to_dict(), f)
            os.chmod(temp_path, 0o600)
            temp_path.replace(self.path)
        except Exception as e:
            if temp_path.exists():
                temp_path.unlink()
            raise SessionStoreError(f"Failed to save last session: {e}") from e

    def load(self) -> LastSession | None:
        """Last session, or None if missing or unreadable."""
        if not self.path.exists():
            return None
        try:
            with open(self.path, "rb") as f:
                return LastSession.from_dict(tomli.load(f))
        except Exception as e:
            logger.warning(f"Failed to load last session: {e}")
            return None

    def clear(self) -> None:
        self.path.unlink(missing_ok=True)


__all__ = ["LastSession", "SessionStore", "SessionStoreError", "SESSION_FILE"]
