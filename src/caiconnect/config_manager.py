"""Configuration management module.

This module handles persistent configuration storage using TOML format.
Stores the CML instance URL, the cdswctl location, default resources and
session behaviour (idle timeout, SSH alias, session cleanup policy).

Security:
- Config directory permissions: 0700
- Config file permissions: 0600 (owner read/write only)
- Atomic writes via temp file + rename
"""

import logging
import os
from dataclasses import asdict, dataclass, fields
from pathlib import Path
from typing import Any

try:
    import tomli  # type: ignore[import]
except ImportError:
    # Fallback for Python versions that ship tomllib
    try:
        import tomllib as tomli  # type: ignore[import]
    except ImportError as e:
        raise ImportError("toml library not available. Install with: pip install tomli") from e

try:
    import tomlkit
except ImportError as e:
    raise ImportError("tomlkit library not available. Install with: pip install tomlkit") from e

logger = logging.getLogger(__name__)

HOME_ENV_VAR = "CAICONNECT_HOME"
STOP_SESSION_POLICIES = ["prompt", "always", "never"]


class ConfigError(Exception):
    """Raised when configuration operations fail."""

    pass


def data_dir() -> Path:
    """Directory for config, state and log files (~/.caiconnect by default)."""
    override = os.environ.get(HOME_ENV_VAR)
    if override:
        return Path(override).expanduser()
    return Path.home() / ".caiconnect"


@dataclass
class ConnectorConfig:
    """caiconnect configuration data."""

    cml_url: str | None = None
    cdswctl_path: str | None = None
    default_cpus: int = 2
    default_memory_gb: int = 4
    default_gpus: int = 0
    idle_timeout_minutes: int = 5  # 0 disables the idle monitor
    ready_timeout_seconds: int = 60
    ssh_alias: str = "cml"
    ssh_user: str = "cdsw"
    remote_path: str = "/home/cdsw"
    stop_sessions: str = "prompt"

    def __post_init__(self):
        if self.stop_sessions not in STOP_SESSION_POLICIES:
            raise ConfigError(
                f"Invalid stop_sessions policy: {self.stop_sessions}. "
                f"Must be one of: {', '.join(STOP_SESSION_POLICIES)}"
            )
        if self.default_cpus < 1:
            raise ConfigError("default_cpus must be >= 1")
        if self.default_memory_gb < 1:
            raise ConfigError("default_memory_gb must be >= 1")
        if self.default_gpus < 0:
            raise ConfigError("default_gpus cannot be negative")
        if self.idle_timeout_minutes < 0:
            raise ConfigError("idle_timeout_minutes cannot be negative")
        if self.ready_timeout_seconds < 1:
            raise ConfigError("ready_timeout_seconds must be >= 1")

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary, excluding None values."""
        # TOML has no null
        return {k: v for k, v in asdict(self).items() if v is not None}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ConnectorConfig":
        """Create from dictionary, ignoring unknown keys."""
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known})


class ConfigManager:
    """Manage the caiconnect configuration file.

    Configuration is stored at ~/.caiconnect/config.toml with secure permissions.
    """

    CONFIG_FILE_NAME = "config.toml"

    @classmethod
    def get_config_path(cls, custom_path: str | None = None) -> Path:
        """Configuration file path (custom path or <data dir>/config.toml)."""
        if custom_path:
            return Path(custom_path).expanduser()
        return data_dir() / cls.CONFIG_FILE_NAME

    @classmethod
    def ensure_config_dir(cls, config_path: Path) -> Path:
        """Ensure the config directory exists with secure permissions."""
        try:
            config_path.parent.mkdir(parents=True, exist_ok=True)
            os.chmod(config_path.parent, 0o700)
            return config_path.parent
        except Exception as e:
            raise ConfigError(f"Failed to create config directory: {e}") from e

    @classmethod
    def load_config(cls, custom_path: str | None = None) -> ConnectorConfig:
        """Load configuration from file, defaults if it does not exist.

        Raises:
            ConfigError: If the file exists but cannot be parsed
        """
        config_path = cls.get_config_path(custom_path)

        if not config_path.exists():
            logger.debug("Config file not found, using defaults")
            return ConnectorConfig()

        try:
            mode = config_path.stat().st_mode & 0o777
            if os.name != "nt" and mode & 0o077:
                logger.warning(
                    f"Config file has insecure permissions: {oct(mode)}. Fixing to 0600..."
                )
                os.chmod(config_path, 0o600)

            with open(config_path, "rb") as f:
                data = tomli.load(f)

            logger.debug(f"Loaded config from: {config_path}")
            return ConnectorConfig.from_dict(data)

        except ConfigError:
            raise
        except Exception as e:
            raise ConfigError(f"Failed to load config: {e}") from e

    @classmethod
    def save_config(cls, config: ConnectorConfig, custom_path: str | None = None) -> None:
        """Save configuration, preserving comments in an existing file.

        Raises:
            ConfigError: If saving fails
        """
        config_path = cls.get_config_path(custom_path)
        temp_path = config_path.with_suffix(".tmp")
        try:
            cls.ensure_config_dir(config_path)

            if config_path.exists():
                with open(config_path) as f:
                    doc = tomlkit.load(f)
            else:
                doc = tomlkit.document()

            config_dict = config.to_dict()
            for key in list(doc.keys()):
                if key not in config_dict:
                    del doc[key]
            for key, value in config_dict.items():
                doc[key] = value

            with open(temp_path, "w") as f:
                tomlkit.dump(doc, f)

            os.chmod(temp_path, 0o600)
            temp_path.replace(config_path)

            logger.debug(f"Saved config to: {config_path}")

        except Exception as e:
            if temp_path.exists():
                temp_path.unlink()
            raise ConfigError(f"Failed to save config: {e}") from e

    @classmethod
    def set_value(cls, key: str, value: str, custom_path: str | None = None) -> ConnectorConfig:
        """Set one configuration key from its string form.

        Raises:
            ConfigError: If the key is unknown or the value invalid
        """
        types = {f.name: f.type for f in fields(ConnectorConfig)}
        if key not in types:
            raise ConfigError(f"Unknown config key: {key}. Valid keys: {', '.join(sorted(types))}")

        current = cls.load_config(custom_path).to_dict()
        field_type = types[key]
        if field_type is int:
            try:
                current[key] = int(value)
            except ValueError as e:
                raise ConfigError(f"{key} must be an integer (got {value!r})") from e
        elif value == "" and field_type is not str:
            # Optional keys are unset by an empty value
            current.pop(key, None)
        else:
            current[key] = value

        config = ConnectorConfig.from_dict(current)
        cls.save_config(config, custom_path)
        return config


__all__ = ["ConfigError", "ConfigManager", "ConnectorConfig", "data_dir"]
