"""Session flows: connect, reconnect and disconnect.

This module is the controller side of a session. It ties together:
- cdswctl discovery and login
- Optional remote session cleanup
- Supervisor launch and readiness wait
- The SSH config block for the forwarded port
- Last-session persistence and Remote-SSH window launch

All flow state lives in an explicit SessionContext passed to every flow;
there is no module-level "active project".
"""

import logging
import os
import shutil
import subprocess
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable

from caiconnect.cdswctl import (
    CdswctlError,
    build_endpoint_args,
    current_username,
    find_cdswctl,
    login,
    stop_sessions,
)
from caiconnect.config_manager import ConnectorConfig, data_dir
from caiconnect.endpoint.controller import ControllerError, EndpointController
from caiconnect.endpoint.host_config import SupervisorConfig, SupervisorConfigError
from caiconnect.endpoint.state_channel import SessionState, StateChannelError
from caiconnect.session_store import LastSession, SessionStore, SessionStoreError
from caiconnect.ssh_config import SSHConfigError, upsert_host_block

logger = logging.getLogger(__name__)

API_KEY_ENV_VAR = "CML_API_KEY"

Confirm = Callable[[str], bool]


class SessionError(Exception):
    """Raised when a session flow cannot complete."""

    pass


@dataclass
class ConnectParams:
    """Everything needed to start one endpoint."""

    project: str
    runtime_id: int
    cpus: int
    memory_gb: int
    gpus: int = 0
    addon_id: int | None = None
    cdswctl_path: str = ""
    stop_sessions: str = "prompt"

    def endpoint_args(self) -> list[str]:
        return build_endpoint_args(
            self.project, self.runtime_id, self.cpus, self.memory_gb, self.gpus, self.addon_id
        )


@dataclass
class SessionContext:
    """Explicit state shared by the controller flows."""

    config: ConnectorConfig
    controller: EndpointController
    store: SessionStore
    ssh_config_path: Path | None = None
    active_project: str | None = None
    cdswctl_path: str | None = field(default=None, repr=False)

    @classmethod
    def create(cls, config: ConnectorConfig, directory: Path | None = None) -> "SessionContext":
        directory = directory or data_dir()
        return cls(
            config=config,
            controller=EndpointController(directory),
            store=SessionStore(directory),
        )

    def recorded_project(self) -> str | None:
        """Project of the last launched supervisor, from its config payload."""
        if not self.controller.config_path.exists():
            return None
        try:
            return SupervisorConfig.load(self.controller.config_path).project or None
        except SupervisorConfigError as e:
            logger.debug(f"No recorded project: {e}")
            return None


def resolve_and_login(ctx: SessionContext) -> str:
    """Locate cdswctl and log in when a CML URL is configured.

    Raises:
        SessionError: If cdswctl is missing or login fails
    """
    if ctx.cdswctl_path:
        return ctx.cdswctl_path
    try:
        path = find_cdswctl(ctx.config.cdswctl_path)
        if ctx.config.cml_url:
            login(path, ctx.config.cml_url, os.environ.get(API_KEY_ENV_VAR, ""))
        else:
            logger.debug("No cml_url configured, assuming cdswctl is already logged in")
    except CdswctlError as e:
        raise SessionError(str(e)) from e
    ctx.cdswctl_path = path
    return path


def _stop_remote_sessions(cdswctl_path: str, project: str) -> None:
    logger.info(f"Stopping existing SSH sessions in project {project}...")
    result = stop_sessions(cdswctl_path, project)
    if not result.ok:
        logger.warning(f"Failed to stop sessions in {project}: {result.stderr.strip()}")


def _handle_stop_sessions(params: ConnectParams, confirm: Confirm | None) -> None:
    if params.stop_sessions == "always":
        _stop_remote_sessions(params.cdswctl_path, params.project)
    elif params.stop_sessions == "prompt" and confirm is not None:
        if confirm(f"Stop all running sessions in {params.project}?"):
            _stop_remote_sessions(params.cdswctl_path, params.project)
        else:
            logger.info("Skipping session cleanup.")


def execute_connect(
    ctx: SessionContext, params: ConnectParams, confirm: Confirm | None = None
) -> SessionState:
    """Start an endpoint and point the SSH alias at it.

    On any failure after launch the endpoint is torn down again.

    Raises:
        SessionError: If the endpoint or the SSH config could not be set up
    """
    _handle_stop_sessions(params, confirm)

    args = params.endpoint_args()
    logger.info(f"Creating SSH endpoint: {params.cdswctl_path} {' '.join(args)}")
    supervisor_config = ctx.controller.build_config(
        params.cdswctl_path, args, params.project, ctx.config.idle_timeout_minutes
    )

    try:
        ctx.controller.start_supervisor(supervisor_config)
    except ControllerError as e:
        raise SessionError(str(e)) from e

    try:
        state = ctx.controller.wait_for_ready(timeout=ctx.config.ready_timeout_seconds)
    except StateChannelError as e:
        disconnect(ctx)
        raise SessionError(f"Failed to establish SSH endpoint: {e}") from e

    logger.info(f"SSH: {state.user_and_host}:{state.port}")

    try:
        updated = upsert_host_block(
            state.port,
            alias=ctx.config.ssh_alias,
            user=ctx.config.ssh_user,
            config_path=ctx.ssh_config_path,
        )
    except SSHConfigError as e:
        disconnect(ctx)
        raise SessionError(str(e)) from e

    if not updated:
        disconnect(ctx)
        raise SessionError("Failed to update SSH config.")

    return state


def connect(
    ctx: SessionContext, params: ConnectParams, confirm: Confirm | None = None
) -> SessionState:
    """Full connect: clean up old endpoints, start a new one, remember it."""
    ctx.controller.cleanup_existing()
    ctx.active_project = params.project

    state = execute_connect(ctx, params, confirm)

    try:
        ctx.store.save(
            LastSession(
                project=params.project,
                runtime_id=params.runtime_id,
                cpus=params.cpus,
                memory_gb=params.memory_gb,
                gpus=params.gpus,
                addon_id=params.addon_id,
            )
        )
    except SessionStoreError as e:
        logger.warning(str(e))
    return state


def reconnect(
    ctx: SessionContext, cdswctl_path: str, confirm: Confirm | None = None
) -> SessionState:
    """Recreate the last successful session.

    Remote sessions are stopped without asking when the project belongs to
    the current user.

    Raises:
        SessionError: If there is no previous session or connect fails
    """
    last = ctx.store.load()
    if last is None:
        raise SessionError("No previous session found.")

    owner = last.project.split("/")[0].lower()
    policy = "always" if owner == current_username() else "prompt"

    logger.info(f"Reconnecting to project {last.project}...")
    params = ConnectParams(
        project=last.project,
        runtime_id=last.runtime_id,
        cpus=last.cpus,
        memory_gb=last.memory_gb,
        gpus=last.gpus,
        addon_id=last.addon_id,
        cdswctl_path=cdswctl_path,
        stop_sessions=policy,
    )
    return connect(ctx, params, confirm)


def disconnect(ctx: SessionContext) -> None:
    """Stop the supervisor and the remote sessions of the active project."""
    project = ctx.active_project or ctx.recorded_project()

    logger.info("Stopping ssh-endpoint process...")
    ctx.controller.stop_supervisor()

    if project:
        try:
            cdswctl_path = resolve_and_login(ctx)
        except SessionError as e:
            logger.warning(f"Skipping remote session cleanup: {e}")
        else:
            _stop_remote_sessions(cdswctl_path, project)

    ctx.controller.config_path.unlink(missing_ok=True)
    ctx.active_project = None


def remote_uri(alias: str, remote_path: str) -> str:
    """VS Code Remote-SSH folder URI for an SSH alias."""
    if not remote_path.startswith("/"):
        remote_path = "/" + remote_path
    return f"vscode-remote://ssh-remote+{alias}{remote_path}"


def open_remote_window(alias: str, remote_path: str) -> bool:
    """Open a VS Code window on the remote folder.

    Returns:
        False if no VS Code CLI is on PATH or the launch failed
    """
    for code_cmd in ["code", "code-insiders"]:
        code_path = shutil.which(code_cmd)
        if code_path:
            break
    else:
        logger.info("VS Code CLI not found; open the 'cml' host in Remote-SSH manually")
        return False

    uri = remote_uri(alias, remote_path)
    try:
        subprocess.Popen(
            [code_path, "--new-window", "--folder-uri", uri],
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
        )
    except OSError as e:
        logger.warning(f"Failed to launch VS Code: {e}")
        return False
    logger.info(f"Remote-SSH window launched for {uri}")
    return True


__all__ = [
    "ConnectParams",
    "SessionContext",
    "SessionError",
    "resolve_and_login",
    "execute_connect",
    "connect",
    "reconnect",
    "disconnect",
    "remote_uri",
    "open_remote_window",
]
