"""Command-line interface for caiconnect.

Commands:
- connect: Start an SSH endpoint for a project and point `ssh cml` at it
- reconnect: Repeat the last successful connect
- disconnect: Stop the endpoint and the project's remote sessions
- status: Show the running endpoint
- logs: Show the endpoint host log
- cleanup: Kill leftover endpoint hosts
- login: Log cdswctl in to the configured CML instance
- config: Show or change configuration
"""

import logging
import sys
from dataclasses import asdict

import click
from rich.console import Console
from rich.table import Table

from caiconnect import __version__
from caiconnect.cdswctl import qualify_project
from caiconnect.config_manager import ConfigError, ConfigManager, ConnectorConfig
from caiconnect.endpoint.controller import ControllerError
from caiconnect.endpoint.state_channel import SessionStatus
from caiconnect.session_manager import (
    ConnectParams,
    SessionContext,
    SessionError,
    connect,
    disconnect,
    open_remote_window,
    reconnect,
    resolve_and_login,
)

logger = logging.getLogger(__name__)


def _load_config(click_ctx: click.Context) -> ConnectorConfig:
    try:
        return ConfigManager.load_config(click_ctx.obj.get("config_path"))
    except ConfigError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)


def _confirm(question: str) -> bool:
    return click.confirm(question, default=True)


def _report_connected(session_ctx: SessionContext, no_open: bool) -> None:
    alias = session_ctx.config.ssh_alias
    click.echo(f"Connected. Use 'ssh {alias}' or the '{alias}' host in VS Code Remote-SSH.")
    if not no_open:
        open_remote_window(alias, session_ctx.config.remote_path)


@click.group(context_settings={"help_option_names": ["--help", "-h"]})
@click.option("--verbose", "-v", is_flag=True, help="Show debug output")
@click.option("--config", "config_path", help="Config file path", type=click.Path())
@click.version_option(version=__version__)
@click.pass_context
def main(ctx: click.Context, verbose: bool, config_path: str | None) -> None:
    """caiconnect - Remote-SSH sessions on Cloudera AI.

    Starts `cdswctl ssh-endpoint` in a detached host process, waits for the
    forwarded port and maintains a `Host cml` entry in ~/.ssh/config.

    \b
    CONFIGURATION:
        Config file: ~/.caiconnect/config.toml (or $CAICONNECT_HOME/config.toml)
        API key:     CML_API_KEY environment variable
    """
    logging.basicConfig(level=logging.DEBUG if verbose else logging.INFO, format="%(message)s")
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = config_path


@main.command(name="connect")
@click.argument("project", type=str)
@click.option("--runtime-id", "-r", required=True, type=int, help="ML runtime ID")
@click.option("--cpus", "-c", type=int, help="vCPUs (default from config)")
@click.option("--memory", "-m", "memory_gb", type=int, help="Memory in GB (default from config)")
@click.option("--gpus", "-g", type=int, help="GPUs (default from config)")
@click.option("--addon-id", type=int, help="Runtime add-on ID (e.g. Spark)")
@click.option(
    "--stop-sessions",
    type=click.Choice(["prompt", "always", "never"]),
    help="Stop running sessions in the project first (default from config)",
)
@click.option("--no-open", is_flag=True, help="Do not open a VS Code window")
@click.pass_context
def connect_command(
    ctx: click.Context,
    project: str,
    runtime_id: int,
    cpus: int | None,
    memory_gb: int | None,
    gpus: int | None,
    addon_id: int | None,
    stop_sessions: str | None,
    no_open: bool,
) -> None:
    """Start an SSH endpoint for PROJECT.

    PROJECT is `owner/project` or just `project` for your own projects.

    \b
    Examples:
        caiconnect connect my-project -r 42
        caiconnect connect alice/shared -r 42 -c 4 -m 16 --stop-sessions never
    """
    config = _load_config(ctx)
    session_ctx = SessionContext.create(config)
    try:
        cdswctl_path = resolve_and_login(session_ctx)
        params = ConnectParams(
            project=qualify_project(project),
            runtime_id=runtime_id,
            cpus=cpus if cpus is not None else config.default_cpus,
            memory_gb=memory_gb if memory_gb is not None else config.default_memory_gb,
            gpus=gpus if gpus is not None else config.default_gpus,
            addon_id=addon_id,
            cdswctl_path=cdswctl_path,
            stop_sessions=stop_sessions or config.stop_sessions,
        )
        click.echo(f"Connecting to {params.project}...")
        connect(session_ctx, params, confirm=_confirm)
    except SessionError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)

    _report_connected(session_ctx, no_open)


@main.command(name="reconnect")
@click.option("--no-open", is_flag=True, help="Do not open a VS Code window")
@click.pass_context
def reconnect_command(ctx: click.Context, no_open: bool) -> None:
    """Reconnect using the last session's settings."""
    config = _load_config(ctx)
    session_ctx = SessionContext.create(config)
    try:
        cdswctl_path = resolve_and_login(session_ctx)
        reconnect(session_ctx, cdswctl_path, confirm=_confirm)
    except SessionError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)

    _report_connected(session_ctx, no_open)


@main.command(name="disconnect")
@click.pass_context
def disconnect_command(ctx: click.Context) -> None:
    """Stop the endpoint and the project's remote sessions."""
    config = _load_config(ctx)
    disconnect(SessionContext.create(config))
    click.echo("Disconnected.")


@main.command(name="status")
@click.pass_context
def status_command(ctx: click.Context) -> None:
    """Show the running endpoint, if any."""
    config = _load_config(ctx)
    session_ctx = SessionContext.create(config)
    controller = session_ctx.controller

    state = controller.active_endpoint()
    if state is None:
        last = controller.read_state()
        if last is not None and last.status is SessionStatus.ERROR:
            click.echo(f"No active endpoint. Last error: {last.message}")
        elif last is not None and last.status is SessionStatus.STARTING:
            click.echo("Endpoint is starting...")
        else:
            click.echo("No active endpoint.")
        return

    table = Table(title="SSH Endpoint", show_header=True, header_style="bold")
    table.add_column("Field", style="cyan")
    table.add_column("Value")
    table.add_row("Status", state.status.value)
    table.add_row("Project", session_ctx.recorded_project() or "-")
    table.add_row("SSH", f"ssh {config.ssh_alias}")
    table.add_row("Endpoint", f"{state.user_and_host}:{state.port}")
    table.add_row("Host PID", str(state.supervisor_pid or "-"))
    table.add_row("cdswctl PID", str(state.endpoint_pid or "-"))
    table.add_row("Since", state.timestamp or "-")
    Console().print(table)


@main.command(name="logs")
@click.option("--lines", "-n", default=50, show_default=True, type=int, help="Lines to show")
@click.pass_context
def logs_command(ctx: click.Context, lines: int) -> None:
    """Show the endpoint host log."""
    config = _load_config(ctx)
    controller = SessionContext.create(config).controller
    try:
        for line in controller.read_log(lines):
            click.echo(line)
    except ControllerError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)


@main.command(name="cleanup")
@click.pass_context
def cleanup_command(ctx: click.Context) -> None:
    """Stop the current endpoint host and kill orphaned ones."""
    config = _load_config(ctx)
    reaped = SessionContext.create(config).controller.cleanup_existing()
    if reaped:
        click.echo(f"Killed {len(reaped)} orphaned endpoint host(s): {', '.join(map(str, reaped))}")
    else:
        click.echo("No orphaned endpoint hosts found.")


@main.command(name="login")
@click.pass_context
def login_command(ctx: click.Context) -> None:
    """Log cdswctl in using cml_url and CML_API_KEY."""
    config = _load_config(ctx)
    if not config.cml_url:
        click.echo("Error: cml_url is not set. Run: caiconnect config set cml_url <url>", err=True)
        sys.exit(1)
    try:
        resolve_and_login(SessionContext.create(config))
    except SessionError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)
    click.echo(f"Logged in to {config.cml_url}")


@main.group(name="config")
def config_group() -> None:
    """Show or change configuration."""


@config_group.command(name="show")
@click.pass_context
def config_show(ctx: click.Context) -> None:
    """Show the effective configuration."""
    config = _load_config(ctx)
    table = Table(title=str(ConfigManager.get_config_path(ctx.obj.get("config_path"))))
    table.add_column("Key", style="cyan")
    table.add_column("Value")
    for key, value in asdict(config).items():
        table.add_row(key, "-" if value is None else str(value))
    Console().print(table)


@config_group.command(name="set")
@click.argument("key", type=str)
@click.argument("value", type=str)
@click.pass_context
def config_set(ctx: click.Context, key: str, value: str) -> None:
    """Set KEY to VALUE (an empty VALUE unsets optional keys).

    \b
    Examples:
        caiconnect config set cml_url https://ml.example.com
        caiconnect config set idle_timeout_minutes 0
    """
    try:
        ConfigManager.set_value(key, value, ctx.obj.get("config_path"))
    except ConfigError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)
    click.echo(f"Set {key} = {value}")


__all__ = ["main"]
