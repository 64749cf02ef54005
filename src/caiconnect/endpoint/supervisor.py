"""Session Supervisor - Detached owner of the `cdswctl ssh-endpoint` process.

Philosophy:
- Ruthless simplicity: One asyncio loop multiplexes output, timers and signals
- Single responsibility: Own the endpoint process and report its status
- Always clean up: Every exit path kills the endpoint process

Run as:
    python -m caiconnect.endpoint.supervisor <supervisor-config.json>

Exit codes:
    0   graceful stop (signal), hard timeout or idle shutdown
    N   cdswctl's own exit code when it ends (1 if unknown)
    1   cdswctl could not be spawned, or the config could not be read

Public API (Studs):
    EndpointSupervisor - The supervisor event loop
    parse_readiness_marker - Extract port and user@host from a cdswctl line
    main - Process entry point
"""

import asyncio
import logging
import os
import re
import signal
import sys
from pathlib import Path
from typing import Callable, Optional, Tuple

from caiconnect.endpoint.host_config import SupervisorConfig, SupervisorConfigError
from caiconnect.endpoint.idle_monitor import (
    IDLE_POLL_INTERVAL_SECONDS,
    IdleMonitor,
    IdlePhase,
)
from caiconnect.endpoint.process_utils import hidden_spawn_kwargs
from caiconnect.endpoint.state_channel import (
    SessionState,
    SessionStatus,
    StateChannelError,
    write_state,
)

logger = logging.getLogger(__name__)

READINESS_PATTERN = re.compile(r"ssh\s+-p\s+(\d+)\s+(\S+)")
HARD_TIMEOUT_SECONDS = 10 * 60 * 60
STREAM_LIMIT = 1024 * 1024
KILL_WAIT_SECONDS = 5

PREMATURE_EXIT_MESSAGE = "cdswctl exited before SSH endpoint was ready."


def parse_readiness_marker(line: str) -> Optional[Tuple[str, str]]:
    """Return (port, user_and_host) if the line carries an `ssh -p` marker."""
    match = READINESS_PATTERN.search(line)
    if not match:
        return None
    return match.group(1), match.group(2)


class EndpointSupervisor:
    """Run one cdswctl ssh-endpoint session and publish its state.

    Example:
        >>> supervisor = EndpointSupervisor(SupervisorConfig.load(path))
        >>> exit_code = asyncio.run(supervisor.run())
    """

    def __init__(
        self,
        config: SupervisorConfig,
        hard_timeout: float = HARD_TIMEOUT_SECONDS,
        idle_poll_interval: float = IDLE_POLL_INTERVAL_SECONDS,
        connection_probe: Optional[Callable[[str], bool]] = None,
        handle_signals: bool = True,
    ):
        self.config = config
        self.state_path = Path(config.state_path)
        self.hard_timeout = hard_timeout
        self.idle_poll_interval = idle_poll_interval
        self.connection_probe = connection_probe
        self.handle_signals = handle_signals

        self.pid = os.getpid()
        self.process: Optional[asyncio.subprocess.Process] = None
        self.ready = False
        self.exit_code = 0
        self.idle_monitor: Optional[IdleMonitor] = None

        self._shutting_down = False
        self._stopped: Optional[asyncio.Event] = None
        self._timeout_handle: Optional[asyncio.TimerHandle] = None
        self._idle_task: Optional[asyncio.Task] = None
        self._signals: list = []
        self._fallback_signals: list = []

    @property
    def endpoint_pid(self) -> Optional[int]:
        return self.process.pid if self.process else None

    @property
    def timeout_message(self) -> str:
        return f"Session timed out after {self.hard_timeout / 3600:g} hours."

    def _write(self, status: SessionStatus, **fields) -> None:
        state = SessionState(
            status=status,
            supervisor_pid=self.pid,
            endpoint_pid=self.endpoint_pid,
            **fields,
        )
        try:
            write_state(self.state_path, state)
        except StateChannelError as e:
            logger.error(f"Failed to publish {status.value} state: {e}")

    def handle_line(self, line: str, is_error: bool = False) -> None:
        """Log one cdswctl output line and check it for the readiness marker."""
        prefix = "cdswctl err" if is_error else "cdswctl"
        logger.info(f"{prefix}: {line}")

        if self.ready or self._shutting_down:
            return

        marker = parse_readiness_marker(line)
        if marker is None:
            return

        port, user_and_host = marker
        self.ready = True
        self._write(
            SessionStatus.READY,
            ssh_command=f"ssh -p {port} {user_and_host}",
            user_and_host=user_and_host,
            port=port,
        )
        logger.info("Endpoint ready. Waiting for Remote-SSH to connect.")
        self._start_idle_monitor(port)

    async def _pump(self, stream: asyncio.StreamReader, is_error: bool) -> None:
        while True:
            try:
                raw = await stream.readline()
            except ValueError as e:
                logger.warning(f"Dropped oversized cdswctl output line: {e}")
                continue
            if not raw:
                return
            for line in raw.decode("utf-8", errors="replace").splitlines():
                line = line.rstrip()
                if line:
                    self.handle_line(line, is_error)

    async def _watch_endpoint(self) -> Optional[int]:
        await asyncio.gather(
            self._pump(self.process.stdout, False),
            self._pump(self.process.stderr, True),
        )
        return await self.process.wait()

    def _kill_endpoint(self) -> None:
        if self.process is None or self.process.returncode is not None:
            return
        try:
            self.process.kill()
        except ProcessLookupError:
            pass

    def _begin_shutdown(self, exit_code: int = 0) -> bool:
        """Mark the supervisor as stopping. Returns False if already stopping."""
        if self._shutting_down:
            return False
        self._shutting_down = True
        self.exit_code = exit_code
        if self._timeout_handle is not None:
            self._timeout_handle.cancel()
        return True

    def _on_hard_timeout(self) -> None:
        if not self._begin_shutdown(0):
            return
        logger.info(f"Supervisor reached {self.hard_timeout / 3600:g}-hour timeout. Stopping...")
        self._write(SessionStatus.ERROR, message=self.timeout_message)
        self._kill_endpoint()
        self._stopped.set()

    def _on_signal(self, signum: int) -> None:
        if not self._begin_shutdown(0):
            return
        logger.info(f"Supervisor received signal {signum}. Stopping endpoint...")
        self._kill_endpoint()
        self._stopped.set()

    def _start_idle_monitor(self, port: str) -> None:
        self.idle_monitor = IdleMonitor(
            port,
            self.config.idle_timeout_minutes,
            poll_interval=self.idle_poll_interval,
            connection_probe=self.connection_probe,
        )
        self._idle_task = asyncio.get_running_loop().create_task(
            self._run_idle_monitor(self.idle_monitor)
        )

    async def _run_idle_monitor(self, monitor: IdleMonitor) -> None:
        try:
            await monitor.run(
                self._on_idle_shutdown,
                cdswctl_path=self.config.cdswctl_path,
                project=self.config.project,
            )
        finally:
            if monitor.phase is IdlePhase.SHUTDOWN:
                self._stopped.set()

    async def _on_idle_shutdown(self, message: str) -> None:
        if not self._begin_shutdown(0):
            return
        self._write(SessionStatus.ERROR, message=message)
        self._kill_endpoint()

    def _install_signal_handlers(self, loop: asyncio.AbstractEventLoop) -> None:
        if not self.handle_signals:
            return
        for sig in (signal.SIGTERM, signal.SIGINT):
            try:
                loop.add_signal_handler(sig, self._on_signal, sig)
                self._signals.append(sig)
            except (NotImplementedError, RuntimeError):
                # Windows event loops have no add_signal_handler
                previous = signal.getsignal(sig)
                signal.signal(sig, lambda s, _f: loop.call_soon_threadsafe(self._on_signal, s))
                self._fallback_signals.append((sig, previous))

    def _remove_signal_handlers(self, loop: asyncio.AbstractEventLoop) -> None:
        for sig in self._signals:
            loop.remove_signal_handler(sig)
        self._signals.clear()
        for sig, previous in self._fallback_signals:
            signal.signal(sig, previous if previous is not None else signal.SIG_DFL)
        self._fallback_signals.clear()

    async def run(self) -> int:
        """Run the session until it ends.

        Returns:
            Process exit code
        """
        loop = asyncio.get_running_loop()
        self._stopped = asyncio.Event()

        self._write(SessionStatus.STARTING)
        logger.info(f"Starting endpoint host. Supervisor PID: {self.pid}")
        logger.info(f"Command: {self.config.cdswctl_path} {' '.join(self.config.args)}")

        try:
            self.process = await asyncio.create_subprocess_exec(
                self.config.cdswctl_path,
                *self.config.args,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=os.path.dirname(os.path.abspath(self.config.cdswctl_path)),
                limit=STREAM_LIMIT,
                **hidden_spawn_kwargs(),
            )
        except OSError as e:
            logger.error(f"cdswctl error: {e}")
            self._write(SessionStatus.ERROR, message=str(e))
            return 1

        logger.info(f"cdswctl started (PID {self.process.pid}).")
        self._timeout_handle = loop.call_later(self.hard_timeout, self._on_hard_timeout)
        self._install_signal_handlers(loop)

        endpoint_task = loop.create_task(self._watch_endpoint())
        stop_task = loop.create_task(self._stopped.wait())
        try:
            await asyncio.wait({endpoint_task, stop_task}, return_when=asyncio.FIRST_COMPLETED)

            if self._shutting_down:
                # Idle shutdown may still be stopping remote sessions
                await stop_task
                return self.exit_code

            code = endpoint_task.result()
            logger.info(f"cdswctl exited with code {code if code is not None else 'unknown'}.")
            if not self.ready:
                self._write(SessionStatus.ERROR, message=PREMATURE_EXIT_MESSAGE)
            return code if code is not None and code >= 0 else 1
        finally:
            if self._timeout_handle is not None:
                self._timeout_handle.cancel()
            for task in (stop_task, self._idle_task):
                if task is not None and not task.done():
                    task.cancel()
            await self._reap_endpoint(endpoint_task)
            self._remove_signal_handlers(loop)

    async def _reap_endpoint(self, endpoint_task: asyncio.Task) -> None:
        self._kill_endpoint()
        try:
            await asyncio.wait_for(asyncio.shield(endpoint_task), timeout=KILL_WAIT_SECONDS)
        except asyncio.TimeoutError:
            logger.warning("cdswctl did not exit after kill")
            endpoint_task.cancel()
        except Exception as e:
            logger.debug(f"Endpoint watcher ended with: {e}")


def _setup_logging(log_path: Path) -> None:
    """Send every caiconnect log record to the session log file."""
    handler = logging.FileHandler(log_path, encoding="utf-8")
    handler.setFormatter(logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s"))
    root_logger = logging.getLogger("caiconnect")
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(logging.INFO)


def main(argv: Optional[list] = None) -> int:
    """Supervisor process entry point."""
    argv = sys.argv[1:] if argv is None else argv
    if not argv:
        sys.stderr.write("Missing config path.\n")
        return 1

    try:
        config = SupervisorConfig.load(Path(argv[0]))
    except SupervisorConfigError as e:
        sys.stderr.write(f"Failed to read supervisor config: {e}\n")
        return 1

    try:
        Path(config.state_path).parent.mkdir(parents=True, exist_ok=True)
        Path(config.log_path).parent.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        sys.stderr.write(f"Failed to create state directories: {e}\n")
        return 1

    _setup_logging(Path(config.log_path))
    return asyncio.run(EndpointSupervisor(config).run())


__all__ = [
    "EndpointSupervisor",
    "parse_readiness_marker",
    "main",
    "HARD_TIMEOUT_SECONDS",
    "PREMATURE_EXIT_MESSAGE",
]


if __name__ == "__main__":
    sys.exit(main())
