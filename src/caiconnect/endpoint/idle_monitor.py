"""Idle Monitor - Shut the session down after a period without SSH clients.

Philosophy:
- Ruthless simplicity: Poll for established TCP connections on the forwarded port
- Single responsibility: Decide when the session is idle, nothing else
- Never early: Idle time before the first client connects is not counted

State machine:
    awaiting-first-connection -> active <-> idle(n) -> shutdown

Public API (Studs):
    IdleMonitor - Poll loop and state machine
    IdlePhase - Monitor phases
    has_active_connections - Connection probe for a local port
    stop_remote_sessions - Best-effort remote session stop
"""

import asyncio
import logging
import math
from enum import Enum
from typing import Awaitable, Callable, Optional

import psutil

from caiconnect.cdswctl import stop_sessions

logger = logging.getLogger(__name__)

IDLE_POLL_INTERVAL_SECONDS = 30.0


class IdlePhase(str, Enum):
    """Idle monitor phases."""

    AWAITING_FIRST_CONNECTION = "awaiting-first-connection"
    ACTIVE = "active"
    IDLE = "idle"
    SHUTDOWN = "shutdown"


def has_active_connections(port: str) -> bool:
    """Check for an established TCP connection on a local port.

    Both ends of a loopback connection are local, so a socket matches when
    either its local or its remote port is the forwarded port. Probe failures
    count as "no connection".
    """
    try:
        target = int(port)
        for conn in psutil.net_connections(kind="tcp"):
            if conn.status != psutil.CONN_ESTABLISHED:
                continue
            if conn.laddr and conn.laddr.port == target:
                return True
            if conn.raddr and conn.raddr.port == target:
                return True
        return False
    except (psutil.Error, OSError, ValueError) as e:
        logger.debug(f"Connection probe failed for port {port}: {e}")
        return False


def stop_remote_sessions(cdswctl_path: str, project: str) -> bool:
    """Stop all remote sessions of a project. Failures are logged only."""
    if not project:
        return False
    logger.info(f"Stopping CML sessions in project {project}...")
    result = stop_sessions(cdswctl_path, project)
    if result.exit_code == 0:
        logger.info("CML sessions stopped.")
        return True
    logger.warning(f"Failed to stop CML sessions: {result.stderr.strip() or result.stdout.strip()}")
    return False


class IdleMonitor:
    """Watch the forwarded port and report when the session went idle.

    Example:
        >>> monitor = IdleMonitor("2223", idle_timeout_minutes=5)
        >>> monitor.threshold
        10
    """

    def __init__(
        self,
        port: str,
        idle_timeout_minutes: float,
        poll_interval: float = IDLE_POLL_INTERVAL_SECONDS,
        connection_probe: Optional[Callable[[str], bool]] = None,
    ):
        self.port = str(port)
        self.idle_timeout_minutes = idle_timeout_minutes
        self.poll_interval = poll_interval
        self._probe = connection_probe or has_active_connections

        self.phase = IdlePhase.AWAITING_FIRST_CONNECTION
        self.idle_polls = 0

    @property
    def enabled(self) -> bool:
        return bool(self.idle_timeout_minutes) and self.idle_timeout_minutes > 0

    @property
    def threshold(self) -> int:
        """Consecutive idle polls that trigger shutdown."""
        return max(1, math.ceil(self.idle_timeout_minutes * 60 / self.poll_interval))

    @property
    def shutdown_message(self) -> str:
        return f"Shut down after {self.idle_timeout_minutes:g} minutes of inactivity."

    def observe(self, active: bool) -> IdlePhase:
        """Apply one poll result to the state machine."""
        if self.phase is IdlePhase.SHUTDOWN:
            return self.phase

        if active:
            if self.phase is IdlePhase.AWAITING_FIRST_CONNECTION:
                logger.info("First SSH connection detected.")
            self.phase = IdlePhase.ACTIVE
            self.idle_polls = 0
            return self.phase

        if self.phase is IdlePhase.AWAITING_FIRST_CONNECTION:
            return self.phase

        self.idle_polls += 1
        logger.info(f"No active connections (idle {self.idle_polls}/{self.threshold}).")
        if self.idle_polls >= self.threshold:
            self.phase = IdlePhase.SHUTDOWN
        else:
            self.phase = IdlePhase.IDLE
        return self.phase

    async def run(
        self,
        on_shutdown: Callable[[str], Awaitable[None]],
        cdswctl_path: Optional[str] = None,
        project: Optional[str] = None,
    ) -> bool:
        """Poll until the idle threshold is reached.

        Args:
            on_shutdown: Awaited once with the inactivity message
            cdswctl_path: cdswctl executable for the remote session stop
            project: Owning project of the remote sessions

        Returns:
            True if the monitor shut the session down, False if disabled
        """
        if not self.enabled:
            logger.info("Idle monitor disabled (idleTimeoutMinutes = 0).")
            return False

        logger.info(
            f"Idle monitor started (timeout: {self.idle_timeout_minutes:g}m, "
            f"threshold: {self.threshold} polls)."
        )

        while True:
            await asyncio.sleep(self.poll_interval)
            active = await asyncio.to_thread(self._probe, self.port)
            if self.observe(active) is IdlePhase.SHUTDOWN:
                break

        logger.info(f"Shutting down after {self.idle_timeout_minutes:g} minutes of inactivity.")
        await on_shutdown(self.shutdown_message)

        if cdswctl_path and project:
            await asyncio.to_thread(stop_remote_sessions, cdswctl_path, project)
        return True


__all__ = [
    "IdleMonitor",
    "IdlePhase",
    "has_active_connections",
    "stop_remote_sessions",
    "IDLE_POLL_INTERVAL_SECONDS",
]
