"""Endpoint supervision for caiconnect.

This package coordinates the short-lived controller (the CLI) with a detached
supervisor process that owns `cdswctl ssh-endpoint`. The two only talk
through files:

- the supervisor config (written once by the controller)
- the state file (written only by the supervisor, polled by the controller)
- the session log (appended by the supervisor)

Components:
- StateChannel: SessionState record and polling reader
- SupervisorConfig: Launch payload
- IdleMonitor: Inactivity shutdown inside the supervisor
- OrphanReaper: Kills supervisors left behind by crashed controllers
- EndpointController: Launch / wait / stop / cleanup from the controller side

The supervisor itself lives in `caiconnect.endpoint.supervisor` and is run as
a module, so it is not imported here.
"""

from caiconnect.endpoint.controller import ControllerError, EndpointController
from caiconnect.endpoint.host_config import SupervisorConfig, SupervisorConfigError
from caiconnect.endpoint.idle_monitor import IdleMonitor, IdlePhase
from caiconnect.endpoint.orphan_reaper import ProcessInfo, find_orphans, reap_orphans
from caiconnect.endpoint.state_channel import (
    EndpointFailedError,
    ReadinessWaitTimeout,
    SessionState,
    SessionStatus,
    StateChannelError,
)

__all__ = [
    "ControllerError",
    "EndpointController",
    "SupervisorConfig",
    "SupervisorConfigError",
    "IdleMonitor",
    "IdlePhase",
    "ProcessInfo",
    "find_orphans",
    "reap_orphans",
    "EndpointFailedError",
    "ReadinessWaitTimeout",
    "SessionState",
    "SessionStatus",
    "StateChannelError",
]
