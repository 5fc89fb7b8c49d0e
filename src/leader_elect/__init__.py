"""Lease-based leader election that runs a systemd unit on the leader.

Example:
    from leader_elect import (
        CoordinationClient,
        ElectionController,
        LockManager,
        SystemdSupervisor,
        load_settings,
        resolve_config,
    )

    config = resolve_config("web", load_settings("web"))
    client = CoordinationClient(config.servers)
    controller = ElectionController(config, LockManager(client, config), SystemdSupervisor())
    await controller.run()
"""

from leader_elect.config import ElectionConfig, Settings, load_settings, resolve_config
from leader_elect.coordination import CoordinationClient, LeaseRecord
from leader_elect.election import ElectionController
from leader_elect.lock import LockManager
from leader_elect.supervisor import SystemdSupervisor, UnitEvent, UnitStatus

__version__ = "0.1.0"

__all__ = [
    "CoordinationClient",
    "ElectionConfig",
    "ElectionController",
    "LeaseRecord",
    "LockManager",
    "Settings",
    "SystemdSupervisor",
    "UnitEvent",
    "UnitStatus",
    "load_settings",
    "resolve_config",
]
