"""Service supervisor adapter backed by systemd.

Drives units through ``systemctl`` run as asyncio subprocesses:

- start_unit / stop_unit: blocking jobs with ``--job-mode=fail``
- get_unit_statuses: ``systemctl show`` for load and active state
- subscribe_unit_changes: periodic status polling that reports changes

Example:
    supervisor = SystemdSupervisor()
    await supervisor.check()

    result = await supervisor.start_unit("web.service")
    if result != JOB_DONE:
        ...

    subscription = supervisor.subscribe_unit_changes(["web.service"], interval=5.0)
    event = await subscription.get()
    await subscription.close()
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from collections.abc import Sequence
from dataclasses import dataclass, field

from leader_elect.errors import SupervisorError

logger = logging.getLogger(__name__)

JOB_DONE = "done"
JOB_FAILED = "failed"

ACTIVE_STATE_FAILED = "failed"
LOAD_STATE_NOT_FOUND = "not-found"

_SHOW_PROPERTIES = "Id,LoadState,ActiveState,SubState"


@dataclass(frozen=True)
class UnitStatus:
    """Observed state of a systemd unit."""

    name: str
    load_state: str
    active_state: str
    sub_state: str = ""

    @property
    def is_failed(self) -> bool:
        return self.active_state == ACTIVE_STATE_FAILED


@dataclass
class UnitEvent:
    """One notification from a unit subscription.

    Either ``units`` maps each changed unit to its new status (None when the
    unit is no longer loaded) or ``error`` holds the polling failure.
    """

    units: dict[str, UnitStatus | None] = field(default_factory=dict)
    error: Exception | None = None


class UnitSubscription(ABC):
    """Stream of unit change notifications and subscription errors."""

    @abstractmethod
    async def get(self) -> UnitEvent:
        """Wait for the next notification."""
        ...

    @abstractmethod
    async def close(self) -> None:
        """Stop producing notifications."""
        ...


def parse_show_output(output: str) -> list[dict[str, str]]:
    """Parse ``systemctl show`` output into one property dict per unit."""
    blocks: list[dict[str, str]] = []
    current: dict[str, str] = {}
    for line in output.splitlines():
        if not line.strip():
            if current:
                blocks.append(current)
                current = {}
            continue
        name, _, value = line.partition("=")
        current[name.strip()] = value.strip()
    if current:
        blocks.append(current)
    return blocks


class SystemdSupervisor:
    """Start, stop and observe systemd units via ``systemctl``.

    Args:
        systemctl: Path or name of the systemctl binary
        user: Talk to the user service manager instead of the system one
    """

    def __init__(self, systemctl: str = "systemctl", user: bool = False) -> None:
        self.systemctl = systemctl
        self.user = user

    async def _run(self, *args: str) -> tuple[int, str, str]:
        command = [self.systemctl]
        if self.user:
            command.append("--user")
        command.extend(args)

        try:
            proc = await asyncio.create_subprocess_exec(
                *command,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise SupervisorError(f"Cannot run {self.systemctl}: {e}") from e

        stdout, stderr = await proc.communicate()
        returncode = proc.returncode if proc.returncode is not None else -1
        return returncode, stdout.decode(errors="replace"), stderr.decode(errors="replace")

    async def check(self) -> None:
        """Verify the service manager answers.

        Raises:
            SupervisorError: If systemd cannot be reached
        """
        returncode, _, stderr = await self._run("show", "--property=Version")
        if returncode != 0:
            raise SupervisorError(f"Cannot connect to systemd: {stderr.strip()}")

    async def start_unit(self, name: str) -> str:
        """Start a unit and wait for its job to finish.

        Returns:
            ``"done"`` on success, ``"failed"`` otherwise
        """
        returncode, _, stderr = await self._run("start", "--job-mode=fail", "--", name)
        if returncode != 0:
            logger.warning(f"Start job for {name} failed: {stderr.strip()}")
            return JOB_FAILED
        return JOB_DONE

    async def stop_unit(self, name: str) -> None:
        """Stop a unit and wait for its job to finish.

        Raises:
            SupervisorError: If the stop job fails
        """
        returncode, _, stderr = await self._run("stop", "--job-mode=fail", "--", name)
        if returncode != 0:
            raise SupervisorError(f"Cannot stop {name}: {stderr.strip()}", unit=name)

    async def get_unit_statuses(self, names: Sequence[str]) -> dict[str, UnitStatus | None]:
        """Read the current status of each unit.

        Units systemd does not know about map to None.
        """
        returncode, stdout, stderr = await self._run(
            "show", f"--property={_SHOW_PROPERTIES}", "--", *names
        )
        if returncode != 0:
            raise SupervisorError(f"Cannot query units: {stderr.strip()}")

        blocks = parse_show_output(stdout)
        if len(blocks) != len(names):
            raise SupervisorError(
                f"Unexpected systemctl show output: {len(blocks)} blocks for {len(names)} units"
            )

        statuses: dict[str, UnitStatus | None] = {}
        for name, props in zip(names, blocks):
            load_state = props.get("LoadState", "")
            if load_state == LOAD_STATE_NOT_FOUND:
                statuses[name] = None
                continue
            statuses[name] = UnitStatus(
                name=name,
                load_state=load_state,
                active_state=props.get("ActiveState", ""),
                sub_state=props.get("SubState", ""),
            )
        return statuses

    def subscribe_unit_changes(
        self, names: Sequence[str], interval: float
    ) -> SystemdUnitSubscription:
        """Start polling the given units for status changes."""
        subscription = SystemdUnitSubscription(self, names, interval)
        subscription.start()
        return subscription


class SystemdUnitSubscription(UnitSubscription):
    """Polls unit statuses and queues an event whenever one changes.

    The first successful poll reports every unit. Polling errors are queued
    as error events and polling continues.
    """

    def __init__(self, supervisor: SystemdSupervisor, names: Sequence[str], interval: float):
        self.supervisor = supervisor
        self.names = list(names)
        self.interval = interval
        self._queue: asyncio.Queue[UnitEvent] = asyncio.Queue()
        self._task: asyncio.Task[None] | None = None

    def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self._poll_loop())

    async def _poll_loop(self) -> None:
        last: dict[str, UnitStatus | None] | None = None
        while True:
            try:
                statuses = await self.supervisor.get_unit_statuses(self.names)
            except Exception as e:
                logger.error(f"Error while polling units {self.names}: {e}")
                await self._queue.put(UnitEvent(error=e))
            else:
                if last is None:
                    changed = dict(statuses)
                else:
                    changed = {
                        name: status
                        for name, status in statuses.items()
                        if name not in last or last[name] != status
                    }
                if changed:
                    await self._queue.put(UnitEvent(units=changed))
                last = statuses

            await asyncio.sleep(self.interval)

    async def get(self) -> UnitEvent:
        return await self._queue.get()

    async def close(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
