"""Election controller tying lease ownership to a supervised unit.

Two activities run on one event loop:

- The poll loop calls ``LockManager.acquire_or_renew`` every poll interval,
  starts the unit when leadership is gained and stops it when lost.
- The health monitor runs only while leader. It consumes unit change
  notifications and gives up leadership when the unit fails or disappears.

Both go through ``_state_lock`` for every read or write of the leadership
flag and for every release, so one loop's step-down is visible to the other
before it acts again. Each monitor owns a stop event; stepping down sets it,
which also wakes a monitor blocked waiting for the next notification.

Example:
    controller = ElectionController(config, LockManager(client, config), SystemdSupervisor())
    await controller.run()  # Runs until SIGTERM/SIGINT
"""

from __future__ import annotations

import asyncio
import logging
import signal
from typing import TYPE_CHECKING

from leader_elect.errors import CoordinationError, SupervisorError
from leader_elect.supervisor import JOB_DONE, UnitEvent, UnitSubscription

if TYPE_CHECKING:
    from leader_elect.config import ElectionConfig
    from leader_elect.lock import LockManager
    from leader_elect.supervisor import SystemdSupervisor

logger = logging.getLogger(__name__)


class ElectionController:
    """Follower/Leader state machine for one election.

    Starts as Follower. Becomes Leader when the lease is acquired and the
    unit starts; returns to Follower when the unit fails, the lease is lost,
    or the process shuts down.

    Args:
        config: Resolved election configuration
        lock_manager: Lease lock manager
        supervisor: Service supervisor adapter
    """

    def __init__(
        self,
        config: ElectionConfig,
        lock_manager: LockManager,
        supervisor: SystemdSupervisor,
    ) -> None:
        self.config = config
        self.lock_manager = lock_manager
        self.supervisor = supervisor

        self._is_leader = False
        self._state_lock = asyncio.Lock()
        self._monitor_task: asyncio.Task[None] | None = None
        self._monitor_stop: asyncio.Event | None = None
        self._shutdown = asyncio.Event()

    @property
    def is_leader(self) -> bool:
        """Check if this instance is currently the leader."""
        return self._is_leader

    @property
    def monitor_task(self) -> asyncio.Task[None] | None:
        """The most recently started health monitor."""
        return self._monitor_task

    # -------------------------------------------------------------------------
    # Poll loop
    # -------------------------------------------------------------------------

    async def run(self, install_signal_handlers: bool = True) -> None:
        """Run the election loop until shutdown is requested."""
        self._shutdown.clear()
        loop = asyncio.get_running_loop()
        signals = (signal.SIGTERM, signal.SIGINT) if install_signal_handlers else ()
        for sig in signals:
            loop.add_signal_handler(sig, self._signal_handler)

        logger.info(
            f"Started leader election for '{self.config.identifier}' "
            f"as {self.config.instance_token}"
        )
        try:
            while not self._shutdown.is_set():
                try:
                    await self.poll_once()
                except Exception as e:
                    logger.exception(f"Error in election loop for '{self.config.identifier}': {e}")

                try:
                    await asyncio.wait_for(
                        self._shutdown.wait(), timeout=self.config.poll_interval
                    )
                except asyncio.TimeoutError:
                    pass
        finally:
            for sig in signals:
                loop.remove_signal_handler(sig)
            await self.stop()

    async def poll_once(self) -> bool:
        """Run one acquire/renew cycle and apply the resulting transition.

        Returns:
            Whether this instance is leader after the cycle
        """
        async with self._state_lock:
            loop = asyncio.get_running_loop()
            started = loop.time()
            try:
                holds_lease = await self.lock_manager.acquire_or_renew()
            except CoordinationError as e:
                logger.error(f"Cannot check lock '{self.config.lease_key}': {e}")
                # The next check comes one poll interval plus a call like this one later
                if self._is_leader and self._lease_ends_before_next_tick(loop.time() - started):
                    await self._step_down("lease expires before the lock can be checked again")
                return self._is_leader

            if holds_lease and not self._is_leader:
                await self._become_leader()
            elif not holds_lease and self._is_leader:
                await self._step_down("lease is no longer held")

            return self._is_leader

    def _lease_ends_before_next_tick(self, call_duration: float) -> bool:
        margin = self.config.poll_interval + call_duration
        return self.lock_manager.lease_expired(margin=margin)

    async def _become_leader(self) -> None:
        # Called with _state_lock held
        unit = self.config.unit_name
        try:
            result = await self.supervisor.start_unit(unit)
        except SupervisorError as e:
            logger.error(f"Cannot start service {unit}: {e}")
            await self._step_down("service failed to start")
            return

        if result != JOB_DONE:
            logger.error(f"Cannot start service {unit}: job {result}")
            await self._step_down("service failed to start")
            return

        logger.info(f"Service {unit} started successfully")

        # The start job may have outlasted the lease
        loop = asyncio.get_running_loop()
        started = loop.time()
        try:
            holds_lease = await self.lock_manager.acquire_or_renew()
        except CoordinationError as e:
            logger.error(f"Cannot check lock '{self.config.lease_key}': {e}")
            holds_lease = not self._lease_ends_before_next_tick(loop.time() - started)
        if not holds_lease:
            await self._step_down("lease lost while the service was starting")
            return

        self._is_leader = True
        self._start_monitor()
        logger.info(f"Elected as leader for '{self.config.identifier}'")

    async def _step_down(self, reason: str) -> None:
        # Called with _state_lock held. The unit is stopped before the lease
        # is deleted.
        unit = self.config.unit_name
        logger.warning(f"Releasing leadership for '{self.config.identifier}': {reason}")

        self._is_leader = False
        if self._monitor_stop is not None:
            self._monitor_stop.set()
            self._monitor_stop = None

        try:
            await self.supervisor.stop_unit(unit)
        except SupervisorError as e:
            logger.error(f"Cannot stop service {unit}: {e}")

        try:
            await self.lock_manager.release()
        except CoordinationError as e:
            logger.error(f"Cannot remove lock '{self.config.lease_key}': {e}")

    # -------------------------------------------------------------------------
    # Health monitor
    # -------------------------------------------------------------------------

    def _start_monitor(self) -> None:
        # Only reached on a Follower -> Leader edge, after the previous
        # monitor's stop event was set by _step_down.
        stop = asyncio.Event()
        self._monitor_stop = stop
        self._monitor_task = asyncio.create_task(self._monitor_loop(stop))

    async def _monitor_loop(self, stop: asyncio.Event) -> None:
        unit = self.config.unit_name
        logger.info(f"Starting monitoring loop for {unit}")

        subscription: UnitSubscription | None = None
        try:
            subscription = self.supervisor.subscribe_unit_changes(
                [unit], self.config.poll_interval
            )
            while not stop.is_set():
                event = await self._next_event(subscription, stop)
                if event is None:
                    break

                fault = self._fault_reason(event)
                if fault is None:
                    continue

                await self._handle_fault(stop, fault)
                break
        except SupervisorError as e:
            await self._handle_fault(stop, f"error while monitoring unit {unit}: {e}")
        finally:
            if subscription is not None:
                await subscription.close()
            logger.info(f"Stopped monitoring loop for {unit}")

    async def _handle_fault(self, stop: asyncio.Event, reason: str) -> None:
        async with self._state_lock:
            # Set when the poll loop already stepped down
            if stop.is_set():
                return
            await self._step_down(reason)

    @staticmethod
    async def _next_event(
        subscription: UnitSubscription, stop: asyncio.Event
    ) -> UnitEvent | None:
        """Wait for a notification, or return None once ``stop`` is set."""
        get_task = asyncio.create_task(subscription.get())
        stop_task = asyncio.create_task(stop.wait())
        try:
            done, _ = await asyncio.wait(
                {get_task, stop_task}, return_when=asyncio.FIRST_COMPLETED
            )
        finally:
            for task in (get_task, stop_task):
                if not task.done():
                    task.cancel()

        if stop_task in done:
            return None
        return get_task.result()

    def _fault_reason(self, event: UnitEvent) -> str | None:
        unit = self.config.unit_name
        if event.error is not None:
            return f"error while monitoring unit {unit}: {event.error}"

        status = event.units.get(unit)
        if status is None:
            return f"unit {unit} disappeared"
        if status.is_failed:
            return f"unit {unit} changed state: {status.active_state}/{status.sub_state}"
        logger.debug(f"Unit {unit} changed state: {status.active_state}/{status.sub_state}")
        return None

    # -------------------------------------------------------------------------
    # Shutdown
    # -------------------------------------------------------------------------

    def request_stop(self) -> None:
        """Ask the poll loop to exit after its current cycle."""
        self._shutdown.set()

    def _signal_handler(self) -> None:
        logger.info("Received shutdown signal")
        self.request_stop()

    async def stop(self) -> None:
        """Step down if leader and wait for the monitor to exit.

        Releasing is best-effort; if it fails the lease expires on its own.
        """
        self._shutdown.set()
        async with self._state_lock:
            if self._is_leader:
                await self._step_down("shutting down")

        if self._monitor_task is not None:
            await asyncio.gather(self._monitor_task, return_exceptions=True)
            self._monitor_task = None

        logger.info(f"Stopped leader election for '{self.config.identifier}'")
