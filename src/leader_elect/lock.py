"""Lease lock manager.

Owns the lease protocol against the coordination client. Ownership is
decided by value equality: the lease value is this instance's token, and
every mutation is conditional on that token, so a stale instance can never
overwrite or delete a lease another instance holds.

The lease lifecycle:
1. A missing key is created with a TTL (create-if-absent)
2. The owner renews with compare-and-swap once less than half the TTL remains
3. The owner releases with compare-and-delete
4. If the owner stalls, the key expires and another instance can create it
"""

from __future__ import annotations

import logging
import time
from typing import TYPE_CHECKING, Callable

from leader_elect.errors import (
    AlreadyExistsError,
    CoordinationError,
    KeyNotFoundError,
    PreconditionFailedError,
)

if TYPE_CHECKING:
    from leader_elect.config import ElectionConfig
    from leader_elect.coordination import CoordinationClient

logger = logging.getLogger(__name__)


class LockManager:
    """Acquire, renew and release the lease for one election.

    Args:
        client: Coordination client adapter
        config: Resolved election configuration
        clock: Wall-clock source, shared with the client's expiry timestamps
    """

    def __init__(
        self,
        client: CoordinationClient,
        config: ElectionConfig,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.client = client
        self.key = config.lease_key
        self.token = config.instance_token
        self.ttl = config.ttl
        self._clock = clock
        self._lease_deadline: float | None = None

    async def acquire_or_renew(self) -> bool:
        """Try to become or stay the lease holder.

        Returns:
            True if this instance holds the lease after the call

        Raises:
            CoordinationError: On backend failures other than a missing key
        """
        try:
            record = await self.client.get(self.key)
        except KeyNotFoundError:
            logger.info(f"Trying to get the lock '{self.key}'")
            return await self._create()

        if record.value != self.token:
            logger.debug(f"Lock '{self.key}' held by {record.value}")
            return False

        now = self._clock()
        remaining = record.remaining(now)
        self._lease_deadline = now + remaining

        if remaining < self.ttl / 2:
            await self._renew()
        return True

    async def _create(self) -> bool:
        sent_at = self._clock()
        try:
            await self.client.create_if_absent(self.key, self.token, self.ttl)
        except AlreadyExistsError:
            logger.info(f"Lost the race for lock '{self.key}'")
            return False

        self._lease_deadline = sent_at + self.ttl
        logger.info(f"Acquired lock '{self.key}' as {self.token}")
        return True

    async def _renew(self) -> None:
        # A failed renewal leaves leadership unchanged until the next tick
        sent_at = self._clock()
        try:
            await self.client.compare_and_swap(self.key, self.token, self.ttl, self.token)
        except CoordinationError as e:
            logger.warning(f"Could not renew the lock '{self.key}': {e}")
            return

        self._lease_deadline = sent_at + self.ttl
        logger.debug(f"Renewed lock '{self.key}'")

    async def release(self) -> bool:
        """Delete the lease if this instance still holds it.

        Returns:
            True if the lease was deleted, False if it was absent or held
            by another instance

        Raises:
            CoordinationError: On transport failures
        """
        self._lease_deadline = None
        try:
            await self.client.compare_and_delete(self.key, self.token)
        except KeyNotFoundError:
            logger.info(f"Lock '{self.key}' already gone")
            return False
        except PreconditionFailedError:
            logger.warning(f"Lock '{self.key}' is held by another instance, not removing")
            return False

        logger.info(f"Removed lock '{self.key}'")
        return True

    def lease_expired(self, now: float | None = None, margin: float = 0.0) -> bool:
        """Whether the last known lease deadline falls within ``margin`` of now.

        The deadline is measured from when the create or renew request was
        sent, never later than the server-side expiry. True when no lease is
        known to be held.

        Args:
            now: Current wall-clock time; read from the clock when None
            margin: Seconds ahead of ``now`` that already count as expired
        """
        if self._lease_deadline is None:
            return True
        current = self._clock() if now is None else now
        return current + margin >= self._lease_deadline

    async def current_holder(self) -> str | None:
        """Get the token of the instance currently holding the lease."""
        try:
            record = await self.client.get(self.key)
        except KeyNotFoundError:
            return None
        return record.value
