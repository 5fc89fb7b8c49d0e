"""Coordination client adapter backed by Redis.

Exposes the four atomic operations the lock manager needs:

- get: read a lease value together with its expiry
- create_if_absent: SET NX EX
- compare_and_swap: replace value and TTL only if the current value matches
- compare_and_delete: delete only if the current value matches

Conditional operations run as Lua scripts, so the compare and the mutation
happen in a single server-side step. Redis errors are translated into the
typed errors in ``leader_elect.errors``.

Example:
    client = CoordinationClient(["redis://redis-a:6379/0", "redis://redis-b:6379/0"])

    try:
        record = await client.get("leader-elect:web")
    except KeyNotFoundError:
        await client.create_if_absent("leader-elect:web", "host-1", ttl=30)
"""

from __future__ import annotations

import logging
import time
from collections.abc import Sequence
from dataclasses import dataclass
from typing import TYPE_CHECKING, Awaitable, Callable, TypeVar

import redis.asyncio as redis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import RedisError
from redis.exceptions import TimeoutError as RedisTimeoutError

from leader_elect.errors import (
    AlreadyExistsError,
    BackendUnavailableError,
    CoordinationError,
    KeyNotFoundError,
    PreconditionFailedError,
)

if TYPE_CHECKING:
    from redis.asyncio import Redis

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_SOCKET_TIMEOUT = 5.0  # Seconds

# Returns {value, pttl} or nil when the key is absent
_GET_SCRIPT = """
local value = redis.call("get", KEYS[1])
if not value then
    return false
end
return {value, redis.call("pttl", KEYS[1])}
"""

# Returns -1 when absent, 0 on value mismatch, 1 when swapped
_CAS_SCRIPT = """
local value = redis.call("get", KEYS[1])
if not value then
    return -1
end
if value ~= ARGV[1] then
    return 0
end
redis.call("set", KEYS[1], ARGV[3], "EX", ARGV[2])
return 1
"""

# Returns -1 when absent, 0 on value mismatch, 1 when deleted
_CAD_SCRIPT = """
local value = redis.call("get", KEYS[1])
if not value then
    return -1
end
if value ~= ARGV[1] then
    return 0
end
return redis.call("del", KEYS[1])
"""


@dataclass(frozen=True)
class LeaseRecord:
    """A lease as stored in the coordination service."""

    key: str
    value: str
    expires_at: float | None  # Epoch seconds; None if the key has no TTL

    def remaining(self, now: float | None = None) -> float:
        """Seconds until the lease expires (0 when it has no TTL)."""
        if self.expires_at is None:
            return 0.0
        current = time.time() if now is None else now
        return max(0.0, self.expires_at - current)


class CoordinationClient:
    """Atomic conditional key-value operations against Redis.

    Accepts a list of server URLs. A connection failure or timeout marks the
    current server as bad and the next call goes to the following address.

    Args:
        servers: Redis URLs, tried in order
        socket_timeout: Per-call socket timeout in seconds
        clock: Wall-clock source used to turn PTTL into an expiry timestamp
    """

    def __init__(
        self,
        servers: Sequence[str],
        socket_timeout: float = DEFAULT_SOCKET_TIMEOUT,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if not servers:
            raise ValueError("At least one server is required")
        self.servers = list(servers)
        self.socket_timeout = socket_timeout
        self._clock = clock
        self._index = 0
        self._clients: dict[int, Redis] = {}

    @property
    def current_server(self) -> str:
        return self.servers[self._index]

    def _get_client(self) -> Redis:
        client = self._clients.get(self._index)
        if client is None:
            client = redis.from_url(  # type: ignore[no-untyped-call]
                self.current_server,
                encoding="utf-8",
                decode_responses=True,
                socket_timeout=self.socket_timeout,
                socket_connect_timeout=self.socket_timeout,
            )
            self._clients[self._index] = client
        return client

    def _fail_over(self) -> None:
        if len(self.servers) > 1:
            failed = self.current_server
            self._index = (self._index + 1) % len(self.servers)
            logger.warning(
                f"Coordination server {failed} unreachable, switching to {self.current_server}"
            )

    async def _execute(self, key: str, operation: Callable[[Redis], Awaitable[T]]) -> T:
        client = self._get_client()
        try:
            return await operation(client)
        except (RedisConnectionError, RedisTimeoutError) as e:
            server = self.current_server
            self._fail_over()
            raise BackendUnavailableError(f"{server}: {e}", key=key) from e
        except RedisError as e:
            raise CoordinationError(str(e), key=key) from e

    async def get(self, key: str) -> LeaseRecord:
        """Read a lease.

        Raises:
            KeyNotFoundError: If the key does not exist
        """
        sent_at = self._clock()
        result = await self._execute(key, lambda c: c.eval(_GET_SCRIPT, 1, key))
        if result is None:
            raise KeyNotFoundError(f"Key not found: {key}", key=key)

        value, pttl = result
        expires_at = sent_at + int(pttl) / 1000 if int(pttl) >= 0 else None
        return LeaseRecord(key=key, value=str(value), expires_at=expires_at)

    async def create_if_absent(self, key: str, value: str, ttl: int) -> None:
        """Create a key with a TTL unless it already exists.

        Raises:
            AlreadyExistsError: If the key exists
        """
        created = await self._execute(key, lambda c: c.set(key, value, nx=True, ex=ttl))
        if not created:
            raise AlreadyExistsError(f"Key already exists: {key}", key=key)

    async def compare_and_swap(self, key: str, expected: str, ttl: int, value: str) -> None:
        """Replace value and TTL only if the current value equals ``expected``.

        Raises:
            KeyNotFoundError: If the key does not exist
            PreconditionFailedError: If the current value differs
        """
        result = await self._execute(
            key, lambda c: c.eval(_CAS_SCRIPT, 1, key, expected, str(ttl), value)
        )
        self._check_conditional(key, int(result))

    async def compare_and_delete(self, key: str, expected: str) -> None:
        """Delete the key only if the current value equals ``expected``.

        Raises:
            KeyNotFoundError: If the key does not exist
            PreconditionFailedError: If the current value differs
        """
        result = await self._execute(key, lambda c: c.eval(_CAD_SCRIPT, 1, key, expected))
        self._check_conditional(key, int(result))

    @staticmethod
    def _check_conditional(key: str, result: int) -> None:
        if result < 0:
            raise KeyNotFoundError(f"Key not found: {key}", key=key)
        if result == 0:
            raise PreconditionFailedError(f"Compare failed for key: {key}", key=key)

    async def close(self) -> None:
        """Close all Redis connections."""
        for client in self._clients.values():
            await client.aclose()
        self._clients.clear()
