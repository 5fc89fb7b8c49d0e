"""Tests for the lease lock manager."""

import random
from unittest.mock import AsyncMock

import pytest

from leader_elect.coordination import LeaseRecord
from leader_elect.errors import (
    AlreadyExistsError,
    BackendUnavailableError,
    KeyNotFoundError,
    PreconditionFailedError,
)
from leader_elect.lock import LockManager
from tests.fakes import FakeClock, FakeCoordinationBackend, make_config

KEY = "leader-elect:web"


def make_manager(backend, clock: FakeClock, token: str = "host-a") -> LockManager:
    return LockManager(backend, make_config(token), clock=clock)


class TestAcquire:
    """Tests for acquiring a missing lease."""

    @pytest.mark.asyncio
    async def test_acquire_when_absent(
        self, backend: FakeCoordinationBackend, clock: FakeClock
    ) -> None:
        """Missing key is created with our token."""
        manager = make_manager(backend, clock)

        assert await manager.acquire_or_renew() is True
        assert backend.holder(KEY) == "host-a"
        assert backend.store[KEY][1] == clock.now + 30
        assert backend.writes == [("create", "host-a")]

    @pytest.mark.asyncio
    async def test_other_instance_is_not_leader(
        self, backend: FakeCoordinationBackend, clock: FakeClock
    ) -> None:
        """An instance seeing another token is not leader and writes nothing."""
        await make_manager(backend, clock, "host-a").acquire_or_renew()
        backend.writes.clear()

        assert await make_manager(backend, clock, "host-b").acquire_or_renew() is False
        assert backend.holder(KEY) == "host-a"
        assert backend.writes == []

    @pytest.mark.asyncio
    async def test_lost_create_race(self, clock: FakeClock) -> None:
        """Create failing after a not-found read is not leader and not an error."""
        client = AsyncMock()
        client.get.side_effect = KeyNotFoundError("missing", key=KEY)
        client.create_if_absent.side_effect = AlreadyExistsError("exists", key=KEY)
        manager = LockManager(client, make_config(), clock=clock)

        assert await manager.acquire_or_renew() is False
        client.create_if_absent.assert_awaited_once_with(KEY, "host-a", 30)

    @pytest.mark.asyncio
    async def test_unexpected_backend_error_is_raised(self, clock: FakeClock) -> None:
        """Errors other than not-found reach the caller."""
        client = AsyncMock()
        client.get.side_effect = BackendUnavailableError("connection refused", key=KEY)
        manager = LockManager(client, make_config(), clock=clock)

        with pytest.raises(BackendUnavailableError):
            await manager.acquire_or_renew()
        client.create_if_absent.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_acquire_after_expiry(
        self, backend: FakeCoordinationBackend, clock: FakeClock
    ) -> None:
        """A stalled leader's lease expires and another instance takes it."""
        await make_manager(backend, clock, "host-a").acquire_or_renew()
        clock.advance(31)

        assert await make_manager(backend, clock, "host-b").acquire_or_renew() is True
        assert backend.holder(KEY) == "host-b"


class TestRenew:
    """Tests for renewing a held lease."""

    @pytest.mark.asyncio
    async def test_no_write_above_half_ttl(
        self, backend: FakeCoordinationBackend, clock: FakeClock
    ) -> None:
        """Repeated calls with plenty of lease left do not write."""
        manager = make_manager(backend, clock)
        await manager.acquire_or_renew()
        backend.writes.clear()

        clock.advance(5)
        assert await manager.acquire_or_renew() is True
        assert await manager.acquire_or_renew() is True
        assert backend.writes == []

    @pytest.mark.asyncio
    async def test_renews_below_half_ttl(
        self, backend: FakeCoordinationBackend, clock: FakeClock
    ) -> None:
        """Less than ttl/2 remaining triggers a compare-and-swap."""
        manager = make_manager(backend, clock)
        await manager.acquire_or_renew()
        backend.writes.clear()

        clock.advance(16)
        assert await manager.acquire_or_renew() is True
        assert backend.writes == [("swap", "host-a")]
        assert backend.store[KEY][1] == clock.now + 30

    @pytest.mark.asyncio
    async def test_failed_renewal_keeps_leadership(self, clock: FakeClock) -> None:
        """A lost swap is logged; the call still reports leadership."""
        client = AsyncMock()
        client.get.return_value = LeaseRecord(key=KEY, value="host-a", expires_at=clock.now + 5)
        client.compare_and_swap.side_effect = PreconditionFailedError("changed", key=KEY)
        manager = LockManager(client, make_config(), clock=clock)

        assert await manager.acquire_or_renew() is True
        client.compare_and_swap.assert_awaited_once_with(KEY, "host-a", 30, "host-a")

    @pytest.mark.asyncio
    async def test_key_without_ttl_is_renewed(self, clock: FakeClock) -> None:
        """A lease with no expiry gets its TTL back."""
        client = AsyncMock()
        client.get.return_value = LeaseRecord(key=KEY, value="host-a", expires_at=None)
        manager = LockManager(client, make_config(), clock=clock)

        assert await manager.acquire_or_renew() is True
        client.compare_and_swap.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_renewal_keeps_lease_alive(
        self, backend: FakeCoordinationBackend, clock: FakeClock
    ) -> None:
        """A leader polling every interval never loses the lease."""
        leader = make_manager(backend, clock, "host-a")
        follower = make_manager(backend, clock, "host-b")
        await leader.acquire_or_renew()

        for _ in range(50):
            clock.advance(5)
            assert await leader.acquire_or_renew() is True
            assert await follower.acquire_or_renew() is False

        assert backend.holder(KEY) == "host-a"


class TestRelease:
    """Tests for releasing the lease."""

    @pytest.mark.asyncio
    async def test_release_own_lease(
        self, backend: FakeCoordinationBackend, clock: FakeClock
    ) -> None:
        """Holder deletes its lease."""
        manager = make_manager(backend, clock)
        await manager.acquire_or_renew()

        assert await manager.release() is True
        assert backend.holder(KEY) is None

    @pytest.mark.asyncio
    async def test_release_does_not_delete_other_lease(
        self, backend: FakeCoordinationBackend, clock: FakeClock
    ) -> None:
        """Release by a non-holder leaves the holder's lease in place."""
        await make_manager(backend, clock, "host-a").acquire_or_renew()

        assert await make_manager(backend, clock, "host-b").release() is False
        assert backend.holder(KEY) == "host-a"

    @pytest.mark.asyncio
    async def test_release_when_absent(
        self, backend: FakeCoordinationBackend, clock: FakeClock
    ) -> None:
        """Releasing a missing lease is not an error."""
        manager = make_manager(backend, clock)

        assert await manager.release() is False
        assert await manager.release() is False

    @pytest.mark.asyncio
    async def test_release_propagates_transport_errors(
        self, backend: FakeCoordinationBackend, clock: FakeClock
    ) -> None:
        """Backend outages are left to the caller."""
        manager = make_manager(backend, clock)
        backend.unavailable = True

        with pytest.raises(BackendUnavailableError):
            await manager.release()


class TestLeaseDeadline:
    """Tests for the locally tracked lease deadline."""

    @pytest.mark.asyncio
    async def test_deadline_follows_lease(
        self, backend: FakeCoordinationBackend, clock: FakeClock
    ) -> None:
        manager = make_manager(backend, clock)
        assert manager.lease_expired() is True

        await manager.acquire_or_renew()
        assert manager.lease_expired() is False

        clock.advance(30)
        assert manager.lease_expired() is True

    @pytest.mark.asyncio
    async def test_margin_expires_early(
        self, backend: FakeCoordinationBackend, clock: FakeClock
    ) -> None:
        """A deadline inside the margin already counts as expired."""
        manager = make_manager(backend, clock)
        await manager.acquire_or_renew()

        clock.advance(24)
        assert manager.lease_expired(margin=5) is False
        clock.advance(1)
        assert manager.lease_expired(margin=5) is True
        assert manager.lease_expired() is False

    @pytest.mark.asyncio
    async def test_release_clears_deadline(
        self, backend: FakeCoordinationBackend, clock: FakeClock
    ) -> None:
        manager = make_manager(backend, clock)
        await manager.acquire_or_renew()
        await manager.release()

        assert manager.lease_expired() is True

    @pytest.mark.asyncio
    async def test_current_holder(
        self, backend: FakeCoordinationBackend, clock: FakeClock
    ) -> None:
        manager = make_manager(backend, clock, "host-b")
        assert await manager.current_holder() is None

        await make_manager(backend, clock, "host-a").acquire_or_renew()
        assert await manager.current_holder() == "host-a"


class TestMutualExclusion:
    """At most one instance holds the lease at any simulated time."""

    @pytest.mark.asyncio
    async def test_concurrent_instances(
        self, backend: FakeCoordinationBackend, clock: FakeClock
    ) -> None:
        rng = random.Random(1234)
        managers = [make_manager(backend, clock, f"host-{i}") for i in range(5)]
        crashed: set[int] = set()

        for step in range(200):
            order = list(range(len(managers)))
            rng.shuffle(order)

            leaders = []
            for i in order:
                if i in crashed:
                    continue
                if await managers[i].acquire_or_renew():
                    leaders.append(i)

            assert len(leaders) <= 1
            if leaders and step % 40 == 39:
                # Leader stalls; its lease must expire before anyone else wins
                crashed.add(leaders[0])

            clock.advance(rng.choice([1, 3, 5]))

        assert len(crashed) >= 1
