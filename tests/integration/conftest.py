"""Integration test fixtures using Docker.

Starts a throwaway Redis container per session; tests are skipped when
Docker is not reachable.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import AsyncIterator, Iterator

import pytest
import pytest_asyncio
import redis.asyncio as redis

from leader_elect.coordination import CoordinationClient
from tests.integration.docker_utils import DockerService, get_docker_client, run_container


@pytest.fixture(scope="session")
def docker_client():
    """Create a Docker client or skip if Docker is unavailable."""
    try:
        client = get_docker_client()
        client.ping()
    except Exception as exc:
        pytest.skip(f"Docker not available: {exc}")
    yield client
    client.close()


@pytest.fixture(scope="session")
def redis_container(docker_client) -> Iterator[DockerService]:
    """Start a Redis container for the test session."""
    with run_container(docker_client, "redis:7-alpine", ports={"6379/tcp": None}) as service:
        yield service


@pytest.fixture(scope="session")
def redis_url(redis_container: DockerService) -> str:
    """Get the Redis URL for the test container."""
    return f"redis://{redis_container.host}:{redis_container.port(6379)}/0"


@pytest_asyncio.fixture
async def redis_client(redis_url: str) -> AsyncIterator[redis.Redis]:
    """Raw Redis client for arranging and inspecting keys."""
    client = redis.from_url(redis_url, decode_responses=True)
    await _wait_for_redis(client)
    yield client
    await client.flushdb()  # Clean up after each test
    await client.aclose()


@pytest_asyncio.fixture
async def coordination(
    redis_url: str, redis_client: redis.Redis
) -> AsyncIterator[CoordinationClient]:
    """Coordination client pointed at the test container."""
    client = CoordinationClient([redis_url])
    yield client
    await client.close()


async def _wait_for_redis(client: redis.Redis, timeout: float = 30.0) -> None:
    """Wait for Redis to accept connections."""
    deadline = time.monotonic() + timeout
    while True:
        try:
            await client.ping()
            return
        except Exception:
            if time.monotonic() >= deadline:
                raise
            await asyncio.sleep(0.5)
