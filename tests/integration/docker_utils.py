"""Docker helpers for integration tests."""

from __future__ import annotations

from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any
from urllib.parse import urlparse

if TYPE_CHECKING:
    from docker.client import DockerClient
    from docker.models.containers import Container
else:
    DockerClient = Any  # type: ignore[misc,assignment]
    Container = Any  # type: ignore[misc,assignment]


def get_docker_client() -> DockerClient:
    """Create a Docker client from environment settings."""
    import docker

    return docker.from_env()


def get_docker_host(client: DockerClient) -> str:
    """Resolve the host that published container ports are reachable on."""
    base_url = client.api.base_url
    if base_url.startswith(("unix://", "npipe://", "http+docker://")):
        return "localhost"
    return urlparse(base_url).hostname or "localhost"


@dataclass
class DockerService:
    """A running container and the host its ports are published on."""

    container: Container
    host: str

    def port(self, container_port: int) -> int:
        """Get the host port bound to a TCP container port."""
        self.container.reload()
        key = f"{container_port}/tcp"
        bindings = self.container.attrs["NetworkSettings"]["Ports"].get(key)
        if not bindings:
            raise RuntimeError(f"Port {key} not published by {self.container.short_id}")
        return int(bindings[0]["HostPort"])


@contextmanager
def run_container(
    client: DockerClient,
    image: str,
    *,
    ports: Mapping[str, int | None] | None = None,
) -> Iterator[DockerService]:
    """Run a detached container for the duration of the block."""
    container = client.containers.run(image, detach=True, ports=ports)
    try:
        yield DockerService(container=container, host=get_docker_host(client))
    finally:
        container.remove(force=True, v=True)
