"""Configuration for leader-elect.

Settings come from three layers, highest precedence first:

1. Command-line flags
2. Identifier-scoped environment, e.g. ``LEADER_ELECT_WEB_TTL`` for ``web``
3. Global environment, e.g. ``LEADER_ELECT_TTL``

followed by the field defaults. ``resolve_config`` turns the merged settings
into an immutable ``ElectionConfig`` and fills in the derived defaults (unit
name, lease key, instance token).
"""

from __future__ import annotations

import re
import socket
from dataclasses import dataclass
from typing import Any

from pydantic import ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from leader_elect.errors import ConfigurationError

ENV_PREFIX = "LEADER_ELECT_"
KEY_PREFIX = "leader-elect:"

DEFAULT_SERVERS = "redis://localhost:6379/0"
DEFAULT_TTL = 30  # Seconds
DEFAULT_SLEEP = 5.0  # Seconds between lock checks

_DURATION_PART = re.compile(r"(\d+(?:\.\d+)?)(ms|s|m|h)")
_DURATION_UNITS = {"ms": 0.001, "s": 1.0, "m": 60.0, "h": 3600.0}
_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}


def env_key(name: str) -> str:
    """Convert a flag or identifier to its environment variable form."""
    return name.upper().replace("-", "_").replace(".", "_")


def parse_duration(value: str | float | int) -> float:
    """Parse a duration into seconds.

    Accepts plain numbers (``5``, ``2.5``) or unit-suffixed strings
    (``500ms``, ``5s``, ``1m``, ``1m30s``).
    """
    if isinstance(value, (int, float)):
        return float(value)

    text = value.strip().lower()
    try:
        return float(text)
    except ValueError:
        pass

    total = 0.0
    pos = 0
    for match in _DURATION_PART.finditer(text):
        if match.start() != pos:
            break
        total += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
        pos = match.end()

    if pos == 0 or pos != len(text):
        raise ValueError(f"invalid duration: {value!r}")
    return total


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix=ENV_PREFIX, env_file=".env", extra="ignore")

    # Comma-separated coordination service addresses
    servers: str = DEFAULT_SERVERS

    # Lease
    ttl: int = DEFAULT_TTL
    sleep: float = DEFAULT_SLEEP

    # Identity (None = derive from identifier / hostname)
    whoami: str | None = None
    unit: str | None = None
    key: str | None = None

    # Talk to the per-user systemd instance instead of the system manager
    systemd_user: bool = False

    # Logging
    log_level: str = "INFO"
    log_json: bool = False

    @field_validator("sleep", mode="before")
    @classmethod
    def _parse_sleep(cls, value: Any) -> Any:
        if isinstance(value, str):
            return parse_duration(value)
        return value

    @field_validator("log_level")
    @classmethod
    def _check_log_level(cls, value: str) -> str:
        level = value.upper()
        if level not in _LOG_LEVELS:
            raise ValueError(f"unknown log level: {value!r}")
        return level


@dataclass(frozen=True)
class ElectionConfig:
    """Resolved, immutable configuration for one election participant."""

    identifier: str
    servers: tuple[str, ...]
    ttl: int
    poll_interval: float
    unit_name: str
    lease_key: str
    instance_token: str

    @property
    def renew_threshold(self) -> float:
        """Remaining lease lifetime below which the leader renews."""
        return self.ttl / 2

    def to_dict(self) -> dict[str, Any]:
        return {
            "identifier": self.identifier,
            "servers": list(self.servers),
            "ttl": self.ttl,
            "poll_interval": self.poll_interval,
            "unit_name": self.unit_name,
            "lease_key": self.lease_key,
            "instance_token": self.instance_token,
        }


def load_settings(identifier: str, **flags: Any) -> Settings:
    """Merge flags over the scoped and global environment.

    Args:
        identifier: Election identifier, used to build the scoped env prefix
        **flags: Settings field values from the command line; None means unset

    Raises:
        ConfigurationError: If any layer holds an invalid value
    """
    scoped_prefix = f"{ENV_PREFIX}{env_key(identifier)}_"
    try:
        global_settings = Settings()
        scoped_settings = Settings(_env_prefix=scoped_prefix)

        values: dict[str, Any] = {}
        for layer in (global_settings, scoped_settings):
            values.update(layer.model_dump(include=layer.model_fields_set))
        values.update({name: value for name, value in flags.items() if value is not None})

        return Settings(**values)
    except ValidationError as e:
        raise ConfigurationError(f"Invalid configuration: {e}") from e


def _default_instance_token() -> str:
    try:
        hostname = socket.gethostname()
    except OSError as e:
        raise ConfigurationError(f"Cannot get hostname: {e}") from e
    if not hostname:
        raise ConfigurationError("Cannot get hostname: empty host name")
    return hostname


def resolve_config(identifier: str, settings: Settings) -> ElectionConfig:
    """Derive and validate the election configuration.

    Raises:
        ConfigurationError: On a missing identifier, an unresolvable host
            identity, or a lease timing that cannot renew before expiry
    """
    identifier = identifier.strip()
    if not identifier:
        raise ConfigurationError("You need to supply a name")

    servers = tuple(s.strip() for s in settings.servers.split(",") if s.strip())
    if not servers:
        raise ConfigurationError("At least one coordination server is required")

    if settings.ttl < 2:
        raise ConfigurationError(f"ttl must be at least 2 seconds, got {settings.ttl}")
    if settings.sleep <= 0:
        raise ConfigurationError(f"sleep must be positive, got {settings.sleep}")
    if settings.sleep >= settings.ttl / 2:
        raise ConfigurationError(
            f"sleep ({settings.sleep}s) must be less than half the ttl ({settings.ttl}s)"
        )

    return ElectionConfig(
        identifier=identifier,
        servers=servers,
        ttl=settings.ttl,
        poll_interval=settings.sleep,
        unit_name=settings.unit or f"{identifier}.service",
        lease_key=settings.key or f"{KEY_PREFIX}{identifier}",
        instance_token=settings.whoami or _default_instance_token(),
    )
