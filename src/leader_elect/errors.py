"""Error taxonomy for leader-elect.

Backend failures are classified once, in the coordination adapter, so the
lock manager and election controller branch on a closed set of kinds instead
of probing Redis exceptions.
"""

from __future__ import annotations

from enum import Enum


class ErrorKind(str, Enum):
    """Classification of coordination backend failures."""

    NOT_FOUND = "not_found"
    ALREADY_EXISTS = "already_exists"
    PRECONDITION_FAILED = "precondition_failed"
    UNAVAILABLE = "unavailable"
    OTHER = "other"


class CoordinationError(Exception):
    """Raised by the coordination adapter."""

    kind: ErrorKind = ErrorKind.OTHER

    def __init__(self, message: str, key: str | None = None) -> None:
        super().__init__(message)
        self.key = key


class KeyNotFoundError(CoordinationError):
    """The lease key does not exist."""

    kind = ErrorKind.NOT_FOUND


class AlreadyExistsError(CoordinationError):
    """Create-if-absent found an existing key."""

    kind = ErrorKind.ALREADY_EXISTS


class PreconditionFailedError(CoordinationError):
    """A compare-and-swap or compare-and-delete saw an unexpected value."""

    kind = ErrorKind.PRECONDITION_FAILED


class BackendUnavailableError(CoordinationError):
    """Transport failure or timeout talking to the coordination service."""

    kind = ErrorKind.UNAVAILABLE


class SupervisorError(Exception):
    """Raised when the service supervisor cannot be driven or queried."""

    def __init__(self, message: str, unit: str | None = None) -> None:
        super().__init__(message)
        self.unit = unit


class ConfigurationError(Exception):
    """Raised when startup configuration is invalid or incomplete."""

    pass


class BootstrapError(Exception):
    """Raised when an external collaborator is unreachable at startup."""

    pass


# Process exit codes. 2 is also what click uses for usage errors.
EXIT_CONFIG_ERROR = 2
EXIT_BOOTSTRAP_ERROR = 3
