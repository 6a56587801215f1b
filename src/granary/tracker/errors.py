"""Error taxonomy shared by the tracker, the supervisor and the CLI."""

from __future__ import annotations


class GranaryError(RuntimeError):
    """Base error; ``exit_code`` is the CLI process exit status."""

    exit_code = 1


class ValidationError(GranaryError):
    """Request rejected before any state change."""

    exit_code = 2


class SelfDependencyError(ValidationError):
    """An entity cannot depend on itself."""


class CycleError(ValidationError):
    """A new dependency edge would close a cycle."""


class DependencyBlockedError(ValidationError):
    """The task still has dependencies that are not done."""

    exit_code = 5


class AlreadyExistsError(GranaryError):
    exit_code = 2


class NotFoundError(GranaryError):
    exit_code = 3


class ConflictError(GranaryError):
    """Lease is held by another owner whose lease has not expired."""

    exit_code = 4


class VersionConflict(ConflictError):
    """Caller's expected version no longer matches the stored one."""


class LeaseLostError(ConflictError):
    """Caller no longer holds the lease it tries to extend."""


class ProcessSpawnError(GranaryError):
    """Runner command could not be launched."""

    def __init__(self, message: str, *, transient: bool = True) -> None:
        super().__init__(message)
        self.transient = transient


class InstanceMissingError(GranaryError):
    """Worker's instance path is missing or unreadable."""
