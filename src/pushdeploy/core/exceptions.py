"""Custom exceptions for pushdeploy."""

from typing import Any, List, Optional


class PushDeployError(Exception):
    """Base exception for all orchestration errors."""

    status_code = 500
    # Seconds a client should wait before retrying, sent as Retry-After
    retry_after: Optional[int] = None

    def __init__(self, message: str, code: Optional[str] = None):
        super().__init__(message)
        self.code = code


class ConfigurationError(PushDeployError):
    """Configuration or inventory error."""
    pass


class StagingError(PushDeployError):
    """Source tree could not be staged into an artifact."""
    pass


class ConnectivityError(PushDeployError):
    """Target unreachable. Transient, eligible for retry."""
    pass


class AuthenticationError(PushDeployError):
    """Target rejected our credentials."""
    pass


class RemoteCommandError(PushDeployError):
    """A remote operation exited non-zero or timed out."""

    def __init__(
        self,
        message: str,
        *,
        exit_status: Optional[int] = None,
        stderr: str = "",
        results: Optional[List[Any]] = None,
        code: Optional[str] = None,
    ):
        super().__init__(message, code)
        self.exit_status = exit_status
        self.stderr = stderr
        self.results = list(results or [])


class HealthCheckTimeout(PushDeployError):
    """Readiness probe did not succeed before its deadline."""
    pass


class TargetBusy(PushDeployError):
    """Another run holds the target."""

    status_code = 409
    retry_after = 30

    def __init__(self, target_id: str, holder: Optional[str] = None):
        message = f"Target {target_id} is busy"
        if holder:
            message += f" (held by run {holder})"
        super().__init__(message, code="target_busy")
        self.target_id = target_id
        self.holder = holder


class FatalFailure(PushDeployError):
    """Rollback failed. Requires operator intervention."""
    pass


class RunNotFound(PushDeployError):
    """Deployment run not found."""

    status_code = 404


class TargetNotFound(PushDeployError):
    """Target not registered."""

    status_code = 404


class QueueUnavailable(PushDeployError):
    """Deployment queue is full or not being consumed."""

    status_code = 503
    retry_after = 10
