"""Custom exception hierarchy for the devflow coordination engine.

This module defines the error taxonomy used across the engine so callers can
tell "the whole operation failed" apart from "one item inside it failed".

Exception Hierarchy:
    DevflowError (base)
    ├── ConfigurationError
    ├── ValidationError
    ├── GatewayError
    │   ├── NotFoundError
    │   ├── AlreadyExistsError
    │   ├── MergeConflictError
    │   └── RemoteServiceError
    │       └── RateLimitError
    ├── RollbackError
    ├── CoordinationError
    │   └── ConflictDetectedError
    └── ReleaseError

Example Usage:
    >>> from devflow.exceptions import AlreadyExistsError
    >>> try:
    ...     await gateway.create_ref("heads/feature/x", sha)
    ... except AlreadyExistsError:
    ...     log.warning("branch_exists", branch="feature/x")
"""

from typing import Any


class DevflowError(Exception):
    """Base exception for all devflow errors.

    Attributes:
        message: Human-readable error description
    """

    def __init__(self, message: str) -> None:
        """Initialize exception.

        Args:
            message: Error message
        """
        self.message = message
        super().__init__(message)


class ConfigurationError(DevflowError):
    """Configuration-related errors.

    Examples:
        - Configuration file not found
        - Invalid YAML syntax
        - Missing required configuration fields
    """

    pass


class ValidationError(DevflowError):
    """A request was malformed and was rejected before any remote call.

    Never retried. Examples:
        - Unknown synchronization type
        - Missing required field (files for a file sync, branch name, ...)
        - Repository id that is not registered
        - Dependency declaration that would form a cycle
    """

    pass


class GatewayError(DevflowError):
    """Failure reported by the remote repository gateway.

    Attributes:
        message: Human-readable error description
        status_code: HTTP status code (if applicable)
        repository: Repository id (``owner/name``) the call targeted
    """

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        repository: str | None = None,
    ) -> None:
        """Initialize exception.

        Args:
            message: Error message
            status_code: HTTP status code (if applicable)
            repository: Repository id the call targeted
        """
        self.status_code = status_code
        self.repository = repository

        full_message = message
        if status_code:
            full_message = f"{message} (HTTP {status_code})"

        super().__init__(full_message)
        self.message = message


class NotFoundError(GatewayError):
    """Ref, repository or file does not exist.

    Often not fatal: callers use it to choose between "create" and "update".
    """

    pass


class AlreadyExistsError(GatewayError):
    """Ref or pull request already exists on the remote."""

    pass


class MergeConflictError(GatewayError):
    """The remote rejected a write because the target changed underneath it."""

    pass


class RemoteServiceError(GatewayError):
    """Network failure, 5xx response or rate limiting.

    These are the only gateway errors that are retried.
    """

    pass


class RateLimitError(RemoteServiceError):
    """The remote asked us to slow down.

    Attributes:
        retry_after: Seconds to wait before the next attempt, when known
    """

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        repository: str | None = None,
        retry_after: float | None = None,
    ) -> None:
        self.retry_after = retry_after
        super().__init__(message, status_code=status_code, repository=repository)


class RollbackError(DevflowError):
    """A compensating action failed.

    Recorded per rollback item; never raised in place of the error that
    triggered the rollback.
    """

    def __init__(self, message: str, repository: str | None = None, target: Any = None) -> None:
        self.repository = repository
        self.target = target
        super().__init__(message)


class CoordinationError(DevflowError):
    """A multi-repository operation was aborted as a whole.

    Attributes:
        report: Partial report at the time of the abort, including the
            rollback summary
        original: The error that caused the abort (also ``__cause__``)
    """

    def __init__(self, message: str, report: Any = None, original: BaseException | None = None) -> None:
        self.report = report
        self.original = original
        super().__init__(message)


class ConflictDetectedError(CoordinationError):
    """Pre-check found conflicting refs; nothing was created.

    Attributes:
        conflicts: One entry per conflicting repository
    """

    def __init__(self, message: str, conflicts: list[dict[str, Any]], report: Any = None) -> None:
        self.conflicts = conflicts
        super().__init__(message, report=report)


class ReleaseError(DevflowError):
    """Release orchestration failed.

    Attributes:
        report: Release report including rollbacks performed
        phase: Phase that failed
    """

    def __init__(self, message: str, report: Any = None, phase: str | None = None) -> None:
        self.report = report
        self.phase = phase

        full_message = message if phase is None else f"{message} (phase: {phase})"
        super().__init__(full_message)
        self.message = message
