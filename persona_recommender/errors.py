"""Exception taxonomy raised by the persona engine."""

from __future__ import annotations


class ValidationError(ValueError):
    """Rejected input, with the name of the offending field.

    Args:
        field: Request field that failed validation.
        message: Human-readable description of the problem.
    """

    def __init__(self, field: str, message: str) -> None:
        super().__init__(f"{field}: {message}")
        self.field = field
        self.message = message


class PersistenceUnavailableError(RuntimeError):
    """The persistence collaborator could not be reached in time."""


class ConcurrentUpdateError(RuntimeError):
    """A profile update kept losing the optimistic version check."""

    retryable = True

    def __init__(self, user_id: str, attempts: int) -> None:
        super().__init__(
            f"Profile for user {user_id!r} changed concurrently; "
            f"gave up after {attempts} attempts"
        )
        self.user_id = user_id
        self.attempts = attempts


class VersionConflictError(RuntimeError):
    """A compare-and-set save found a different stored profile version."""

    def __init__(self, user_id: str, expected: int, actual: int) -> None:
        super().__init__(
            f"Profile for user {user_id!r} is at version {actual}, expected {expected}"
        )
        self.user_id = user_id
        self.expected = expected
        self.actual = actual
