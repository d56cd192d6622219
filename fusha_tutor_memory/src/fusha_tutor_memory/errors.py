"""
Error taxonomy for the learner-memory core.

Decode anomalies never raise (see DecodeSkip in models). Store failures are
always surfaced to the caller as StoreUnavailable so nothing continues as if a
write had succeeded.
"""

from typing import Optional


class TutorMemoryError(Exception):
    """Base class for all learner-memory errors."""
    retryable: bool = False


class NotFound(TutorMemoryError):
    """No user could be resolved for a session, or the record does not exist."""


class StoreUnavailable(TutorMemoryError):
    """Transient failure talking to the persistence layer."""
    retryable = True

    def __init__(self, operation: str, cause: Optional[BaseException] = None):
        self.operation = operation
        self.cause = cause
        detail = f"{type(cause).__name__}: {cause}" if cause else "unavailable"
        super().__init__(f"Store operation '{operation}' failed ({detail})")


class DuplicateFact(TutorMemoryError):
    """An active fact with the same key already exists for the user."""


class QuotaExceeded(TutorMemoryError):
    """The user has no remaining weekly allowance."""

    def __init__(self, check):
        self.check = check
        super().__init__(
            f"Weekly quota exhausted ({check.reason}); resets at {check.reset_at.isoformat()}"
        )
