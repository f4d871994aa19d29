"""Error taxonomy shared by the services and the HTTP layer.

Messages carry ids and codes only, never user-entered text.
"""
from __future__ import annotations

from typing import Optional


class TimelineError(Exception):
    """Base class for every domain error raised by the services."""

    code = "timeline_error"

    def __init__(self, message: str = "", *, code: Optional[str] = None):
        super().__init__(message or self.code)
        if code:
            self.code = code


class ValidationError(TimelineError):
    code = "validation_error"


class InvalidAmendmentTarget(ValidationError):
    code = "invalid_amendment_target"


class NotFoundError(TimelineError):
    """Entity absent or owned by someone else; callers cannot tell which."""

    code = "not_found"


class ConflictError(TimelineError):
    """Unique-constraint race on a get-or-create path. Recovered locally."""

    code = "conflict"


class StorageError(TimelineError):
    """The underlying store failed; safe to retry."""

    code = "storage_unavailable"


class InvalidTransition(TimelineError):
    code = "invalid_transition"


class TooManyAmendments(TimelineError):
    code = "too_many_amendments"


class SyncFailed(TimelineError):
    code = "sync_failed"


class AppendOnlyViolation(TimelineError):
    code = "append_only_violation"


__all__ = [
    "TimelineError",
    "ValidationError",
    "InvalidAmendmentTarget",
    "NotFoundError",
    "ConflictError",
    "StorageError",
    "InvalidTransition",
    "TooManyAmendments",
    "SyncFailed",
    "AppendOnlyViolation",
]
