"""Error taxonomy for the presence verification core.

Only failed *execution* is an error. A completed pipeline that reports
``verified=False`` (including a student with no enrolled reference) is a
normal outcome, and the fusion engine reports rejected inputs through its
result objects instead of raising.
"""

from __future__ import annotations

from typing import Optional


class PresenceError(Exception):
    """Base class for every error raised by the presence core."""


class PermissionDenied(PresenceError):
    """Radio or camera access was refused.

    The core never retries: scanning or capture stays stopped until the caller
    explicitly requests permission again.
    """

    def __init__(self, resource: str, message: Optional[str] = None) -> None:
        self.resource = resource
        super().__init__(message or f"{resource} permission denied")


class SourceNotReady(PresenceError):
    """A capture was attempted before the source produced usable frames."""

    def __init__(self, message: str = "capture source is not streaming", *, stage: str = "") -> None:
        self.stage = stage
        super().__init__(message)


class StageFailure(PresenceError):
    """An internal pipeline stage raised; the original error is ``__cause__``."""

    def __init__(self, stage: str, message: Optional[str] = None) -> None:
        self.stage = stage
        super().__init__(message or f"pipeline stage '{stage}' failed")


class PresenceTimeout(PresenceError, TimeoutError):
    """A bounded operation exceeded its caller-supplied deadline."""

    def __init__(self, operation: str, timeout: Optional[float]) -> None:
        self.operation = operation
        self.timeout = timeout
        super().__init__(f"{operation} exceeded its {timeout}s deadline")


class SessionNotFound(PresenceError):
    """The referenced class session does not exist."""

    def __init__(self, session_id: str) -> None:
        self.session_id = session_id
        super().__init__(f"session {session_id!r} not found")


class SessionAlreadyExists(PresenceError):
    """A session with this identifier was already started; sessions are never restarted."""

    def __init__(self, session_id: str) -> None:
        self.session_id = session_id
        super().__init__(f"session {session_id!r} already exists")


__all__ = [
    "PermissionDenied",
    "PresenceError",
    "PresenceTimeout",
    "SessionAlreadyExists",
    "SessionNotFound",
    "SourceNotReady",
    "StageFailure",
]
