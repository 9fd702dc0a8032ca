# app/core/errors.py
from __future__ import annotations


class AttendanceError(Exception):
    """
    Base class for every error raised by the attendance reconciliation core.

    Duplicate joins and leaves are not errors: the engine reports them as
    NOOP transitions.
    """


class InvalidCredential(AttendanceError):
    """
    The identity token or participant payload could not be turned into an
    identity (unparsable, unverifiable, or missing the subject).
    """


class MalformedEvent(AttendanceError):
    """
    An inbound event is missing required fields (e.g. the meeting id).
    """


class ExternalCallFailure(AttendanceError):
    """
    A call to the meeting platform failed (timeout, transport error, 5xx,
    rate limit, or bad credentials).
    """

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        retryable: bool = False,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.retryable = retryable


class StoreConflict(AttendanceError):
    """
    A session record changed underneath a write (version mismatch) or an
    insert collided with another active session for the same key.
    """


class MeetingNotFound(AttendanceError):
    """
    The meeting platform does not know the requested meeting.
    """


class PlatformNotConfigured(ExternalCallFailure):
    """
    Polling was requested but no meeting platform credentials are configured.
    """
