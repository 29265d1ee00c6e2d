"""Exceptions raised by the calendar engine."""

from __future__ import annotations


class CalendarError(Exception):
    """Base class for engine errors surfaced to callers."""

    kind = "CalendarError"


class NotFoundError(CalendarError):
    """Raised when an event, calendar or category does not exist."""

    kind = "NotFound"


class InvalidStateError(CalendarError):
    """Raised when an operation is not allowed in the record's current state."""

    kind = "InvalidState"


class AuthorizationDeniedError(CalendarError):
    kind = "AuthorizationDenied"


class ConsistencyError(CalendarError):
    """Raised when stored records were left half-written by an earlier failure."""

    kind = "ConsistencyViolation"


class ValidationError(CalendarError, ValueError):
    kind = "ValidationError"


class InvalidRuleError(ValidationError):
    """Raised for recurrence rule strings that cannot be parsed."""

    kind = "InvalidRule"
