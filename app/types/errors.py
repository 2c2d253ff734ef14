"""Exception hierarchy for the delivery scheduler.

Input errors are ``ValueError`` subclasses so callers that validate user
supplied schedules (signup forms, admin tools) can catch them generically.
"""

from __future__ import annotations


class SchedulerError(Exception):
    """Base exception for scheduler errors."""


class ScheduleInputError(SchedulerError, ValueError):
    """A recipient's stored schedule cannot be interpreted."""


class InvalidTimeOfDay(ScheduleInputError):
    """Raised when a local time-of-day string is not ``H:MM``/``HH:MM``."""


class UnknownTimezone(ScheduleInputError):
    """Raised when a timezone name is not in the IANA database."""


class TransportError(SchedulerError):
    """The outbound SMS channel rejected or failed a send."""
