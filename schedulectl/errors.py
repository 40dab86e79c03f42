from pydantic import ValidationError


class ScheduleError(Exception):
    """Base class for failures raised by schedule operations."""


class InvalidState(ScheduleError):
    """The schedule's current state does not allow the requested operation."""


__all__ = ["ScheduleError", "InvalidState", "ValidationError"]
