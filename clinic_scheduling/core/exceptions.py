"""
Scheduling error taxonomy.

Services raise these; ``main.py`` maps them onto JSON responses using
``status_code``. None of them are retried by the core itself.
"""
from fastapi import status


class SchedulingError(Exception):
    status_code = status.HTTP_400_BAD_REQUEST

    def __init__(self, detail: str):
        super().__init__(detail)
        self.detail = detail

    @property
    def error(self) -> str:
        return type(self).__name__


class ValidationError(SchedulingError):
    """Missing or malformed input."""
    status_code = status.HTTP_422_UNPROCESSABLE_ENTITY


class NotFound(SchedulingError):
    status_code = status.HTTP_404_NOT_FOUND


class Conflict(SchedulingError):
    """A resource is already booked for the requested window."""
    status_code = status.HTTP_409_CONFLICT


class TooManyRequests(SchedulingError):
    """A clinic rate limit, such as the weekly reschedule request cap."""
    status_code = status.HTTP_429_TOO_MANY_REQUESTS


class InvalidTransition(SchedulingError):
    status_code = status.HTTP_409_CONFLICT

    def __init__(self, current, target):
        current = getattr(current, "value", current)
        target = getattr(target, "value", target)
        super().__init__(f"Cannot change session status from '{current}' to '{target}'")
        self.current = current
        self.target = target


class AlreadyResolved(SchedulingError):
    status_code = status.HTTP_409_CONFLICT
