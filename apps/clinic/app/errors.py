from typing import Any, Dict, Optional


class SchedulingError(Exception):
    """Base class for scheduling failures.

    ``context`` carries whatever identifies the failing unit of work
    (session index, date, slot index, appointment id) so callers can log
    or render it without parsing the message.
    """

    def __init__(self, message: str, **context: Any):
        super().__init__(message)
        self.message = message
        self.context: Dict[str, Any] = {k: v for k, v in context.items() if v is not None}

    def __str__(self) -> str:
        return self.message


class ValidationError(SchedulingError):
    pass


class InvalidRangeError(ValidationError):
    pass


class NotFoundError(SchedulingError):
    pass


class SlotTakenError(SchedulingError):
    """The slot was claimed by someone else; safe to retry on another slot."""

    retryable = True

    def __init__(self, message: str = "slot already taken", **context: Any):
        super().__init__(message, **context)


class CapacityExceededError(SchedulingError):
    pass


class OverlapWithNextSessionError(SchedulingError):
    def __init__(self, message: str, next_session_start: Optional[str] = None, **context: Any):
        super().__init__(message, next_session_start=next_session_start, **context)
        self.next_session_start = next_session_start


class ShiftApplicationError(SchedulingError):
    """Appointment shifting failed after the break itself was committed."""
