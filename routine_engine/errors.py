"""Exceptions raised by the routine engine."""

from typing import Optional


class RoutineEngineError(Exception):
    """Base class for engine errors."""


class StoreUnavailableError(RoutineEngineError):
    """A collaborator store failed or timed out.

    Aborts the current user's pass only; the work is retried on the next
    scheduled tick.
    """

    def __init__(self, operation: str, cause: Optional[BaseException] = None):
        self.operation = operation
        self.cause = cause
        detail = f": {cause}" if cause is not None else ""
        super().__init__(f"{operation} failed{detail}")


class NotificationDispatchError(RoutineEngineError):
    """The notification sink rejected or failed to accept a notification."""

    def __init__(self, kind: str, cause: Optional[BaseException] = None):
        self.kind = kind
        self.cause = cause
        super().__init__(f"dispatch of {kind} notification failed: {cause}")
