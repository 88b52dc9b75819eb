"""Error taxonomy shared by the reminder repository, dispatcher and API."""


class ReminderError(Exception):
    """Base class for reminder engine errors."""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(ReminderError):
    """Bad input; surfaced as HTTP 400."""


class NotFoundError(ReminderError):
    """Unknown reminder id; surfaced as HTTP 404."""


class DispatchError(ReminderError):
    """Delivery problem. Always recorded as a failed status, never raised to API callers."""


class StorageError(ReminderError):
    """Persistent store I/O failure; surfaced as HTTP 500."""
