"""Error types raised by the scheduler and its collaborators."""


class SchedulerError(Exception):
    """Base class for scheduler errors."""


class ValidationError(SchedulerError):
    """Input to create/update is missing or malformed. Nothing is persisted."""


class StorageError(SchedulerError):
    """The message store could not complete an operation."""


class TransportError(SchedulerError):
    """A send attempt failed (network, auth, unknown recipient, not connected)."""
