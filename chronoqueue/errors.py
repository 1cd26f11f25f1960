class SchedulerError(Exception):
    """Base class for scheduler errors."""


class MalformedEntryError(SchedulerError, ValueError):
    """A member of the schedule or the processing set could not be parsed.

    This only happens when the underlying keys were modified by something
    other than the scheduler.
    """


class PreconditionError(SchedulerError, ValueError):
    """Raised before any mutation when required arguments are missing."""
