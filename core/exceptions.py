"""
Exception hierarchy for the notifier.

Only StartupError is fatal: it is raised from the startup hook and aborts the
process. The others are raised at collaborator seams and handled (logged and
skipped) by the scheduler and the command router.
"""


class BusNotifierError(Exception):
    """Base class for all application errors."""


class StartupError(BusNotifierError):
    """Storage or transport could not be initialized at boot."""


class TransitError(BusNotifierError):
    """The transit provider could not be reached or returned garbage."""


class NotificationError(BusNotifierError):
    """A chat message could not be delivered."""


class PersistenceError(BusNotifierError):
    """A durable JSON document could not be read or written."""
