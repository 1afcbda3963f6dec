"""delivery_monitor/errors.py — Exception hierarchy.

Collaborator errors are transient: the monitor loop abandons the current
cycle and tries again on the next wake.  Monitor errors are raised by the
control plane and mapped to HTTP status codes by the API layer.
"""


class CollaboratorError(Exception):
    """An external provider (traffic, email) failed for this attempt."""


class TrafficProviderError(CollaboratorError):
    pass


class EmailDeliveryError(CollaboratorError):
    pass


class MonitorError(Exception):
    """Base class for control-plane failures."""


class MonitorNotFoundError(MonitorError):
    """No running instance exists for the given workflow id."""


class MonitorAlreadyExistsError(MonitorError):
    """An instance with the same workflow id was already started."""


class MonitorUnavailableError(MonitorError):
    """Redis or the Celery broker could not be reached."""


class MonitorBusyError(MonitorUnavailableError):
    """The instance lock is held by another cycle; try again shortly."""
