"""Domain exceptions."""


class CourseFlowError(Exception):
    """Base class for all engine errors."""


class NotFoundError(CourseFlowError):
    """A flow action, execution record or template does not exist."""

    def __init__(self, kind: str, identifier: str):
        self.kind = kind
        self.identifier = identifier
        super().__init__(f"{kind} {identifier} not found")


class ConfigurationError(CourseFlowError):
    """A flow action is missing something it needs to execute.

    Normally caught by validation when the action is saved. Raised at dispatch
    time only when an invalid definition slipped through, and then treated as a
    permanent failure.
    """


class InvalidTransitionError(CourseFlowError):
    """An execution record was asked to move along an edge the state machine forbids."""

    def __init__(self, record_id: str, current: str, target: str):
        self.record_id = record_id
        self.current = current
        self.target = target
        super().__init__(f"Record {record_id} cannot move from {current} to {target}")


class ConflictError(CourseFlowError):
    """The requested change conflicts with existing state."""


class DeliveryError(CourseFlowError):
    """Base class for errors raised by channel adapters."""


class TransientDeliveryError(DeliveryError):
    """The side effect may succeed if retried (timeouts, throttling, 5xx)."""


class PermanentDeliveryError(DeliveryError):
    """The side effect will never succeed as configured (bad recipient, 4xx)."""

    def __init__(self, message: str, skip: bool = False):
        super().__init__(message)
        self.skip = skip
