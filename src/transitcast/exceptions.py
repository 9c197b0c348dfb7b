"""Exception hierarchy for the transitcast broker."""


class TransitcastError(Exception):
    """Base exception for broker errors."""
    pass


class InvalidInputError(TransitcastError):
    """Raised when an input is rejected at the boundary; no state was mutated."""
    pass


class StateConflictError(TransitcastError):
    """Raised when an operation does not apply to the current vehicle state."""
    pass


class DeliveryError(TransitcastError):
    """Base exception for delivery failures."""
    pass


class QueueFullError(DeliveryError):
    """Raised when a client's pending queue cannot take another envelope."""
    pass


class StoreUnavailableError(TransitcastError):
    """Raised when the durable store cannot be reached."""
    pass
