"""Custom exceptions for dispatch and trip management."""


class DispatchError(Exception):
    """Base class for dispatch service errors."""
    pass


class BackingStoreUnavailableError(DispatchError):
    """A backing store could not answer in time. Retryable."""
    pass


class GeoIndexUnavailableError(BackingStoreUnavailableError):
    """Raised when the driver location index cannot be queried or updated."""
    pass


class EligibilityLookupError(BackingStoreUnavailableError):
    """Raised when the driver approval lookup fails or times out."""
    pass


class TripNotFoundError(DispatchError):
    """Raised when a trip cannot be found."""
    pass


class InvalidStatusTransitionError(DispatchError):
    """Raised when a trip cannot move to the requested status."""

    def __init__(self, current, requested):
        self.current = current
        self.requested = requested
        super().__init__(f"Invalid status transition: {current} -> {requested}")


class TripAlreadyAssignedError(DispatchError):
    """Raised when a driver accepts a trip that is no longer requested."""
    pass
