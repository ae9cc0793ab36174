"""Custom exception types for consistent error handling."""


class FirestoreUnavailableError(Exception):
    """Raised when Firestore queries fail or are unavailable."""


class InvalidInputError(ValueError):
    """Raised when coordinates, keys, precision or ratings fail validation."""


class ReciprocityViolationError(Exception):
    """Raised when two requests are not an exact mirror of each other."""


class ConflictError(Exception):
    """Raised when a compare-and-swap transition lost a race.

    Safe to retry after re-reading current state.
    """


class InvalidTransitionError(ConflictError):
    """Raised when a match is not in a state that allows the transition."""


class UnauthorizedError(Exception):
    """Raised when the actor may not perform the requested transition."""


class NotFoundError(Exception):
    """Raised when a request or match does not exist or is already terminal."""
