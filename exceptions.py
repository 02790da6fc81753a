"""Custom exceptions for matching and acceptance."""


class MatchingError(Exception):
    """Base class for errors surfaced to callers of the matching engine."""
    pass


class RequestNotFoundError(MatchingError):
    """Raised when a send or delivery request cannot be found."""
    pass


class ResponseNotFoundError(MatchingError):
    """Raised when a response cannot be found."""
    pass


class ResponseNotActionableError(MatchingError):
    """Raised when a response is no longer active or the party has already decided."""
    pass
