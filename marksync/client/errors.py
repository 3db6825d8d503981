class MarksyncError(Exception):
    """Base class for failures surfaced by the bookmark client."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code


class AuthenticationError(MarksyncError):
    """The caller has no valid session or token; sign in again."""


class AuthorizationError(MarksyncError):
    """The target row is missing or belongs to someone else."""


class ValidationError(MarksyncError):
    """A required field was missing; nothing was written."""


class TransportError(MarksyncError):
    """Network failure, server error or an unreadable response."""
