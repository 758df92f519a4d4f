"""Service error taxonomy mapped to HTTP status codes."""


class ServiceError(Exception):
    """Base class for errors surfaced to API callers."""

    status_code: int = 500
    default_message: str = "An error occurred"

    def __init__(self, message: str | None = None):
        self.message = message or self.default_message
        super().__init__(self.message)


class ValidationError(ServiceError):
    """Malformed, missing or out-of-range input."""

    status_code = 400
    default_message = "Invalid input"


class InvalidStateError(ServiceError):
    """The requested transition is illegal for the record's current status."""

    status_code = 400
    default_message = "Operation not allowed in the current status"


class ForbiddenError(ServiceError):
    """The caller's role or relationship denies the operation."""

    status_code = 403
    default_message = "You do not have permission to perform this action"


class NotFoundError(ServiceError):
    """The requested record does not exist."""

    status_code = 404
    default_message = "Not found"


class ConflictError(ServiceError):
    """Unexpected persistence failure. Details are logged, never returned."""

    status_code = 500
    default_message = "An unexpected error occurred"
