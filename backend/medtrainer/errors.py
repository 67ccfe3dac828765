"""Typed operational errors raised by services and the access guard.

Every domain failure is an `ApiError` carrying an HTTP status code and a
human readable message. The HTTP boundary in `main` converts them into
the `{status, message, stack?}` response body.
"""


class ApiError(Exception):
    """Base class for operational errors."""
    status_code = 500
    default_message = "Internal server error"

    def __init__(self, message=None, status_code=None):
        self.message = message or self.default_message
        if status_code is not None:
            self.status_code = status_code
        super().__init__(self.message)

    @property
    def status(self) -> str:
        """`fail` for client errors, `error` for everything else."""
        return "fail" if 400 <= self.status_code < 500 else "error"


class BadRequest(ApiError):
    status_code = 400
    default_message = "Bad request"


class ValidationError(BadRequest):
    """Input rejected by a domain rule (length bounds, allowlists, ...)."""
    default_message = "Validation failed"


class Unauthorized(ApiError):
    status_code = 401
    default_message = "Not authenticated"


class Forbidden(ApiError):
    status_code = 403
    default_message = "Access denied"


class NotFound(ApiError):
    status_code = 404
    default_message = "Resource not found"


class Conflict(ApiError):
    status_code = 409
    default_message = "Conflict"


class Internal(ApiError):
    status_code = 500
