"""
Domain errors raised by the workflow, ledgers and collaborators.

Each error knows the HTTP status it maps to; main.py turns them into
``{"error": code, "detail": message}`` responses.
"""


class PlatformError(Exception):
    status_code = 400
    code = "error"

    def __init__(self, message: str = ""):
        super().__init__(message)
        self.message = message or self.__class__.__name__


class NotFound(PlatformError):
    status_code = 404
    code = "not_found"


class Unauthorized(PlatformError):
    status_code = 403
    code = "unauthorized"


class InvalidTransition(PlatformError):
    status_code = 409
    code = "invalid_transition"


class InvalidMilestone(InvalidTransition):
    code = "invalid_milestone"


class ValidationError(PlatformError):
    status_code = 422
    code = "validation_error"


class CapacityExceeded(PlatformError):
    status_code = 409
    code = "capacity_exceeded"


class InsufficientPoints(PlatformError):
    status_code = 409
    code = "insufficient_points"


class OutOfStock(PlatformError):
    status_code = 409
    code = "out_of_stock"


class ConcurrentModification(PlatformError):
    status_code = 409
    code = "conflict"


class ExternalServiceFailure(PlatformError):
    status_code = 502
    code = "external_service_failure"
