from typing import Any, Optional, Tuple


class AppError(Exception):
    """Base class for every condition the bridge reports to clients."""

    status_code = 500
    code = "internal_error"

    def __init__(self, message: str, details: Any = None):
        super().__init__(message)
        self.message = message
        self.details = details


class ConfigError(AppError):
    status_code = 500
    code = "config_error"


class ValidationError(AppError):
    status_code = 400
    code = "validation_error"


class UnauthorizedError(AppError):
    status_code = 401
    code = "unauthorized"

    def __init__(self, message: str = "Missing or invalid API key"):
        super().__init__(message)


class NotFoundError(AppError):
    status_code = 404
    code = "not_found"


class ConflictError(AppError):
    status_code = 409
    code = "conflict"


class RouteNotFoundError(AppError):
    status_code = 404
    code = "not_found"


class MethodNotAllowedError(AppError):
    status_code = 405
    code = "method_not_allowed"


class RequestTimeoutError(AppError):
    status_code = 408
    code = "request_timeout"


class PayloadTooLargeError(AppError):
    status_code = 413
    code = "payload_too_large"


class TooManyRequestsError(AppError):
    status_code = 429
    code = "rate_limited"

    def __init__(self, message: str, retry_after_ms: int):
        super().__init__(message, {"retryAfterMs": retry_after_ms})
        self.retry_after_ms = retry_after_ms


class UpstreamError(AppError):
    """The Actual server or its client library failed.

    The original exception is kept on ``cause`` for logging only; it never
    reaches the response body.
    """

    status_code = 502
    code = "upstream_error"

    def __init__(self, message: str, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.cause = cause


def describe_error(error: BaseException) -> dict:
    """Log-safe summary of an exception: class name and message only."""
    summary = {"error_name": type(error).__name__, "error_message": str(error)}
    cause = getattr(error, "cause", None)
    if cause is not None:
        summary["cause_name"] = type(cause).__name__
        summary["cause_message"] = str(cause)
    return summary


def to_error_envelope(error: BaseException, request_id: str) -> Tuple[int, dict]:
    """Map an exception to ``(status_code, body)`` for the JSON error envelope.

    ``details`` is only emitted for 4xx responses.
    """
    if isinstance(error, AppError):
        status_code, code, message = error.status_code, error.code, error.message
        details = error.details
    else:
        status_code, code, message = 500, "internal_error", "Unexpected internal error"
        details = None

    body = {"code": code, "message": message, "requestId": request_id}
    if details is not None and 400 <= status_code < 500:
        body["details"] = details
    return status_code, {"error": body}
