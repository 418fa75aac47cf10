import logging
from enum import Enum
from typing import Any, Dict, Optional, Type

import httpx

lib_logger = logging.getLogger("dashboard_client")

DEFAULT_ERROR_MESSAGE = "An unexpected error occurred"


class ErrorKind(str, Enum):
    """Closed set of failure categories produced at the pipeline boundary."""

    BAD_REQUEST = "bad_request"
    UNAUTHENTICATED = "unauthenticated"
    AUTHORIZATION = "authorization"
    NOT_FOUND = "not_found"
    CONFLICT = "conflict"
    VALIDATION = "validation"
    RATE_LIMITED = "rate_limited"
    SERVER_ERROR = "server_error"
    NETWORK = "network"
    CANCELLED = "cancelled"
    UNEXPECTED = "unexpected"


# Kinds that the retry helper may replay on its own for retry-safe calls
RETRYABLE_KINDS = frozenset({ErrorKind.SERVER_ERROR, ErrorKind.NETWORK})

# Kinds the UI should not toast: 401 redirects to login, cancellations are
# caller-initiated
SILENT_KINDS = frozenset({ErrorKind.UNAUTHENTICATED, ErrorKind.CANCELLED})


class ApiError(Exception):
    """
    Base class of every error the request pipeline raises.

    Attributes:
        kind: ErrorKind tag, one per taxonomy entry
        message: User-facing message (from the fixed template or the body)
        status_code: HTTP status, None when no response was received
        errors: Per-field validation errors from the envelope, if any
        payload: Raw decoded response body, if any
        retry_after: Seconds the server asked us to wait (429 only)
        method / url: The request that failed
        duration_ms: Time from request start to failure
    """

    kind: ErrorKind = ErrorKind.UNEXPECTED
    default_message: str = DEFAULT_ERROR_MESSAGE

    def __init__(
        self,
        message: Optional[str] = None,
        *,
        status_code: Optional[int] = None,
        errors: Optional[Any] = None,
        payload: Optional[Any] = None,
        retry_after: Optional[int] = None,
        method: Optional[str] = None,
        url: Optional[str] = None,
        duration_ms: Optional[float] = None,
    ):
        self.message = message or self.default_message
        self.status_code = status_code
        self.errors = errors
        self.payload = payload
        self.retry_after = retry_after
        self.method = method
        self.url = url
        self.duration_ms = duration_ms
        super().__init__(self.message)

    @property
    def retryable(self) -> bool:
        """True for failures the backoff helper may replay automatically."""
        return self.kind in RETRYABLE_KINDS

    @property
    def should_notify(self) -> bool:
        """False for failures that must not surface as a generic toast."""
        return self.kind not in SILENT_KINDS

    def __str__(self):
        return self.message

    def __repr__(self):
        parts = [f"kind={self.kind.value}", f"status={self.status_code}"]
        if self.retry_after is not None:
            parts.append(f"retry_after={self.retry_after}")
        if self.method and self.url:
            parts.append(f"request={self.method} {self.url}")
        parts.append(f"message={self.message!r}")
        return f"{type(self).__name__}({', '.join(parts)})"


class BadRequestError(ApiError):
    kind = ErrorKind.BAD_REQUEST
    default_message = "Invalid request"


class UnauthenticatedError(ApiError):
    """
    Raised when the session cannot be (re)established: a 401 that is not
    eligible for renewal, a missing refresh token, or a failed renewal.

    After a failed renewal the credentials are already cleared; the UI is
    expected to redirect to the login page rather than show a toast.
    """

    kind = ErrorKind.UNAUTHENTICATED
    default_message = "Please login to continue"


class AuthorizationError(ApiError):
    kind = ErrorKind.AUTHORIZATION
    default_message = "You do not have permission to perform this action"


class NotFoundError(ApiError):
    kind = ErrorKind.NOT_FOUND
    default_message = "Resource not found"


class ConflictError(ApiError):
    kind = ErrorKind.CONFLICT
    default_message = "Conflict with existing data"


class ValidationError(ApiError):
    kind = ErrorKind.VALIDATION
    default_message = "Validation failed"


class RateLimitedError(ApiError):
    kind = ErrorKind.RATE_LIMITED
    default_message = "Too many requests. Please try again later"


class ServerError(ApiError):
    kind = ErrorKind.SERVER_ERROR
    default_message = "Server error. Please try again later"


class NetworkError(ApiError):
    """No response was received (connection refused, DNS, timeout)."""

    kind = ErrorKind.NETWORK
    default_message = "Network error. Please check your connection"


class RequestCancelledError(ApiError):
    kind = ErrorKind.CANCELLED
    default_message = "Request was cancelled"


class UnexpectedResponseError(ApiError):
    """Any other status, or a 2xx envelope reporting success=false."""

    kind = ErrorKind.UNEXPECTED


STATUS_ERRORS: Dict[int, Type[ApiError]] = {
    400: BadRequestError,
    401: UnauthenticatedError,
    403: AuthorizationError,
    404: NotFoundError,
    409: ConflictError,
    422: ValidationError,
    429: RateLimitedError,
}

# Statuses whose fixed template wins over whatever message the body carries
FIXED_MESSAGE_STATUSES = frozenset({401, 429, 500, 503})

SERVICE_UNAVAILABLE_MESSAGE = "Service temporarily unavailable"


def error_class_for_status(status_code: int) -> Type[ApiError]:
    """Map an HTTP status to its taxonomy class."""
    if status_code in STATUS_ERRORS:
        return STATUS_ERRORS[status_code]
    if 500 <= status_code < 600:
        return ServerError
    return UnexpectedResponseError


def flatten_field_errors(errors: Any) -> str:
    """
    Join structured validation errors into one line.

    Handles {"field": "msg"}, {"field": ["a", "b"]} and ["a", "b"].
    """
    if not errors:
        return ""
    values = errors.values() if isinstance(errors, dict) else errors
    if isinstance(values, str):
        return values

    flat = []
    for value in values:
        if isinstance(value, (list, tuple)):
            flat.extend(str(v) for v in value)
        elif isinstance(value, dict):
            flat.append(str(value.get("message") or value.get("msg") or value))
        else:
            flat.append(str(value))
    return ", ".join(flat)


def parse_retry_after(headers: Optional[httpx.Headers]) -> Optional[int]:
    """
    Read the Retry-After header as whole seconds.

    HTTP-date values are not used by the dashboard API and are ignored.
    """
    if not headers:
        return None
    value = headers.get("retry-after")
    if not value:
        return None
    try:
        return max(0, int(float(value.strip())))
    except ValueError:
        return None


def _decode_body(response: httpx.Response) -> Any:
    if not response.content:
        return None
    try:
        return response.json()
    except ValueError:
        return response.text


def classify_response(
    response: httpx.Response,
    duration_ms: Optional[float] = None,
) -> ApiError:
    """
    Turn a non-2xx response into the matching ApiError.

    Args:
        response: The failed response
        duration_ms: Latency measured by the pipeline, attached for logging

    Returns:
        An ApiError subclass instance (never raises)
    """
    status = response.status_code
    body = _decode_body(response)
    envelope = body if isinstance(body, dict) else {}
    body_message = envelope.get("message") if isinstance(envelope.get("message"), str) else None
    field_errors = envelope.get("errors")

    error_cls = error_class_for_status(status)

    if status == 503:
        message = SERVICE_UNAVAILABLE_MESSAGE
    elif status in FIXED_MESSAGE_STATUSES or (
        error_cls is ServerError and not body_message
    ):
        message = error_cls.default_message
    else:
        message = body_message or error_cls.default_message

    if error_cls is ValidationError and field_errors:
        details = flatten_field_errors(field_errors)
        if details:
            message = f"{message}: {details}"

    try:
        request = response.request
    except RuntimeError:
        # Responses built by hand (tests, cached bodies) carry no request
        request = None
    return error_cls(
        message,
        status_code=status,
        errors=field_errors,
        payload=body,
        retry_after=parse_retry_after(response.headers) if status == 429 else None,
        method=request.method if request is not None else None,
        url=str(request.url) if request is not None else None,
        duration_ms=duration_ms,
    )


def classify_exception(
    error: Exception,
    method: Optional[str] = None,
    url: Optional[str] = None,
    duration_ms: Optional[float] = None,
) -> ApiError:
    """
    Turn a transport-level exception (no response received) into an ApiError.

    httpx.HTTPStatusError is routed through classify_response so callers that
    used raise_for_status() get the same taxonomy.
    """
    if isinstance(error, ApiError):
        return error
    if isinstance(error, httpx.HTTPStatusError):
        return classify_response(error.response, duration_ms=duration_ms)
    if isinstance(error, (httpx.TransportError, httpx.TimeoutException)):
        lib_logger.debug(f"Network failure for {method} {url}: {error!r}")
        return NetworkError(method=method, url=url, duration_ms=duration_ms)
    return UnexpectedResponseError(
        str(error) or DEFAULT_ERROR_MESSAGE,
        method=method,
        url=url,
        duration_ms=duration_ms,
    )


def mask_token(token: Optional[str]) -> str:
    """
    Mask a credential for safe display in logs and error messages.

    Shows the last 6 characters (e.g., "...xyz123").
    """
    if not token:
        return "<none>"
    if len(token) > 6:
        return f"...{token[-6:]}"
    return "***"
