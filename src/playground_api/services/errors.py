"""
Relay error taxonomy and OpenAI-compatible error response utilities.

Every failure the completion relay or the conversation store can report is a
``RelayError`` subclass. Each class knows the HTTP status and OpenAI error
type it maps to, so the route layer turns any of them into the standard
error envelope:
{
    "error": {
        "message": "Error description",
        "type": "error_type",
        "param": "parameter_name",
        "code": "error_code"
    }
}

Taxonomy:
    - InputError: Malformed request body (400)
    - NotFoundError: Unknown conversation or message id (404)
    - PersistenceError: Store read/write failure (500)
    - UpstreamConnectError: Completion endpoint unreachable (502)
    - UpstreamStatusError: Completion endpoint answered non-2xx (status passed through)
    - UpstreamStreamError: Read failure in the middle of the stream (502)

Last Grunted: 10/15/2026 09:20:00 AM UTC
"""
from typing import Any, Optional

from fastapi.responses import JSONResponse


# ============================================================================
# Exception Taxonomy
# ============================================================================

class RelayError(Exception):
    """Base class for every error surfaced by the relay and the store."""

    status_code: int = 500
    error_type: str = "api_error"
    code: Optional[Any] = "internal_error"
    param: Optional[str] = None

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_response(self) -> JSONResponse:
        return create_error_response(
            message=self.message,
            error_type=self.error_type,
            param=self.param,
            code=self.code,
            status_code=self.status_code,
        )


class InputError(RelayError):
    status_code = 400
    error_type = "invalid_request_error"
    code = "invalid_parameter"

    def __init__(self, message: str, param: Optional[str] = None):
        super().__init__(message)
        self.param = param


class NotFoundError(RelayError):
    """Raised when a conversation or turn id does not resolve."""

    status_code = 404
    error_type = "not_found_error"

    def __init__(self, resource_type: str, resource_id: Any):
        super().__init__(f"{resource_type.title()} '{resource_id}' not found")
        self.resource_type = resource_type
        self.resource_id = resource_id
        self.code = f"{resource_type}_not_found"


class PersistenceError(RelayError):
    code = "persistence_error"


class UpstreamConnectError(RelayError):
    status_code = 502
    code = "upstream_unreachable"


class UpstreamStatusError(RelayError):
    """
    The completion endpoint rejected the request.

    Attributes:
        status_code: Upstream HTTP status, passed through to the caller
        upstream_message: ``error.message`` from the upstream body, if any
        upstream_code: ``error.code`` from the upstream body, if any
    """

    error_type = "upstream_error"

    def __init__(
        self,
        status_code: int,
        upstream_message: Optional[str] = None,
        upstream_code: Optional[Any] = None,
    ):
        if upstream_message:
            message = f"Upstream error: {upstream_message} (code: {upstream_code})"
        else:
            message = f"Upstream error response with status {status_code}"
        super().__init__(message)
        self.status_code = status_code
        self.upstream_message = upstream_message
        self.upstream_code = upstream_code
        self.code = upstream_code if upstream_code is not None else "upstream_error"
        if status_code == 429:
            self.error_type = "rate_limit_error"


class UpstreamStreamError(RelayError):
    status_code = 502
    code = "streaming_error"


# ============================================================================
# Error Response Factory
# ============================================================================

def create_error_response(
    message: str,
    error_type: str = "invalid_request_error",
    param: Optional[str] = None,
    code: Optional[Any] = None,
    status_code: int = 400
) -> JSONResponse:
    """
    Create an OpenAI-style error response.

    Args:
        message: Human-readable error description
        error_type: Error category (see module docstring for types)
        param: The parameter that caused the error (if applicable)
        code: Machine-readable error code
        status_code: HTTP status code

    Returns:
        JSONResponse with OpenAI error format

    Example:
        >>> create_error_response(
        ...     message="Conversation '7' not found",
        ...     error_type="not_found_error",
        ...     code="conversation_not_found",
        ...     status_code=404
        ... )
    """
    return JSONResponse(
        status_code=status_code,
        content={
            "error": {
                "message": message,
                "type": error_type,
                "param": param,
                "code": code
            }
        }
    )


def internal_error() -> JSONResponse:
    """Generic 500 that does not leak internal details."""
    return create_error_response(
        message="An internal server error occurred",
        error_type="api_error",
        code="internal_error",
        status_code=500
    )
