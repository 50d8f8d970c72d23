"""
Chat relay error taxonomy and response utilities.

Every error returned by the relay uses the same flat JSON body:
{
    "error": "Human-readable description"
}

Error Types:
    - Unauthenticated: missing, malformed or unresolvable bearer token (401)
    - InvalidRequest: malformed request body (400)
    - PersistenceFailure: chat history store write/read error (500)
    - UpstreamFailure: completion service error (500, generic message)

Anything else is mapped to a generic 500 by the catch-all handler in
``chat_relay.main``.

Last Grunted: 10/18/2026 09:10:00 AM UTC
"""
from typing import Optional

from fastapi.responses import JSONResponse
from pydantic import BaseModel


UNEXPECTED_ERROR_MESSAGE = "An unexpected error occurred"


# ============================================================================
# Error Models
# ============================================================================

class ErrorBody(BaseModel):
    """
    Error response body.

    Attributes:
        error: Human-readable error description
    """
    error: str


# ============================================================================
# Exceptions
# ============================================================================

class ChatRelayError(Exception):
    """
    Base class for errors that map onto a client-facing response.

    Attributes:
        status_code: HTTP status returned to the caller
        message: Message placed in the ``error`` field
    """
    status_code: int = 500
    default_message: str = UNEXPECTED_ERROR_MESSAGE

    def __init__(self, message: Optional[str] = None):
        self.message = message or self.default_message
        super().__init__(self.message)


class Unauthenticated(ChatRelayError):
    status_code = 401
    default_message = "Unauthorized: Missing or invalid token"


class InvalidRequest(ChatRelayError):
    status_code = 400
    default_message = "Invalid request"


class PersistenceFailure(ChatRelayError):
    status_code = 500
    default_message = "Failed to persist chat message"


class UpstreamFailure(ChatRelayError):
    """Completion service failure. Never exposes provider detail to clients."""
    status_code = 500

    @property
    def public_message(self) -> str:
        return UNEXPECTED_ERROR_MESSAGE


# ============================================================================
# Error Response Factory
# ============================================================================

def error_response(message: str, status_code: int = 400) -> JSONResponse:
    """
    Create a ``{"error": message}`` response.

    Args:
        message: Human-readable error description
        status_code: HTTP status code

    Returns:
        JSONResponse with the flat error body

    Example:
        >>> error_response("Missing chat ID", status_code=400)
    """
    return JSONResponse(
        status_code=status_code,
        content=ErrorBody(error=message).model_dump(),
    )


def response_for(exc: ChatRelayError) -> JSONResponse:
    """Render a ChatRelayError, hiding upstream detail."""
    message = exc.public_message if isinstance(exc, UpstreamFailure) else exc.message
    return error_response(message, status_code=exc.status_code)


def internal_error() -> JSONResponse:
    """Generic 500 that never leaks internal detail."""
    return error_response(UNEXPECTED_ERROR_MESSAGE, status_code=500)
