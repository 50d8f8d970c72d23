"""Bearer-token session verification against Supabase auth."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any

import structlog

from chat_relay.services.errors import Unauthenticated

logger = structlog.get_logger(__name__)

BEARER_PREFIX = "Bearer "
INVALID_TOKEN_MESSAGE = "Unauthorized: Invalid token"


@dataclass(frozen=True)
class AuthenticatedUser:
    id: str
    email: str | None = None


def extract_bearer_token(authorization: str | None) -> str:
    """Return the token from an ``Authorization: Bearer <token>`` header value."""
    if not authorization or not authorization.startswith(BEARER_PREFIX):
        raise Unauthenticated()
    token = authorization[len(BEARER_PREFIX):].strip()
    if not token:
        raise Unauthenticated()
    return token


async def resolve_user(token: str, auth: Any) -> AuthenticatedUser:
    """Resolve a token to a user through the auth service's ``get_user``.

    Any error raised by the auth service, or a response without a user,
    is reported as ``Unauthenticated``.
    """
    try:
        response = await auth.get_user(token)
    except Exception as e:
        logger.warning("auth.get_user_failed", error_type=type(e).__name__, error=str(e))
        raise Unauthenticated(INVALID_TOKEN_MESSAGE) from e

    user = getattr(response, "user", None) if response is not None else None
    if user is None or not getattr(user, "id", None):
        raise Unauthenticated(INVALID_TOKEN_MESSAGE)

    return AuthenticatedUser(id=str(user.id), email=getattr(user, "email", None))


async def verify_session(authorization: str | None, auth: Any) -> AuthenticatedUser:
    """Authenticate a raw ``Authorization`` header value. No side effects."""
    token = extract_bearer_token(authorization)
    return await resolve_user(token, auth)
