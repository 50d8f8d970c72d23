"""FastAPI dependencies wiring the services to the shared backend clients."""
from typing import Any, Optional

from fastapi import Depends, Header

from chat_relay.config import get_settings
from chat_relay.services.auth import AuthenticatedUser, extract_bearer_token, resolve_user
from chat_relay.services.clients import get_openai, get_supabase
from chat_relay.services.completion_relay import CompletionRelay
from chat_relay.services.message_store import MessageStore


async def get_bearer_token(
    authorization: Optional[str] = Header(None, description="Bearer <supabase access token>"),
) -> str:
    """Extract the bearer token, or raise Unauthenticated."""
    return extract_bearer_token(authorization)


async def get_current_user(
    # Declared before the client so a bad header never touches Supabase
    token: str = Depends(get_bearer_token),
    supabase: Any = Depends(get_supabase),
) -> AuthenticatedUser:
    """Resolve the caller from the Authorization header, or raise Unauthenticated."""
    return await resolve_user(token, supabase.auth)


async def get_message_store(supabase: Any = Depends(get_supabase)) -> MessageStore:
    return MessageStore(supabase, table=get_settings().chat_history_table)


async def get_completion_relay(openai_client: Any = Depends(get_openai)) -> CompletionRelay:
    return CompletionRelay(openai_client, model=get_settings().chat_model)
