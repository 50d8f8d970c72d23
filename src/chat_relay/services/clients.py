"""
Shared backend clients for Supabase and OpenAI.

Provides long-lived, lazily created client instances so every request
reuses the same connection pools:

    - Supabase ``AsyncClient`` for auth token resolution and the
      chat history table
    - ``AsyncOpenAI`` for streaming chat completions, backed by an
      httpx AsyncClient with explicit pool limits and timeouts

Configuration comes from ``chat_relay.config.Settings`` (SUPABASE_URL,
SUPABASE_KEY, OPENAI_API_KEY, OPENAI_BASE_URL, MAX_DURATION_SECONDS).

Last Grunted: 10/18/2026 09:10:00 AM UTC
"""
import asyncio
from typing import Optional

import httpx
import structlog
from openai import AsyncOpenAI
from supabase import AsyncClient, acreate_client

from chat_relay.config import get_settings

logger = structlog.get_logger(__name__)

# Connection pool settings for the completion service
HTTP_MAX_CONNECTIONS: int = 100
HTTP_MAX_KEEPALIVE: int = 20
HTTP_TIMEOUT_CONNECT: float = 5.0


# ============================================================================
# Client Configuration
# ============================================================================

def _create_limits() -> httpx.Limits:
    """
    Create connection pool limits configuration.

    Returns:
        httpx.Limits: Configured connection limits
    """
    return httpx.Limits(
        max_connections=HTTP_MAX_CONNECTIONS,
        max_keepalive_connections=HTTP_MAX_KEEPALIVE,
        keepalive_expiry=5.0,  # Close idle connections after 5 seconds
    )


def _create_timeout(max_duration: float) -> httpx.Timeout:
    """
    Create timeout configuration for completion requests.

    The read timeout follows the overall duration ceiling so a stalled
    upstream stream cannot outlive the request.

    Args:
        max_duration: Overall request ceiling in seconds

    Returns:
        httpx.Timeout: Configured timeout settings
    """
    return httpx.Timeout(
        max_duration,
        connect=HTTP_TIMEOUT_CONNECT,
    )


# ============================================================================
# Client Singletons
# ============================================================================

# Global client instances - initialized lazily
_supabase: Optional[AsyncClient] = None
_openai: Optional[AsyncOpenAI] = None

# acreate_client awaits, so concurrent first requests must not both build one
_supabase_lock = asyncio.Lock()


async def get_supabase() -> AsyncClient:
    """
    Get the shared Supabase client instance.

    Creates the client on first call (lazy initialization). Usable
    directly as a FastAPI dependency.

    Returns:
        AsyncClient: Shared Supabase client
    """
    global _supabase

    if _supabase is None:
        async with _supabase_lock:
            if _supabase is None:
                settings = get_settings()
                logger.info("supabase_client.init", url=settings.supabase_url)
                _supabase = await acreate_client(settings.supabase_url, settings.supabase_key)

    return _supabase


async def get_openai() -> AsyncOpenAI:
    """
    Get the shared OpenAI client instance.

    Returns:
        AsyncOpenAI: Shared completion client with pooled connections
    """
    global _openai

    if _openai is None:
        settings = get_settings()
        logger.info(
            "openai_client.init",
            base_url=settings.openai_base_url,
            max_connections=HTTP_MAX_CONNECTIONS,
        )
        _openai = AsyncOpenAI(
            api_key=settings.openai_api_key,
            base_url=settings.openai_base_url,
            max_retries=0,  # failures are surfaced, never retried
            http_client=httpx.AsyncClient(
                limits=_create_limits(),
                timeout=_create_timeout(settings.max_duration_seconds),
            ),
        )

    return _openai


async def close_clients() -> None:
    """
    Release the shared clients.

    Should be called during application shutdown.
    """
    global _supabase, _openai

    if _openai is not None:
        logger.info("openai_client.close")
        await _openai.close()
        _openai = None

    # The Supabase client owns no pooled resources that need an explicit close
    _supabase = None
