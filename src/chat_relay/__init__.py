"""Chat-Relay: authenticated streaming chat over Supabase and OpenAI.

This package provides:
- Bearer-token session verification against Supabase auth
- Chat history persistence in the Supabase ``chat_history`` table
- A streaming completion relay with an exactly-once completion callback
- The ``POST /api/chat`` FastAPI service (``chat_relay.main:app``)
- A client-side session controller state machine

Last Grunted: 10/18/2026 09:10:00 AM UTC
"""

from chat_relay.models import (
    ChatMessage,
    HistoryEntry,
    StoredMessage,
    Usage,
    CompletionResult,
)

from chat_relay.services.errors import (
    ChatRelayError,
    Unauthenticated,
    InvalidRequest,
    PersistenceFailure,
    UpstreamFailure,
)

__all__ = [
    "ChatMessage",
    "HistoryEntry",
    "StoredMessage",
    "Usage",
    "CompletionResult",
    "ChatRelayError",
    "Unauthenticated",
    "InvalidRequest",
    "PersistenceFailure",
    "UpstreamFailure",
]

__version__ = "0.1.0"
