"""
Pydantic models shared by the chat relay.

Defines:
    - ChatMessage: a message as sent by the client in ``POST /api/chat``
    - StoredMessage: a row of the ``chat_history`` table
    - HistoryEntry: a stored row as served by the history endpoint
    - Usage / CompletionResult: what the completion callback receives

Rows are owned by Supabase; ``created_at`` is always assigned by the
store and the content column is named ``message``.

Last Grunted: 10/18/2026 09:10:00 AM UTC
"""
from datetime import datetime
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

Role = Literal["user", "assistant", "system"]


class ChatMessage(BaseModel):
    """
    Chat message as received from the client.

    Attributes:
        role: Message author role (user, assistant, system)
        content: Message text
        id: Optional client-side message id (ignored for storage)
    """
    model_config = ConfigDict(extra="ignore")

    role: Role
    content: str
    id: Optional[str] = None

    def to_completion_message(self) -> dict[str, str]:
        """Role + content pair in the completion API's message shape."""
        return {"role": self.role, "content": self.content}


class StoredMessage(BaseModel):
    """
    Persisted chat turn.

    Attributes:
        id: Row id assigned by the store
        chat_id: Chat session grouping key supplied by the client
        user_id: Owning user (from the verified token)
        role: Message author role
        content: Message text (``message`` column)
        created_at: Store-assigned timestamp, defines ordering
    """
    id: Optional[Any] = None
    chat_id: str
    user_id: str
    role: Role
    content: str
    created_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "StoredMessage":
        return cls(
            id=row.get("id"),
            chat_id=str(row["chat_id"]),
            user_id=str(row["user_id"]),
            role=row["role"],
            content=row.get("message") or "",
            created_at=row.get("created_at"),
        )


class HistoryEntry(BaseModel):
    """Stored turn as returned to its owner; the user id is implied by the token."""
    id: Optional[Any] = None
    chat_id: str
    role: Role
    content: str
    created_at: Optional[datetime] = None

    @classmethod
    def from_stored(cls, message: StoredMessage) -> "HistoryEntry":
        return cls(**message.model_dump(exclude={"user_id"}))


class Usage(BaseModel):
    """Token usage reported by the completion service."""
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0


class CompletionResult(BaseModel):
    """
    Final outcome of one streamed completion.

    Attributes:
        text: Full assistant text (concatenated deltas)
        usage: Token accounting from the final usage chunk
        finish_reason: Provider finish reason (stop, length, ...)
    """
    text: str
    usage: Usage = Field(default_factory=Usage)
    finish_reason: Optional[str] = None
