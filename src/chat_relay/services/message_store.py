"""
Chat history gateway over the Supabase ``chat_history`` table.

Two operations:
    - append_message: insert one turn; any store error raises
      PersistenceFailure and the caller decides whether it is fatal
    - fetch_history: all turns of a user, oldest first

Last Grunted: 10/18/2026 09:10:00 AM UTC
"""
from typing import Any, List

import structlog

from chat_relay.models import Role, StoredMessage
from chat_relay.services.errors import PersistenceFailure

logger = structlog.get_logger(__name__)


class MessageStore:
    """
    Append/read access to chat turns.

    Args:
        client: Supabase client (anything exposing ``table(name)``)
        table: Table name, ``chat_history`` by default
    """

    def __init__(self, client: Any, table: str = "chat_history"):
        self._client = client
        self._table = table

    async def append_message(self, chat_id: str, user_id: str, role: Role, content: str) -> None:
        """
        Insert one chat turn.

        Raises:
            PersistenceFailure: If the insert fails for any reason
        """
        row = {
            "chat_id": chat_id,
            "user_id": user_id,
            "message": content,
            "role": role,
        }
        try:
            await self._client.table(self._table).insert([row]).execute()
        except Exception as e:
            logger.error(
                "message_store.insert_failed",
                chat_id=chat_id,
                role=role,
                error_type=type(e).__name__,
                error=str(e),
            )
            raise PersistenceFailure(f"Failed to save {role} message") from e

        logger.debug("message_store.inserted", chat_id=chat_id, role=role, chars=len(content))

    async def fetch_history(self, user_id: str) -> List[StoredMessage]:
        """
        Return every turn of a user ordered by ``created_at`` ascending.

        An empty list is a valid result (new user).

        Raises:
            PersistenceFailure: If the query fails
        """
        try:
            response = await (
                self._client.table(self._table)
                .select("*")
                .eq("user_id", user_id)
                .order("created_at", desc=False)
                .execute()
            )
        except Exception as e:
            logger.error(
                "message_store.query_failed",
                error_type=type(e).__name__,
                error=str(e),
            )
            raise PersistenceFailure("Failed to load chat history") from e

        return [StoredMessage.from_row(row) for row in (response.data or [])]
