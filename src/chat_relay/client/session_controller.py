"""
Client-side chat session controller.

Explicit state machine for a browser/CLI client of the relay:

    SignedOut --sign_in/sign_up/SIGNED_IN--> Authenticating --history loaded--> SignedIn
    SignedIn  --SIGNED_OUT/sign_out--------> SignedOut
    SignedIn  --TOKEN_REFRESHED------------> SignedIn (new access token, same history)

Auth-service notifications are fed in as discrete events through
``handle_auth_event`` instead of mutating state from callbacks. Events and
auth actions are applied one at a time, so a sign-out that arrives while a
sign-in is still loading history is applied after it, never lost. Entering
``SignedIn`` loads the user's stored history; ``send`` drives
``POST /api/chat`` and yields content deltas as the SSE stream arrives.

Last Grunted: 10/18/2026 09:10:00 AM UTC
"""
from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Callable, Optional, Sequence, Union

import httpx
import structlog
from httpx_sse import aconnect_sse
from supabase import acreate_client

from chat_relay.models import ChatMessage, StoredMessage
from chat_relay.services.auth import AuthenticatedUser
from chat_relay.services.errors import ChatRelayError, PersistenceFailure, Unauthenticated
from chat_relay.services.message_store import MessageStore

logger = structlog.get_logger(__name__)

SIGNED_IN = "SIGNED_IN"
SIGNED_OUT = "SIGNED_OUT"
INITIAL_SESSION = "INITIAL_SESSION"
TOKEN_REFRESHED = "TOKEN_REFRESHED"
USER_UPDATED = "USER_UPDATED"


# =============================================================================
# States
# =============================================================================


@dataclass(frozen=True)
class SignedOut:
    error: Optional[str] = None


@dataclass(frozen=True)
class Authenticating:
    email: Optional[str] = None


@dataclass(frozen=True)
class SignedIn:
    user: AuthenticatedUser
    access_token: str
    history: tuple[StoredMessage, ...] = field(default_factory=tuple)

    def initial_messages(self) -> list[ChatMessage]:
        """History in the shape the chat endpoint accepts."""
        return [
            ChatMessage(
                id=str(m.id) if m.id is not None else None,
                role=m.role,
                content=m.content,
            )
            for m in self.history
        ]


SessionState = Union[SignedOut, Authenticating, SignedIn]


class ChatRequestFailed(ChatRelayError):
    """Non-200 answer from ``POST /api/chat``."""

    def __init__(self, status_code: int, message: str):
        super().__init__(message)
        self.status_code = status_code


# =============================================================================
# Controller
# =============================================================================


class SessionController:
    """
    Drive sign-in state, history and chat requests for one client.

    Args:
        auth: Supabase auth client (``supabase.auth``)
        store: Chat history gateway used to rehydrate sessions
        http_client: httpx client whose base_url points at the relay
        chat_path: Path of the chat endpoint
    """

    def __init__(
        self,
        auth: Any,
        store: MessageStore,
        http_client: httpx.AsyncClient,
        chat_path: str = "/api/chat",
    ):
        self._auth = auth
        self._store = store
        self._http = http_client
        self._chat_path = chat_path
        self._listeners: list[Callable[[SessionState], None]] = []
        self._pending: set[asyncio.Task] = set()
        # Guards every state transition; not reentrant
        self._lock = asyncio.Lock()
        self.state: SessionState = SignedOut()

    @classmethod
    async def connect(
        cls,
        chat_api_url: str,
        supabase_url: str,
        supabase_key: str,
        table: str = "chat_history",
        timeout: float = 120.0,
    ) -> "SessionController":
        """Create a controller with its own Supabase and HTTP clients."""
        supabase = await acreate_client(supabase_url, supabase_key)
        http_client = httpx.AsyncClient(
            base_url=chat_api_url,
            timeout=httpx.Timeout(timeout, connect=10.0),
        )
        return cls(supabase.auth, MessageStore(supabase, table=table), http_client)

    # -------------------------------------------------------------------------
    # State handling
    # -------------------------------------------------------------------------

    def on_change(self, listener: Callable[[SessionState], None]) -> None:
        """Register a listener called with every new state."""
        self._listeners.append(listener)

    def _transition(self, new_state: SessionState) -> None:
        logger.debug(
            "session.transition",
            from_state=type(self.state).__name__,
            to_state=type(new_state).__name__,
        )
        self.state = new_state
        for listener in self._listeners:
            listener(new_state)

    async def _enter_signed_in(self, session: Any) -> SessionState:
        user = AuthenticatedUser(id=str(session.user.id), email=getattr(session.user, "email", None))
        if not isinstance(self.state, Authenticating):
            self._transition(Authenticating(email=user.email))

        try:
            history = await self._store.fetch_history(user.id)
        except PersistenceFailure:
            logger.warning("session.history_unavailable", user_id=user.id)
            history = []

        self._transition(SignedIn(user=user, access_token=session.access_token, history=tuple(history)))
        return self.state

    async def handle_auth_event(self, event: str, session: Any) -> SessionState:
        """
        Apply one auth-service notification.

        Args:
            event: Auth event name (SIGNED_IN, SIGNED_OUT, TOKEN_REFRESHED, ...)
            session: Auth session carried by the event (may be None)

        Returns:
            The resulting state
        """
        async with self._lock:
            return await self._apply_auth_event(event, session)

    async def _apply_auth_event(self, event: str, session: Any) -> SessionState:
        if event == SIGNED_OUT or session is None:
            if not isinstance(self.state, SignedOut):
                self._transition(SignedOut())
            return self.state

        current = self.state
        if isinstance(current, SignedIn) and current.user.id == str(session.user.id):
            if current.access_token != session.access_token:
                self._transition(
                    SignedIn(user=current.user, access_token=session.access_token, history=current.history)
                )
            return self.state

        return await self._enter_signed_in(session)

    def subscribe(self) -> Any:
        """Feed Supabase auth notifications into ``handle_auth_event``."""

        def _listener(event: Any, session: Any) -> None:
            name = getattr(event, "value", event)
            task = asyncio.ensure_future(self.handle_auth_event(name, session))
            self._pending.add(task)
            task.add_done_callback(self._pending.discard)

        return self._auth.on_auth_state_change(_listener)

    async def restore(self) -> SessionState:
        """Resume an existing auth session, if any."""
        session = await self._auth.get_session()
        return await self.handle_auth_event(INITIAL_SESSION, session)

    # -------------------------------------------------------------------------
    # Auth actions
    # -------------------------------------------------------------------------

    async def sign_in(self, email: str, password: str) -> SessionState:
        async with self._lock:
            self._transition(Authenticating(email=email))
            try:
                response = await self._auth.sign_in_with_password({"email": email, "password": password})
            except Exception as e:
                logger.warning("session.sign_in_failed", error=str(e))
                self._transition(SignedOut(error=str(e)))
                raise

            if response.session is None:
                self._transition(SignedOut(error="No session returned"))
                raise Unauthenticated("Unauthorized: No session returned")
            return await self._enter_signed_in(response.session)

    async def sign_up(self, email: str, password: str) -> SessionState:
        """Register a user; stays SignedOut when email confirmation is pending."""
        async with self._lock:
            self._transition(Authenticating(email=email))
            try:
                response = await self._auth.sign_up({"email": email, "password": password})
            except Exception as e:
                logger.warning("session.sign_up_failed", error=str(e))
                self._transition(SignedOut(error=str(e)))
                raise

            if response.session is None:
                self._transition(SignedOut())
                return self.state
            return await self._enter_signed_in(response.session)

    async def sign_out(self) -> SessionState:
        async with self._lock:
            await self._auth.sign_out()
            self._transition(SignedOut())
            return self.state

    # -------------------------------------------------------------------------
    # Chat
    # -------------------------------------------------------------------------

    async def send(self, chat_id: str, messages: Sequence[ChatMessage]) -> AsyncIterator[str]:
        """
        Post a chat turn and yield assistant content deltas.

        Raises:
            Unauthenticated: If called outside SignedIn
            ChatRequestFailed: If the relay answers with an error status
        """
        state = self.state
        if not isinstance(state, SignedIn):
            raise Unauthenticated("Unauthorized: Not signed in")

        payload = {
            "id": chat_id,
            "messages": [m.model_dump(exclude_none=True) for m in messages],
        }
        headers = {"Authorization": f"Bearer {state.access_token}"}

        async with aconnect_sse(
            self._http,
            "POST",
            self._chat_path,
            json=payload,
            headers=headers,
        ) as event_source:
            response = event_source.response
            if response.status_code != 200:
                await response.aread()
                try:
                    message = response.json().get("error", response.text)
                except ValueError:
                    message = response.text
                raise ChatRequestFailed(response.status_code, message)

            async for sse in event_source.aiter_sse():
                if sse.data == "[DONE]":
                    break
                try:
                    event_data = json.loads(sse.data)
                except json.JSONDecodeError:
                    continue

                if "error" in event_data:
                    raise ChatRequestFailed(500, str(event_data["error"]))

                for choice in event_data.get("choices") or []:
                    content = (choice.get("delta") or {}).get("content")
                    if content:
                        yield content

    async def aclose(self) -> None:
        await self._http.aclose()
