"""Fakes for the Supabase and OpenAI clients shared by the test suite."""
import asyncio
from types import SimpleNamespace
from typing import Any, Optional

import httpx
import openai
import pytest
from openai.types.chat import ChatCompletionChunk


def make_chunk(content: Optional[str] = None, finish_reason: Optional[str] = None, usage: Optional[dict] = None):
    data: dict[str, Any] = {
        "id": "chatcmpl-test",
        "object": "chat.completion.chunk",
        "created": 1760000000,
        "model": "gpt-4o",
        "choices": [],
    }
    if content is not None or finish_reason is not None:
        delta = {"role": "assistant", "content": content} if content is not None else {}
        data["choices"] = [{"index": 0, "delta": delta, "finish_reason": finish_reason}]
    if usage is not None:
        data["usage"] = usage
    return ChatCompletionChunk.model_validate(data)


def chunks_for(*parts: str, usage: Optional[dict] = None) -> list:
    chunks = [make_chunk(content=p) for p in parts]
    chunks.append(make_chunk(finish_reason="stop"))
    chunks.append(make_chunk(usage=usage or {"prompt_tokens": 3, "completion_tokens": len(parts), "total_tokens": 3 + len(parts)}))
    return chunks


# ============================================================================
# Supabase
# ============================================================================

class FakeAuth:
    def __init__(self, events: list):
        self.users: dict[str, SimpleNamespace] = {}
        self.events = events
        self.error: Optional[Exception] = None

    def add_user(self, token: str, user_id: str, email: str = "user@example.com") -> None:
        self.users[token] = SimpleNamespace(id=user_id, email=email)

    async def get_user(self, jwt: Optional[str] = None):
        self.events.append(("auth.get_user", jwt))
        if self.error is not None:
            raise self.error
        user = self.users.get(jwt)
        return SimpleNamespace(user=user) if user else None


class FakeQuery:
    def __init__(self, db: "FakeSupabase", table: str):
        self._db = db
        self._table = table
        self._pending_insert: Optional[list] = None
        self._filters: list = []
        self._order: Optional[tuple] = None

    def insert(self, rows):
        self._pending_insert = rows if isinstance(rows, list) else [rows]
        return self

    def select(self, *_columns):
        return self

    def eq(self, column, value):
        self._filters.append((column, value))
        return self

    def order(self, column, desc=False):
        self._order = (column, desc)
        return self

    async def execute(self):
        db = self._db
        if self._pending_insert is not None:
            for row in self._pending_insert:
                db.events.append(("insert", row["role"], row["message"]))
                if db.insert_delay:
                    await asyncio.sleep(db.insert_delay)
                if row["role"] in db.fail_roles:
                    raise RuntimeError(f"insert rejected for {row['role']}")
                db.counter += 1
                stored = dict(row, id=db.counter, created_at=f"2026-10-18T00:00:{db.counter:02d}+00:00")
                db.rows.setdefault(self._table, []).append(stored)
            return SimpleNamespace(data=self._pending_insert)

        if db.query_error is not None:
            raise db.query_error
        rows = list(db.rows.get(self._table, []))
        for column, value in self._filters:
            rows = [r for r in rows if r.get(column) == value]
        if self._order:
            column, desc = self._order
            rows.sort(key=lambda r: r[column], reverse=desc)
        return SimpleNamespace(data=rows)


class FakeSupabase:
    def __init__(self):
        self.events: list = []
        self.rows: dict[str, list] = {}
        self.fail_roles: set[str] = set()
        self.query_error: Optional[Exception] = None
        self.insert_delay: float = 0.0
        self.counter = 0
        self.auth = FakeAuth(self.events)

    def table(self, name: str) -> FakeQuery:
        return FakeQuery(self, name)

    def chat_rows(self) -> list:
        return self.rows.get("chat_history", [])


# ============================================================================
# OpenAI
# ============================================================================

class FakeUpstream:
    def __init__(self, chunks: list, gate: Optional[asyncio.Event] = None, error: Optional[Exception] = None):
        self._chunks = chunks
        self.gate = gate
        self.error = error
        self.closed = False
        self.close_calls = 0

    def __aiter__(self):
        return self._generate()

    async def _generate(self):
        for index, chunk in enumerate(self._chunks):
            if index == 1 and self.gate is not None:
                await self.gate.wait()
            yield chunk
        if self.error is not None:
            raise self.error

    async def close(self):
        self.closed = True
        self.close_calls += 1


class FakeCompletions:
    def __init__(self, events: list):
        self.events = events
        self.calls: list[dict] = []
        self.chunks: list = chunks_for("Hello", " there")
        self.error: Optional[Exception] = None
        self.stream_error: Optional[Exception] = None
        self.last_upstream: Optional[FakeUpstream] = None

    async def create(self, **kwargs):
        self.events.append(("completion.create", kwargs["model"]))
        self.calls.append(kwargs)
        if self.error is not None:
            raise self.error
        self.last_upstream = FakeUpstream(self.chunks, error=self.stream_error)
        return self.last_upstream


class FakeOpenAI:
    def __init__(self, events: list):
        self.completions = FakeCompletions(events)
        self.chat = SimpleNamespace(completions=self.completions)


def api_connection_error() -> openai.APIConnectionError:
    return openai.APIConnectionError(request=httpx.Request("POST", "https://api.openai.com/v1/chat/completions"))


# ============================================================================
# Fixtures
# ============================================================================

@pytest.fixture
def fake_supabase() -> FakeSupabase:
    supabase = FakeSupabase()
    supabase.auth.add_user("valid-token", "u1")
    return supabase


@pytest.fixture
def fake_openai(fake_supabase) -> FakeOpenAI:
    # Share the event log so call ordering across both services is visible
    return FakeOpenAI(fake_supabase.events)


@pytest.fixture
def app(fake_supabase, fake_openai):
    from chat_relay.main import app as fastapi_app
    from chat_relay.services.clients import get_openai, get_supabase

    fastapi_app.dependency_overrides[get_supabase] = lambda: fake_supabase
    fastapi_app.dependency_overrides[get_openai] = lambda: fake_openai
    yield fastapi_app
    fastapi_app.dependency_overrides.clear()


@pytest.fixture
def client(app):
    from fastapi.testclient import TestClient

    return TestClient(app, raise_server_exceptions=False)
