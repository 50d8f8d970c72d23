"""
Streaming completion relay.

Opens a streaming Chat Completions call and exposes it as a
Server-Sent Events byte stream that can be handed straight to a
``StreamingResponse``.

SSE Protocol (events emitted):
==============================
- data: {provider chunk JSON}   # one event per chunk, passed through as-is
- data: [DONE]                  # stream completion marker
- data: {"error": "..."}        # generic error event if the upstream
                                # stream breaks after the 200 was sent

Completion callback:
====================
After the provider stream has ended normally the relay schedules the
``on_finish`` callback exactly once, as its own asyncio task, with the
full assistant text, token usage and finish reason. The task is not
ordered relative to the final bytes reaching the client;
``CompletionStream.wait_finished()`` joins it.

Last Grunted: 10/18/2026 09:10:00 AM UTC
"""
import asyncio
import json
from typing import Any, AsyncIterator, Awaitable, Callable, List, Optional, Sequence

import structlog
from openai import OpenAIError

from chat_relay.models import ChatMessage, CompletionResult, Usage
from chat_relay.services.errors import UNEXPECTED_ERROR_MESSAGE, UpstreamFailure

logger = structlog.get_logger(__name__)

FinishCallback = Callable[[CompletionResult], Awaitable[None]]

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",  # Disable nginx buffering
}

DONE_EVENT = b"data: [DONE]\n\n"


def _sse_event(data: str) -> bytes:
    return f"data: {data}\n\n".encode("utf-8")


class CompletionStream:
    """
    One in-flight streamed completion.

    Iterate it to get SSE-encoded bytes. Can only be iterated once.

    Args:
        upstream: Async iterable of ``ChatCompletionChunk`` objects
        on_finish: Coroutine called with the final CompletionResult
        completion_id: Identifier used in log events
    """

    def __init__(self, upstream: Any, on_finish: FinishCallback, completion_id: str = "-"):
        self._upstream = upstream
        self._on_finish = on_finish
        self.completion_id = completion_id

        self._parts: List[str] = []
        self._usage = Usage()
        self._finish_reason: Optional[str] = None
        self._started = False
        self._finish_task: Optional[asyncio.Task] = None
        self._closed = False

    def __aiter__(self) -> AsyncIterator[bytes]:
        if self._started:
            raise RuntimeError("CompletionStream can only be iterated once")
        self._started = True
        return self._iter_events()

    @property
    def text(self) -> str:
        """Assistant text received so far."""
        return "".join(self._parts)

    @property
    def finish_task(self) -> Optional[asyncio.Task]:
        return self._finish_task

    async def _iter_events(self) -> AsyncIterator[bytes]:
        try:
            async for chunk in self._upstream:
                self._absorb(chunk)
                yield _sse_event(chunk.model_dump_json(exclude_unset=True))
        except Exception as e:
            # Status is already on the wire; end with a generic error event
            logger.exception(
                "completion_relay.stream_failed",
                completion_id=self.completion_id,
                error_type=type(e).__name__,
                error=str(e),
            )
            yield _sse_event(json.dumps({"error": UNEXPECTED_ERROR_MESSAGE}))
            return
        finally:
            await self._close_upstream()

        self._schedule_finish()
        yield DONE_EVENT

    def _absorb(self, chunk: Any) -> None:
        for choice in chunk.choices or []:
            delta = choice.delta
            if delta is not None and delta.content:
                self._parts.append(delta.content)
            if choice.finish_reason:
                self._finish_reason = choice.finish_reason

        usage = getattr(chunk, "usage", None)
        if usage is not None:
            self._usage = Usage(
                prompt_tokens=usage.prompt_tokens or 0,
                completion_tokens=usage.completion_tokens or 0,
                total_tokens=usage.total_tokens or 0,
            )

    async def _close_upstream(self) -> None:
        if self._closed:
            return
        self._closed = True
        close = getattr(self._upstream, "close", None)
        if close is None:
            return
        try:
            await close()
        except Exception as e:
            logger.warning(
                "completion_relay.close_failed",
                completion_id=self.completion_id,
                error=str(e),
            )

    def _schedule_finish(self) -> None:
        if self._finish_task is not None:
            return
        result = CompletionResult(
            text=self.text,
            usage=self._usage,
            finish_reason=self._finish_reason,
        )
        self._finish_task = asyncio.create_task(self._run_finish(result))

    async def _run_finish(self, result: CompletionResult) -> None:
        try:
            await self._on_finish(result)
        except Exception as e:
            logger.exception(
                "completion_relay.finish_callback_failed",
                completion_id=self.completion_id,
                error_type=type(e).__name__,
                error=str(e),
            )

    async def wait_finished(self) -> None:
        """
        Release the upstream and wait for the completion callback, if it
        was scheduled.

        Runs after the response is done, including when the client went
        away before the body was ever iterated.
        """
        await self._close_upstream()
        if self._finish_task is not None:
            await self._finish_task


class CompletionRelay:
    """
    Stateless gateway to the streaming completion API.

    Args:
        client: ``AsyncOpenAI`` (or compatible) client
        model: Model identifier used for every call
    """

    def __init__(self, client: Any, model: str):
        self._client = client
        self.model = model

    async def start(
        self,
        messages: Sequence[ChatMessage],
        on_finish: FinishCallback,
        completion_id: str = "-",
    ) -> CompletionStream:
        """
        Open the upstream stream.

        The provider call is awaited here, before any response bytes are
        produced, so a failing call never turns into a partial stream.

        Raises:
            UpstreamFailure: If the completion service rejects the call
        """
        logger.info(
            "completion_relay.start",
            completion_id=completion_id,
            model=self.model,
            message_count=len(messages),
        )
        try:
            upstream = await self._client.chat.completions.create(
                model=self.model,
                messages=[m.to_completion_message() for m in messages],
                stream=True,
                stream_options={"include_usage": True},
            )
        except OpenAIError as e:
            logger.error(
                "completion_relay.upstream_failed",
                completion_id=completion_id,
                error_type=type(e).__name__,
                error=str(e),
            )
            raise UpstreamFailure(str(e)) from e

        return CompletionStream(upstream, on_finish, completion_id=completion_id)
