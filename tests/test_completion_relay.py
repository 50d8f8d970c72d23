import asyncio
import json

import pytest

from chat_relay.models import ChatMessage, CompletionResult
from chat_relay.services.completion_relay import CompletionRelay, CompletionStream
from chat_relay.services.errors import UpstreamFailure
from conftest import FakeOpenAI, FakeUpstream, api_connection_error, chunks_for


class Recorder:
    def __init__(self, gate: asyncio.Event | None = None):
        self.results: list[CompletionResult] = []
        self.gate = gate

    async def __call__(self, result: CompletionResult) -> None:
        if self.gate is not None:
            await self.gate.wait()
        self.results.append(result)


async def _drain(stream: CompletionStream) -> list[bytes]:
    return [event async for event in stream]


@pytest.mark.asyncio
async def test_callback_receives_text_usage_and_finish_reason():
    recorder = Recorder()
    usage = {"prompt_tokens": 7, "completion_tokens": 2, "total_tokens": 9}
    stream = CompletionStream(FakeUpstream(chunks_for("Hi", "!", usage=usage)), recorder)

    events = await _drain(stream)
    await stream.wait_finished()

    assert events[-1] == b"data: [DONE]\n\n"
    assert len(recorder.results) == 1
    result = recorder.results[0]
    assert result.text == "Hi!"
    assert result.finish_reason == "stop"
    assert result.usage.model_dump() == usage


@pytest.mark.asyncio
async def test_chunks_are_passed_through_as_sse():
    chunks = chunks_for("Hi")
    stream = CompletionStream(FakeUpstream(chunks), Recorder())

    events = await _drain(stream)

    assert len(events) == len(chunks) + 1
    for event, chunk in zip(events, chunks):
        assert event.startswith(b"data: ") and event.endswith(b"\n\n")
        assert json.loads(event[len(b"data: "):]) == json.loads(chunk.model_dump_json(exclude_unset=True))


@pytest.mark.asyncio
async def test_first_bytes_arrive_before_completion_is_generated():
    gate = asyncio.Event()
    recorder = Recorder()
    stream = CompletionStream(FakeUpstream(chunks_for("first", "second"), gate=gate), recorder)
    iterator = stream.__aiter__()

    first = await asyncio.wait_for(iterator.__anext__(), timeout=1)

    assert b"first" in first
    assert stream.text == "first"
    assert stream.finish_task is None

    gate.set()
    rest = [event async for event in iterator]
    await stream.wait_finished()
    assert rest[-1] == b"data: [DONE]\n\n"
    assert recorder.results[0].text == "firstsecond"


@pytest.mark.asyncio
async def test_stream_end_does_not_wait_for_callback():
    gate = asyncio.Event()
    recorder = Recorder(gate=gate)
    stream = CompletionStream(FakeUpstream(chunks_for("x")), recorder)

    events = await asyncio.wait_for(_drain(stream), timeout=1)

    assert events[-1] == b"data: [DONE]\n\n"
    assert recorder.results == []
    assert stream.finish_task is not None and not stream.finish_task.done()

    gate.set()
    await stream.wait_finished()
    assert [r.text for r in recorder.results] == ["x"]


@pytest.mark.asyncio
async def test_callback_failure_is_contained():
    async def explode(_result):
        raise RuntimeError("store down")

    stream = CompletionStream(FakeUpstream(chunks_for("x")), explode)

    events = await _drain(stream)
    await stream.wait_finished()

    assert events[-1] == b"data: [DONE]\n\n"
    assert stream.finish_task.exception() is None


@pytest.mark.asyncio
async def test_broken_upstream_skips_callback_and_closes():
    recorder = Recorder()
    upstream = FakeUpstream(chunks_for("x"), error=RuntimeError("reset"))
    stream = CompletionStream(upstream, recorder)

    events = await _drain(stream)
    await stream.wait_finished()

    assert json.loads(events[-1][len(b"data: "):]) == {"error": "An unexpected error occurred"}
    assert recorder.results == []
    assert upstream.closed


@pytest.mark.asyncio
async def test_abandoned_stream_closes_upstream_without_callback():
    recorder = Recorder()
    upstream = FakeUpstream(chunks_for("a", "b"))
    stream = CompletionStream(upstream, recorder)
    iterator = stream.__aiter__()

    await iterator.__anext__()
    await iterator.aclose()

    assert upstream.closed
    assert stream.finish_task is None


@pytest.mark.asyncio
async def test_wait_finished_closes_never_iterated_upstream():
    recorder = Recorder()
    upstream = FakeUpstream(chunks_for("a"))
    stream = CompletionStream(upstream, recorder)

    await stream.wait_finished()

    assert upstream.close_calls == 1
    assert recorder.results == []


@pytest.mark.asyncio
async def test_upstream_is_closed_once_after_drain_and_wait():
    upstream = FakeUpstream(chunks_for("a", "b"))
    stream = CompletionStream(upstream, Recorder())

    await _drain(stream)
    await stream.wait_finished()

    assert upstream.close_calls == 1


@pytest.mark.asyncio
async def test_stream_can_only_be_iterated_once():
    stream = CompletionStream(FakeUpstream(chunks_for("x")), Recorder())
    await _drain(stream)

    with pytest.raises(RuntimeError):
        stream.__aiter__()


@pytest.mark.asyncio
async def test_relay_opens_streaming_call_with_usage():
    client = FakeOpenAI([])
    relay = CompletionRelay(client, model="gpt-4o-mini")

    stream = await relay.start([ChatMessage(role="user", content="hi", id="m1")], Recorder())

    call = client.completions.calls[0]
    assert call["model"] == "gpt-4o-mini"
    assert call["messages"] == [{"role": "user", "content": "hi"}]
    assert call["stream"] is True
    assert call["stream_options"] == {"include_usage": True}
    assert isinstance(stream, CompletionStream)


@pytest.mark.asyncio
async def test_relay_maps_provider_errors_to_upstream_failure():
    client = FakeOpenAI([])
    client.completions.error = api_connection_error()
    relay = CompletionRelay(client, model="gpt-4o")

    with pytest.raises(UpstreamFailure) as exc_info:
        await relay.start([ChatMessage(role="user", content="hi")], Recorder())

    assert exc_info.value.public_message == "An unexpected error occurred"
