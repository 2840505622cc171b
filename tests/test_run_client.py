import asyncio
import json

import httpx
import pytest

from agent_runtime.errors import RunServiceError
from agent_runtime.run_client import RunServiceClient, _parse_sse

SSE_BODY = (
    "event: metadata\n"
    'data: {"run_id": "run-1"}\n'
    "\n"
    ": keep-alive\n"
    "\n"
    "event: messages/partial\n"
    'data: [{"type": "ai", "content": "Hi"}]\n'
    "\n"
    "event: end\n"
    "data: null\n"
    "\n"
)


def run_async(coro):
    return asyncio.run(coro)


async def _lines(text):
    for line in text.split("\n"):
        yield line


def _client(handler):
    http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return RunServiceClient(base_url="http://runs.example", api_key="secret", client=http)


def test_parse_sse_groups_frames():
    async def scenario():
        return [e async for e in _parse_sse(_lines(SSE_BODY))]

    events = run_async(scenario())
    assert [e.event for e in events] == ["metadata", "messages/partial", "end"]
    assert events[0].data == {"run_id": "run-1"}
    assert events[1].data == [{"type": "ai", "content": "Hi"}]
    assert events[2].data is None


def test_parse_sse_keeps_non_json_data_as_text():
    async def scenario():
        return [e async for e in _parse_sse(_lines("data: plain words\n\n"))]

    [event] = run_async(scenario())
    assert event.event == "message"
    assert event.data == "plain words"


def test_create_thread_sends_api_key():
    seen = {}

    def handler(request):
        seen["headers"] = request.headers
        seen["path"] = request.url.path
        return httpx.Response(200, json={"thread_id": "thread-9"})

    assert run_async(_client(handler).create_thread()) == "thread-9"
    assert seen["path"] == "/threads"
    assert seen["headers"]["x-api-key"] == "secret"


def test_stream_run_posts_payload_and_parses_events():
    seen = {}

    def handler(request):
        seen["path"] = request.url.path
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, text=SSE_BODY, headers={"content-type": "text/event-stream"})

    async def scenario():
        client = _client(handler)
        return [e async for e in client.stream_run(
            "thread-1",
            "agent-1",
            input={"messages": [{"type": "human", "content": "hi"}]},
            configurable={"model": "m"},
            interrupt_before=["tools"],
            stream_mode=["messages", "updates"],
        )]

    events = run_async(scenario())
    assert [e.event for e in events] == ["metadata", "messages/partial", "end"]
    assert seen["path"] == "/threads/thread-1/runs/stream"
    assert seen["body"]["assistant_id"] == "agent-1"
    assert seen["body"]["config"] == {"configurable": {"model": "m"}}
    assert seen["body"]["interrupt_before"] == ["tools"]
    assert "command" not in seen["body"]


def test_threadless_run_uses_stateless_endpoint():
    seen = {}

    def handler(request):
        seen["path"] = request.url.path
        return httpx.Response(200, text="")

    async def scenario():
        return [e async for e in _client(handler).stream_run(None, "agent-1", input={"messages": []})]

    assert run_async(scenario()) == []
    assert seen["path"] == "/runs/stream"


def test_resume_sends_command():
    seen = {}

    def handler(request):
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, text="")

    async def scenario():
        return [e async for e in _client(handler).resume_run("thread-1", "agent-1", {"approved": ["A"]})]

    run_async(scenario())
    assert seen["body"]["command"] == {"resume": {"approved": ["A"]}}
    assert "input" not in seen["body"]


def test_rejected_stream_raises_run_service_error():
    def handler(request):
        return httpx.Response(404, text="thread not found")

    async def scenario():
        return [e async for e in _client(handler).stream_run("thread-x", "agent-1")]

    with pytest.raises(RunServiceError) as info:
        run_async(scenario())
    assert info.value.status_code == 404
    assert "thread not found" in str(info.value)


def test_thread_state_error():
    def handler(request):
        return httpx.Response(500, text="boom")

    with pytest.raises(RunServiceError) as info:
        run_async(_client(handler).get_thread_state("thread-1"))
    assert info.value.status_code == 500
