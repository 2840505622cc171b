import asyncio
import json

import pytest
from fastapi.testclient import TestClient

import agent_runtime.api as api
import agent_runtime.controller as controller_module
import agent_runtime.executor as executor_module
from agent_runtime.gateway import StreamingRunGateway
from agent_runtime.main import app
from agent_runtime.models import ToolCall
from agent_runtime.run_client import RunEvent
from agent_runtime.state import InterruptRegistry, SuspendedSession
from agent_runtime.store import InMemoryStore, TaskRun
from agent_runtime.usage import UsageRecorder

from fakes import FakeModelClient, FakeRunService, complete, metadata, partial


@pytest.fixture
def env(monkeypatch):
    client = FakeRunService()
    store = InMemoryStore()
    registry = InterruptRegistry(ttl_seconds=60)
    gateway = StreamingRunGateway(
        client=client,
        store=store,
        usage=UsageRecorder(max_users=10, max_entries_per_user=10),
        registry=registry,
    )
    monkeypatch.setattr(api, "gateway", gateway)
    monkeypatch.setattr(api, "store", store)
    monkeypatch.setattr(executor_module, "run_service", client)
    return {"client": client, "store": store, "registry": registry, "http": TestClient(app)}


def parse_sse(text):
    events = []
    for frame in text.strip().split("\n\n"):
        lines = dict(line.split(": ", 1) for line in frame.split("\n"))
        events.append((lines["event"], json.loads(lines["data"])))
    return events


def parse_ndjson(text):
    return [json.loads(line) for line in text.splitlines() if line]


def test_health_and_root(env):
    assert env["http"].get("/health").json()["status"] == "healthy"
    assert "/orchestrate" in env["http"].get("/").json()["endpoints"].values()


def test_execute_task_streams_sse(env):
    env["client"].scripts.append([metadata("run-1"), partial("Hi"), complete("Hi there")])
    resp = env["http"].post("/tasks/task-1/execute", json={
        "agent_id": "agent-1",
        "prompt": "Greet me",
        "user_id": "user-1",
    })

    assert resp.status_code == 200
    assert resp.headers["content-type"].startswith("text/event-stream")
    events = parse_sse(resp.text)
    assert [name for name, _ in events] == ["metadata", "messages/partial", "messages/complete", "rate-limit", "end"]
    assert events[0][1] == {"thread_id": "thread-1", "run_id": "run-1"}
    assert env["client"].calls[0]["input"] == {"messages": [{"type": "human", "content": "Greet me"}]}


def test_execute_task_validates_input_source(env):
    resp = env["http"].post("/tasks/task-1/execute", json={"agent_id": "agent-1", "input_source": "everything"})
    assert resp.status_code == 422


def test_chat_streams_ndjson_with_manual_approval(env):
    env["client"].scripts.append([metadata("run-1"), complete("Hello")])
    resp = env["http"].post("/agents/agent-1/chat", json={
        "messages": [{"role": "user", "content": "hello"}],
    })

    assert resp.status_code == 200
    records = parse_ndjson(resp.text)
    assert records[0] == {"event": "metadata", "data": {"thread_id": "thread-1", "run_id": "run-1"}}
    assert records[-1]["event"] == "end"
    assert env["client"].calls[0]["interrupt_before"] == ["tools"]


def test_chat_requires_messages(env):
    assert env["http"].post("/agents/agent-1/chat", json={}).status_code == 400


def test_chat_resume_requires_thread(env):
    resp = env["http"].post("/agents/agent-1/chat", json={"command": {"resume": {"approved": []}}})
    assert resp.status_code == 400


def test_chat_resume_forwards_generic_payload(env):
    env["client"].scripts.append([metadata("run-2"), complete("resumed")])
    resp = env["http"].post("/agents/agent-1/chat", json={
        "thread_id": "thread-5",
        "command": {"resume": {"action": "continue"}},
    })

    assert resp.status_code == 200
    assert env["client"].calls[0]["command"] == {"resume": {"action": "continue"}}
    assert env["client"].calls[0]["thread_id"] == "thread-5"


def _suspend(env):
    session = SuspendedSession(
        thread_id="thread-1",
        assistant_id="agent-1",
        run_id="run-1",
        tool_calls=[ToolCall(id="A", name="web_search"), ToolCall(id="B", name="send_email")],
    )
    asyncio.run(env["registry"].suspend(session))


def test_resume_rejects_unknown_tool_call(env):
    _suspend(env)
    resp = env["http"].post("/agents/agent-1/threads/thread-1/resume", json={"approved": ["Z"]})

    assert resp.status_code == 400
    assert "Z" in resp.json()["detail"]
    assert env["client"].calls == []


def test_resume_forwards_approved_subset(env):
    _suspend(env)
    env["client"].scripts.append([metadata("run-2"), complete("searched")])
    resp = env["http"].post("/agents/agent-1/threads/thread-1/resume", json={"approved": ["A"]})

    assert resp.status_code == 200
    assert [name for name, _ in parse_sse(resp.text)][-1] == "end"
    assert env["client"].calls[0]["command"] == {"resume": {"approved": ["A"]}}


def test_orchestrate_returns_history(env, monkeypatch):
    monkeypatch.setattr(controller_module, "default_model_client", FakeModelClient([
        json.dumps({"agent": "researcher", "instruction": "find facts"}),
        json.dumps({"complete": True, "final_result": "report done"}),
    ]))
    env["client"].scripts.append([RunEvent("updates", "three facts")])

    resp = env["http"].post("/orchestrate", json={
        "manager": {"user_prompt": "Write a report"},
        "agents": [{"agent_id": "researcher", "name": "Researcher", "assistant_id": "asst-1"}],
        "execution": {"max_iterations": 5},
    })

    body = resp.json()
    assert resp.status_code == 200
    assert body["final_output"] == "report done"
    assert body["iterations"] == 1
    assert body["messages"][1] == {"role": "ai", "content": "[Researcher]: three facts", "name": "Researcher"}
    assert body["agent_threads"] == {"researcher": "thread-1"}


def test_orchestrate_requires_agents(env):
    resp = env["http"].post("/orchestrate", json={"manager": {"user_prompt": "x"}, "agents": []})
    assert resp.status_code == 400


def test_analytics(env):
    store = env["store"]
    task_run = TaskRun(task_id="task-1", id="tr-1", run_id="run-1", metadata={"thread_id": "thread-1"})
    asyncio.run(store.insert_task_run(task_run))
    store.add_checkpoint("run-1", {"messages": [{"tool_calls": [{"name": "web_search"}], "url": "https://a.example"}]})

    body = env["http"].get("/task-runs/tr-1/analytics").json()
    assert body["task_run"]["id"] == "tr-1"
    assert body["run_id"] == "run-1"
    assert body["matched_by"] == "explicit"
    assert body["tool_calls"] == ["web_search"]
    assert body["web_search"] == {"searched": True, "sources": ["https://a.example"]}


def test_analytics_unknown_task_run(env):
    assert env["http"].get("/task-runs/missing/analytics").status_code == 404
