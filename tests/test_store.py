import asyncio
from datetime import datetime, timezone

import httpx

from agent_runtime.models import TaskRunStatus
from agent_runtime.store import InMemoryStore, RunRecord, SupabaseStore, TaskRun, parse_timestamp


def run_async(coro):
    return asyncio.run(coro)


def test_terminal_write_happens_once():
    store = InMemoryStore()

    async def scenario():
        task_run = await store.insert_task_run(TaskRun(task_id="task-1"))
        await store.finish_task_run(task_run.id, TaskRunStatus.COMPLETED, result="first")
        await store.finish_task_run(task_run.id, TaskRunStatus.ERROR, error="late failure")
        return await store.get_task_run(task_run.id)

    task_run = run_async(scenario())
    assert task_run.status == TaskRunStatus.COMPLETED
    assert task_run.result == "first"
    assert task_run.error is None
    assert task_run.completed_at is not None


def test_task_run_is_found_by_run_id():
    store = InMemoryStore()

    async def scenario():
        await store.insert_task_run(TaskRun(task_id="task-1", run_id="run-1"))
        return await store.has_task_run_for_run("run-1"), await store.has_task_run_for_run("run-2")

    has_first, has_second = run_async(scenario())
    assert (has_first, has_second) == (True, False)


def test_runs_listed_by_thread_and_assistant():
    store = InMemoryStore()
    now = datetime.now(timezone.utc)

    async def scenario():
        await store.record_run(RunRecord("r1", "thread-1", now, assistant_id="agent-1"))
        await store.record_run(RunRecord("r2", "thread-1", now, assistant_id="agent-2"))
        await store.record_run(RunRecord("r3", "thread-2", now, assistant_id="agent-1"))
        return (
            await store.list_runs_for_thread("thread-1"),
            await store.list_runs_for_thread("thread-1", assistant_id="agent-2"),
        )

    all_runs, agent_runs = run_async(scenario())
    assert [r.run_id for r in all_runs] == ["r1", "r2"]
    assert [r.run_id for r in agent_runs] == ["r2"]


def test_parse_timestamp():
    assert parse_timestamp("2025-03-01T12:00:00Z") == datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)
    assert parse_timestamp("2025-03-01T12:00:00").tzinfo == timezone.utc
    assert parse_timestamp(datetime(2025, 3, 1, 12, 0)).tzinfo == timezone.utc
    assert parse_timestamp("yesterday") is None
    assert parse_timestamp(None) is None


def test_task_run_row_round_trip():
    row = {
        "id": "tr-1",
        "task_id": "task-1",
        "run_id": "run-1",
        "status": "error",
        "started_at": "2025-03-01T12:00:00+00:00",
        "completed_at": None,
        "error": "boom",
        "metadata": {"thread_id": "thread-1"},
    }
    task_run = TaskRun.from_row(row)
    assert task_run.status == TaskRunStatus.ERROR
    assert task_run.thread_id == "thread-1"
    assert task_run.to_dict()["started_at"] == "2025-03-01T12:00:00+00:00"


def test_supabase_finish_only_patches_running_rows():
    requests = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(200, json=[])

    async def scenario():
        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        store = SupabaseStore(url="https://db.example", key="service-key", client=client)
        result = await store.finish_task_run("tr-1", TaskRunStatus.COMPLETED, result="ok")
        await client.aclose()
        return result

    assert run_async(scenario()) is None
    patch = requests[0]
    assert patch.method == "PATCH"
    assert patch.url.path == "/rest/v1/workflow_task_runs"
    assert patch.url.params["status"] == "eq.running"
    assert patch.url.params["id"] == "eq.tr-1"


def test_supabase_agent_config():
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/rest/v1/assistant"
        assert request.headers["apikey"] == "service-key"
        return httpx.Response(200, json=[{"assistant_id": "agent-1", "config": {"configurable": {"model": "m"}}}])

    async def scenario():
        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        store = SupabaseStore(url="https://db.example", key="service-key", client=client)
        return await store.get_agent_config("agent-1")

    assert run_async(scenario()) == {"model": "m"}
