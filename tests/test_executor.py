import asyncio

from agent_runtime.executor import SubAgentExecutor
from agent_runtime.run_client import RunEvent
from agent_runtime.state import SubAgentHandle

from fakes import FakeRunService


def run_async(coro):
    return asyncio.run(coro)


def _handle(**kwargs):
    return SubAgentHandle(agent_id="researcher", name="Researcher", assistant_id="asst-research", **kwargs)


def test_last_update_is_the_result():
    client = FakeRunService([[
        RunEvent("updates", "draft one"),
        RunEvent("updates", None),
        RunEvent("updates", "final answer"),
        RunEvent("end", None),
    ]])
    outcome = run_async(SubAgentExecutor(client=client, timeout=5).execute(_handle(), "look it up"))

    assert outcome.success is True
    assert outcome.message.content == "[Researcher]: final answer"
    assert outcome.message.name == "Researcher"
    assert outcome.thread_id == "thread-1"
    assert client.calls[0]["input"] == {"messages": [{"role": "user", "content": "look it up"}]}
    assert client.calls[0]["stream_mode"] == "updates"


def test_structured_update_is_json_encoded():
    client = FakeRunService([[RunEvent("updates", {"agent": {"summary": "ok"}})]])
    outcome = run_async(SubAgentExecutor(client=client, timeout=5).execute(_handle(), "go"))
    assert outcome.message.content == '[Researcher]: {"agent": {"summary": "ok"}}'


def test_no_usable_data_yields_sentinel():
    client = FakeRunService([[RunEvent("metadata", {"run_id": "r1"})]])
    outcome = run_async(SubAgentExecutor(client=client, timeout=5).execute(_handle(), "go"))
    assert outcome.success is False
    assert outcome.message.content == "[Researcher]: No response"


def test_existing_thread_is_reused():
    client = FakeRunService([[RunEvent("updates", "ok")]])
    outcome = run_async(SubAgentExecutor(client=client, timeout=5).execute(_handle(thread_id="t-7"), "go"))
    assert client.created_threads == []
    assert client.calls[0]["thread_id"] == "t-7"
    assert outcome.thread_id == "t-7"


def test_per_agent_config_is_forwarded():
    client = FakeRunService([[RunEvent("updates", "ok")]])
    run_async(SubAgentExecutor(client=client, timeout=5).execute(_handle(config={"model": "small"}), "go"))
    assert client.calls[0]["configurable"] == {"model": "small"}


def test_timeout_is_contained_and_attributed():
    client = FakeRunService([[RunEvent("updates", "partial"), 1.0, RunEvent("updates", "too late")]])
    outcome = run_async(SubAgentExecutor(client=client, timeout=0.05).execute(_handle(), "go"))

    assert outcome.success is False
    assert outcome.message.content == "[Researcher] Error: timed out after 0.05s"
    assert outcome.thread_id == "thread-1"


def test_upstream_error_event_is_contained():
    client = FakeRunService([[RunEvent("error", "model overloaded")]])
    outcome = run_async(SubAgentExecutor(client=client, timeout=5).execute(_handle(), "go"))
    assert outcome.message.content == "[Researcher] Error: model overloaded"


def test_thread_creation_failure_is_contained():
    client = FakeRunService()
    client.fail_create = True
    outcome = run_async(SubAgentExecutor(client=client, timeout=5).execute(_handle(), "go"))
    assert outcome.success is False
    assert outcome.message.content == "[Researcher] Error: thread service unavailable"
    assert outcome.thread_id is None


def test_slow_thread_creation_counts_against_timeout():
    client = FakeRunService([[RunEvent("updates", "ok")]])
    client.create_delay = 1.0
    executor = SubAgentExecutor(client=client, timeout=0.1)

    async def scenario():
        loop = asyncio.get_running_loop()
        started = loop.time()
        outcome = await executor.execute(_handle(), "go")
        return outcome, loop.time() - started

    outcome, elapsed = run_async(scenario())
    assert elapsed < 0.5
    assert outcome.success is False
    assert outcome.message.content == "[Researcher] Error: timed out after 0.1s"
    assert client.calls == []
