import asyncio
from typing import Any, Dict, List, Optional

from agent_runtime.run_client import RunEvent


class FakeRunService:
    """
    In-process stand-in for the Agent Run Service.

    Each stream call consumes the next script. Script items are RunEvents,
    exceptions (raised), or floats (seconds to sleep).
    """

    def __init__(self, scripts: Optional[List[List[Any]]] = None):
        self.scripts = list(scripts or [])
        self.calls: List[Dict[str, Any]] = []
        self.created_threads: List[str] = []
        self.thread_messages: Dict[str, List[Dict[str, Any]]] = {}
        self.states: Dict[str, Dict[str, Any]] = {}
        self.fail_create = False
        self.create_delay = 0.0

    async def create_thread(self, metadata=None) -> str:
        if self.fail_create:
            raise RuntimeError("thread service unavailable")
        if self.create_delay:
            await asyncio.sleep(self.create_delay)
        thread_id = f"thread-{len(self.created_threads) + 1}"
        self.created_threads.append(thread_id)
        self.thread_messages[thread_id] = []
        return thread_id

    async def get_thread_state(self, thread_id: str) -> Dict[str, Any]:
        if thread_id in self.states:
            return self.states[thread_id]
        return {"values": {"messages": list(self.thread_messages.get(thread_id, []))}, "next": []}

    async def stream_run(
        self,
        thread_id,
        assistant_id,
        *,
        input=None,
        command=None,
        metadata=None,
        configurable=None,
        interrupt_before=None,
        stream_mode="values",
    ):
        self.calls.append({
            "thread_id": thread_id,
            "assistant_id": assistant_id,
            "input": input,
            "command": command,
            "metadata": metadata,
            "configurable": configurable,
            "interrupt_before": interrupt_before,
            "stream_mode": stream_mode,
        })
        history = self.thread_messages.setdefault(thread_id, [])
        if input:
            history.extend(input.get("messages", []))

        script = self.scripts.pop(0) if self.scripts else []
        for item in script:
            if isinstance(item, Exception):
                raise item
            if isinstance(item, float):
                await asyncio.sleep(item)
                continue
            if item.event == "messages/complete":
                history.extend(m for m in item.data if isinstance(m, dict))
            yield item

    async def resume_run(self, thread_id, assistant_id, resume, **kwargs):
        async for event in self.stream_run(thread_id, assistant_id, command={"resume": resume}, **kwargs):
            yield event


class FakeModelClient:
    """Replays canned manager replies and records each conversation."""

    def __init__(self, replies: List[Any]):
        self.replies = list(replies)
        self.conversations: List[List[Dict[str, Any]]] = []

    async def chat(self, messages, model=None, temperature=None) -> str:
        self.conversations.append(list(messages))
        reply = self.replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        return reply

    async def list_models(self):
        return [{"name": "fake-manager"}]


class FailingUsage:
    async def record_usage(self, user_id, input_tokens, output_tokens, model_id, session_id=None):
        raise RuntimeError("billing database unavailable")


def metadata(run_id: str) -> RunEvent:
    return RunEvent("metadata", {"run_id": run_id})


def partial(text: str) -> RunEvent:
    return RunEvent("messages/partial", [{"type": "ai", "content": text}])


def complete(text: str, **extra) -> RunEvent:
    return RunEvent("messages/complete", [{"type": "ai", "content": text, **extra}])
