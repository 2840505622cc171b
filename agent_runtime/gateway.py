"""
Streaming run gateway.

Serves one interactive, caller-facing run from request to stream
completion:

- Resolves the thread and assembles input messages
- Merges run-scoped configuration over the agent's stored configuration
- Arms a pre-tool interrupt when tool approval is manual
- Relays upstream events as they arrive
- Persists the TaskRun and reports token usage once per stream
- Suspends on interrupt and resumes the same thread with the caller's decision

Both caller transports (NDJSON and SSE) consume the GatewayEvent stream
produced here.
"""

import asyncio
import json
import logging
import math
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, List, Optional, Set, Tuple

from .config import config
from .errors import AgentRuntimeError, InvalidResumeError, StreamUpstreamError, UsageRecordingFailure
from .models import InputSource, TaskRunStatus, ThreadStrategy, ToolApproval, ToolCall
from .run_client import RunEvent, RunServiceClient, run_service
from .state import InterruptRegistry, SuspendedSession, interrupts
from .store import RunRecord, TaskRun, TaskRunStore, store as default_store, utcnow
from .usage import UsageSink, usage as default_usage

logger = logging.getLogger(__name__)

# Event taxonomy shared by both transports
EVENT_METADATA = "metadata"
EVENT_PARTIAL = "messages/partial"
EVENT_COMPLETE = "messages/complete"
EVENT_INTERRUPT = "interrupt"
EVENT_ERROR = "error"
EVENT_RATE_LIMIT = "rate-limit"
EVENT_END = "end"

STREAM_MODE = ["messages", "updates"]
TOOL_STAGE = "tools"
AI_TYPES = ("ai", "AIMessage", "AIMessageChunk", "assistant")
ROLE_TO_TYPE = {"user": "human", "human": "human", "assistant": "ai", "ai": "ai"}
ABORTED = "aborted by caller"


@dataclass
class GatewayEvent:
    """One caller-facing `{event, data}` record."""
    event: str
    data: Any = None

    def to_dict(self) -> Dict[str, Any]:
        return {"event": self.event, "data": self.data}


@dataclass
class RunRequest:
    """Transport-neutral description of one interactive run."""
    assistant_id: str
    task_id: Optional[str] = None
    prompt: Optional[str] = None
    previous_output: Any = None
    input_source: InputSource = InputSource.PROMPT
    messages: Optional[List[Dict[str, Any]]] = None
    thread_strategy: ThreadStrategy = ThreadStrategy.NEW
    thread_id: Optional[str] = None
    tool_approval: ToolApproval = ToolApproval.AUTO
    config: Dict[str, Any] = field(default_factory=dict)
    user_id: Optional[str] = None


@dataclass
class ResumePlan:
    """A validated resume, ready to stream."""
    thread_id: str
    assistant_id: str
    payload: Any
    session: Optional[SuspendedSession] = None
    user_id: Optional[str] = None


@dataclass
class _StreamContext:
    """Mutable bookkeeping for one relayed stream."""
    thread_id: str
    assistant_id: str
    configurable: Dict[str, Any]
    interrupt_before: List[str]
    user_id: Optional[str] = None
    task_id: Optional[str] = None
    task_run_id: Optional[str] = None
    run_id: Optional[str] = None
    prompt_chars: int = 0
    partial_text: str = ""
    result_text: Optional[str] = None
    input_tokens: int = 0
    output_tokens: int = 0
    explicit_usage: bool = False
    tool_calls: List[ToolCall] = field(default_factory=list)
    interrupted: bool = False
    finished: bool = False
    usage_recorded: bool = False


# =============================================================================
# Message helpers
# =============================================================================

def build_input_messages(request: RunRequest) -> List[Dict[str, Any]]:
    """Input messages for a new run, in run-service form."""
    if request.messages:
        return [
            {"type": ROLE_TO_TYPE.get(m.get("role", ""), "system"), "content": m.get("content", "")}
            for m in request.messages
        ]

    messages = []
    if request.input_source.includes_prompt and request.prompt:
        messages.append({"type": "human", "content": request.prompt})
    if request.input_source.includes_previous_output and request.previous_output is not None:
        previous = request.previous_output
        if not isinstance(previous, str):
            previous = json.dumps(previous)
        messages.append({"type": "human", "content": previous})
    return messages


def message_text(message: Any) -> str:
    """Plain text of a message whose content is a string or a list of blocks."""
    if isinstance(message, str):
        return message
    if not isinstance(message, dict):
        return ""
    content = message.get("content")
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = []
        for block in content:
            if isinstance(block, str):
                parts.append(block)
            elif isinstance(block, dict) and isinstance(block.get("text"), str):
                parts.append(block["text"])
        return "".join(parts)
    return ""


def _first_int(data: Dict[str, Any], *keys: str) -> Optional[int]:
    for key in keys:
        value = data.get(key)
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return int(value)
    return None


def extract_usage(message: Dict[str, Any]) -> Optional[Tuple[int, int]]:
    """
    (input_tokens, output_tokens) from a completed message's metadata.

    Looks at `response_metadata.usage`, `response_metadata.token_usage`
    and `usage_metadata`, accepting OpenAI- and Anthropic-style names.
    """
    response_metadata = message.get("response_metadata") or {}
    for usage in (response_metadata.get("usage"), response_metadata.get("token_usage"),
                  message.get("usage_metadata")):
        if not isinstance(usage, dict):
            continue
        input_tokens = _first_int(usage, "prompt_tokens", "input_tokens")
        output_tokens = _first_int(usage, "completion_tokens", "output_tokens")
        if input_tokens is not None or output_tokens is not None:
            return input_tokens or 0, output_tokens or 0
    return None


def estimate_tokens(text: str) -> int:
    return math.ceil(len(text) / 4)


def _as_messages(data: Any) -> List[Dict[str, Any]]:
    if isinstance(data, dict):
        return [data]
    if isinstance(data, list):
        return [m for m in data if isinstance(m, dict)]
    return []


def _is_ai(message: Dict[str, Any]) -> bool:
    return (message.get("type") or message.get("role")) in AI_TYPES


def _tool_calls(message: Dict[str, Any]) -> List[ToolCall]:
    calls = message.get("tool_calls")
    if not isinstance(calls, list):
        return []
    return [ToolCall.from_dict(c) for c in calls if isinstance(c, dict)]


def _error_message(data: Any) -> str:
    if isinstance(data, dict):
        return str(data.get("message") or data.get("error") or json.dumps(data))
    return str(data) if data else "Upstream run failed"


# =============================================================================
# Gateway
# =============================================================================

class StreamingRunGateway:
    """
    Drives interactive runs against the Agent Run Service.

    Handles:
    - start(): new or reused thread, relay, usage, interrupt suspension
    - prepare_resume() / resume(): validate the caller's decision, then
      continue the suspended thread with `command.resume`
    """

    def __init__(
        self,
        client: Optional[RunServiceClient] = None,
        store: Optional[TaskRunStore] = None,
        usage: Optional[UsageSink] = None,
        registry: Optional[InterruptRegistry] = None,
        model_id: Optional[str] = None,
    ):
        self.client = client or run_service
        self.store = store or default_store
        self.usage = usage or default_usage
        self.registry = registry or interrupts
        self.model_id = model_id or config.usage_model_id
        self._background: Set[asyncio.Task] = set()

    # -------------------------------------------------------------------------
    # Start
    # -------------------------------------------------------------------------

    async def start(self, request: RunRequest) -> AsyncIterator[GatewayEvent]:
        """Open a new run and relay it to the caller."""
        try:
            thread_id = await self._resolve_thread(request)
            configurable = await self._merge_config(request.assistant_id, request.config, request.user_id, thread_id)
        except Exception as e:
            logger.error(f"Failed to prepare run for {request.assistant_id}: {e}")
            yield GatewayEvent(EVENT_ERROR, _error_data(e))
            return

        input_messages = build_input_messages(request)
        interrupt_before = [TOOL_STAGE] if request.tool_approval == ToolApproval.MANUAL else []
        ctx = _StreamContext(
            thread_id=thread_id,
            assistant_id=request.assistant_id,
            configurable=configurable,
            interrupt_before=interrupt_before,
            user_id=request.user_id,
            task_id=request.task_id,
            prompt_chars=sum(len(message_text(m)) for m in input_messages),
        )
        logger.info(f"Starting run: assistant={request.assistant_id}, thread={thread_id}, "
                    f"task={request.task_id}, tool_approval={request.tool_approval.value}")

        events = self.client.stream_run(
            thread_id,
            request.assistant_id,
            input={"messages": input_messages},
            metadata=self._run_metadata(ctx),
            configurable=configurable,
            interrupt_before=interrupt_before,
            stream_mode=STREAM_MODE,
        )
        stream = self._stream(ctx, events)
        try:
            async for event in stream:
                yield event
        finally:
            await stream.aclose()

    async def _resolve_thread(self, request: RunRequest) -> str:
        if request.thread_strategy == ThreadStrategy.REUSE and request.thread_id:
            logger.debug(f"Reusing thread {request.thread_id}")
            return request.thread_id
        return await self.client.create_thread(metadata={"assistant_id": request.assistant_id})

    async def _merge_config(
        self,
        assistant_id: str,
        overrides: Dict[str, Any],
        user_id: Optional[str],
        thread_id: str,
    ) -> Dict[str, Any]:
        try:
            stored = await self.store.get_agent_config(assistant_id)
        except Exception as e:
            logger.warning(f"Stored config for {assistant_id} unavailable: {e}")
            stored = {}
        merged = {**stored, **(overrides or {}), "assistant_id": assistant_id, "thread_id": thread_id}
        if user_id:
            merged["user_id"] = user_id
        return merged

    @staticmethod
    def _run_metadata(ctx: _StreamContext) -> Dict[str, Any]:
        metadata = {"assistant_id": ctx.assistant_id, "thread_id": ctx.thread_id}
        if ctx.user_id:
            metadata["user_id"] = ctx.user_id
        if ctx.task_id:
            metadata["task_id"] = ctx.task_id
        return metadata

    # -------------------------------------------------------------------------
    # Resume
    # -------------------------------------------------------------------------

    async def prepare_resume(
        self,
        thread_id: str,
        assistant_id: str,
        approved: Optional[List[str]] = None,
        resume: Any = None,
        user_id: Optional[str] = None,
    ) -> ResumePlan:
        """
        Validate a resume request and build its payload.

        `approved` is checked against the suspended session's pending tool
        calls; the payload carries exactly those ids. Raises
        InvalidResumeError before any stream is opened.
        """
        if approved is None and resume is None:
            raise InvalidResumeError("Resume requires an approved list or a resume payload")

        session = await self.registry.get(thread_id)
        if session is not None and session.assistant_id != assistant_id:
            raise InvalidResumeError(f"Thread {thread_id} is suspended for another agent")

        if approved is not None:
            if session is not None:
                pending = session.pending_ids
                unknown = [i for i in approved if i not in pending]
                if unknown:
                    raise InvalidResumeError(f"Unknown tool call id(s): {', '.join(unknown)}")
                payload = {"approved": [i for i in pending if i in approved]}
            else:
                logger.warning(f"No suspended session for thread {thread_id}; forwarding approvals unchecked")
                payload = {"approved": list(approved)}
        else:
            payload = resume

        session = await self.registry.pop(thread_id)
        return ResumePlan(
            thread_id=thread_id,
            assistant_id=assistant_id,
            payload=payload,
            session=session,
            user_id=user_id or (session.user_id if session else None),
        )

    async def resume(self, plan: ResumePlan) -> AsyncIterator[GatewayEvent]:
        """Continue the suspended thread and relay as in start()."""
        session = plan.session
        if session is not None:
            configurable = session.configurable
            interrupt_before = session.interrupt_before
        else:
            configurable = await self._merge_config(plan.assistant_id, {}, plan.user_id, plan.thread_id)
            interrupt_before = [TOOL_STAGE]

        ctx = _StreamContext(
            thread_id=plan.thread_id,
            assistant_id=plan.assistant_id,
            configurable=configurable,
            interrupt_before=interrupt_before,
            user_id=plan.user_id,
            task_run_id=session.task_run_id if session else None,
        )
        logger.info(f"Resuming thread {plan.thread_id} (session={'yes' if session else 'no'})")

        events = self.client.resume_run(
            plan.thread_id,
            plan.assistant_id,
            plan.payload,
            metadata=self._run_metadata(ctx),
            configurable=configurable,
            interrupt_before=interrupt_before,
            stream_mode=session.stream_mode if session else STREAM_MODE,
        )
        stream = self._stream(ctx, events)
        try:
            async for event in stream:
                yield event
        finally:
            await stream.aclose()

    # -------------------------------------------------------------------------
    # Relay
    # -------------------------------------------------------------------------

    async def _stream(self, ctx: _StreamContext, events: AsyncIterator[RunEvent]) -> AsyncIterator[GatewayEvent]:
        relay = self._relay(ctx, events)
        try:
            async for event in relay:
                yield event

            if not ctx.interrupted and ctx.interrupt_before:
                await self._check_thread_interrupt(ctx)

            if ctx.interrupted:
                await self._suspend(ctx)
                yield GatewayEvent(EVENT_INTERRUPT, {
                    "thread_id": ctx.thread_id,
                    "run_id": ctx.run_id,
                    "tool_calls": [tc.to_dict() for tc in ctx.tool_calls],
                })
                status = "interrupted"
            else:
                await self._finish_task_run(ctx, TaskRunStatus.COMPLETED, result=ctx.result_text)
                status = "completed"

            if await self._record_usage(ctx):
                yield GatewayEvent(EVENT_RATE_LIMIT, {"type": "updated"})
            yield GatewayEvent(EVENT_END, {"thread_id": ctx.thread_id, "run_id": ctx.run_id, "status": status})

        except (asyncio.CancelledError, GeneratorExit):
            logger.warning(f"Caller aborted stream on thread {ctx.thread_id}")
            self._abort(ctx)
            raise
        except Exception as e:
            logger.error(f"Run on thread {ctx.thread_id} failed: {e}")
            await self._finish_task_run(ctx, TaskRunStatus.ERROR, error=str(e))
            yield GatewayEvent(EVENT_ERROR, _error_data(e))
        finally:
            await relay.aclose()
            aclose = getattr(events, "aclose", None)
            if aclose is not None:
                await aclose()

    async def _relay(self, ctx: _StreamContext, events: AsyncIterator[RunEvent]) -> AsyncIterator[GatewayEvent]:
        async for event in events:
            logger.debug(f"Upstream event {event.event} on thread {ctx.thread_id}")

            if event.event == EVENT_ERROR:
                raise StreamUpstreamError(_error_message(event.data), event.data)

            if event.event == EVENT_METADATA:
                if ctx.run_id is None and isinstance(event.data, dict) and event.data.get("run_id"):
                    ctx.run_id = event.data["run_id"]
                    await self._open_task_run(ctx)
                    yield GatewayEvent(EVENT_METADATA, {"thread_id": ctx.thread_id, "run_id": ctx.run_id})
                continue

            if isinstance(event.data, dict) and "__interrupt__" in event.data:
                self._on_interrupt(ctx, event.data["__interrupt__"])
                continue

            if event.event == EVENT_PARTIAL:
                for message in _as_messages(event.data):
                    if _is_ai(message):
                        ctx.partial_text = message_text(message)
            elif event.event == EVENT_COMPLETE:
                self._on_complete(ctx, event.data)

            yield GatewayEvent(event.event, event.data)

    def _on_complete(self, ctx: _StreamContext, data: Any):
        for message in _as_messages(data):
            if not _is_ai(message):
                continue
            text = message_text(message)
            if text:
                ctx.result_text = text
            calls = _tool_calls(message)
            if calls:
                ctx.tool_calls = calls
            usage = extract_usage(message)
            if usage is not None:
                ctx.explicit_usage = True
                ctx.input_tokens += usage[0]
                ctx.output_tokens += usage[1]

    def _on_interrupt(self, ctx: _StreamContext, value: Any):
        ctx.interrupted = True
        for item in value if isinstance(value, list) else [value]:
            payload = item.get("value") if isinstance(item, dict) else None
            if isinstance(payload, dict) and isinstance(payload.get("tool_calls"), list):
                ctx.tool_calls = _tool_calls(payload)
        logger.info(f"Run on thread {ctx.thread_id} interrupted with {len(ctx.tool_calls)} pending tool call(s)")

    async def _check_thread_interrupt(self, ctx: _StreamContext):
        """Detect a pre-tool suspension from the thread's state after the stream ends."""
        try:
            state = await self.client.get_thread_state(ctx.thread_id)
        except Exception as e:
            logger.warning(f"Could not read state of thread {ctx.thread_id}: {e}")
            return

        pending = state.get("next") or []
        if not any(stage in ctx.interrupt_before for stage in pending):
            return
        messages = (state.get("values") or {}).get("messages") or []
        calls = _tool_calls(messages[-1]) if messages and isinstance(messages[-1], dict) else []
        if calls:
            ctx.interrupted = True
            ctx.tool_calls = calls
            logger.info(f"Thread {ctx.thread_id} paused before {pending} with {len(calls)} tool call(s)")

    async def _suspend(self, ctx: _StreamContext):
        await self.registry.suspend(SuspendedSession(
            thread_id=ctx.thread_id,
            assistant_id=ctx.assistant_id,
            run_id=ctx.run_id,
            tool_calls=list(ctx.tool_calls),
            user_id=ctx.user_id,
            task_run_id=ctx.task_run_id,
            configurable=ctx.configurable,
            interrupt_before=ctx.interrupt_before,
            stream_mode=STREAM_MODE,
        ))

    # -------------------------------------------------------------------------
    # Side writes (best-effort)
    # -------------------------------------------------------------------------

    async def _open_task_run(self, ctx: _StreamContext):
        try:
            await self.store.record_run(RunRecord(
                run_id=ctx.run_id,
                thread_id=ctx.thread_id,
                created_at=utcnow(),
                assistant_id=ctx.assistant_id,
                status="running",
            ))
            if ctx.task_run_id or not ctx.task_id:
                return
            if await self.store.has_task_run_for_run(ctx.run_id):
                logger.debug(f"Task run for run {ctx.run_id} already exists")
                return
            task_run = await self.store.insert_task_run(TaskRun(
                task_id=ctx.task_id,
                run_id=ctx.run_id,
                metadata={
                    "thread_id": ctx.thread_id,
                    "assistant_id": ctx.assistant_id,
                    "user_id": ctx.user_id,
                },
            ))
            ctx.task_run_id = task_run.id
            logger.info(f"Task run {task_run.id} started for task {ctx.task_id} (run={ctx.run_id})")
        except Exception as e:
            logger.warning(f"Failed to persist task run for run {ctx.run_id}: {e}")

    async def _finish_task_run(
        self,
        ctx: _StreamContext,
        status: TaskRunStatus,
        result: Any = None,
        error: Optional[str] = None,
    ):
        if ctx.finished or not ctx.task_run_id:
            return
        ctx.finished = True
        try:
            await self.store.finish_task_run(ctx.task_run_id, status, result=result, error=error)
            logger.info(f"Task run {ctx.task_run_id} {status.value}")
        except Exception as e:
            logger.warning(f"Failed to mark task run {ctx.task_run_id} {status.value}: {e}")

    def _abort(self, ctx: _StreamContext):
        if ctx.finished or ctx.interrupted or not ctx.task_run_id:
            return
        task = asyncio.get_running_loop().create_task(
            self._finish_task_run(ctx, TaskRunStatus.ERROR, error=ABORTED))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _record_usage(self, ctx: _StreamContext) -> bool:
        """Report usage for this stream once; returns True when recorded."""
        if ctx.usage_recorded:
            return False
        ctx.usage_recorded = True
        if not ctx.user_id:
            logger.debug(f"No user for thread {ctx.thread_id}; usage not recorded")
            return False

        if ctx.explicit_usage:
            input_tokens, output_tokens = ctx.input_tokens, ctx.output_tokens
        else:
            output_text = ctx.result_text if ctx.result_text is not None else ctx.partial_text
            input_tokens = math.ceil(ctx.prompt_chars / 4)
            output_tokens = estimate_tokens(output_text)

        if not input_tokens and not output_tokens:
            logger.debug(f"No tokens on thread {ctx.thread_id}; usage not recorded")
            return False

        try:
            await self.usage.record_usage(
                ctx.user_id, input_tokens, output_tokens, self.model_id, session_id=ctx.thread_id)
        except Exception as e:
            failure = UsageRecordingFailure(f"Usage write for {ctx.user_id} failed: {e}")
            logger.warning(str(failure))
            return False
        return True


def _error_data(error: Exception) -> Dict[str, Any]:
    if isinstance(error, AgentRuntimeError):
        return error.to_event_data()
    return {"type": "internal_error", "message": str(error)}


# Global instance
gateway = StreamingRunGateway()
