"""
HTTP endpoints for agent runs.

- /agents/{agent_id}/chat streams NDJSON records
- /tasks/{task_id}/execute and the resume endpoint stream SSE frames
- /orchestrate runs the delegation controller to completion
- /task-runs/{id}/analytics reports correlated run analytics
"""

import logging
from typing import Optional

from fastapi import APIRouter, HTTPException
from fastapi.responses import StreamingResponse

from .controller import DelegationController
from .correlator import RunCorrelator
from .errors import InvalidResumeError
from .gateway import RunRequest, gateway
from .model_client import model_client
from .models import (
    ChatRequest,
    OrchestrateRequest,
    ResumeRequest,
    TaskExecutionRequest,
    ThreadStrategy,
)
from .store import store
from .transport import (
    NDJSON_MEDIA_TYPE,
    SSE_MEDIA_TYPE,
    STREAM_HEADERS,
    ndjson_stream,
    sse_stream,
)

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/agents/{agent_id}/chat")
async def chat(agent_id: str, request: ChatRequest):
    """
    Simplified chat endpoint.

    Starts a run from caller messages, or resumes a suspended thread when
    `command.resume` is set. Tool calls require approval unless
    `tool_approval` is "auto".
    """
    if request.command is not None and request.command.resume is not None:
        if not request.thread_id:
            raise HTTPException(status_code=400, detail="thread_id is required to resume")
        try:
            plan = await gateway.prepare_resume(
                request.thread_id, agent_id, resume=request.command.resume, user_id=request.user_id)
        except InvalidResumeError as e:
            raise HTTPException(status_code=400, detail=str(e))
        events = gateway.resume(plan)
    else:
        if not request.messages:
            raise HTTPException(status_code=400, detail="messages are required")
        logger.info(f"Chat: agent={agent_id}, thread={request.thread_id}, messages={len(request.messages)}")
        events = gateway.start(RunRequest(
            assistant_id=agent_id,
            messages=[m.model_dump() for m in request.messages],
            thread_strategy=ThreadStrategy.REUSE if request.thread_id else ThreadStrategy.NEW,
            thread_id=request.thread_id,
            tool_approval=request.tool_approval,
            config=request.config,
            user_id=request.user_id,
        ))

    return StreamingResponse(ndjson_stream(events), media_type=NDJSON_MEDIA_TYPE, headers=STREAM_HEADERS)


@router.post("/agents/{agent_id}/threads/{thread_id}/resume")
async def resume_thread(agent_id: str, thread_id: str, request: ResumeRequest):
    """
    Resume a run suspended before tool execution.

    `approved` lists the tool call ids to run; an empty list denies all.
    Unknown ids are rejected before the stream opens.
    """
    try:
        plan = await gateway.prepare_resume(
            thread_id, agent_id, approved=request.approved, resume=request.resume, user_id=request.user_id)
    except InvalidResumeError as e:
        raise HTTPException(status_code=400, detail=str(e))

    logger.info(f"Resume: agent={agent_id}, thread={thread_id}, approved={request.approved}")
    return StreamingResponse(sse_stream(gateway.resume(plan)), media_type=SSE_MEDIA_TYPE, headers=STREAM_HEADERS)


@router.post("/tasks/{task_id}/execute")
async def execute_task(task_id: str, request: TaskExecutionRequest):
    """Execute one workflow task against its agent, streaming SSE."""
    logger.info(f"Execute task {task_id}: agent={request.agent_id}, "
                f"input_source={request.input_source.value}, thread_strategy={request.thread_strategy.value}")
    events = gateway.start(RunRequest(
        assistant_id=request.agent_id,
        task_id=task_id,
        prompt=request.prompt,
        previous_output=request.previous_output,
        input_source=request.input_source,
        thread_strategy=request.thread_strategy,
        thread_id=request.thread_id,
        tool_approval=request.tool_approval,
        config=request.config,
        user_id=request.user_id,
    ))
    return StreamingResponse(sse_stream(events), media_type=SSE_MEDIA_TYPE, headers=STREAM_HEADERS)


@router.post("/orchestrate")
async def orchestrate(request: OrchestrateRequest):
    """Run the manager/sub-agent loop to completion and return its history."""
    if not request.agents:
        raise HTTPException(status_code=400, detail="at least one agent is required")

    controller = DelegationController.from_request(request)
    result = await controller.run()
    return result.to_dict()


@router.get("/task-runs/{task_run_id}/analytics")
async def task_run_analytics(task_run_id: str, agent_id: Optional[str] = None):
    """Tool-call analytics for the run that served a task run."""
    task_run = await store.get_task_run(task_run_id)
    if task_run is None:
        raise HTTPException(status_code=404, detail=f"Task run {task_run_id} not found")

    result = await RunCorrelator(store).correlate_from_store(task_run_id, agent_id=agent_id)
    return {"task_run": task_run.to_dict(), **result.to_dict()}


@router.get("/models")
async def list_models():
    """Decision models available to the manager."""
    models = await model_client.list_models()
    return {"object": "list", "data": [{"id": m.get("name", "unknown"), "object": "model"} for m in models]}
