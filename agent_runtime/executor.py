"""Sub-agent executor: one non-interactive delegation turn."""

import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from .config import config
from .errors import SubAgentTimeoutError
from .models import Message
from .run_client import RunServiceClient, run_service
from .state import SubAgentHandle

logger = logging.getLogger(__name__)

NO_RESPONSE = "No response"


@dataclass
class ExecutionOutcome:
    """Formatted result of one sub-agent turn."""
    message: Message
    thread_id: Optional[str]
    success: bool


class SubAgentExecutor:
    """
    Runs a sub-agent's turn and collects a single consolidated result.

    Only the most recent `updates` event is kept; nothing is streamed to
    the caller. Every failure is converted into a message attributed to
    the sub-agent.
    """

    def __init__(self, client: Optional[RunServiceClient] = None, timeout: Optional[float] = None):
        self.client = client or run_service
        self.timeout = config.subagent_timeout if timeout is None else timeout

    async def execute(self, handle: SubAgentHandle, instruction: str) -> ExecutionOutcome:
        logger.info(f"Executing sub-agent {handle.name} (thread={handle.thread_id or 'new'})")
        logger.debug(f"Instruction for {handle.name}: {instruction}")

        # thread creation counts against the turn timeout; the id survives a timeout
        turn = {"thread_id": handle.thread_id}
        try:
            result = await asyncio.wait_for(self._turn(handle, turn, instruction), timeout=self.timeout)
        except asyncio.TimeoutError:
            error = SubAgentTimeoutError(handle.name, self.timeout)
            logger.warning(f"Sub-agent {handle.name} {error}")
            return self._failure(handle, str(error), turn["thread_id"])
        except Exception as e:
            logger.error(f"Error executing sub-agent {handle.name}: {e}")
            return self._failure(handle, str(e), turn["thread_id"])

        content = _stringify(result) if result is not None else NO_RESPONSE
        logger.info(f"Sub-agent {handle.name} completed")
        return ExecutionOutcome(
            message=Message(role="ai", content=f"[{handle.name}]: {content}", name=handle.name),
            thread_id=turn["thread_id"],
            success=result is not None,
        )

    async def _turn(self, handle: SubAgentHandle, turn: Dict[str, Optional[str]], instruction: str) -> Any:
        if not turn["thread_id"]:
            turn["thread_id"] = await self.client.create_thread(metadata={"agent_id": handle.agent_id})
        return await self._collect(handle, turn["thread_id"], instruction)

    async def _collect(self, handle: SubAgentHandle, thread_id: str, instruction: str) -> Any:
        final_data = None
        async for event in self.client.stream_run(
            thread_id,
            handle.assistant_id,
            input={"messages": [{"role": "user", "content": instruction}]},
            configurable=handle.config or {},
            stream_mode="updates",
        ):
            if event.event == "updates" and event.data:
                final_data = event.data
            elif event.event == "error":
                raise RuntimeError(_stringify(event.data))
        return final_data

    @staticmethod
    def _failure(handle: SubAgentHandle, reason: str, thread_id: Optional[str]) -> ExecutionOutcome:
        return ExecutionOutcome(
            message=Message(role="ai", content=f"[{handle.name}] Error: {reason}", name=handle.name),
            thread_id=thread_id,
            success=False,
        )


def _stringify(value: Any) -> str:
    if isinstance(value, str):
        return value
    try:
        return json.dumps(value)
    except (TypeError, ValueError):
        return str(value)
