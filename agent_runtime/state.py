"""Orchestration state and suspended-run session management."""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, List, Optional

from .config import config
from .models import Message, ToolCall

logger = logging.getLogger(__name__)


# ============================================================================
# Delegation Controller State
# ============================================================================

class Node(str, Enum):
    """Delegation controller states."""
    MANAGER = "manager"
    EXECUTE_AGENT = "execute_agent"
    END = "end"


@dataclass
class SubAgentHandle:
    """A sub-agent the manager may delegate to."""
    agent_id: str
    name: str
    assistant_id: str
    description: Optional[str] = None
    thread_id: Optional[str] = None
    config: Dict[str, Any] = field(default_factory=dict)


@dataclass
class OrchestrationState:
    """
    Transient state for one orchestration run.

    Tracks:
    - Message history across manager and sub-agent turns
    - Pending delegation target and its instruction
    - Completion flag and iteration counter
    - Sub-agent registry (with remembered thread ids)
    """
    available_agents: Dict[str, SubAgentHandle]
    max_iterations: int
    messages: List[Message] = field(default_factory=list)
    next_agent: Optional[str] = None
    pending_instruction: Optional[str] = None
    is_complete: bool = False
    iteration: int = 0
    error: Optional[str] = None
    final_result: Optional[str] = None

    def append(self, message: Message):
        self.messages.append(message)

    def find_agent(self, name: str) -> Optional[SubAgentHandle]:
        """Look up a sub-agent by registry key, then by display name."""
        if name in self.available_agents:
            return self.available_agents[name]
        for handle in self.available_agents.values():
            if handle.name == name:
                return handle
        return None


# ============================================================================
# Suspended Gateway Sessions
# ============================================================================

@dataclass
class SuspendedSession:
    """A gateway run paused before tool execution, awaiting the caller."""
    thread_id: str
    assistant_id: str
    run_id: Optional[str]
    tool_calls: List[ToolCall]
    user_id: Optional[str] = None
    task_run_id: Optional[str] = None
    configurable: Dict[str, Any] = field(default_factory=dict)
    metadata: Dict[str, Any] = field(default_factory=dict)
    interrupt_before: List[str] = field(default_factory=list)
    stream_mode: Any = "messages-tuple"
    suspended_at: datetime = field(default_factory=datetime.now)

    @property
    def pending_ids(self) -> List[str]:
        return [tc.id for tc in self.tool_calls]


class InterruptRegistry:
    """
    Holds suspended sessions between an interrupt and the caller's resume.

    The lock guards dict mutation only; nothing waits on a caller while
    holding it.
    """

    def __init__(self, ttl_seconds: Optional[int] = None):
        self._sessions: Dict[str, SuspendedSession] = {}
        self._lock = asyncio.Lock()
        self._cleanup_task: Optional[asyncio.Task] = None
        self._ttl = ttl_seconds if ttl_seconds is not None else config.session_ttl

    async def start(self):
        """Start background cleanup task."""
        self._cleanup_task = asyncio.create_task(self._cleanup_loop())
        logger.info("Interrupt registry started")

    async def stop(self):
        """Stop cleanup task."""
        if self._cleanup_task:
            self._cleanup_task.cancel()
            try:
                await self._cleanup_task
            except asyncio.CancelledError:
                pass
        logger.info("Interrupt registry stopped")

    async def suspend(self, session: SuspendedSession):
        async with self._lock:
            self._sessions[session.thread_id] = session
        logger.info(f"Thread {session.thread_id} suspended awaiting approval of "
                    f"{len(session.tool_calls)} tool call(s)")

    async def get(self, thread_id: str) -> Optional[SuspendedSession]:
        async with self._lock:
            return self._sessions.get(thread_id)

    async def pop(self, thread_id: str) -> Optional[SuspendedSession]:
        async with self._lock:
            return self._sessions.pop(thread_id, None)

    def expire(self, now: Optional[datetime] = None) -> List[str]:
        """Drop sessions older than the TTL; returns expired thread ids."""
        now = now or datetime.now()
        ttl = timedelta(seconds=self._ttl)
        expired = [tid for tid, s in self._sessions.items() if now - s.suspended_at > ttl]
        for tid in expired:
            del self._sessions[tid]
            logger.info(f"Expired suspended session for thread {tid}")
        return expired

    async def _cleanup_loop(self):
        while True:
            await asyncio.sleep(60)
            async with self._lock:
                self.expire()

    @property
    def session_count(self) -> int:
        return len(self._sessions)


# Global instance
interrupts = InterruptRegistry()
