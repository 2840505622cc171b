"""Data models for the agent runtime."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


# ============================================================================
# Enumerations
# ============================================================================

class TaskRunStatus(str, Enum):
    """Lifecycle of an application-level task run."""
    RUNNING = "running"
    COMPLETED = "completed"
    ERROR = "error"


class ThreadStrategy(str, Enum):
    """How the gateway picks the thread for a run."""
    NEW = "new"
    REUSE = "reuse"


class InputSource(str, Enum):
    """Which sources feed a task's input messages."""
    PROMPT = "prompt"
    PREVIOUS_OUTPUT = "previous_output"
    BOTH = "both"

    @property
    def includes_prompt(self) -> bool:
        return self in (InputSource.PROMPT, InputSource.BOTH)

    @property
    def includes_previous_output(self) -> bool:
        return self in (InputSource.PREVIOUS_OUTPUT, InputSource.BOTH)


class ToolApproval(str, Enum):
    """Whether tool calls need a human decision before they run."""
    AUTO = "auto"
    MANUAL = "manual"


# ============================================================================
# Request Models
# ============================================================================

class ChatMessage(BaseModel):
    """Caller-side chat message."""
    role: str
    content: Any
    name: Optional[str] = None


class ResumeCommand(BaseModel):
    resume: Any = None


class ChatRequest(BaseModel):
    """Simplified chat endpoint request (NDJSON transport)."""
    thread_id: Optional[str] = None
    messages: Optional[List[ChatMessage]] = None
    command: Optional[ResumeCommand] = None
    config: Dict[str, Any] = Field(default_factory=dict)
    tool_approval: ToolApproval = ToolApproval.MANUAL
    user_id: Optional[str] = None


class ResumeRequest(BaseModel):
    """
    Resume a suspended run.

    Either `approved` (tool-call ids to run; empty means deny all) or a
    generic `resume` payload forwarded verbatim.
    """
    approved: Optional[List[str]] = None
    resume: Any = None
    user_id: Optional[str] = None


class TaskExecutionRequest(BaseModel):
    """Task execution endpoint request (SSE transport)."""
    agent_id: str
    prompt: Optional[str] = None
    previous_output: Any = None
    input_source: InputSource = InputSource.PROMPT
    thread_strategy: ThreadStrategy = ThreadStrategy.NEW
    thread_id: Optional[str] = None
    tool_approval: ToolApproval = ToolApproval.AUTO
    config: Dict[str, Any] = Field(default_factory=dict)
    user_id: Optional[str] = None


class ManagerConfig(BaseModel):
    """Decision-making model settings for an orchestration."""
    model: Optional[str] = None
    system_prompt: str = "You are a manager coordinating a team of agents."
    user_prompt: str
    temperature: Optional[float] = None


class SubAgentConfig(BaseModel):
    """One entry of the orchestration sub-agent registry."""
    agent_id: str
    name: str
    assistant_id: str
    description: Optional[str] = None
    thread_id: Optional[str] = None
    config: Dict[str, Any] = Field(default_factory=dict)


class ExecutionConfig(BaseModel):
    max_iterations: Optional[int] = None


class OrchestrateRequest(BaseModel):
    """Run the delegation controller to completion."""
    manager: ManagerConfig
    agents: List[SubAgentConfig]
    execution: ExecutionConfig = Field(default_factory=ExecutionConfig)


# ============================================================================
# Internal State Models
# ============================================================================

@dataclass
class Message:
    """Role-tagged, append-only conversation entry."""
    role: str
    content: str
    name: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = {"role": self.role, "content": self.content}
        if self.name:
            data["name"] = self.name
        return data


@dataclass
class ToolCall:
    """A named tool invocation awaiting approval."""
    id: str
    name: str
    args: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ToolCall":
        return cls(
            id=str(data.get("id", "")),
            name=str(data.get("name", "")),
            args=data.get("args") or {},
        )

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "name": self.name, "args": self.args}
