"""Error taxonomy for orchestration, streaming and correlation."""

from typing import Optional


class AgentRuntimeError(Exception):
    """Base class for all runtime errors."""

    kind = "runtime_error"

    def to_event_data(self) -> dict:
        """Structured payload for an outward `error` event."""
        return {"type": self.kind, "message": str(self)}


class DecisionParseError(AgentRuntimeError):
    """Manager output is not parseable as either decision shape."""

    kind = "decision_parse_error"

    def __init__(self, raw: str, reason: str = "unparseable decision"):
        super().__init__(f"Could not parse manager decision: {reason}")
        self.raw = raw
        self.reason = reason


class UnknownAgentError(AgentRuntimeError):
    """Delegated agent is absent from the registry."""

    kind = "unknown_agent"

    def __init__(self, agent: str):
        super().__init__(f'Agent "{agent}" not found')
        self.agent = agent


class SubAgentTimeoutError(AgentRuntimeError):
    """A sub-agent turn exceeded its time budget."""

    kind = "subagent_timeout"

    def __init__(self, agent: str, timeout: float):
        super().__init__(f"timed out after {timeout:g}s")
        self.agent = agent
        self.timeout = timeout


class RunServiceError(AgentRuntimeError):
    """HTTP-level failure talking to the Agent Run Service."""

    kind = "run_service_error"

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class StreamUpstreamError(AgentRuntimeError):
    """The run service reported an error mid-stream."""

    kind = "upstream_error"

    def __init__(self, message: str, data=None):
        super().__init__(message)
        self.data = data


class InvalidResumeError(AgentRuntimeError):
    """Resume request does not match the suspended run."""

    kind = "invalid_resume"


class CorrelationMiss(AgentRuntimeError):
    """No run record could be matched to a task run."""

    kind = "correlation_miss"


class UsageRecordingFailure(AgentRuntimeError):
    """The usage sink rejected a write."""

    kind = "usage_recording_failure"
