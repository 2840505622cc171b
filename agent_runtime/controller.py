"""
Delegation controller.

A supervisor loop where a manager model decides which sub-agent runs
next, or that the goal is met:

    MANAGER -> EXECUTE_AGENT -> MANAGER -> ... -> END

Turns are strictly sequential. Failures in a sub-agent turn come back
as messages the manager can react to; an unparseable decision or an
unknown agent ends the orchestration.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from .config import config
from .decisions import Complete, Delegate, parse_decision
from .errors import DecisionParseError, UnknownAgentError
from .executor import SubAgentExecutor
from .model_client import ModelClient, model_client as default_model_client
from .models import Message, OrchestrateRequest
from .state import Node, OrchestrationState, SubAgentHandle

logger = logging.getLogger(__name__)

DECISION_INSTRUCTIONS = """Instructions:
To delegate work to an agent, respond with JSON only:
{
  "agent": "agent_name",
  "instruction": "what you want them to do"
}

To signal completion, respond with JSON only:
{
  "complete": true,
  "final_result": "summary of work completed"
}

IMPORTANT: Respond with ONLY valid JSON. No additional text before or after."""


@dataclass
class OrchestrationResult:
    """Outcome of one orchestration run."""
    messages: List[Message]
    final_output: Optional[str]
    iterations: int
    error: Optional[str] = None
    agent_threads: Dict[str, Optional[str]] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "messages": [m.to_dict() for m in self.messages],
            "final_output": self.final_output,
            "iterations": self.iterations,
            "error": self.error,
            "agent_threads": self.agent_threads,
        }


class DelegationController:
    """
    Manager state machine over a registry of sub-agents.

    Handles:
    - Prompting the decision model with the agent roster and history
    - Validating delegations against the registry
    - Routing between manager turns and sub-agent execution
    """

    def __init__(
        self,
        system_prompt: str,
        goal: str,
        agents: List[SubAgentHandle],
        max_iterations: Optional[int] = None,
        model: Optional[str] = None,
        temperature: Optional[float] = None,
        model_client: Optional[ModelClient] = None,
        executor: Optional[SubAgentExecutor] = None,
    ):
        self.system_prompt = system_prompt
        self.goal = goal
        self.model = model
        self.temperature = temperature
        self.model_client = model_client or default_model_client
        self.executor = executor or SubAgentExecutor()
        self.state = OrchestrationState(
            available_agents={a.agent_id: a for a in agents},
            max_iterations=config.max_iterations if max_iterations is None else max_iterations,
        )

    @classmethod
    def from_request(cls, request: OrchestrateRequest, **kwargs) -> "DelegationController":
        agents = [
            SubAgentHandle(
                agent_id=a.agent_id,
                name=a.name,
                assistant_id=a.assistant_id,
                description=a.description,
                thread_id=a.thread_id,
                config=dict(a.config),
            )
            for a in request.agents
        ]
        return cls(
            system_prompt=request.manager.system_prompt,
            goal=request.manager.user_prompt,
            agents=agents,
            max_iterations=request.execution.max_iterations,
            model=request.manager.model,
            temperature=request.manager.temperature,
            **kwargs,
        )

    async def run(self) -> OrchestrationResult:
        """Drive the state machine from MANAGER to END."""
        node = Node.MANAGER
        logger.info(f"Orchestration started with {len(self.state.available_agents)} agents, "
                    f"max_iterations={self.state.max_iterations}")

        while node != Node.END:
            if node == Node.MANAGER:
                await self.manager_turn()
                node = self.route()
            else:
                await self.execute_turn()
                node = Node.MANAGER

        return OrchestrationResult(
            messages=list(self.state.messages),
            final_output=self.state.final_result,
            iterations=self.state.iteration,
            error=self.state.error,
            agent_threads={k: h.thread_id for k, h in self.state.available_agents.items()},
        )

    def build_system_prompt(self) -> str:
        agents_list = "\n".join(
            f"- {h.name}: {h.description or 'No description'}"
            for h in self.state.available_agents.values()
        )
        return f"{self.system_prompt}\n\nAvailable Agents:\n{agents_list}\n\n{DECISION_INSTRUCTIONS}"

    async def manager_turn(self):
        """One manager decision; mutates state only."""
        state = self.state
        conversation = [
            {"role": "system", "content": self.build_system_prompt()},
            {"role": "user", "content": self.goal},
            *(_to_chat(m) for m in state.messages),
        ]

        try:
            content = await self.model_client.chat(conversation, model=self.model, temperature=self.temperature)
        except Exception as e:
            logger.error(f"Error in manager turn: {e}")
            self._terminate(f"Manager error: {e}", error=str(e))
            return

        decision = parse_decision(content)

        if isinstance(decision, Complete):
            logger.info("Manager signaled completion")
            state.final_result = decision.summary
            state.append(Message(role="ai", content=decision.summary))
            state.is_complete = True
            state.next_agent = None

        elif isinstance(decision, Delegate):
            handle = state.find_agent(decision.agent)
            if handle is None:
                error = UnknownAgentError(decision.agent)
                logger.warning(f"Manager delegated to unknown agent: {decision.agent}")
                self._terminate(f"Error: {error}", error=str(error))
                return

            logger.info(f"Manager delegating to: {handle.name}")
            state.append(Message(role="ai", content=decision.raw))
            state.next_agent = handle.agent_id
            state.pending_instruction = decision.instruction
            state.iteration += 1

        else:
            error = DecisionParseError(decision.raw, decision.reason)
            logger.warning(f"{error}; ending orchestration")
            self._terminate(f"Error: {error}", error=str(error))

    def route(self) -> Node:
        """Routing guard evaluated after each manager turn."""
        state = self.state
        if state.is_complete:
            logger.info("Orchestration complete (manager signaled)")
            return Node.END
        if state.iteration >= state.max_iterations:
            logger.warning(f"Orchestration reached max iterations ({state.max_iterations})")
            if state.final_result is None:
                state.final_result = _last_content(state.messages)
            return Node.END
        if state.next_agent:
            logger.info(f"Routing to execute_agent ({state.next_agent})")
            return Node.EXECUTE_AGENT
        logger.info("Orchestration complete (no next action)")
        return Node.END

    async def execute_turn(self):
        """Run the pending sub-agent and fold its result into history."""
        state = self.state
        handle = state.available_agents[state.next_agent]
        instruction = state.pending_instruction or "Complete your assigned task"

        outcome = await self.executor.execute(handle, instruction)
        state.append(outcome.message)
        if outcome.thread_id:
            handle.thread_id = outcome.thread_id

        state.next_agent = None
        state.pending_instruction = None

    def _terminate(self, text: str, error: Optional[str] = None):
        self.state.append(Message(role="ai", content=text))
        self.state.is_complete = True
        self.state.next_agent = None
        self.state.error = error
        self.state.final_result = text


def _to_chat(message: Message) -> Dict[str, Any]:
    role = {"ai": "assistant", "human": "user"}.get(message.role, message.role)
    if message.role == "ai" and message.name:
        # sub-agent output is shown to the manager as context, not as its own words
        role = "user"
    return {"role": role, "content": message.content}


def _last_content(messages: List[Message]) -> Optional[str]:
    return messages[-1].content if messages else None

