"""
Manager decision parsing.

The manager replies with free text that should contain one of two JSON
shapes:

    {"agent": "<name>", "instruction": "<what to do>"}
    {"complete": true, "final_result": "<summary>"}

Models wrap JSON in prose or code fences, so candidates are tried in order:
fenced code blocks, then the first balanced-brace object, then the raw text.
The first candidate that parses as a JSON object wins.
"""

import json
import re
from dataclasses import dataclass
from typing import Any, Dict, Iterator, List, Optional, Tuple, Union

DEFAULT_INSTRUCTION = "Complete your assigned task"
DEFAULT_FINAL_RESULT = "Task completed"

_FENCE_RE = re.compile(r"```(?:json|JSON)?\s*\n?(.*?)```", re.DOTALL)


@dataclass(frozen=True)
class Delegate:
    agent: str
    instruction: str
    raw: str


@dataclass(frozen=True)
class Complete:
    summary: str
    raw: str


@dataclass(frozen=True)
class Invalid:
    raw: str
    reason: str


Decision = Union[Delegate, Complete, Invalid]


def parse_decision(text: Optional[str]) -> Decision:
    """Parse manager output into a Decision; never raises."""
    raw = text if isinstance(text, str) else ("" if text is None else str(text))
    if not raw.strip():
        return Invalid(raw=raw, reason="empty response")

    obj = _first_json_object(raw)
    if obj is None:
        return Invalid(raw=raw, reason="no JSON object found")

    if obj.get("complete"):
        summary = obj.get("final_result")
        if summary is None or (isinstance(summary, str) and not summary.strip()):
            summary = DEFAULT_FINAL_RESULT
        elif not isinstance(summary, str):
            summary = json.dumps(summary)
        return Complete(summary=summary, raw=raw)

    agent = obj.get("agent")
    if isinstance(agent, str) and agent.strip():
        instruction = obj.get("instruction")
        if not isinstance(instruction, str) or not instruction.strip():
            instruction = DEFAULT_INSTRUCTION
        return Delegate(agent=agent.strip(), instruction=instruction, raw=raw)

    return Invalid(raw=raw, reason="JSON has neither 'agent' nor 'complete'")


def _first_json_object(text: str) -> Optional[Dict[str, Any]]:
    for candidate in _candidates(text):
        try:
            value = json.loads(candidate)
        except (json.JSONDecodeError, ValueError):
            continue
        if isinstance(value, dict):
            return value
    return None


def _candidates(text: str) -> Iterator[str]:
    # 1. fenced code blocks
    for match in _FENCE_RE.finditer(text):
        yield match.group(1).strip()

    # 2. balanced-brace objects, in order of appearance
    for obj in iter_balanced_objects(text):
        yield obj

    # 3. raw text
    yield text.strip()


def iter_balanced_objects(text: str) -> Iterator[str]:
    """Yield every balanced `{...}` span by opening position, skipping braces inside strings.

    Single pass: unclosed braces stay on the stack and never force a rescan.
    """
    spans: List[Tuple[int, int]] = []
    opened: List[int] = []
    in_string = False
    escaped = False

    for i, ch in enumerate(text):
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue

        if ch == '"':
            # quotes in prose outside any object are not strings
            in_string = bool(opened)
        elif ch == "{":
            opened.append(i)
        elif ch == "}" and opened:
            spans.append((opened.pop(), i))

    for start, end in sorted(spans):
        yield text[start:end + 1]
