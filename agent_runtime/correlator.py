"""
Run correlation and checkpoint analytics.

Matches an application task run to the low-level run that served it and
pulls tool-call analytics out of that run's checkpoints. Everything here
is best-effort: missing or malformed data yields empty analytics, never
an exception.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Sequence, Tuple

from .config import config
from .errors import CorrelationMiss
from .store import RunRecord, TaskRun, TaskRunStore, parse_timestamp, store as default_store

logger = logging.getLogger(__name__)

WEB_SEARCH_MARKERS = ("web_search", "tavily", "search")


@dataclass
class CorrelationResult:
    run: Optional[RunRecord] = None
    matched_by: Optional[str] = None
    tool_calls: List[str] = field(default_factory=list)
    tool_call_count: int = 0
    web_search: Dict[str, Any] = field(default_factory=lambda: {"searched": False})

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_id": self.run.run_id if self.run else None,
            "matched_by": self.matched_by,
            "tool_calls": self.tool_calls,
            "tool_call_count": self.tool_call_count,
            "web_search": self.web_search,
        }


# =============================================================================
# Matching
# =============================================================================

def match_run(
    task_run: TaskRun,
    candidates: Sequence[RunRecord],
    agent_id: Optional[str] = None,
    window: Optional[timedelta] = None,
) -> Optional[RunRecord]:
    """
    Pick the run record that most plausibly served task_run.

    Order of preference:
    1. the run id stored on the task run
    2. same-thread runs created within the window around the task run
       (all same-thread runs if none fall in the window)
    3. closest creation time to the task run's start, first wins on ties
    """
    if window is None:
        window = timedelta(seconds=config.correlation_window_seconds)

    if task_run.run_id:
        for run in candidates:
            if run.run_id == task_run.run_id:
                return run
        return RunRecord(
            run_id=task_run.run_id,
            thread_id=task_run.thread_id or "",
            created_at=task_run.started_at,
            assistant_id=task_run.assistant_id,
        )

    thread_id = task_run.thread_id
    pool = [r for r in candidates if thread_id is None or r.thread_id == thread_id]
    agent_id = agent_id or task_run.assistant_id
    if agent_id:
        pool = [r for r in pool if r.assistant_id in (None, agent_id)]
    if not pool:
        return None

    started = parse_timestamp(task_run.started_at)
    timed = [(r, parse_timestamp(r.created_at)) for r in pool]
    timed = [(r, created) for r, created in timed if created is not None]
    if started is None or not timed:
        return None

    earliest, latest = window_bounds(task_run, window)
    in_window = [(r, created) for r, created in timed if earliest <= created <= latest]
    if in_window:
        timed = in_window

    best, best_delta = None, None
    for run, created in timed:
        delta = abs((created - started).total_seconds())
        if best_delta is None or delta < best_delta:
            best, best_delta = run, delta
    return best


# =============================================================================
# Checkpoint walk
# =============================================================================

def _call_name(call: Any) -> Optional[str]:
    if not isinstance(call, dict):
        return None
    for key in ("name", "tool_name", "toolName"):
        name = call.get(key)
        if isinstance(name, str) and name:
            return name
    return None


def _collect_tool_calls(value: Any, calls: List[str], depth: int, max_depth: int):
    if value is None or depth > max_depth:
        return
    if isinstance(value, list):
        for item in value:
            _collect_tool_calls(item, calls, depth + 1, max_depth)
        return
    if not isinstance(value, dict):
        return

    tool_calls = value.get("tool_calls")
    if isinstance(tool_calls, list):
        calls.extend(n for n in map(_call_name, tool_calls) if n)

    additional = value.get("additional_kwargs")
    if isinstance(additional, dict) and isinstance(additional.get("tool_calls"), list):
        calls.extend(n for n in map(_call_name, additional["tool_calls"]) if n)

    if value.get("type") == "tool":
        name = value.get("name") or value.get("tool")
        if isinstance(name, str) and name:
            calls.append(name)

    for key, child in value.items():
        if key == "additional_kwargs" and isinstance(child, dict):
            # its tool_calls were collected above
            child = {k: v for k, v in child.items() if k != "tool_calls"}
        _collect_tool_calls(child, calls, depth + 1, max_depth)


def extract_tool_calls(checkpoint: Any, max_depth: Optional[int] = None) -> List[str]:
    """Tool names found anywhere in a checkpoint tree, in walk order."""
    calls: List[str] = []
    try:
        _collect_tool_calls(checkpoint, calls, 0, config.checkpoint_max_depth if max_depth is None else max_depth)
    except Exception as e:
        logger.warning(f"Checkpoint walk aborted: {e}")
    return calls


def extract_web_search(checkpoint: Any, max_depth: Optional[int] = None) -> Dict[str, Any]:
    """`{searched, sources?}` for checkpoints that used a search tool."""
    max_depth = config.checkpoint_max_depth if max_depth is None else max_depth
    names = extract_tool_calls(checkpoint, max_depth)
    if not any(marker in n.lower() for n in names for marker in WEB_SEARCH_MARKERS):
        return {"searched": False}

    sources: List[str] = []

    def add(source: Any):
        if isinstance(source, str) and source not in sources:
            sources.append(source)

    def walk(value: Any, depth: int):
        if value is None or depth > max_depth:
            return
        if isinstance(value, list):
            for item in value:
                walk(item, depth + 1)
            return
        if not isinstance(value, dict):
            return
        add(value.get("url") or value.get("source") or value.get("link"))
        if isinstance(value.get("sources"), list):
            for src in value["sources"]:
                add(src.get("url") if isinstance(src, dict) else src)
        for child in value.values():
            walk(child, depth + 1)

    try:
        walk(checkpoint, 0)
    except Exception as e:
        logger.warning(f"Source walk aborted: {e}")

    result: Dict[str, Any] = {"searched": True}
    if sources:
        result["sources"] = sources
    return result


# =============================================================================
# Correlator
# =============================================================================

class RunCorrelator:
    """Read-only reconciliation of task runs against run records."""

    def __init__(self, store: Optional[TaskRunStore] = None, window_seconds: Optional[float] = None):
        self.store = store or default_store
        self.window = timedelta(seconds=config.correlation_window_seconds if window_seconds is None
                                else window_seconds)

    def correlate(
        self,
        task_run: TaskRun,
        candidates: Sequence[RunRecord],
        checkpoints: Sequence[Any] = (),
        agent_id: Optional[str] = None,
    ) -> CorrelationResult:
        try:
            run = self._require_match(task_run, candidates, agent_id)
        except CorrelationMiss as e:
            logger.debug(f"Correlation miss: {e}")
            return CorrelationResult()

        matched_by = "explicit" if task_run.run_id == run.run_id else "time_window"
        result = CorrelationResult(run=run, matched_by=matched_by)
        for checkpoint in checkpoints:
            names = extract_tool_calls(checkpoint)
            result.tool_calls.extend(names)
            result.tool_call_count += len(names)
            web = extract_web_search(checkpoint)
            if web["searched"]:
                merged = result.web_search.get("sources", [])
                merged.extend(s for s in web.get("sources", []) if s not in merged)
                result.web_search = {"searched": True, **({"sources": merged} if merged else {})}
        return result

    async def correlate_from_store(self, task_run_id: str, agent_id: Optional[str] = None) -> CorrelationResult:
        """Load records for task_run_id and correlate; store failures yield empty analytics."""
        try:
            task_run = await self.store.get_task_run(task_run_id)
            if task_run is None:
                logger.debug(f"Task run {task_run_id} not found; nothing to correlate")
                return CorrelationResult()

            candidates: List[RunRecord] = []
            if task_run.thread_id:
                candidates = await self.store.list_runs_for_thread(task_run.thread_id)
            run = self._require_match(task_run, candidates, agent_id)
            checkpoints = await self.store.get_checkpoints(run.run_id)
        except CorrelationMiss as e:
            logger.debug(f"Correlation miss: {e}")
            return CorrelationResult()
        except Exception as e:
            logger.warning(f"Correlation for task run {task_run_id} skipped: {e}")
            return CorrelationResult()

        return self.correlate(task_run, [run], checkpoints, agent_id=agent_id)

    def _require_match(self, task_run: TaskRun, candidates: Sequence[RunRecord],
                       agent_id: Optional[str]) -> RunRecord:
        run = match_run(task_run, candidates, agent_id=agent_id, window=self.window)
        if run is None:
            raise CorrelationMiss(f"no run found for task run {task_run.id} on thread {task_run.thread_id}")
        return run


def window_bounds(task_run: TaskRun, window: timedelta) -> Tuple[datetime, datetime]:
    """(earliest, latest) creation times accepted for task_run."""
    started = parse_timestamp(task_run.started_at)
    end = parse_timestamp(task_run.completed_at) or started
    return started - window, end + window
