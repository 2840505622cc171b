"""Persistence collaborator: task runs, run records, checkpoints, agent config."""

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Protocol

import httpx

from .config import config
from .models import TaskRunStatus

logger = logging.getLogger(__name__)

TERMINAL_STATUSES = (TaskRunStatus.COMPLETED, TaskRunStatus.ERROR)
TASK_RUNS_TABLE = "workflow_task_runs"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class TaskRun:
    """Application-level record of one task execution."""
    task_id: str
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    run_id: Optional[str] = None
    status: TaskRunStatus = TaskRunStatus.RUNNING
    started_at: datetime = field(default_factory=utcnow)
    completed_at: Optional[datetime] = None
    result: Any = None
    error: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def thread_id(self) -> Optional[str]:
        return self.metadata.get("thread_id")

    @property
    def assistant_id(self) -> Optional[str]:
        return self.metadata.get("assistant_id")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "task_id": self.task_id,
            "run_id": self.run_id,
            "status": self.status.value,
            "started_at": self.started_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "result": self.result,
            "error": self.error,
            "metadata": self.metadata,
        }

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "TaskRun":
        return cls(
            id=row["id"],
            task_id=row.get("task_id") or "",
            run_id=row.get("run_id"),
            status=TaskRunStatus(row.get("status") or TaskRunStatus.RUNNING.value),
            started_at=parse_timestamp(row.get("started_at")) or utcnow(),
            completed_at=parse_timestamp(row.get("completed_at")),
            result=row.get("result"),
            error=row.get("error"),
            metadata=row.get("metadata") or {},
        )


@dataclass
class RunRecord:
    """Low-level run as recorded by the run service."""
    run_id: str
    thread_id: str
    created_at: datetime
    assistant_id: Optional[str] = None
    status: Optional[str] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "RunRecord":
        return cls(
            run_id=row["run_id"],
            thread_id=row["thread_id"],
            created_at=parse_timestamp(row.get("created_at")) or utcnow(),
            assistant_id=row.get("assistant_id"),
            status=row.get("status"),
        )


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Timestamp as an aware datetime; naive values are taken as UTC."""
    if value is None:
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        try:
            parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
        except ValueError:
            logger.warning(f"Unparseable timestamp: {value!r}")
            return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


class TaskRunStore(Protocol):
    async def insert_task_run(self, task_run: TaskRun) -> TaskRun: ...

    async def finish_task_run(
        self,
        task_run_id: str,
        status: TaskRunStatus,
        result: Any = None,
        error: Optional[str] = None,
    ) -> Optional[TaskRun]: ...

    async def get_task_run(self, task_run_id: str) -> Optional[TaskRun]: ...

    async def has_task_run_for_run(self, run_id: str) -> bool: ...

    async def record_run(self, run: RunRecord) -> None: ...

    async def list_runs_for_thread(self, thread_id: str, assistant_id: Optional[str] = None) -> List[RunRecord]: ...

    async def get_checkpoints(self, run_id: str) -> List[Any]: ...

    async def get_agent_config(self, assistant_id: str) -> Dict[str, Any]: ...


class InMemoryStore:
    """In-memory store; the default backend and the one used in tests."""

    def __init__(self):
        self._task_runs: Dict[str, TaskRun] = {}
        self._runs: Dict[str, RunRecord] = {}
        self._checkpoints: Dict[str, List[Any]] = {}
        self._agent_configs: Dict[str, Dict[str, Any]] = {}
        self._lock = asyncio.Lock()

    async def insert_task_run(self, task_run: TaskRun) -> TaskRun:
        async with self._lock:
            self._task_runs[task_run.id] = task_run
        logger.debug(f"Inserted task run {task_run.id} (run={task_run.run_id})")
        return task_run

    async def finish_task_run(
        self,
        task_run_id: str,
        status: TaskRunStatus,
        result: Any = None,
        error: Optional[str] = None,
    ) -> Optional[TaskRun]:
        async with self._lock:
            task_run = self._task_runs.get(task_run_id)
            if task_run is None:
                logger.warning(f"Task run {task_run_id} not found")
                return None
            if task_run.status in TERMINAL_STATUSES:
                logger.warning(f"Task run {task_run_id} already {task_run.status.value}; ignoring {status.value}")
                return task_run
            task_run.status = status
            task_run.completed_at = utcnow()
            if status == TaskRunStatus.COMPLETED:
                task_run.result = result
            else:
                task_run.error = error
            return task_run

    async def get_task_run(self, task_run_id: str) -> Optional[TaskRun]:
        return self._task_runs.get(task_run_id)

    async def has_task_run_for_run(self, run_id: str) -> bool:
        return any(tr.run_id == run_id for tr in self._task_runs.values())

    async def record_run(self, run: RunRecord) -> None:
        async with self._lock:
            self._runs.setdefault(run.run_id, run)

    async def list_runs_for_thread(self, thread_id: str, assistant_id: Optional[str] = None) -> List[RunRecord]:
        runs = [r for r in self._runs.values() if r.thread_id == thread_id]
        if assistant_id:
            runs = [r for r in runs if r.assistant_id == assistant_id]
        return runs

    def add_checkpoint(self, run_id: str, checkpoint: Any):
        self._checkpoints.setdefault(run_id, []).append(checkpoint)

    async def get_checkpoints(self, run_id: str) -> List[Any]:
        return list(self._checkpoints.get(run_id, []))

    def set_agent_config(self, assistant_id: str, configurable: Dict[str, Any]):
        self._agent_configs[assistant_id] = dict(configurable)

    async def get_agent_config(self, assistant_id: str) -> Dict[str, Any]:
        return dict(self._agent_configs.get(assistant_id, {}))


class SupabaseStore:
    """
    Store backed by Supabase's PostgREST API.

    Tables:
    - workflow_task_runs: application task runs
    - runs: run records written by the run service
    - checkpoints: checkpoint blobs keyed by run_id
    - assistant: stored agent configuration
    """

    def __init__(self, url: Optional[str] = None, key: Optional[str] = None,
                 client: Optional[httpx.AsyncClient] = None):
        self.base_url = f"{(url or config.supabase_url).rstrip('/')}/rest/v1"
        key = key or config.supabase_key
        self.client = client or httpx.AsyncClient(timeout=30.0)
        self.client.headers.update({
            "apikey": key,
            "Authorization": f"Bearer {key}",
            "Content-Type": "application/json",
            "Prefer": "return=representation",
        })

    async def close(self):
        await self.client.aclose()

    async def _select(self, table: str, params: Dict[str, str]) -> List[Dict[str, Any]]:
        resp = await self.client.get(f"{self.base_url}/{table}", params={"select": "*", **params})
        resp.raise_for_status()
        return resp.json()

    async def insert_task_run(self, task_run: TaskRun) -> TaskRun:
        resp = await self.client.post(f"{self.base_url}/{TASK_RUNS_TABLE}", json=task_run.to_dict())
        resp.raise_for_status()
        return task_run

    async def finish_task_run(
        self,
        task_run_id: str,
        status: TaskRunStatus,
        result: Any = None,
        error: Optional[str] = None,
    ) -> Optional[TaskRun]:
        update: Dict[str, Any] = {"status": status.value, "completed_at": utcnow().isoformat()}
        if status == TaskRunStatus.COMPLETED:
            update["result"] = result
        else:
            update["error"] = error

        # only a running row may transition, so result/error are written once
        resp = await self.client.patch(
            f"{self.base_url}/{TASK_RUNS_TABLE}",
            params={"id": f"eq.{task_run_id}", "status": f"eq.{TaskRunStatus.RUNNING.value}"},
            json=update,
        )
        resp.raise_for_status()
        rows = resp.json()
        if not rows:
            logger.warning(f"Task run {task_run_id} not running; ignoring {status.value}")
            return await self.get_task_run(task_run_id)
        return TaskRun.from_row(rows[0])

    async def get_task_run(self, task_run_id: str) -> Optional[TaskRun]:
        rows = await self._select(TASK_RUNS_TABLE, {"id": f"eq.{task_run_id}"})
        return TaskRun.from_row(rows[0]) if rows else None

    async def has_task_run_for_run(self, run_id: str) -> bool:
        rows = await self._select(TASK_RUNS_TABLE, {"run_id": f"eq.{run_id}", "limit": "1"})
        return bool(rows)

    async def record_run(self, run: RunRecord) -> None:
        logger.debug(f"Run {run.run_id} is recorded by the run service")

    async def list_runs_for_thread(self, thread_id: str, assistant_id: Optional[str] = None) -> List[RunRecord]:
        params = {"thread_id": f"eq.{thread_id}", "order": "created_at.asc"}
        if assistant_id:
            params["assistant_id"] = f"eq.{assistant_id}"
        return [RunRecord.from_row(r) for r in await self._select("runs", params)]

    async def get_checkpoints(self, run_id: str) -> List[Any]:
        rows = await self._select("checkpoints", {"run_id": f"eq.{run_id}"})
        return [row.get("checkpoint", row) for row in rows]

    async def get_agent_config(self, assistant_id: str) -> Dict[str, Any]:
        rows = await self._select("assistant", {"assistant_id": f"eq.{assistant_id}"})
        if not rows:
            return {}
        return dict((rows[0].get("config") or {}).get("configurable") or {})


def create_store():
    """Build the store selected by STORE_BACKEND."""
    if config.store_backend == "supabase":
        logger.info(f"Using Supabase store at {config.supabase_url}")
        return SupabaseStore()
    return InMemoryStore()


# Global instance
store = create_store()
