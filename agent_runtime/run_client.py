"""Agent Run Service client (threads, streamed runs, resume, thread state)."""

import json
import logging
from dataclasses import dataclass
from typing import Any, AsyncIterator, Dict, List, Optional, Union

import httpx

from .config import config
from .errors import RunServiceError

logger = logging.getLogger(__name__)


@dataclass
class RunEvent:
    """One `{event, data}` record from a run's event stream."""
    event: str
    data: Any = None

    def to_dict(self) -> Dict[str, Any]:
        return {"event": self.event, "data": self.data}


class RunServiceClient:
    """
    Async client for the Agent Run Service REST API.

    Handles:
    - Thread creation and state lookup
    - Streaming runs as Server-Sent Events
    - Resuming suspended runs with a resume command
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.base_url = (base_url or config.run_service_url).rstrip("/")
        headers = {"x-api-key": api_key} if api_key else config.run_service_headers
        self.client = client or httpx.AsyncClient(timeout=httpx.Timeout(config.run_service_timeout, connect=10.0))
        self.client.headers.update(headers)

    async def close(self):
        """Close HTTP client."""
        await self.client.aclose()

    async def create_thread(self, metadata: Optional[Dict[str, Any]] = None) -> str:
        """Create an empty thread and return its id."""
        try:
            resp = await self.client.post(f"{self.base_url}/threads", json={"metadata": metadata or {}})
            resp.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise RunServiceError(f"Failed to create thread: {e.response.text}", e.response.status_code) from e
        except httpx.HTTPError as e:
            raise RunServiceError(f"Failed to create thread: {e}") from e

        thread_id = resp.json()["thread_id"]
        logger.info(f"Created thread {thread_id}")
        return thread_id

    async def get_thread_state(self, thread_id: str) -> Dict[str, Any]:
        """Return the thread's current state (`values`, `next`, `tasks`)."""
        try:
            resp = await self.client.get(f"{self.base_url}/threads/{thread_id}/state")
            resp.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise RunServiceError(f"Failed to read thread state: {e.response.text}", e.response.status_code) from e
        except httpx.HTTPError as e:
            raise RunServiceError(f"Failed to read thread state: {e}") from e
        return resp.json()

    async def stream_run(
        self,
        thread_id: Optional[str],
        assistant_id: str,
        *,
        input: Optional[Dict[str, Any]] = None,
        command: Optional[Dict[str, Any]] = None,
        metadata: Optional[Dict[str, Any]] = None,
        configurable: Optional[Dict[str, Any]] = None,
        interrupt_before: Optional[List[str]] = None,
        stream_mode: Union[str, List[str]] = "values",
    ) -> AsyncIterator[RunEvent]:
        """
        Open a run and yield its events as they arrive.

        A null thread_id runs threadless; the service then reports the
        thread it created in the first `metadata` event.
        """
        payload: Dict[str, Any] = {
            "assistant_id": assistant_id,
            "stream_mode": stream_mode,
            "metadata": metadata or {},
            "config": {"configurable": configurable or {}},
        }
        if input is not None:
            payload["input"] = input
        if command is not None:
            payload["command"] = command
        if interrupt_before:
            payload["interrupt_before"] = interrupt_before

        url = f"{self.base_url}/threads/{thread_id}/runs/stream" if thread_id else f"{self.base_url}/runs/stream"
        logger.info(f"Opening run stream: assistant={assistant_id}, thread={thread_id}, "
                    f"resume={command is not None}, interrupt_before={interrupt_before}")

        try:
            async with self.client.stream("POST", url, json=payload) as response:
                if response.status_code >= 400:
                    body = await response.aread()
                    raise RunServiceError(
                        f"Run stream rejected ({response.status_code}): {body.decode(errors='replace')}",
                        response.status_code,
                    )

                async for event in _parse_sse(response.aiter_lines()):
                    yield event
        except httpx.HTTPError as e:
            logger.error(f"Run stream transport error: {e}")
            raise RunServiceError(f"Run stream failed: {e}") from e

    async def resume_run(
        self,
        thread_id: str,
        assistant_id: str,
        resume: Any,
        *,
        metadata: Optional[Dict[str, Any]] = None,
        configurable: Optional[Dict[str, Any]] = None,
        interrupt_before: Optional[List[str]] = None,
        stream_mode: Union[str, List[str]] = "values",
    ) -> AsyncIterator[RunEvent]:
        """Continue a suspended run on the same thread with `command.resume`."""
        async for event in self.stream_run(
            thread_id,
            assistant_id,
            command={"resume": resume},
            metadata=metadata,
            configurable=configurable,
            interrupt_before=interrupt_before,
            stream_mode=stream_mode,
        ):
            yield event


async def _parse_sse(lines: AsyncIterator[str]) -> AsyncIterator[RunEvent]:
    """Group `event:`/`data:` lines into RunEvents."""
    event_name = ""
    data_lines: List[str] = []

    async for line in lines:
        if not line:
            if data_lines or event_name:
                yield _build_event(event_name, data_lines)
            event_name, data_lines = "", []
            continue
        if line.startswith(":"):
            continue
        field_name, _, value = line.partition(":")
        value = value[1:] if value.startswith(" ") else value
        if field_name == "event":
            event_name = value
        elif field_name == "data":
            data_lines.append(value)

    if data_lines or event_name:
        yield _build_event(event_name, data_lines)


def _build_event(event_name: str, data_lines: List[str]) -> RunEvent:
    raw = "\n".join(data_lines)
    try:
        data = json.loads(raw) if raw else None
    except json.JSONDecodeError:
        logger.warning(f"Non-JSON data for event {event_name!r}: {raw[:100]}")
        data = raw
    return RunEvent(event=event_name or "message", data=data)


# Global instance
run_service = RunServiceClient()
