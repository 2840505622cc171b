"""
Caller-facing framings of the gateway event stream.

Both carry the same `{event, data}` taxonomy:
- NDJSON: one JSON object per line (simplified chat endpoint)
- SSE: `event:`/`data:` frames (task execution and resume endpoints)
"""

import json
from typing import AsyncIterator

from .gateway import GatewayEvent

NDJSON_MEDIA_TYPE = "application/x-ndjson"
SSE_MEDIA_TYPE = "text/event-stream"

STREAM_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


def format_ndjson(event: GatewayEvent) -> str:
    """Format event as one NDJSON line."""
    return json.dumps(event.to_dict(), default=str) + "\n"


def format_sse(event: GatewayEvent) -> str:
    """Format event as an SSE frame."""
    return f"event: {event.event}\ndata: {json.dumps(event.data, default=str)}\n\n"


async def ndjson_stream(events: AsyncIterator[GatewayEvent]) -> AsyncIterator[str]:
    async for event in events:
        yield format_ndjson(event)


async def sse_stream(events: AsyncIterator[GatewayEvent]) -> AsyncIterator[str]:
    async for event in events:
        yield format_sse(event)
