"""Token usage reporting to the usage/billing collaborator."""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, List, Optional, Protocol

from .cache import KeyedLRUCache
from .config import config

logger = logging.getLogger(__name__)


@dataclass
class UsageRecord:
    user_id: str
    input_tokens: int
    output_tokens: int
    model_id: str
    session_id: Optional[str] = None
    recorded_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass
class DailyUsage:
    user_id: str
    date: str
    total_input_tokens: int = 0
    total_output_tokens: int = 0
    total_cost: float = 0.0
    request_count: int = 0


class UsageSink(Protocol):
    async def record_usage(
        self,
        user_id: str,
        input_tokens: int,
        output_tokens: int,
        model_id: str,
        session_id: Optional[str] = None,
    ) -> None: ...


def token_cost(input_tokens: int, output_tokens: int) -> float:
    """Dollar cost at the configured per-million prices."""
    return (
        input_tokens / 1_000_000 * config.input_token_cost_per_million
        + output_tokens / 1_000_000 * config.output_token_cost_per_million
    )


class UsageRecorder:
    """
    In-process usage sink.

    Keeps per-user daily totals and a bounded history of recent records.
    Budget enforcement happens before a request reaches this service; the
    totals here are for reporting only.
    """

    def __init__(self, max_users: Optional[int] = None, max_entries_per_user: Optional[int] = None):
        self._recent: KeyedLRUCache[UsageRecord] = KeyedLRUCache(
            max_keys=max_users or config.usage_cache_max_users,
            max_entries_per_key=max_entries_per_user or config.usage_cache_max_entries,
        )
        self._daily: Dict[str, DailyUsage] = {}
        self._lock = asyncio.Lock()

    async def record_usage(
        self,
        user_id: str,
        input_tokens: int,
        output_tokens: int,
        model_id: str,
        session_id: Optional[str] = None,
    ) -> None:
        if input_tokens < 0 or output_tokens < 0:
            raise ValueError("token counts must be non-negative")

        record = UsageRecord(user_id, input_tokens, output_tokens, model_id, session_id)
        date = record.recorded_at.strftime("%Y-%m-%d")

        async with self._lock:
            self._recent.add(user_id, record)
            key = f"{user_id}:{date}"
            daily = self._daily.get(key) or DailyUsage(user_id=user_id, date=date)
            daily.total_input_tokens += input_tokens
            daily.total_output_tokens += output_tokens
            daily.total_cost = token_cost(daily.total_input_tokens, daily.total_output_tokens)
            daily.request_count += 1
            self._daily[key] = daily

        logger.info(f"Usage recorded for {user_id}: input={input_tokens}, output={output_tokens}, "
                    f"cost={token_cost(input_tokens, output_tokens):.6f}, daily_total={daily.total_cost:.6f}")

    def daily_usage(self, user_id: str, date: Optional[str] = None) -> DailyUsage:
        date = date or datetime.now(timezone.utc).strftime("%Y-%m-%d")
        return self._daily.get(f"{user_id}:{date}") or DailyUsage(user_id=user_id, date=date)

    def recent(self, user_id: str) -> List[UsageRecord]:
        return self._recent.get(user_id)


# Global instance
usage = UsageRecorder()
