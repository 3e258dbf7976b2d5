"""In-memory usage accounting with a best-effort persistence hook."""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from datetime import datetime

from pydantic import BaseModel, Field

from ai_gateway.types import UsageRecord

UsageSink = Callable[[UsageRecord], Awaitable[None]]

logger = logging.getLogger(__name__)


class UsageBucket(BaseModel):
    cost: float = 0.0
    tokens: int = 0
    requests: int = 0


class UsageStats(BaseModel):
    """Aggregate over a filtered set of usage records."""

    total_cost: float = 0.0
    total_tokens: int = 0
    total_prompt_tokens: int = 0
    total_completion_tokens: int = 0
    request_count: int = 0
    by_provider: dict[str, UsageBucket] = Field(default_factory=dict)
    by_model: dict[str, UsageBucket] = Field(default_factory=dict)


class UsageLedger:
    """Append-only list of usage records.

    Each record is also handed to ``sink`` (e.g. a database writer). Sink
    failures are logged and never reach the caller; durability is the sink's
    responsibility.
    """

    def __init__(self, sink: UsageSink | None = None) -> None:
        self._records: list[UsageRecord] = []
        self._sink = sink

    def __len__(self) -> int:
        return len(self._records)

    async def record(self, record: UsageRecord) -> None:
        self._records.append(record)
        if self._sink is None:
            return
        try:
            await self._sink(record)
        except Exception:
            logger.exception("Failed to record usage %s", record.id)

    def records(
        self,
        *,
        user_id: str | None = None,
        provider: str | None = None,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> list[UsageRecord]:
        """Return records matching every given filter; date bounds are inclusive."""
        out = list(self._records)
        if user_id is not None:
            out = [r for r in out if r.user_id == user_id]
        if provider is not None:
            out = [r for r in out if r.provider == provider]
        if start is not None:
            out = [r for r in out if r.created_at >= start]
        if end is not None:
            out = [r for r in out if r.created_at <= end]
        return out

    def stats(
        self,
        *,
        user_id: str | None = None,
        provider: str | None = None,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> UsageStats:
        records = self.records(user_id=user_id, provider=provider, start=start, end=end)
        stats = UsageStats(request_count=len(records))
        for r in records:
            stats.total_cost += r.cost
            stats.total_tokens += r.total_tokens
            stats.total_prompt_tokens += r.prompt_tokens
            stats.total_completion_tokens += r.completion_tokens
            for bucket in (
                stats.by_provider.setdefault(r.provider, UsageBucket()),
                stats.by_model.setdefault(r.model, UsageBucket()),
            ):
                bucket.cost += r.cost
                bucket.tokens += r.total_tokens
                bucket.requests += 1
        return stats
