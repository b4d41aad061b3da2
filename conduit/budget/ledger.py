"""
UsageLedger: append-only log of completed request outcomes.

Appends land in memory immediately; persistence to the database runs as a
fire-and-forget task per event, so a crash between append and write loses at
most the events still in flight. Reads work on a snapshot of the list and
never wait on a pending write.
"""

import asyncio
import csv
import io
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import select

from conduit.budget.models import UsageEvent, UsageTotals
from conduit.models import UsageEventRecord
from conduit.observability.logger import get_logger

log = get_logger("budget.ledger")

CSV_HEADER = [
    "timestamp", "provider", "model", "promptTokens", "completionTokens",
    "totalTokens", "estimatedCostUSD", "success", "latencyMs", "contextIncluded",
]

TimeRange = tuple[datetime, datetime]


def _as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _in_range(event: UsageEvent, time_range: Optional[TimeRange]) -> bool:
    if time_range is None:
        return True
    start, end = time_range
    return start <= event.timestamp <= end


class UsageLedger:
    def __init__(self, session_factory=None):
        self.session_factory = session_factory
        self._events: list[UsageEvent] = []
        self._write_lock = asyncio.Lock()
        self._pending: set[asyncio.Task] = set()

    def append(self, event: UsageEvent):
        self._events.append(event)
        if self.session_factory is None:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            log.warning("usage_persist_skipped", reason="no_event_loop", event_id=event.id)
            return
        task = loop.create_task(self._persist(event))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    def events(self, time_range: Optional[TimeRange] = None) -> list[UsageEvent]:
        return [e for e in list(self._events) if _in_range(e, time_range)]

    def __len__(self) -> int:
        return len(self._events)

    def aggregate(self, by_provider_only: bool = False, time_range: Optional[TimeRange] = None) -> list[UsageTotals]:
        totals: dict[str, UsageTotals] = {}
        for e in self.events(time_range):
            key = e.provider_id if by_provider_only else f"{e.provider_id}::{e.model_id}"
            current = totals.get(key)
            if current is None:
                current = totals[key] = UsageTotals(
                    provider_id=e.provider_id,
                    model_id="*" if by_provider_only else e.model_id,
                )
            current.request_count += 1
            current.prompt_tokens += e.prompt_tokens
            current.completion_tokens += e.completion_tokens
            current.total_tokens += e.total_tokens
            current.estimated_cost_usd += e.estimated_cost_usd or 0.0
        return [totals[k] for k in sorted(totals)]

    def provider_cost(self, provider_id: str, time_range: Optional[TimeRange] = None) -> float:
        for t in self.aggregate(by_provider_only=True, time_range=time_range):
            if t.provider_id == provider_id:
                return t.estimated_cost_usd
        return 0.0

    def export_csv(self, time_range: Optional[TimeRange] = None) -> str:
        buf = io.StringIO()
        writer = csv.writer(buf, lineterminator="\n")
        writer.writerow(CSV_HEADER)
        for e in self.events(time_range):
            writer.writerow([
                e.timestamp.isoformat(),
                e.provider_id,
                e.model_id,
                e.prompt_tokens,
                e.completion_tokens,
                e.total_tokens,
                f"{e.estimated_cost_usd:.6f}" if e.estimated_cost_usd is not None else "",
                "true" if e.success else "false",
                e.latency_ms,
                "true" if e.context_included else "false",
            ])
        return buf.getvalue()

    async def load(self):
        """Replace the in-memory log with what is stored, oldest first."""
        if self.session_factory is None:
            return
        async with self.session_factory() as session:
            result = await session.execute(select(UsageEventRecord).order_by(UsageEventRecord.timestamp))
            records = result.scalars().all()
        self._events = [
            UsageEvent(
                id=r.id,
                timestamp=_as_utc(r.timestamp),
                provider_id=r.provider_id,
                model_id=r.model_id,
                prompt_tokens=r.prompt_tokens or 0,
                completion_tokens=r.completion_tokens or 0,
                total_tokens=r.total_tokens or 0,
                estimated_cost_usd=r.estimated_cost_usd,
                success=bool(r.success),
                latency_ms=r.latency_ms or 0,
                context_included=bool(r.context_included),
            )
            for r in records
        ]
        log.info("usage_events_loaded", count=len(self._events))

    async def flush(self):
        """Wait for in-flight writes; used on shutdown and in tests."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    async def _persist(self, event: UsageEvent):
        try:
            async with self._write_lock:
                async with self.session_factory() as session:
                    session.add(UsageEventRecord(**event.model_dump()))
                    await session.commit()
        except Exception as e:
            log.warning("usage_persist_failed", event_id=event.id, error=str(e))
