"""Routing events and their sinks.

Every request that hits a managed domain produces one HitEvent. Events are
handed to the sinks as background tasks: the response never waits for them
and a failing sink is logged and counted, nothing more.
"""

from __future__ import annotations

import asyncio
import json
from abc import ABC, abstractmethod
from collections import defaultdict
from dataclasses import asdict, dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import structlog

from cloakroute.observability.metrics import EVENT_SINK_FAILURES, PENDING_EVENTS

logger = structlog.get_logger()


@dataclass(frozen=True)
class HitEvent:
    timestamp: datetime
    hostname: str
    classification: str
    reason: str
    outcome: str
    destination: str | None
    client_ip: str | None
    user_agent: str | None
    referer: str | None
    owner_id: str
    domain_id: str

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["timestamp"] = self.timestamp.isoformat()
        return data


class EventSink(ABC):
    """Destination for routing events."""

    name: str = "sink"

    @abstractmethod
    async def record(self, event: HitEvent) -> None: ...

    async def close(self) -> None:
        return None


class JsonLinesSink(EventSink):
    """Raw access log: one JSON object per line, appended to a file."""

    name = "access_log"

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)
        self._lock = asyncio.Lock()

    def _append(self, line: str) -> None:
        with self.path.open("a", encoding="utf-8") as f:
            f.write(line + "\n")

    async def record(self, event: HitEvent) -> None:
        line = json.dumps(event.to_dict(), separators=(",", ":"))
        async with self._lock:
            await asyncio.to_thread(self._append, line)


@dataclass(frozen=True)
class PlanUsage:
    monthly_clicks_used: int
    monthly_clicks_limit: int
    active_domains_used: int
    active_domains_limit: int

    def to_dict(self) -> dict[str, int]:
        return asdict(self)


def _month(ts: datetime) -> str:
    return ts.astimezone(UTC).strftime("%Y-%m")


class AnalyticsRecorder(EventSink):
    """In-memory monthly hit counters per tenant and per domain.

    Also answers plan usage queries for the resolve endpoint.
    """

    name = "analytics"

    def __init__(self, monthly_clicks_limit: int = 10000, active_domains_limit: int = 5) -> None:
        self.monthly_clicks_limit = monthly_clicks_limit
        self.active_domains_limit = active_domains_limit
        self._owner_hits: dict[tuple[str, str], int] = defaultdict(int)
        self._domain_hits: dict[tuple[str, str], dict[str, int]] = defaultdict(
            lambda: defaultdict(int)
        )

    async def record(self, event: HitEvent) -> None:
        month = _month(event.timestamp)
        self._owner_hits[(event.owner_id, month)] += 1
        self._domain_hits[(event.domain_id, month)][event.classification] += 1

    def monthly_clicks(self, owner_id: str, now: datetime | None = None) -> int:
        return self._owner_hits.get((owner_id, _month(now or datetime.now(UTC))), 0)

    def domain_hits(self, domain_id: str, now: datetime | None = None) -> dict[str, int]:
        """Hits of the current month for a domain, by classification."""
        return dict(self._domain_hits.get((domain_id, _month(now or datetime.now(UTC))), {}))

    def plan_usage(self, owner_id: str, active_domains: int) -> PlanUsage:
        return PlanUsage(
            monthly_clicks_used=self.monthly_clicks(owner_id),
            monthly_clicks_limit=self.monthly_clicks_limit,
            active_domains_used=active_domains,
            active_domains_limit=self.active_domains_limit,
        )


class EventDispatcher:
    """Fans events out to sinks without blocking the caller."""

    def __init__(self, sinks: list[EventSink] | None = None) -> None:
        self.sinks = list(sinks or [])
        self._tasks: set[asyncio.Task[None]] = set()

    def emit(self, event: HitEvent) -> None:
        """Schedule delivery of an event to every sink.

        Must be called from a running event loop.
        """
        for sink in self.sinks:
            task = asyncio.create_task(self._deliver(sink, event))
            self._tasks.add(task)
            PENDING_EVENTS.inc()
            task.add_done_callback(self._finished)

    def _finished(self, task: asyncio.Task[None]) -> None:
        self._tasks.discard(task)
        PENDING_EVENTS.dec()

    async def _deliver(self, sink: EventSink, event: HitEvent) -> None:
        try:
            await sink.record(event)
        except Exception as e:
            EVENT_SINK_FAILURES.labels(sink=sink.name).inc()
            logger.warning(
                "Event sink failed",
                sink=sink.name,
                hostname=event.hostname,
                domain_id=event.domain_id,
                error=str(e),
            )

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def drain(self) -> None:
        """Wait for every scheduled delivery to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def close(self) -> None:
        await self.drain()
        for sink in self.sinks:
            await sink.close()
