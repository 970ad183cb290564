"""
Per-invocation run context.

A batch job creates one RunContext, threads it through the builder,
resolver and correlator, and drops it when the job returns. The geo cache,
call counters and wall-clock budget all live here instead of module globals.
"""

from __future__ import annotations

import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime

from attribution.infrastructure.observability.logging import get_logger
from attribution.services.record_store import RecordStore

from .domain.models import GeoInfo


class BudgetExhausted(Exception):
    """The run budget ran out before a unit of work finished; retry it next run."""


@dataclass
class RunBudget:
    """Monotonic wall-clock deadline. Exhaustion is a normal stop signal, not an error."""

    seconds: float
    clock: Callable[[], float] = time.monotonic
    started_at: float = field(init=False)

    def __post_init__(self) -> None:
        self.started_at = self.clock()

    def elapsed(self) -> float:
        return self.clock() - self.started_at

    def remaining(self) -> float:
        return max(0.0, self.seconds - self.elapsed())

    def expired(self) -> bool:
        return self.elapsed() >= self.seconds


@dataclass
class GeoCacheStats:
    memory_hits: int = 0
    store_hits: int = 0
    misses: int = 0
    api_calls: int = 0
    api_failures: int = 0
    budget_denied: int = 0

    def as_dict(self) -> dict[str, int]:
        return {
            "memory_hits": self.memory_hits,
            "store_hits": self.store_hits,
            "misses": self.misses,
            "api_calls": self.api_calls,
            "api_failures": self.api_failures,
            "budget_denied": self.budget_denied,
        }


def _utcnow() -> datetime:
    return datetime.now(UTC)


@dataclass
class RunContext:
    store: RecordStore
    budget: RunBudget
    concurrency_limit: int = 25
    geo_call_budget: int = 10
    run_id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    now: Callable[[], datetime] = _utcnow
    geo_memory: dict[str, GeoInfo] = field(default_factory=dict)
    geo_stats: GeoCacheStats = field(default_factory=GeoCacheStats)

    def __post_init__(self) -> None:
        self.logger = get_logger("attribution.run").bind(run_id=self.run_id)

    @property
    def geo_calls_remaining(self) -> int:
        return max(0, self.geo_call_budget - self.geo_stats.api_calls)

    @classmethod
    def create(
        cls,
        store: RecordStore,
        budget_seconds: float,
        *,
        concurrency_limit: int = 25,
        geo_call_budget: int = 10,
        clock: Callable[[], float] = time.monotonic,
        now: Callable[[], datetime] = _utcnow,
    ) -> "RunContext":
        return cls(
            store=store,
            budget=RunBudget(budget_seconds, clock=clock),
            concurrency_limit=concurrency_limit,
            geo_call_budget=geo_call_budget,
            now=now,
        )
