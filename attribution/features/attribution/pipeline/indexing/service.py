"""
Signal index builder.

Builds one secondary index entry per signal value (IP, session token,
device / screen / WebGL fingerprint, landing page, source, hour bucket)
from the raw visit records in the store. A build spans as many bounded
invocations as it needs:

    scan          page through every visit pattern, group visits by signal
                  and persist each invocation's groups as a staging shard
    verification  re-scan high-risk key ranges with small pages to pick up
                  records the coarse scan may have skipped
    publish       merge the shards and replace every index entry wholesale

Each invocation persists an IndexBuildProgress checkpoint; re-invoking
with it continues exactly where the previous invocation stopped. Saving
the checkpoint also renews the TTL of every staging shard it lists, so a
build spread over many invocations keeps its shards. A completed build is
started over once `rebuild_interval_s` has passed since it finished.
"""

from __future__ import annotations

import asyncio
import copy
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from attribution.infrastructure.observability.logging import get_logger
from attribution.services.record_store import MalformedRecord, get_json
from attribution.utils.batching import chunked, run_in_batches

from ...context import RunContext
from ...domain.keys import (
    DEFAULT_INDEX_PREFIX,
    SIGNAL_DEVICE,
    SIGNAL_HOUR,
    SIGNAL_IP,
    SIGNAL_LANDING,
    SIGNAL_SCREEN,
    SIGNAL_SESSION,
    SIGNAL_SOURCE,
    SIGNAL_WEBGL,
    hour_bucket,
    index_key,
)
from ...domain.models import IndexBuildProgress, IndexEntry, VisitRecord
from ...domain.parsing import (
    format_timestamp,
    parse_timestamp,
    parse_visit,
    parse_visit_container,
    visit_to_dict,
)
from .paged_scan import paged_scan
from .repository import IndexRepository

logger = get_logger(__name__)

PHASE_SCAN = "scan"
PHASE_VERIFICATION = "verification"
PHASE_PUBLISH = "publish"
PHASE_COMPLETE = "complete"


@dataclass(slots=True)
class IndexBuildConfig:
    key_prefix: str = DEFAULT_INDEX_PREFIX
    capacity: int = 50
    time_bucket_capacity: int = 500
    ttl_s: int = 2592000
    visit_patterns: list[str] = field(
        default_factory=lambda: ["pageview:*", "attribution_data_chunk:*"]
    )
    page_size: int = 1000
    verification_patterns: list[str] = field(default_factory=list)
    verification_page_size: int = 25
    verification_max_pages: int = 50
    progress_key: str = "attribution_index_build:progress"
    progress_ttl_s: int = 7200
    rebuild_interval_s: int = 21600

    def capacity_for(self, signal_type: str) -> int:
        return self.time_bucket_capacity if signal_type == SIGNAL_HOUR else self.capacity


@dataclass(slots=True)
class IndexBuildStats:
    """What one invocation did. Counters cover this invocation only."""

    build_id: str
    phase: str
    complete: bool = False
    pages_scanned: int = 0
    keys_processed: int = 0
    visits_processed: int = 0
    malformed_records: int = 0
    shards_written: int = 0
    signals_published: int = 0
    signals_total: int = 0
    budget_exhausted: bool = False
    error: str | None = None

    def as_dict(self) -> dict[str, Any]:
        return {
            "build_id": self.build_id,
            "phase": self.phase,
            "complete": self.complete,
            "pages_scanned": self.pages_scanned,
            "keys_processed": self.keys_processed,
            "visits_processed": self.visits_processed,
            "malformed_records": self.malformed_records,
            "shards_written": self.shards_written,
            "signals_published": self.signals_published,
            "signals_total": self.signals_total,
            "budget_exhausted": self.budget_exhausted,
            "error": self.error,
        }


def visit_signals(visit: VisitRecord) -> list[tuple[str, str]]:
    """Every (signal type, raw value) pair a visit is indexed under."""
    signals: list[tuple[str, str]] = [(SIGNAL_IP, ip) for ip in visit.ip_addresses]
    for signal_type, value in (
        (SIGNAL_SESSION, visit.session_id),
        (SIGNAL_DEVICE, visit.device_signature),
        (SIGNAL_SCREEN, visit.screen_hash),
        (SIGNAL_WEBGL, visit.webgl_hash),
    ):
        if value:
            signals.append((signal_type, value))
    if visit.landing_page and visit.landing_page != "unknown":
        signals.append((SIGNAL_LANDING, visit.landing_page))
    if visit.source and visit.source != "direct":
        signals.append((SIGNAL_SOURCE, visit.source))
    signals.append((SIGNAL_HOUR, hour_bucket(visit.timestamp)))
    return signals


def most_recent(visits: list[VisitRecord], capacity: int) -> list[VisitRecord]:
    """The `capacity` newest visits, newest first, visit_id breaking timestamp ties."""
    ordered = sorted(visits, key=lambda v: v.visit_id)
    ordered.sort(key=lambda v: v.timestamp, reverse=True)
    return ordered[:capacity]


def build_entry(
    key: str,
    signal_type: str,
    signal_value: str,
    visits: list[VisitRecord],
    capacity: int,
    created_at: datetime | None,
    truncated: bool = False,
) -> IndexEntry:
    kept = most_recent(visits, capacity)
    return IndexEntry(
        key=key,
        signal_type=signal_type,
        signal_value=signal_value,
        visits=kept,
        pageview_count=len(kept),
        truncated=truncated or len(visits) > capacity,
        latest_timestamp=kept[0].timestamp if kept else None,
        earliest_timestamp=kept[-1].timestamp if kept else None,
        session_ids=sorted({v.session_id for v in kept if v.session_id}),
        landing_pages=sorted({v.landing_page for v in kept}),
        sources=sorted({v.source for v in kept}),
        created_at=created_at,
    )


class _ShardAccumulator:
    """In-memory signal groups for the key range covered by one invocation."""

    def __init__(self, config: IndexBuildConfig):
        self.config = config
        self.groups: dict[str, dict[str, Any]] = {}
        self.watermark: datetime | None = None

    def add(self, visit: VisitRecord) -> None:
        if self.watermark is None or visit.timestamp > self.watermark:
            self.watermark = visit.timestamp
        for signal_type, value in visit_signals(visit):
            key = index_key(signal_type, value, self.config.key_prefix)
            group = self.groups.get(key)
            if group is None:
                group = {"signal_type": signal_type, "signal_value": value, "visits": {}, "seen": 0}
                self.groups[key] = group
            if visit.visit_id in group["visits"]:
                continue
            group["visits"][visit.visit_id] = visit
            group["seen"] += 1
            capacity = self.config.capacity_for(signal_type)
            if len(group["visits"]) > capacity * 2:
                kept = most_recent(list(group["visits"].values()), capacity)
                group["visits"] = {v.visit_id: v for v in kept}

    def __bool__(self) -> bool:
        return bool(self.groups)

    def to_shard(self) -> dict[str, dict[str, Any]]:
        shard = {}
        for key, group in self.groups.items():
            capacity = self.config.capacity_for(group["signal_type"])
            kept = most_recent(list(group["visits"].values()), capacity)
            shard[key] = {
                "signal_type": group["signal_type"],
                "signal_value": group["signal_value"],
                "seen": group["seen"],
                "visits": [visit_to_dict(v) for v in kept],
            }
        return shard


class IndexBuilderService:
    def __init__(
        self,
        ctx: RunContext,
        config: IndexBuildConfig | None = None,
        repository: IndexRepository | None = None,
    ):
        self.ctx = ctx
        self.config = config or IndexBuildConfig()
        self.repository = repository or IndexRepository(
            ctx.store, self.config.key_prefix, self.config.ttl_s
        )

    async def build(
        self, progress: IndexBuildProgress | None = None, restart: bool = False
    ) -> tuple[IndexBuildProgress, IndexBuildStats]:
        """
        Run one bounded invocation of the build.

        Without an explicit `progress` the persisted checkpoint is loaded. A
        finished build is started over when `restart` is set or the rebuild
        interval has passed; `restart` also abandons an unfinished build.
        """
        if progress is None:
            progress = await self.repository.load_progress(self.config.progress_key)

        if progress is None or restart or self._rebuild_due(progress):
            progress = self._new_progress()
            logger.info("Starting index build", build_id=progress.build_id, run_id=self.ctx.run_id)
        elif progress.is_complete:
            stats = IndexBuildStats(
                build_id=progress.build_id,
                phase=PHASE_COMPLETE,
                complete=True,
                signals_total=progress.signals_total,
                signals_published=0,
            )
            return progress, stats

        working = copy.deepcopy(progress)
        working.invocations += 1
        stats = IndexBuildStats(build_id=working.build_id, phase=working.phase)
        accumulator = _ShardAccumulator(self.config)

        if working.phase == PHASE_SCAN:
            await self._run_scan(working, accumulator, stats)
        if working.phase == PHASE_VERIFICATION and not self._stopped(stats):
            await self._run_verification(working, accumulator, stats)

        if accumulator:
            shard_key = (
                f"{self.config.progress_key}:shard:{working.build_id}:{len(working.shard_keys)}"
            )
            written = await self.repository.write_shard(
                shard_key, accumulator.to_shard(), self.config.progress_ttl_s
            )
            if not written:
                # Keep the old checkpoint so the same key range is scanned again
                stats.error = "staging shard write failed"
                stats.phase = progress.phase
                logger.error("Index build shard write failed", build_id=working.build_id)
                return progress, stats
            working.shard_keys.append(shard_key)
            stats.shards_written += 1
            if accumulator.watermark is not None:
                self._advance_watermark(working, accumulator.watermark)

        await self._save(working)

        if working.phase == PHASE_PUBLISH and not self._stopped(stats):
            restarted = await self._run_publish(working, stats)
            if restarted is not None:
                working = restarted
            await self._save(working)

        stats.phase = working.phase
        stats.complete = working.is_complete
        logger.info(
            "Index build invocation finished",
            run_id=self.ctx.run_id,
            elapsed_s=round(self.ctx.budget.elapsed(), 2),
            **stats.as_dict(),
        )
        return working, stats

    # =================================================================
    # SCAN PHASE
    # =================================================================

    async def _run_scan(
        self, progress: IndexBuildProgress, accumulator: _ShardAccumulator, stats: IndexBuildStats
    ) -> None:
        for pattern in self.config.visit_patterns:
            if pattern in progress.completed_patterns:
                continue

            outcome = await paged_scan(
                self.ctx.store,
                pattern,
                page_size=self.config.page_size,
                on_page=lambda keys: self._ingest_page(keys, progress, accumulator, stats),
                budget=self.ctx.budget,
                start_cursor=progress.cursor,
            )
            stats.pages_scanned += outcome.pages
            progress.cursor = outcome.cursor

            if not outcome.complete:
                stats.budget_exhausted = outcome.budget_exhausted
                stats.error = outcome.error
                return

            progress.completed_patterns.append(pattern)
            progress.cursor = "0"
            logger.info("Visit pattern scanned", pattern=pattern, build_id=progress.build_id)

        progress.phase = (
            PHASE_VERIFICATION if self.config.verification_patterns else PHASE_PUBLISH
        )
        if progress.phase == PHASE_PUBLISH:
            progress.verification_complete = True

    async def _ingest_page(
        self,
        keys: list[str],
        progress: IndexBuildProgress,
        accumulator: _ShardAccumulator,
        stats: IndexBuildStats,
    ) -> None:
        async def _read(key: str) -> tuple[str, list[VisitRecord] | None]:
            try:
                data = await get_json(self.ctx.store, key)
                if data is None:
                    return key, []
                return key, parse_visit_container(data, key)
            except MalformedRecord as e:
                logger.debug("Skipping malformed visit record", key=key, reason=e.reason)
                return key, None

        results = await run_in_batches(keys, _read, self.ctx.concurrency_limit)
        for _key, visits in results:
            if visits is None:
                progress.malformed_records += 1
                stats.malformed_records += 1
                continue
            for visit in visits:
                accumulator.add(visit)
            progress.visits_processed += len(visits)
            stats.visits_processed += len(visits)

        progress.keys_processed += len(keys)
        stats.keys_processed += len(keys)

    # =================================================================
    # VERIFICATION PHASE
    # =================================================================

    async def _run_verification(
        self, progress: IndexBuildProgress, accumulator: _ShardAccumulator, stats: IndexBuildStats
    ) -> None:
        for pattern in self.config.verification_patterns:
            if pattern in progress.verification_completed_patterns:
                continue

            remaining_pages = max(0, self.config.verification_max_pages - progress.verification_pages)
            outcome = await paged_scan(
                self.ctx.store,
                pattern,
                page_size=self.config.verification_page_size,
                on_page=lambda keys: self._ingest_page(keys, progress, accumulator, stats),
                budget=self.ctx.budget,
                start_cursor=progress.verification_cursor,
                max_pages=remaining_pages,
            )
            stats.pages_scanned += outcome.pages
            progress.verification_pages += outcome.pages
            progress.verification_cursor = outcome.cursor

            if not (outcome.complete or outcome.page_cap_reached):
                stats.budget_exhausted = outcome.budget_exhausted
                stats.error = outcome.error
                return

            if outcome.page_cap_reached:
                logger.info(
                    "Verification page cap reached", pattern=pattern, pages=progress.verification_pages
                )
            progress.verification_completed_patterns.append(pattern)
            progress.verification_cursor = "0"
            progress.verification_pages = 0

        progress.verification_complete = True
        progress.phase = PHASE_PUBLISH

    # =================================================================
    # PUBLISH PHASE
    # =================================================================

    async def _merge_shards(self, shard_keys: list[str]) -> dict[str, dict[str, Any]]:
        merged: dict[str, dict[str, Any]] = {}
        for shard_key in shard_keys:
            groups = await self.repository.load_shard(shard_key)
            for key, group in groups.items():
                target = merged.setdefault(
                    key,
                    {
                        "signal_type": group["signal_type"],
                        "signal_value": group["signal_value"],
                        "visits": {},
                        "truncated": False,
                    },
                )
                visits = group.get("visits") or []
                if int(group.get("seen", len(visits))) > len(visits):
                    target["truncated"] = True
                for i, item in enumerate(visits):
                    visit = parse_visit(item, f"{shard_key}:{key}[{i}]")
                    target["visits"].setdefault(visit.visit_id, visit)
        return merged

    async def _run_publish(
        self, progress: IndexBuildProgress, stats: IndexBuildStats
    ) -> IndexBuildProgress | None:
        try:
            merged = await self._merge_shards(progress.shard_keys)
        except MalformedRecord as e:
            # Staging shards outlived by the build (expired or corrupt): start over
            logger.warning(
                "Staging shard unreadable, restarting index build",
                build_id=progress.build_id,
                reason=e.reason,
            )
            stats.error = f"staging shard unreadable: {e.reason}"
            return self._new_progress()

        keys = sorted(merged)
        progress.signals_total = len(keys)
        stats.signals_total = len(keys)
        created_at = (
            parse_timestamp(progress.data_watermark) if progress.data_watermark else None
        )

        offset = progress.publish_offset
        for batch in chunked(keys[offset:], self.ctx.concurrency_limit):
            if self.ctx.budget.expired():
                stats.budget_exhausted = True
                break

            entries = []
            for key in batch:
                group = merged[key]
                entries.append(
                    build_entry(
                        key,
                        group["signal_type"],
                        group["signal_value"],
                        list(group["visits"].values()),
                        self.config.capacity_for(group["signal_type"]),
                        created_at,
                        truncated=group["truncated"],
                    )
                )

            results = await asyncio.gather(*(self.repository.write_entry(e) for e in entries))
            if not all(results):
                stats.error = "index entry write failed"
                break

            offset += len(batch)
            stats.signals_published += len(batch)

        progress.publish_offset = offset
        progress.signals_published = offset

        if offset >= len(keys) and stats.error is None:
            progress.phase = PHASE_COMPLETE
            progress.is_complete = True
            await run_in_batches(
                progress.shard_keys, self.ctx.store.delete, self.ctx.concurrency_limit
            )
            logger.info(
                "Index build published",
                build_id=progress.build_id,
                signals=len(keys),
                invocations=progress.invocations,
            )
        return None

    # =================================================================
    # HELPERS
    # =================================================================

    def _new_progress(self) -> IndexBuildProgress:
        now = self.ctx.now()
        return IndexBuildProgress(
            build_id=f"{now.strftime('%Y%m%d%H%M%S')}-{uuid.uuid4().hex[:8]}",
            started_at=format_timestamp(now),
        )

    @staticmethod
    def _advance_watermark(progress: IndexBuildProgress, watermark: datetime) -> None:
        if progress.data_watermark is None or watermark > parse_timestamp(progress.data_watermark):
            progress.data_watermark = format_timestamp(watermark)

    def _rebuild_due(self, progress: IndexBuildProgress) -> bool:
        if not progress.is_complete or not progress.updated_at:
            return False
        finished_at = parse_timestamp(progress.updated_at)
        return (self.ctx.now() - finished_at).total_seconds() >= self.config.rebuild_interval_s

    @staticmethod
    def _stopped(stats: IndexBuildStats) -> bool:
        return stats.budget_exhausted or stats.error is not None

    async def _save(self, progress: IndexBuildProgress) -> None:
        progress.updated_at = format_timestamp(self.ctx.now())
        ttl_s = self.config.progress_ttl_s
        if progress.is_complete:
            # A finished checkpoint has to outlive the rebuild interval
            ttl_s += self.config.rebuild_interval_s
        saved = await self.repository.save_progress(self.config.progress_key, progress, ttl_s)
        if not saved:
            logger.error("Index build progress save failed", build_id=progress.build_id)

        if progress.is_complete:
            return
        # Shards must live as long as the checkpoint that lists them
        renewed = await run_in_batches(
            progress.shard_keys,
            lambda key: self.ctx.store.expire(key, self.config.progress_ttl_s),
            self.ctx.concurrency_limit,
        )
        if not all(renewed):
            logger.warning(
                "Staging shard TTL renewal failed",
                build_id=progress.build_id,
                missing=renewed.count(False),
            )
