import asyncio
from datetime import timedelta

import pytest

from attribution.features.attribution.context import RunContext
from attribution.features.attribution.domain.models import IndexBuildProgress
from attribution.features.attribution.domain.parsing import parse_visit
from attribution.features.attribution.pipeline.indexing.repository import IndexRepository
from attribution.features.attribution.pipeline.indexing.service import (
    PHASE_COMPLETE,
    PHASE_PUBLISH,
    PHASE_SCAN,
    IndexBuildConfig,
    IndexBuilderService,
    most_recent,
    visit_signals,
)

INDEX_PREFIX = "attribution_index:"
SHARD_PREFIX = "attribution_index_build:progress:shard:"


def _config(**overrides):
    values = {"capacity": 3, "page_size": 2, "visit_patterns": ["pageview:*"]}
    values.update(overrides)
    return IndexBuildConfig(**values)


def _tick_on_scan(store, clock, seconds):
    original = store.scan

    async def scan(cursor, match, count):
        clock.advance(seconds)
        return await original(cursor, match, count)

    store.scan = scan


def _index_snapshot(store):
    return {key: store.data[key] for key in store.keys_with_prefix(INDEX_PREFIX)}


@pytest.mark.asyncio
async def test_entry_keeps_capacity_most_recent_visits(store, ctx, visit_data):
    for i in range(5):
        store.put_json(f"pageview:v{i}", visit_data(10 * (i + 1), session_id=f"s{i}"))

    progress, stats = await IndexBuilderService(ctx, _config()).build()

    assert stats.complete is True
    assert progress.phase == PHASE_COMPLETE
    entry = await IndexRepository(store).load_entry("ip", "203.0.113.5")
    assert [v.visit_id for v in entry.visits] == ["pageview:v0", "pageview:v1", "pageview:v2"]
    assert entry.pageview_count == 3
    assert entry.truncated is True
    assert entry.latest_timestamp > entry.earliest_timestamp
    assert entry.session_ids == ["s0", "s1", "s2"]
    assert store.ttls[entry.key] == 2592000


@pytest.mark.asyncio
async def test_completed_build_persists_progress_and_drops_shards(store, ctx, visit_data):
    store.put_json("pageview:a", visit_data(5))

    await IndexBuilderService(ctx, _config()).build()

    saved = store.load_json("attribution_index_build:progress")
    assert saved["is_complete"] is True
    assert saved["keys_processed"] == 1
    assert store.ttls["attribution_index_build:progress"] == 7200 + 21600
    assert store.keys_with_prefix(SHARD_PREFIX) == []


@pytest.mark.asyncio
async def test_rebuild_over_unchanged_data_is_byte_identical(store, make_ctx, visit_data):
    for i in range(4):
        store.put_json(f"pageview:v{i}", visit_data(30 * i + 1, source="newsletter"))

    await IndexBuilderService(make_ctx(), _config()).build()
    first = _index_snapshot(store)

    _, stats = await IndexBuilderService(make_ctx(), _config()).build(restart=True)

    assert stats.complete is True
    assert _index_snapshot(store) == first


@pytest.mark.asyncio
async def test_finished_build_is_not_repeated_before_rebuild_interval(store, make_ctx, visit_data):
    store.put_json("pageview:a", visit_data(5))
    await IndexBuilderService(make_ctx(), _config()).build()
    writes = len(store.set_calls)

    progress, stats = await IndexBuilderService(make_ctx(), _config()).build()

    assert stats.complete is True
    assert progress.is_complete is True
    assert len(store.set_calls) == writes


@pytest.mark.asyncio
async def test_finished_build_starts_over_after_rebuild_interval(store, make_ctx, visit_data):
    store.put_json("pageview:a", visit_data(5))
    first, _ = await IndexBuilderService(make_ctx(), _config(rebuild_interval_s=3600)).build()
    later = make_ctx().now() + timedelta(hours=2)

    second, stats = await IndexBuilderService(
        make_ctx(now=later), _config(rebuild_interval_s=3600)
    ).build()

    assert stats.complete is True
    assert stats.keys_processed == 1
    assert second.build_id != first.build_id
    assert second.invocations == 1


@pytest.mark.asyncio
async def test_interrupted_build_resumes_without_reprocessing(store, clock, make_ctx, visit_data):
    for i in range(10):
        store.put_json(f"pageview:v{i}", visit_data(5 * i + 1, session_id=f"s{i % 3}"))

    reference = type(store)()
    reference.data = dict(store.data)
    await IndexBuilderService(
        RunContext.create(reference, 25, concurrency_limit=5, now=make_ctx().now), _config()
    ).build()

    _tick_on_scan(store, clock, 10)
    progress, stats = await IndexBuilderService(make_ctx(), _config()).build()

    assert stats.complete is False
    assert stats.budget_exhausted is True
    assert progress.phase == PHASE_SCAN
    assert progress.keys_processed == 6
    assert progress.cursor == "6"
    assert _index_snapshot(store) == {}

    progress, stats = await IndexBuilderService(make_ctx(), _config()).build()

    assert stats.complete is True
    assert stats.keys_processed == 4
    assert progress.keys_processed == 10
    assert progress.visits_processed == 10
    assert progress.invocations == 2
    assert _index_snapshot(store) == _index_snapshot(reference)


@pytest.mark.asyncio
async def test_malformed_visits_are_counted_and_skipped(store, ctx, visit_data):
    store.put_json("pageview:good", visit_data(5))
    store.data["pageview:broken-json"] = "{not json"
    store.put_json("pageview:no-timestamp", {"ip_address": "198.51.100.1"})

    progress, stats = await IndexBuilderService(ctx, _config()).build()

    assert stats.complete is True
    assert stats.malformed_records == 2
    assert progress.visits_processed == 1
    assert await IndexRepository(store).load_entry("ip", "198.51.100.1") is None
    assert await IndexRepository(store).load_entry("ip", "203.0.113.5") is not None


@pytest.mark.asyncio
async def test_verification_pass_indexes_chunked_visits(store, ctx, visit_data):
    store.put_json("pageview:a", visit_data(5))
    chunk = [visit_data(20, ip_address="198.51.100.9"), visit_data(25, ip_address="198.51.100.9")]
    store.put_json("attribution_data_chunk:0001", {"pageviews": chunk})
    config = _config(verification_patterns=["attribution_data_chunk:*"], verification_max_pages=5)

    progress, stats = await IndexBuilderService(ctx, config).build()

    assert stats.complete is True
    assert progress.verification_complete is True
    visits = await IndexRepository(store).query_index("ip", "198.51.100.9")
    assert [v.visit_id for v in visits] == [
        "attribution_data_chunk:0001#0",
        "attribution_data_chunk:0001#1",
    ]


@pytest.mark.asyncio
async def test_expired_shard_restarts_build(ctx):
    progress = IndexBuildProgress(
        build_id="stale",
        phase=PHASE_PUBLISH,
        verification_complete=True,
        shard_keys=[f"{SHARD_PREFIX}stale:0"],
    )

    restarted, stats = await IndexBuilderService(ctx, _config()).build(progress)

    assert stats.error.startswith("staging shard unreadable")
    assert restarted.build_id != "stale"
    assert restarted.phase == PHASE_SCAN
    assert restarted.shard_keys == []


def test_visit_signals_skip_placeholder_landing_and_source(visit_data):
    visit = parse_visit(visit_data(5, landing_page=None, source=None, session_id="s1"), "pageview:x")
    kinds = [signal for signal, _ in visit_signals(visit)]

    assert kinds == ["ip", "session", "hour"]


def test_most_recent_breaks_timestamp_ties_by_visit_id(visit_data):
    same = visit_data(5)
    visits = [parse_visit(same, "pageview:b"), parse_visit(same, "pageview:a")]

    assert [v.visit_id for v in most_recent(visits, 1)] == ["pageview:a"]


@pytest.mark.asyncio
async def test_saving_progress_renews_staging_shard_ttl(store, clock, make_ctx, visit_data):
    for i in range(20):
        store.put_json(f"pageview:v{i:02d}", visit_data(i + 1))
    _tick_on_scan(store, clock, 10)

    first, _ = await IndexBuilderService(make_ctx(), _config()).build()
    first_shard = first.shard_keys[0]
    store.ttls[first_shard] = 1

    second, stats = await IndexBuilderService(make_ctx(), _config()).build()

    assert stats.complete is False
    assert second.build_id == first.build_id
    assert len(second.shard_keys) == 2
    assert store.ttls[first_shard] == 7200
    assert store.ttls["attribution_index_build:progress"] == 7200


@pytest.mark.asyncio
async def test_publish_deletes_shards_in_bounded_batches(store, clock, make_ctx, visit_data):
    for i in range(60):
        store.put_json(f"pageview:v{i:02d}", visit_data(i + 1))
    _tick_on_scan(store, clock, 10)

    original_delete = store.delete
    in_flight = peak = 0

    async def delete(key):
        nonlocal in_flight, peak
        in_flight += 1
        peak = max(peak, in_flight)
        await asyncio.sleep(0)
        in_flight -= 1
        return await original_delete(key)

    store.delete = delete

    shard_count = 0
    for _ in range(30):
        progress, stats = await IndexBuilderService(make_ctx(), _config()).build()
        shard_count = max(shard_count, len(progress.shard_keys))
        if stats.complete:
            break

    assert stats.complete is True
    assert shard_count > 5
    assert 0 < peak <= 5
    assert store.keys_with_prefix(SHARD_PREFIX) == []
