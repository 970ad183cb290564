import pytest

from attribution.features.attribution.context import BudgetExhausted
from attribution.features.attribution.domain.models import TierMatch
from attribution.features.attribution.domain.parsing import parse_conversion, parse_visit
from attribution.features.attribution.pipeline.indexing.repository import IndexRepository
from attribution.features.attribution.pipeline.indexing.service import (
    IndexBuildConfig,
    IndexBuilderService,
)
from attribution.features.attribution.pipeline.matching.service import (
    IdentityResolver,
    select_visit,
)


async def _indexed(store, ctx, visits):
    for key, data in visits.items():
        store.put_json(key, data)
    await IndexBuilderService(ctx, IndexBuildConfig(visit_patterns=["pageview:*"])).build()
    return IndexRepository(store)


class _RecordingGeoTier:
    name = "geographic_match"
    priority = 8
    points = 100

    def __init__(self):
        self.calls = 0

    def signal_values(self, conversion):
        return conversion.all_ips

    async def evaluate(self, conversion, repository, window):
        self.calls += 1
        visit = parse_visit({"timestamp": "2025-03-10T11:30:00Z"}, "pageview:geo")
        return TierMatch(self.name, self.priority, self.points, ["x"], [visit], 85, "high")


@pytest.mark.asyncio
async def test_session_tier_beats_ip_tier(store, ctx, visit_data, conversion_data):
    repository = await _indexed(
        store,
        ctx,
        {
            "pageview:a": visit_data(30, session_id="sess-1", ip_address="198.51.100.4"),
            "pageview:b": visit_data(10),
        },
    )
    conversion = parse_conversion(
        conversion_data(session_id="sess-1", ip_address="203.0.113.5"), "conversions:1"
    )

    resolution = await IdentityResolver(repository).resolve(conversion)

    assert resolution.winner.tier == "session_id_match"
    assert resolution.winner.points == 300
    assert resolution.selected_visit.visit_id == "pageview:a"
    assert [m.tier for m in resolution.matches] == ["session_id_match", "pageview_ip_match"]


@pytest.mark.asyncio
async def test_ipv4_found_after_splitting_joined_conversion_ip(
    store, ctx, visit_data, conversion_data
):
    repository = await _indexed(store, ctx, {"pageview:a": visit_data(15)})
    conversion = parse_conversion(
        conversion_data(ip_address="2001:db8::1, 203.0.113.5"), "conversions:1"
    )

    resolution = await IdentityResolver(repository).resolve(conversion)

    assert resolution.matched
    assert resolution.winner.tier == "pageview_ip_match"
    assert resolution.winner.signal_values == ["203.0.113.5"]


@pytest.mark.asyncio
async def test_second_pageview_ip_field_still_matches(store, ctx, visit_data, conversion_data):
    repository = await _indexed(store, ctx, {"pageview:a": visit_data(15)})
    conversion = parse_conversion(
        conversion_data(ip_address="2001:db8::1", pageview_ip="203.0.113.5"), "conversions:1"
    )

    resolution = await IdentityResolver(repository).resolve(conversion)

    assert resolution.winner.tier == "pageview_ip_match"
    assert resolution.winner.signal_values == ["203.0.113.5"]


@pytest.mark.asyncio
async def test_first_and_last_touch_pick_opposite_ends(store, ctx, visit_data, conversion_data):
    repository = await _indexed(
        store,
        ctx,
        {
            "pageview:old": visit_data(120, source="google"),
            "pageview:mid": visit_data(60, source="facebook"),
            "pageview:new": visit_data(30, source="newsletter"),
        },
    )
    conversion = parse_conversion(conversion_data(conversion_ip="203.0.113.5"), "conversions:1")
    resolver = IdentityResolver(repository)

    first = await resolver.resolve(conversion, model="first_touch")
    last = await resolver.resolve(conversion, model="last_touch")

    assert first.winner.tier == "conversion_ip_match"
    assert first.selected_visit.visit_id == "pageview:old"
    assert last.selected_visit.visit_id == "pageview:new"


@pytest.mark.asyncio
async def test_visits_outside_lookback_or_after_conversion_are_ignored(
    store, ctx, visit_data, conversion_data
):
    repository = await _indexed(
        store,
        ctx,
        {
            "pageview:stale": visit_data(20 * 24 * 60),
            "pageview:after": visit_data(-5),
        },
    )
    conversion = parse_conversion(conversion_data(ip_address="203.0.113.5"), "conversions:1")

    resolution = await IdentityResolver(repository).resolve(conversion, lookback_days=14)

    assert resolution.matched is False
    assert resolution.selected_visit is None


@pytest.mark.asyncio
async def test_tiers_without_signal_are_skipped(store, ctx, visit_data, conversion_data):
    repository = await _indexed(store, ctx, {"pageview:a": visit_data(15)})
    conversion = parse_conversion(
        conversion_data(primary_ip="203.0.113.5", conversion_ip="203.0.113.5"), "conversions:1"
    )

    resolution = await IdentityResolver(repository).resolve(conversion)

    assert resolution.winner.tier == "primary_ip_match"
    assert "conversion_ip_match" in resolution.skipped_tiers
    assert "session_id_match" in resolution.skipped_tiers
    assert "primary_ip_match" not in resolution.skipped_tiers


@pytest.mark.asyncio
async def test_geo_tier_only_runs_when_deterministic_tiers_miss(
    store, ctx, visit_data, conversion_data
):
    repository = await _indexed(store, ctx, {"pageview:a": visit_data(15)})
    geo_tier = _RecordingGeoTier()
    resolver = IdentityResolver(repository, geo_tier=geo_tier)

    hit = parse_conversion(conversion_data(ip_address="203.0.113.5"), "conversions:1")
    assert (await resolver.resolve(hit)).winner.tier == "pageview_ip_match"
    assert geo_tier.calls == 0

    miss = parse_conversion(conversion_data(ip_address="198.51.100.77"), "conversions:2")
    resolution = await resolver.resolve(miss)
    assert resolution.winner.tier == "geographic_match"
    assert resolution.winner.geo_band == "high"
    assert geo_tier.calls == 1


@pytest.mark.asyncio
async def test_geo_tier_out_of_budget_defers_resolution(store, ctx, visit_data, conversion_data):
    repository = await _indexed(store, ctx, {"pageview:a": visit_data(15)})
    geo_tier = _RecordingGeoTier()

    async def out_of_budget(conversion, repository, window):
        raise BudgetExhausted("run budget spent")

    geo_tier.evaluate = out_of_budget
    conversion = parse_conversion(conversion_data(ip_address="198.51.100.77"), "conversions:2")

    resolution = await IdentityResolver(repository, geo_tier=geo_tier).resolve(conversion)

    assert resolution.budget_exhausted is True
    assert resolution.matched is False


@pytest.mark.asyncio
async def test_unknown_model_rejected(store, ctx, conversion_data):
    conversion = parse_conversion(conversion_data(ip_address="203.0.113.5"), "conversions:1")
    with pytest.raises(ValueError):
        await IdentityResolver(IndexRepository(store)).resolve(conversion, model="linear")


def test_equal_timestamps_resolve_to_smallest_visit_id(visit_data):
    same = visit_data(30)
    visits = [parse_visit(same, "pageview:b"), parse_visit(same, "pageview:a")]

    assert select_visit(visits, "first_touch").visit_id == "pageview:a"
    assert select_visit(visits, "last_touch").visit_id == "pageview:a"
