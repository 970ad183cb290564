"""
Repository for signal index entries, build progress and staging shards.

Index entries are written wholesale with a single SET (value + TTL) so a
concurrent reader sees either the previous entry or the new one, never a
mix. Malformed entries read as missing.
"""

from __future__ import annotations

from dataclasses import asdict
from typing import Any

from attribution.infrastructure.observability.logging import get_logger
from attribution.services.record_store import (
    MalformedRecord,
    RecordStore,
    get_json,
    set_json,
)

from ...domain.keys import DEFAULT_INDEX_PREFIX, index_key
from ...domain.models import IndexBuildProgress, IndexEntry, VisitRecord
from ...domain.parsing import format_timestamp, parse_timestamp, parse_visit, visit_to_dict

logger = get_logger(__name__)


def entry_to_dict(entry: IndexEntry) -> dict[str, Any]:
    return {
        "key": entry.key,
        "signal_type": entry.signal_type,
        "signal_value": entry.signal_value,
        "visits": [visit_to_dict(visit) for visit in entry.visits],
        "pageview_count": entry.pageview_count,
        "truncated": entry.truncated,
        "latest_timestamp": format_timestamp(entry.latest_timestamp),
        "earliest_timestamp": format_timestamp(entry.earliest_timestamp),
        "session_ids": entry.session_ids,
        "landing_pages": entry.landing_pages,
        "sources": entry.sources,
        "created_at": format_timestamp(entry.created_at),
    }


def parse_entry(data: Any, key: str) -> IndexEntry:
    if not isinstance(data, dict) or not isinstance(data.get("visits"), list):
        raise MalformedRecord(key, "index entry has no visit list")

    def _optional_ts(value: Any):
        return parse_timestamp(value, key) if value else None

    return IndexEntry(
        key=key,
        signal_type=str(data.get("signal_type", "")),
        signal_value=str(data.get("signal_value", "")),
        visits=[parse_visit(item, f"{key}[{i}]") for i, item in enumerate(data["visits"])],
        pageview_count=int(data.get("pageview_count", len(data["visits"]))),
        truncated=bool(data.get("truncated", False)),
        latest_timestamp=_optional_ts(data.get("latest_timestamp")),
        earliest_timestamp=_optional_ts(data.get("earliest_timestamp")),
        session_ids=list(data.get("session_ids") or []),
        landing_pages=list(data.get("landing_pages") or []),
        sources=list(data.get("sources") or []),
        created_at=_optional_ts(data.get("created_at")),
    )


class IndexRepository:
    def __init__(
        self,
        store: RecordStore,
        key_prefix: str = DEFAULT_INDEX_PREFIX,
        ttl_s: int = 2592000,
    ):
        self.store = store
        self.key_prefix = key_prefix
        self.ttl_s = ttl_s

    # =================================================================
    # INDEX ENTRIES
    # =================================================================

    def key_for(self, signal_type: str, value: str) -> str:
        return index_key(signal_type, value, self.key_prefix)

    async def load_entry(self, signal_type: str, value: str) -> IndexEntry | None:
        key = self.key_for(signal_type, value)
        try:
            data = await get_json(self.store, key)
            if data is None:
                return None
            return parse_entry(data, key)
        except MalformedRecord as e:
            logger.warning("Ignoring malformed index entry", key=key, reason=e.reason)
            return None

    async def write_entry(self, entry: IndexEntry) -> bool:
        written = await set_json(self.store, entry.key, entry_to_dict(entry), self.ttl_s)
        if not written:
            logger.error("Index entry write failed", key=entry.key)
        return written

    async def query_index(
        self, signal_type: str, signal_value: str, limit: int = 50
    ) -> list[VisitRecord]:
        """Visits sharing one signal value, most recent first."""
        entry = await self.load_entry(signal_type, signal_value)
        if entry is None:
            return []
        return entry.visits[: max(0, limit)]

    # =================================================================
    # BUILD PROGRESS
    # =================================================================

    async def load_progress(self, key: str) -> IndexBuildProgress | None:
        try:
            data = await get_json(self.store, key)
        except MalformedRecord as e:
            logger.warning("Ignoring malformed build progress", key=key, reason=e.reason)
            return None
        if not isinstance(data, dict) or not data.get("build_id"):
            return None
        known = set(IndexBuildProgress.__dataclass_fields__)
        return IndexBuildProgress(**{k: v for k, v in data.items() if k in known})

    async def save_progress(self, key: str, progress: IndexBuildProgress, ttl_s: int) -> bool:
        return await set_json(self.store, key, asdict(progress), ttl_s)

    # =================================================================
    # STAGING SHARDS
    # =================================================================

    async def write_shard(self, key: str, groups: dict[str, dict[str, Any]], ttl_s: int) -> bool:
        return await set_json(self.store, key, {"groups": groups}, ttl_s)

    async def load_shard(self, key: str) -> dict[str, dict[str, Any]]:
        data = await get_json(self.store, key)
        if not isinstance(data, dict) or not isinstance(data.get("groups"), dict):
            raise MalformedRecord(key, "staging shard has no groups")
        return data["groups"]
