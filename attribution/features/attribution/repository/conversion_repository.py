"""
Conversion records, processed markers and recovery checkpoints.
"""

from typing import Any

from attribution.infrastructure.observability.logging import get_logger
from attribution.services.record_store import (
    MalformedRecord,
    RecordStore,
    get_json,
    set_json,
)

from ..domain.keys import marker_key
from ..domain.models import ConversionRecord
from ..domain.parsing import format_timestamp, parse_conversion

logger = get_logger(__name__)

RECOVERY_PROGRESS_PREFIX = "recovery_progress"


class ConversionRepository:
    def __init__(self, store: RecordStore):
        self.store = store

    async def load(self, key: str) -> ConversionRecord | None:
        """Missing keys return None; unparsable ones raise MalformedRecord."""
        data = await get_json(self.store, key)
        if data is None:
            return None
        return parse_conversion(data, key)

    async def save_attribution(
        self,
        conversion: ConversionRecord,
        attribution: dict[str, Any],
        previous: dict[str, Any] | None,
    ) -> bool:
        """Rewrite the record with the new attribution, keeping every other field."""
        record = dict(conversion.raw)
        record["attribution"] = attribution
        if previous is not None:
            record["previous_attribution"] = previous
        written = await set_json(self.store, conversion.key, record)
        if written:
            conversion.raw = record
            conversion.attribution = attribution
        else:
            logger.error("Conversion write-back failed", key=conversion.key)
        return written

    # =================================================================
    # PROCESSED MARKERS
    # =================================================================

    @staticmethod
    def marker_for(namespace: str, conversion: ConversionRecord) -> str:
        return marker_key(namespace, conversion.email, format_timestamp(conversion.timestamp))

    async def is_marked(self, namespace: str, conversion: ConversionRecord) -> bool:
        return await self.store.exists(self.marker_for(namespace, conversion))

    async def mark(
        self, namespace: str, conversion: ConversionRecord, ttl_s: int, outcome: str
    ) -> bool:
        return await set_json(
            self.store, self.marker_for(namespace, conversion), {"outcome": outcome}, ttl_s
        )


class RecoveryProgressRepository:
    def __init__(self, store: RecordStore):
        self.store = store

    @staticmethod
    def key_for(pass_name: str) -> str:
        return f"{RECOVERY_PROGRESS_PREFIX}:{pass_name}"

    async def load(self, pass_name: str) -> dict[str, Any] | None:
        key = self.key_for(pass_name)
        try:
            data = await get_json(self.store, key)
        except MalformedRecord as e:
            logger.warning("Ignoring malformed recovery progress", key=key, reason=e.reason)
            return None
        return data if isinstance(data, dict) else None

    async def save(self, pass_name: str, progress: dict[str, Any], ttl_s: int) -> bool:
        return await set_json(self.store, self.key_for(pass_name), progress, ttl_s)
