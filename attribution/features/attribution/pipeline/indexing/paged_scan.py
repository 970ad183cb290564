"""
Paged scan with checkpoint.

One loop for every resumable key scan in the feature (index build, its
verification pass, recovery passes). The budget is checked before each
page is fetched, so a returned cursor always sits on a page boundary:
every key before it was handed to the callback, none after it were. A
callback that runs out of budget part-way through a page returns False;
the cursor then stays on that page so the next invocation covers it again.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass

from attribution.infrastructure.observability.logging import get_logger
from attribution.services.record_store import TERMINAL_CURSOR, RecordStore, RecordStoreError

from ...context import RunBudget

logger = get_logger(__name__)

PageCallback = Callable[[list[str]], Awaitable[bool | None]]


@dataclass(slots=True)
class ScanOutcome:
    cursor: str
    complete: bool
    pages: int = 0
    keys_seen: int = 0
    budget_exhausted: bool = False
    page_cap_reached: bool = False
    error: str | None = None


async def paged_scan(
    store: RecordStore,
    pattern: str,
    *,
    page_size: int,
    on_page: PageCallback,
    budget: RunBudget,
    start_cursor: str = TERMINAL_CURSOR,
    max_pages: int | None = None,
) -> ScanOutcome:
    """
    Walk `pattern` from `start_cursor` until the store returns the terminal
    cursor, the budget runs out, `max_pages` pages were fetched, or a page
    fails. Only the first case reports `complete=True`.
    """
    cursor = start_cursor or TERMINAL_CURSOR
    pages = 0
    keys_seen = 0

    while True:
        if pages and cursor == TERMINAL_CURSOR:
            return ScanOutcome(cursor=cursor, complete=True, pages=pages, keys_seen=keys_seen)

        if max_pages is not None and pages >= max_pages:
            return ScanOutcome(
                cursor=cursor,
                complete=False,
                pages=pages,
                keys_seen=keys_seen,
                page_cap_reached=True,
            )

        if budget.expired():
            logger.info(
                "Scan paused - budget exhausted",
                pattern=pattern,
                cursor=cursor,
                pages=pages,
                keys_seen=keys_seen,
            )
            return ScanOutcome(
                cursor=cursor,
                complete=False,
                pages=pages,
                keys_seen=keys_seen,
                budget_exhausted=True,
            )

        try:
            next_cursor, keys = await store.scan(cursor, pattern, page_size)
        except RecordStoreError as e:
            logger.warning("Scan page failed", pattern=pattern, cursor=cursor, error=str(e))
            return ScanOutcome(
                cursor=cursor, complete=False, pages=pages, keys_seen=keys_seen, error=str(e)
            )

        if await on_page(keys) is False:
            logger.info(
                "Scan paused - page unfinished",
                pattern=pattern,
                cursor=cursor,
                pages=pages,
                keys_seen=keys_seen,
            )
            return ScanOutcome(
                cursor=cursor,
                complete=False,
                pages=pages,
                keys_seen=keys_seen,
                budget_exhausted=True,
            )
        pages += 1
        keys_seen += len(keys)
        cursor = str(next_cursor)
