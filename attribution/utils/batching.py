"""Bounded concurrent fan-out helpers."""

import asyncio
from collections.abc import Awaitable, Callable, Iterable, Sequence
from typing import TypeVar

T = TypeVar("T")
R = TypeVar("R")


def chunked(items: Sequence[T], size: int) -> Iterable[Sequence[T]]:
    size = max(1, size)
    for start in range(0, len(items), size):
        yield items[start : start + size]


async def run_in_batches(
    items: Sequence[T],
    worker: Callable[[T], Awaitable[R]],
    batch_size: int,
) -> list[R]:
    """
    Await `worker(item)` for every item, at most `batch_size` at a time.

    Results keep input order. Exceptions propagate; workers that may fail
    softly should catch and return a sentinel themselves.
    """
    results: list[R] = []
    for batch in chunked(items, batch_size):
        results.extend(await asyncio.gather(*(worker(item) for item in batch)))
    return results
