"""
rumpeldrop/concurrency.py

Bounded fan-out for per-address external lookups.

Items are processed in fixed-size chunks; every lookup in a chunk runs
concurrently in a trio nursery and the chunk is awaited before the next
one starts. This only throttles external rate limits: results are keyed
by item, so output does not depend on completion order.
"""

import logging
from typing import Awaitable, Callable, Dict, Hashable, List, Sequence, TypeVar

import trio

logger = logging.getLogger("rumpeldrop.concurrency")

K = TypeVar("K", bound=Hashable)
V = TypeVar("V")


def chunked(items: Sequence[K], chunk_size: int) -> List[Sequence[K]]:
    """Split items into consecutive chunks of at most chunk_size."""
    if chunk_size <= 0:
        raise ValueError(f"chunk_size must be positive, got {chunk_size}")
    return [items[i:i + chunk_size] for i in range(0, len(items), chunk_size)]


async def run_chunked(
    items: Sequence[K],
    worker: Callable[[K], Awaitable[V]],
    chunk_size: int,
) -> Dict[K, V]:
    """
    Run worker(item) for every item, chunk_size at a time.

    Workers are expected to handle their own per-item failures; an
    exception escaping a worker cancels the chunk and propagates.

    Returns:
        {item: worker result}
    """
    results: Dict[K, V] = {}

    async def _run_one(item: K) -> None:
        results[item] = await worker(item)

    chunks = chunked(list(items), chunk_size)
    for index, chunk in enumerate(chunks, 1):
        async with trio.open_nursery() as nursery:
            for item in chunk:
                nursery.start_soon(_run_one, item)
        logger.debug(f"Processed chunk {index}/{len(chunks)} ({len(chunk)} items)")

    return results
