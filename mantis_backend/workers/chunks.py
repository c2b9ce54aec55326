from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable, Sequence, TypeVar


T = TypeVar("T")


async def run_in_chunks(
    items: Sequence[T],
    size: int,
    worker: Callable[[T], Awaitable[Any]],
) -> None:
    """Run ``worker`` over ``items`` at most ``size`` at a time.

    Each chunk is awaited in full before the next one starts, so the number
    of in-flight calls never exceeds ``size``.
    """

    if size < 1:
        raise ValueError("chunk size must be positive")
    for start in range(0, len(items), size):
        chunk = items[start : start + size]
        await asyncio.gather(*(worker(item) for item in chunk))
