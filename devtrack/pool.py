"""
Concurrency Pool

Bounded-parallelism driver for independent coroutines, e.g. one agent run per
documentation page. Every handler still goes through the shared rate governor,
so pool concurrency and provider throttling compose.
"""

import asyncio
from collections import deque
from typing import Any, Awaitable, Callable, Iterable, TypeVar

T = TypeVar("T")


async def run_pool(
    items: Iterable[T],
    concurrency: int,
    handler: Callable[[T], Awaitable[Any]],
) -> list[Any]:
    """
    Run ``handler(item)`` for every item with at most *concurrency* in flight.

    A new handler starts whenever one finishes (first to complete, not first
    started). Results are returned in item order. If a handler raises, the
    remaining in-flight handlers are cancelled and the exception propagates;
    handlers that must not abort the pool should catch their own errors.
    """
    if concurrency < 1:
        raise ValueError("concurrency must be at least 1")

    queue = deque(enumerate(items))
    results: dict[int, Any] = {}
    running: dict[asyncio.Task, int] = {}

    try:
        while queue or running:
            while queue and len(running) < concurrency:
                index, item = queue.popleft()
                running[asyncio.ensure_future(handler(item))] = index

            done, _ = await asyncio.wait(running, return_when=asyncio.FIRST_COMPLETED)
            for task in done:
                index = running.pop(task)
                results[index] = task.result()
    finally:
        for task in running:
            task.cancel()
        if running:
            await asyncio.gather(*running, return_exceptions=True)

    return [results[i] for i in sorted(results)]
