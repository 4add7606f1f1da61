from __future__ import annotations

import heapq
from typing import Any, AsyncIterable, AsyncIterator, Callable, TypeVar

T = TypeVar("T")


async def merge(
    *sources: AsyncIterable[T],
    key: Callable[[T], Any],
) -> AsyncIterator[T]:
    """
    Lazily merge already-ordered async streams into one stream ordered by key.

    - holds at most one pending item per source
    - equal keys are emitted in source order (lower index first), regardless of
      which source produced its item first
    - all source iterators are closed when the merge ends, fails or is closed
    """
    iterators: list[AsyncIterator[T]] = [s.__aiter__() for s in sources]
    heap: list[tuple[Any, int, T]] = []

    async def pull(index: int) -> None:
        try:
            item = await iterators[index].__anext__()
        except StopAsyncIteration:
            return
        # (key, index) is unique per entry, items are never compared
        heapq.heappush(heap, (key(item), index, item))

    try:
        for index in range(len(iterators)):
            await pull(index)

        while heap:
            _, index, item = heapq.heappop(heap)
            yield item
            await pull(index)
    finally:
        for it in iterators:
            aclose = getattr(it, "aclose", None)
            if aclose is not None:
                await aclose()
