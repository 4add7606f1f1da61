from __future__ import annotations

from typing import AsyncIterator

import pytest

from wsreplay.marketdata.replay.merge import merge


class _Source:
    def __init__(self, items: list[tuple[int, str]], *, fail_after: int | None = None) -> None:
        self.items = items
        self.fail_after = fail_after
        self.pulled = 0
        self.closed = False

    async def _gen(self) -> AsyncIterator[tuple[int, str]]:
        try:
            for item in self.items:
                if self.fail_after is not None and self.pulled == self.fail_after:
                    raise ValueError("boom")
                self.pulled += 1
                yield item
        finally:
            self.closed = True

    def __aiter__(self) -> AsyncIterator[tuple[int, str]]:
        return self._gen()


async def _collect(*sources: _Source) -> list[str]:
    return [label async for _, label in merge(*sources, key=lambda item: item[0])]


async def test_merges_by_key() -> None:
    a = _Source([(1, "a1"), (3, "a3"), (5, "a5")])
    b = _Source([(2, "b2"), (4, "b4")])

    assert await _collect(a, b) == ["a1", "b2", "a3", "b4", "a5"]
    assert a.closed and b.closed


async def test_ties_go_to_lower_source_index() -> None:
    a = _Source([(1, "a1"), (2, "a2")])
    b = _Source([(1, "b1"), (2, "b2")])

    assert await _collect(b, a) == ["b1", "a1", "b2", "a2"]


async def test_empty_sources() -> None:
    assert await _collect() == []
    assert await _collect(_Source([]), _Source([(1, "x")])) == ["x"]


async def test_pulls_lazily() -> None:
    a = _Source([(1, "a1"), (2, "a2"), (3, "a3")])
    merged = merge(a, key=lambda item: item[0])

    assert await merged.__anext__() == (1, "a1")
    # nothing is read past the item just emitted
    assert a.pulled == 1

    await merged.aclose()
    assert a.closed


async def test_source_failure_propagates_and_closes_the_rest() -> None:
    a = _Source([(1, "a1"), (3, "a3")], fail_after=1)
    b = _Source([(2, "b2"), (4, "b4")])

    with pytest.raises(ValueError, match="boom"):
        await _collect(a, b)

    assert b.closed
