"""Tests for lazy sequences and their operators.

Test coverage:
- Laziness (take pulls at most n items)
- Operators: map, filter, filter_not, flat_map, flatten, drop, concat, enum
- Terminal operations: reduce, for_each, collect, first, count
- tee with empty, single-item and long sequences; failure broadcast
- cache, recover, write_to / WritableIterable
- range_seq bounds
- Closing a sequence closes its upstream
"""

from __future__ import annotations

import asyncio
import sys
from pathlib import Path

import pytest

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from procstream.sequence import Enumerable, WritableIterable, range_seq, sequence


class Counter:
    """Async source that records how many items were pulled and whether it was closed."""

    def __init__(self, count: int, fail_at: int | None = None) -> None:
        self.count = count
        self.fail_at = fail_at
        self.pulled = 0
        self.closed = False

    async def items(self):
        try:
            for i in range(self.count):
                if i == self.fail_at:
                    raise ValueError(f"boom at {i}")
                self.pulled += 1
                yield i
        finally:
            self.closed = True


# =============================================================================
# Laziness Tests
# =============================================================================


class TestLaziness:
    """Test that operators pull only on demand."""

    @pytest.mark.asyncio
    async def test_take_pulls_at_most_n(self):
        counter = Counter(1000)
        assert await sequence(counter.items()).take(3).collect() == [0, 1, 2]
        assert counter.pulled == 3
        assert counter.closed

    @pytest.mark.asyncio
    async def test_building_a_chain_pulls_nothing(self):
        counter = Counter(10)
        seq = sequence(counter.items()).map(lambda n: n * 2).filter(lambda n: n > 4)
        assert counter.pulled == 0
        await seq.aclose()
        assert counter.pulled == 0

    @pytest.mark.asyncio
    async def test_take_zero(self):
        counter = Counter(10)
        assert await sequence(counter.items()).take(0).collect() == []
        assert counter.pulled == 0

    @pytest.mark.asyncio
    async def test_first_closes_the_rest(self):
        counter = Counter(1000)
        assert await sequence(counter.items()).map(lambda n: n + 1).first() == 1
        assert counter.pulled == 1
        assert counter.closed

    @pytest.mark.asyncio
    async def test_context_manager_closes_upstream(self):
        counter = Counter(100)
        async with sequence(counter.items()) as seq:
            async for item in seq:
                if item == 2:
                    break
        assert counter.closed

    @pytest.mark.asyncio
    async def test_not_restartable(self):
        seq = sequence([1, 2, 3])
        assert await seq.take(1).collect() == [1]
        # a consumed Enumerable is closed, not rewound
        assert await seq.collect() == []


# =============================================================================
# Operator Tests
# =============================================================================


class TestOperators:
    """Test the chainable operators."""

    @pytest.mark.asyncio
    async def test_map_sync_and_async(self):
        async def double(n: int) -> int:
            await asyncio.sleep(0)
            return n * 2

        assert await sequence([1, 2]).map(double).map(str).collect() == ["2", "4"]

    @pytest.mark.asyncio
    async def test_filter_and_filter_not(self):
        assert await sequence(range(6)).filter(lambda n: n % 2 == 0).collect() == [0, 2, 4]
        assert await sequence(range(6)).filter_not(lambda n: n % 2 == 0).collect() == [1, 3, 5]

    @pytest.mark.asyncio
    async def test_flat_map_and_flatten(self):
        assert await sequence([1, 2]).flat_map(lambda n: [n] * n).collect() == [1, 2, 2]
        assert await sequence([[1], [], [2, 3]]).flatten().collect() == [1, 2, 3]

    @pytest.mark.asyncio
    async def test_flatten_async_inner(self):
        async def inner(n: int):
            for i in range(n):
                yield i

        assert await sequence([inner(2), inner(1)]).flatten().collect() == [0, 1, 0]

    @pytest.mark.asyncio
    async def test_drop_and_concat(self):
        assert await sequence(range(5)).drop(3).collect() == [3, 4]
        assert await sequence([1]).concat([2, 3]).collect() == [1, 2, 3]

    @pytest.mark.asyncio
    async def test_enum(self):
        assert await sequence(["a", "b"]).enum().collect() == [("a", 0), ("b", 1)]

    @pytest.mark.asyncio
    async def test_none_is_empty(self):
        assert await sequence(None).collect() == []
        assert await Enumerable().count() == 0

    @pytest.mark.asyncio
    async def test_sequence_returns_existing_enumerable(self):
        seq = sequence([1])
        assert sequence(seq) is seq

    @pytest.mark.asyncio
    async def test_operator_error_propagates_unchanged(self):
        def fail(n: int) -> int:
            raise KeyError(n)

        with pytest.raises(KeyError):
            await sequence([1]).map(fail).collect()


class TestTerminals:
    """Test terminal operations."""

    @pytest.mark.asyncio
    async def test_reduce(self):
        assert await sequence(range(5)).reduce(0, lambda acc, n: acc + n) == 10

    @pytest.mark.asyncio
    async def test_for_each_async(self):
        seen: list[int] = []

        async def record(n: int) -> None:
            seen.append(n)

        await sequence([3, 4]).for_each(record)
        assert seen == [3, 4]

    @pytest.mark.asyncio
    async def test_count_and_run_all(self):
        counter = Counter(7)
        assert await sequence(counter.items()).count() == 7
        counter = Counter(4)
        await sequence(counter.items()).run_all()
        assert counter.pulled == 4

    @pytest.mark.asyncio
    async def test_first_on_empty_raises(self):
        with pytest.raises(LookupError):
            await sequence([]).first()


# =============================================================================
# Tee Tests
# =============================================================================


class TestTee:
    """Test splitting one sequence into branches."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("items", [[], [1], list(range(500))])
    async def test_every_branch_sees_every_item(self, items: list[int]):
        left, right = sequence(items).tee()
        results = await asyncio.gather(left.collect(), right.collect())
        assert results == [items, items]

    @pytest.mark.asyncio
    async def test_branches_consumed_one_after_another(self):
        counter = Counter(5)
        first, second, third = sequence(counter.items()).tee(3)
        assert await first.collect() == [0, 1, 2, 3, 4]
        assert await second.collect() == [0, 1, 2, 3, 4]
        assert await third.take(2).collect() == [0, 1]
        assert counter.pulled == 5
        assert counter.closed

    @pytest.mark.asyncio
    async def test_failure_reaches_every_branch(self):
        counter = Counter(5, fail_at=2)
        left, right = sequence(counter.items()).tee()
        results = await asyncio.gather(left.collect(), right.collect(), return_exceptions=True)
        assert all(isinstance(r, ValueError) for r in results)

    @pytest.mark.asyncio
    @pytest.mark.timeout(5)
    async def test_cancelled_branch_leaves_items_for_siblings(self):
        async def slow_items():
            for i in range(3):
                await asyncio.sleep(0.05)
                yield i

        left, right = sequence(slow_items()).tee()
        task = asyncio.create_task(left.collect())
        await asyncio.sleep(0.01)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert await right.collect() == [0, 1, 2]

    @pytest.mark.asyncio
    @pytest.mark.timeout(5)
    async def test_cancelling_last_branch_closes_upstream(self):
        closed = []

        async def slow_items():
            try:
                for i in range(3):
                    await asyncio.sleep(0.05)
                    yield i
            finally:
                closed.append(True)

        (only,) = sequence(slow_items()).tee(1)
        task = asyncio.create_task(only.collect())
        await asyncio.sleep(0.01)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        assert closed == [True]

    @pytest.mark.asyncio
    async def test_closing_unstarted_branch_releases_it(self):
        counter = Counter(3)
        left, right = sequence(counter.items()).tee()
        await left.aclose()
        assert await right.collect() == [0, 1, 2]
        assert counter.closed

    @pytest.mark.asyncio
    async def test_negative_count_raises(self):
        with pytest.raises(ValueError):
            sequence([1]).tee(-1)


# =============================================================================
# Cache / Recover / Writable Tests
# =============================================================================


class TestCache:
    """Test CachedEnumerable."""

    @pytest.mark.asyncio
    async def test_replays_without_pulling_again(self):
        counter = Counter(4)
        cached = sequence(counter.items()).cache()
        assert await cached.seq().collect() == [0, 1, 2, 3]
        assert await cached.seq().collect() == [0, 1, 2, 3]
        assert [item async for item in cached] == [0, 1, 2, 3]
        assert counter.pulled == 4

    @pytest.mark.asyncio
    async def test_partial_read_then_full(self):
        counter = Counter(4)
        cached = sequence(counter.items()).cache()
        assert await cached.seq().take(2).collect() == [0, 1]
        assert counter.pulled == 2
        assert await cached.seq().collect() == [0, 1, 2, 3]

    @pytest.mark.asyncio
    async def test_failure_is_replayed(self):
        counter = Counter(4, fail_at=1)
        cached = sequence(counter.items()).cache()
        for _ in range(2):
            with pytest.raises(ValueError):
                await cached.seq().collect()


class TestRecover:
    """Test the opt-in error override."""

    @pytest.mark.asyncio
    async def test_replacement_items(self):
        counter = Counter(5, fail_at=2)
        result = await sequence(counter.items()).recover(lambda e: ["x"]).collect()
        assert result == [0, 1, "x"]

    @pytest.mark.asyncio
    async def test_suppress(self):
        counter = Counter(5, fail_at=2)
        assert await sequence(counter.items()).recover(lambda e: None).collect() == [0, 1]

    @pytest.mark.asyncio
    async def test_replace_error(self):
        def replace(error: Exception):
            raise RuntimeError("replaced") from error

        counter = Counter(5, fail_at=0)
        with pytest.raises(RuntimeError, match="replaced"):
            await sequence(counter.items()).recover(replace).collect()


class TestWritable:
    """Test WritableIterable and write_to."""

    @pytest.mark.asyncio
    async def test_write_to(self):
        writable: WritableIterable[int] = WritableIterable()
        task = sequence([1, 2, 3]).write_to(writable)
        assert [item async for item in writable] == [1, 2, 3]
        await task

    @pytest.mark.asyncio
    async def test_write_to_forwards_failure(self):
        counter = Counter(5, fail_at=2)
        writable: WritableIterable[int] = WritableIterable()
        task = sequence(counter.items()).write_to(writable)
        received: list[int] = []
        with pytest.raises(ValueError):
            async for item in writable:
                received.append(item)
        assert received == [0, 1]
        await task

    @pytest.mark.asyncio
    @pytest.mark.timeout(5)
    async def test_second_iteration_yields_nothing(self):
        writable: WritableIterable[int] = WritableIterable()
        await writable.write(1)
        await writable.close()
        assert [item async for item in writable] == [1]
        assert await asyncio.wait_for(sequence(writable).collect(), timeout=2) == []

    @pytest.mark.asyncio
    @pytest.mark.timeout(5)
    async def test_failure_is_delivered_once(self):
        writable: WritableIterable[int] = WritableIterable()
        await writable.close(ValueError("broken"))
        with pytest.raises(ValueError, match="broken"):
            await sequence(writable).collect()
        assert await asyncio.wait_for(sequence(writable).collect(), timeout=2) == []

    @pytest.mark.asyncio
    async def test_write_after_close_raises(self):
        closed: list[bool] = []
        writable: WritableIterable[int] = WritableIterable(on_close=lambda: closed.append(True))
        await writable.close()
        await writable.close()
        assert closed == [True]
        with pytest.raises(RuntimeError):
            await writable.write(1)


# =============================================================================
# range_seq Tests
# =============================================================================


class TestRangeSeq:
    """Test integer ranges."""

    @pytest.mark.asyncio
    async def test_to_is_exclusive(self):
        assert await range_seq(to=3).collect() == [0, 1, 2]

    @pytest.mark.asyncio
    async def test_until_is_inclusive(self):
        assert await range_seq(until=3).collect() == [0, 1, 2, 3]
        assert await range_seq(start=5, until=1, step=-2).collect() == [5, 3, 1]

    def test_invalid_arguments(self):
        with pytest.raises(ValueError):
            range_seq()
        with pytest.raises(ValueError):
            range_seq(to=1, until=1)
        with pytest.raises(ValueError):
            range_seq(to=5, step=0)
