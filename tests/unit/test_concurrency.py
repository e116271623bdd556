"""
Unit tests for cancellation tokens and the bounded scheduler
"""

import asyncio
import os
import sys

import pytest

# Add project root to path
project_root = os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
sys.path.append(project_root)

from common.concurrency import BoundedScheduler, CancelToken, Generation, check
from common.errors import OperationCancelled


class TestCancellation:
    """Test cases for CancelToken and Generation"""

    def test_token_raises_after_cancel(self):
        """Test raise_if_cancelled only fires once cancelled"""
        t = CancelToken(3)
        t.raise_if_cancelled()
        t.cancel()
        assert t.cancelled
        with pytest.raises(OperationCancelled):
            t.raise_if_cancelled()

    def test_check_accepts_none(self):
        """Test check() is a no-op without a token"""
        check(None)

    def test_generation_advance_cancels_previous(self):
        """Test only the newest token is current"""
        g = Generation()
        t1 = g.advance()
        t2 = g.advance()
        assert t1.cancelled and not t2.cancelled
        assert not g.is_current(t1)
        assert g.is_current(t2)
        assert g.value == 2 == t2.generation


class TestBoundedScheduler:
    """Test cases for BoundedScheduler"""

    def test_rejects_zero_concurrency(self):
        """Test concurrency must be positive"""
        with pytest.raises(ValueError):
            BoundedScheduler(0)

    def test_results_keep_input_order(self):
        """Test results line up with inputs even when completion order differs"""
        async def work(i):
            await asyncio.sleep(0.001 * (5 - i))
            return i * 10

        out = asyncio.run(BoundedScheduler(3).map(work, range(5)))
        assert out == [0, 10, 20, 30, 40]

    @pytest.mark.parametrize("limit", [1, 2, 4])
    def test_never_exceeds_limit(self, limit):
        """Test in-flight calls never exceed the concurrency limit"""
        state = {"now": 0, "peak": 0}

        async def work(i):
            state["now"] += 1
            state["peak"] = max(state["peak"], state["now"])
            await asyncio.sleep(0.001)
            state["now"] -= 1

        asyncio.run(BoundedScheduler(limit).map(work, range(10)))
        assert state["peak"] == limit

    def test_sequential_when_one(self):
        """Test concurrency 1 starts items strictly in order, one at a time"""
        events = []

        async def work(i):
            events.append(("start", i))
            await asyncio.sleep(0)
            events.append(("end", i))

        asyncio.run(BoundedScheduler(1).map(work, range(3)))
        assert events == [("start", 0), ("end", 0), ("start", 1), ("end", 1), ("start", 2), ("end", 2)]

    def test_first_error_propagates(self):
        """Test a failing call aborts the map and surfaces its error"""
        started = []

        async def work(i):
            started.append(i)
            if i == 1:
                raise RuntimeError("boom")
            await asyncio.sleep(0.01)

        with pytest.raises(RuntimeError, match="boom"):
            asyncio.run(BoundedScheduler(1).map(work, range(5)))
        assert started == [0, 1]

    def test_cancelled_token_stops_work(self):
        """Test a cancelled token prevents further items from starting"""
        token = CancelToken()
        started = []

        async def work(i):
            started.append(i)
            if i == 1:
                token.cancel()

        with pytest.raises(OperationCancelled):
            asyncio.run(BoundedScheduler(1).map(work, range(5), token))
        assert started == [0, 1]

    def test_empty_input(self):
        """Test an empty item list returns an empty result"""
        async def work(i):
            return i

        assert asyncio.run(BoundedScheduler(2).map(work, [])) == []
