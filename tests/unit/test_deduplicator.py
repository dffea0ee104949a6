"""Tests for in-flight request deduplication."""

import asyncio

import pytest

from actionrail.core.errors import ActionCancelledError, ActionTimeoutError, NetworkError
from actionrail.resilience.deduplicator import RequestDeduplicator


class Gate:
    """An operation that blocks until released and counts its runs."""

    def __init__(self, result="done") -> None:
        self.event = asyncio.Event()
        self.calls = 0
        self.result = result
        self.error: Exception | None = None

    async def __call__(self):
        self.calls += 1
        await self.event.wait()
        if self.error is not None:
            raise self.error
        return self.result


async def _settle() -> None:
    for _ in range(3):
        await asyncio.sleep(0)


class TestSharing:
    @pytest.mark.asyncio
    async def test_concurrent_callers_share_one_call(self):
        dedup = RequestDeduplicator()
        op = Gate({"value": 1})
        first = asyncio.create_task(dedup.execute("k", op))
        second = asyncio.create_task(dedup.execute("k", op))
        await _settle()
        assert dedup.is_pending("k")
        op.event.set()
        results = await asyncio.gather(first, second)
        assert op.calls == 1
        assert results[0] is results[1]
        assert not dedup.is_pending("k")
        assert dedup.stats()["shared"] == 1

    @pytest.mark.asyncio
    async def test_errors_are_shared(self):
        dedup = RequestDeduplicator()
        op = Gate()
        op.error = NetworkError("down")
        tasks = [asyncio.create_task(dedup.execute("k", op)) for _ in range(3)]
        await _settle()
        op.event.set()
        results = await asyncio.gather(*tasks, return_exceptions=True)
        assert op.calls == 1
        assert all(r is op.error for r in results)

    @pytest.mark.asyncio
    async def test_sequential_calls_run_again(self):
        dedup = RequestDeduplicator()
        op = Gate()
        op.event.set()
        await dedup.execute("k", op)
        await dedup.execute("k", op)
        assert op.calls == 2

    @pytest.mark.asyncio
    async def test_different_keys_do_not_share(self):
        dedup = RequestDeduplicator()
        op = Gate()
        tasks = [asyncio.create_task(dedup.execute(k, op)) for k in ("a", "b")]
        await _settle()
        op.event.set()
        await asyncio.gather(*tasks)
        assert op.calls == 2


class TestCancellation:
    @pytest.mark.asyncio
    async def test_cancelled_waiter_does_not_cancel_the_call(self):
        dedup = RequestDeduplicator()
        op = Gate("ok")
        owner = asyncio.create_task(dedup.execute("k", op))
        waiter = asyncio.create_task(dedup.execute("k", op))
        await _settle()
        waiter.cancel()
        await _settle()
        op.event.set()
        assert await owner == "ok"
        assert waiter.cancelled()

    @pytest.mark.asyncio
    async def test_cancel_fails_waiters(self):
        dedup = RequestDeduplicator()
        op = Gate("ok")
        owner = asyncio.create_task(dedup.execute("k", op))
        waiter = asyncio.create_task(dedup.execute("k", op))
        await _settle()
        assert dedup.cancel("k")
        with pytest.raises(ActionCancelledError):
            await waiter
        op.event.set()
        assert await owner == "ok"
        assert not dedup.cancel("k")


class TestExpiry:
    @pytest.mark.asyncio
    async def test_sweep_expires_stale_entries(self, clock):
        dedup = RequestDeduplicator(max_age_ms=1000, cleanup_interval_ms=60_000, clock=clock)
        op = Gate("late")
        owner = asyncio.create_task(dedup.execute("k", op))
        waiter = asyncio.create_task(dedup.execute("k", op))
        await _settle()
        clock.advance(2)
        assert dedup.sweep() == 1
        with pytest.raises(ActionTimeoutError):
            await waiter
        assert not dedup.is_pending("k")
        op.event.set()
        assert await owner == "late"

    @pytest.mark.asyncio
    async def test_stale_entry_is_replaced_by_a_fresh_call(self, clock):
        dedup = RequestDeduplicator(max_age_ms=1000, cleanup_interval_ms=60_000, clock=clock)
        op = Gate("value")
        stale = asyncio.create_task(dedup.execute("k", op))
        await _settle()
        clock.advance(2)
        fresh = asyncio.create_task(dedup.execute("k", op))
        await _settle()
        assert op.calls == 2
        op.event.set()
        assert await asyncio.gather(stale, fresh) == ["value", "value"]

    @pytest.mark.asyncio
    async def test_clear(self):
        dedup = RequestDeduplicator()
        op = Gate()
        owner = asyncio.create_task(dedup.execute("k", op))
        await _settle()
        dedup.clear()
        assert dedup.pending_keys() == []
        op.event.set()
        await owner
