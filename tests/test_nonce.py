"""
Tests for Nonce_Core ordering and resynchronization.
"""

import asyncio
import random

import pytest

from apex_engine.errors import SequenceConflict, TransportExhausted
from apex_engine.nonce import Nonce_Core


class ScriptedPool:
    """Answers get_transaction_count from ``self.pending``; can be made to fail."""

    def __init__(self, pending=5):
        self.pending = pending
        self.failing = False
        self.queries = 0

    async def query(self, operation, *args, **kwargs):
        assert operation == "get_transaction_count"
        assert args[1] == "pending"
        self.queries += 1
        if self.failing:
            raise TransportExhausted(operation, {})
        return self.pending


@pytest.fixture
def scripted_pool():
    return ScriptedPool()


@pytest.fixture
async def allocator(scripted_pool):
    core = Nonce_Core(scripted_pool, "0x" + "ab" * 20)
    await core.initialize()
    return core


class TestAllocation:
    async def test_initialize_reads_pending_count(self, allocator):
        assert allocator.nonce == 5

    async def test_next_is_strictly_increasing(self, allocator):
        assert [await allocator.next() for _ in range(3)] == [5, 6, 7]

    async def test_concurrent_reservations_submit_in_order(self, allocator):
        submitted = []

        async def submit():
            async with allocator.reserve() as nonce:
                await asyncio.sleep(random.uniform(0, 0.01))
                submitted.append(nonce)

        await asyncio.gather(*(submit() for _ in range(25)))

        assert submitted == list(range(5, 30))

    async def test_initialize_retries(self, scripted_pool, monkeypatch):
        monkeypatch.setattr(Nonce_Core, "RETRY_DELAY", 0.0)
        scripted_pool.failing = True
        core = Nonce_Core(scripted_pool, "0x" + "ab" * 20)

        with pytest.raises(TransportExhausted):
            await core.initialize()
        assert scripted_pool.queries == Nonce_Core.MAX_RETRIES


class TestResync:
    async def test_conflict_resyncs_to_network_view(self, allocator, scripted_pool):
        scripted_pool.pending = 42

        with pytest.raises(SequenceConflict):
            async with allocator.reserve():
                raise SequenceConflict("nonce too low")

        assert allocator.nonce == 42
        assert await allocator.next() == 42

    async def test_failed_resync_marks_counter_stale(self, allocator, scripted_pool):
        scripted_pool.failing = True

        with pytest.raises(SequenceConflict):
            async with allocator.reserve():
                raise SequenceConflict("nonce too low")
        assert allocator.nonce is None

        scripted_pool.failing = False
        scripted_pool.pending = 9
        assert await allocator.next() == 9

    async def test_cancelled_submit_marks_counter_stale(self, allocator):
        entered = asyncio.Event()

        async def submit():
            async with allocator.reserve():
                entered.set()
                await asyncio.sleep(3600)

        task = asyncio.create_task(submit())
        await entered.wait()
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert allocator.nonce is None
        assert not allocator.lock.locked()

    async def test_successful_submit_keeps_local_counter(self, allocator, scripted_pool):
        async with allocator.reserve() as nonce:
            assert nonce == 5
        assert allocator.nonce == 6
        assert scripted_pool.queries == 1

    async def test_explicit_resync(self, allocator, scripted_pool):
        scripted_pool.pending = 17
        assert await allocator.resync() == 17
        assert allocator.nonce == 17

    async def test_stop_forgets_counter(self, allocator):
        await allocator.stop()
        assert allocator.nonce is None
