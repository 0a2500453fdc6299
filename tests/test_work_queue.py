"""
Tests for the keyed work queue.
"""

import asyncio

import pytest

from runner_orchestrator.work_queue import WorkQueue


class TestQueueing:

    @pytest.mark.asyncio
    async def test_duplicate_adds_collapse(self):
        queue = WorkQueue()

        queue.add("ns/a")
        queue.add("ns/a")
        queue.add("ns/b")

        assert len(queue) == 2
        assert await queue.get() == "ns/a"
        assert await queue.get() == "ns/b"

    @pytest.mark.asyncio
    async def test_key_in_flight_is_requeued_after_done(self):
        queue = WorkQueue()
        queue.add("ns/a")
        key = await queue.get()

        queue.add("ns/a")
        assert queue.is_processing("ns/a")
        assert len(queue) == 0

        queue.done(key)
        assert len(queue) == 1
        assert await queue.get() == "ns/a"

    @pytest.mark.asyncio
    async def test_done_without_new_add_does_not_requeue(self):
        queue = WorkQueue()
        queue.add("ns/a")
        queue.done(await queue.get())

        assert len(queue) == 0
        assert not queue.is_processing("ns/a")

    @pytest.mark.asyncio
    async def test_shut_down_ignores_new_work(self):
        queue = WorkQueue()
        queue.shut_down()

        queue.add("ns/a")
        queue.add_after("ns/b", 0.01)

        assert queue.shutting_down
        assert len(queue) == 0


class TestDelays:

    @pytest.mark.asyncio
    async def test_add_after_fires(self):
        queue = WorkQueue()

        queue.add_after("ns/a", 0.01)

        assert len(queue) == 0
        assert await asyncio.wait_for(queue.get(), 1.0) == "ns/a"

    @pytest.mark.asyncio
    async def test_earliest_retry_wins(self):
        queue = WorkQueue()

        queue.add_after("ns/a", 60)
        queue.add_after("ns/a", 0.01)
        queue.add_after("ns/a", 30)

        assert await asyncio.wait_for(queue.get(), 1.0) == "ns/a"
        queue.shut_down()

    @pytest.mark.asyncio
    async def test_backoff_grows_and_caps(self):
        queue = WorkQueue(backoff_initial_sec=0.5, backoff_max_sec=3.0, backoff_factor=2.0)

        delays = [queue.add_rate_limited("ns/a") for _ in range(5)]

        assert delays == [0.5, 1.0, 2.0, 3.0, 3.0]
        assert queue.num_requeues("ns/a") == 5
        queue.shut_down()

    @pytest.mark.asyncio
    async def test_forget_resets_backoff(self):
        queue = WorkQueue(backoff_initial_sec=0.5, backoff_max_sec=300.0, backoff_factor=2.0)
        queue.add_rate_limited("ns/a")
        queue.add_rate_limited("ns/a")

        queue.forget("ns/a")

        assert queue.num_requeues("ns/a") == 0
        assert queue.add_rate_limited("ns/a") == 0.5
        assert queue.num_requeues("ns/b") == 0
        queue.shut_down()
