"""
Tests for drop-if-busy periodic scheduling.
"""

import asyncio

from tontrader.services.scheduler import PeriodicTask


class TestPeriodicTask:
    """Test tick handling of PeriodicTask."""

    async def test_tick_dropped_while_busy(self):
        release = asyncio.Event()
        started = []

        async def slow():
            started.append(1)
            await release.wait()

        task = PeriodicTask("slow", slow, interval=60)

        assert task.tick() is True
        await asyncio.sleep(0)
        assert task.busy
        assert task.tick() is False
        assert task.skipped == 1

        release.set()
        await task.stop()

        assert started == [1]
        assert task.runs == 1
        assert not task.busy

    async def test_failure_does_not_stop_ticking(self):
        calls = []

        async def flaky():
            calls.append(1)
            if len(calls) == 1:
                raise RuntimeError("boom")

        task = PeriodicTask("flaky", flaky, interval=60)

        task.tick()
        await task.stop()
        task.tick()
        await task.stop()

        assert len(calls) == 2
        assert task.runs == 2

    async def test_start_runs_immediately_and_stop_waits(self):
        done = asyncio.Event()

        async def work():
            await asyncio.sleep(0.01)
            done.set()

        task = PeriodicTask("work", work, interval=60)
        await task.start()
        await asyncio.sleep(0)
        await task.stop()

        assert done.is_set()
        assert task.runs == 1
