import asyncio

import pytest

from obsidian_feishu_sync.feishu.delete_queue import DELETE_MIN_INTERVAL, DeleteQueue


class FakeTime:
    """Monotonic clock advanced only by the queue's sleeper."""

    def __init__(self):
        self.now = 100.0
        self.sleeps = []

    def clock(self):
        return self.now

    async def sleep(self, seconds):
        self.sleeps.append(seconds)
        self.now += seconds


class TestDeleteQueue:
    @pytest.mark.asyncio
    async def test_spacing_between_dispatches(self):
        """Back-to-back deletes are spaced by the minimum interval."""
        fake = FakeTime()
        queue = DeleteQueue(clock=fake.clock, sleeper=fake.sleep)
        dispatched = []

        def op(name):
            async def _run():
                dispatched.append((name, fake.now))
                return name
            return _run

        results = await asyncio.gather(queue.submit(op("a")), queue.submit(op("b")), queue.submit(op("c")))

        assert results == ["a", "b", "c"]
        assert [name for name, _ in dispatched] == ["a", "b", "c"]
        times = [t for _, t in dispatched]
        assert all(later - earlier >= DELETE_MIN_INTERVAL - 1e-9 for earlier, later in zip(times, times[1:]))
        assert len(fake.sleeps) == 2

    @pytest.mark.asyncio
    async def test_no_wait_after_idle(self):
        """Enough elapsed time means no extra wait."""
        fake = FakeTime()
        queue = DeleteQueue(clock=fake.clock, sleeper=fake.sleep)

        async def op():
            return None

        await queue.submit(op)
        fake.now += 5
        await queue.submit(op)
        assert fake.sleeps == []

    @pytest.mark.asyncio
    async def test_failure_does_not_stop_queue(self):
        """A failing delete raises for its caller only."""
        fake = FakeTime()
        queue = DeleteQueue(clock=fake.clock, sleeper=fake.sleep)

        async def bad():
            raise RuntimeError("remote refused")

        async def good():
            return "ok"

        results = await asyncio.gather(queue.submit(bad), queue.submit(good), return_exceptions=True)
        assert isinstance(results[0], RuntimeError)
        assert results[1] == "ok"
        assert len(queue) == 0
