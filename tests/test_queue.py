"""
test_queue.py — In-process delivery queue: tracking, delayed requeue,
crash handling.

Run with:
    pytest tests/test_queue.py -v
"""

from __future__ import annotations

import asyncio

import pytest

from backend.app.notifications.models import DeliveryOutcome, DeliveryTask, MessageStatus
from backend.app.notifications.queue import DeliveryQueue


class _ScriptedHandler:
    """Returns retry outcomes until ``fail_times`` is used up."""

    def __init__(self, fail_times: int = 0, retry_in: float = 0.01, hold: float = 0.0):
        self.fail_times = fail_times
        self.retry_in = retry_in
        self.hold = hold
        self.calls = []
        self.active = set()
        self.overlaps = 0

    async def __call__(self, task: DeliveryTask) -> DeliveryOutcome:
        if task.message_id in self.active:
            self.overlaps += 1
        self.active.add(task.message_id)
        try:
            self.calls.append(task.message_id)
            if self.hold:
                await asyncio.sleep(self.hold)
            if self.fail_times > 0:
                self.fail_times -= 1
                return DeliveryOutcome(task.message_id, MessageStatus.FAILED, retry_in=self.retry_in)
            return DeliveryOutcome(task.message_id, MessageStatus.SENT)
        finally:
            self.active.discard(task.message_id)


class TestDeliveryQueue:

    def test_enqueue_before_start_raises(self):
        queue = DeliveryQueue(_ScriptedHandler())
        with pytest.raises(RuntimeError):
            queue.enqueue(DeliveryTask(1))

    def test_processes_tasks(self):
        handler = _ScriptedHandler()

        async def runner():
            queue = DeliveryQueue(handler, workers=3)
            await queue.start()
            for i in range(1, 6):
                queue.enqueue(DeliveryTask(i))
            assert await queue.drain(timeout=5)
            processed = queue.processed
            await queue.stop()
            return processed

        assert asyncio.run(runner()) == 5
        assert sorted(handler.calls) == [1, 2, 3, 4, 5]

    def test_duplicate_enqueue_ignored_while_tracked(self):
        handler = _ScriptedHandler(hold=0.05)

        async def runner():
            queue = DeliveryQueue(handler, workers=2)
            await queue.start()
            first = queue.enqueue(DeliveryTask(7))
            second = queue.enqueue(DeliveryTask(7))
            await queue.drain(timeout=5)
            await queue.stop()
            return first, second

        assert asyncio.run(runner()) == (True, False)
        assert len(handler.calls) == 1

    def test_retry_outcome_requeues_with_delay(self):
        handler = _ScriptedHandler(fail_times=2)

        async def runner():
            queue = DeliveryQueue(handler, workers=2)
            await queue.start()
            queue.enqueue(DeliveryTask(3))
            await queue.drain(timeout=5)
            await queue.stop()

        asyncio.run(runner())
        assert handler.calls == [3, 3, 3]
        assert handler.overlaps == 0

    def test_delayed_task_reported_in_stats(self):
        async def runner():
            queue = DeliveryQueue(_ScriptedHandler(), workers=1)
            await queue.start()
            queue.enqueue(DeliveryTask(1), delay=10)
            stats = queue.stats()
            tracked = queue.is_tracked(1)
            await queue.stop()
            return stats, tracked, queue.is_tracked(1)

        stats, tracked_before, tracked_after = asyncio.run(runner())
        assert stats["delayed"] == 1
        assert stats["workers"] == 1
        assert tracked_before is True
        assert tracked_after is False

    def test_handler_crash_is_not_requeued(self):
        calls = []

        async def crashing(task):
            calls.append(task.message_id)
            raise RuntimeError("boom")

        async def runner():
            queue = DeliveryQueue(crashing, workers=1)
            await queue.start()
            queue.enqueue(DeliveryTask(1))
            drained = await queue.drain(timeout=5)
            # the worker loop survives the crash
            queue.enqueue(DeliveryTask(2))
            await queue.drain(timeout=5)
            await queue.stop()
            return drained

        assert asyncio.run(runner()) is True
        assert calls == [1, 2]

    def test_drain_times_out(self):
        async def runner():
            queue = DeliveryQueue(_ScriptedHandler(), workers=1)
            await queue.start()
            queue.enqueue(DeliveryTask(1), delay=10)
            result = await queue.drain(timeout=0.05)
            await queue.stop()
            return result

        assert asyncio.run(runner()) is False

    def test_running_flag(self):
        async def runner():
            queue = DeliveryQueue(_ScriptedHandler())
            before = queue.running
            await queue.start()
            during = queue.running
            await queue.stop()
            return before, during, queue.running

        assert asyncio.run(runner()) == (False, True, False)
