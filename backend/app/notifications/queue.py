"""
queue.py — In-process delivery queue with delayed requeue.

    enqueue(task, delay=0) ──▶ [ready asyncio.Queue] ──▶ worker coroutines ──▶ handler(task)
             ▲                                                            │
             └────────── loop.call_later(retry_in) ◀── outcome.retry_in ──┘

Guarantees:
    • a message id is tracked from enqueue until its handler returns, so
      the same message is never queued twice nor handled by two workers
    • retries use the event loop's timer heap (fixed delay per outcome)
    • a handler that raises is logged; the message stays in the database
      in its last persisted state and the recovery sweep picks it up again

There is no ordering guarantee across messages.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Awaitable, Callable, Dict, List, Optional, Set

from backend.app.notifications.models import DeliveryOutcome, DeliveryTask

logger = logging.getLogger(__name__)

Handler = Callable[[DeliveryTask], Awaitable[DeliveryOutcome]]


class DeliveryQueue:
    """
    Usage:
        queue = DeliveryQueue(worker.deliver, workers=2)
        await queue.start()
        queue.enqueue(task)
        ...
        await queue.stop()
    """

    def __init__(self, handler: Handler, *, workers: int = 2, name: str = "default"):
        self._handler = handler
        self._worker_count = max(1, workers)
        self.name = name
        self._ready: Optional[asyncio.Queue[DeliveryTask]] = None
        self._workers: List[asyncio.Task] = []
        self._timers: Dict[int, asyncio.TimerHandle] = {}
        self._tracked: Set[int] = set()
        self._in_flight: Set[int] = set()
        self.processed = 0

    @property
    def running(self) -> bool:
        return bool(self._workers)

    def stats(self) -> Dict[str, int]:
        return {
            "ready": self._ready.qsize() if self._ready is not None else 0,
            "delayed": len(self._timers),
            "in_flight": len(self._in_flight),
            "workers": len(self._workers),
            "processed": self.processed,
        }

    def is_tracked(self, message_id: int) -> bool:
        return message_id in self._tracked

    async def start(self) -> None:
        if self._workers:
            return
        self._ready = asyncio.Queue()
        self._workers = [
            asyncio.create_task(self._run(i), name=f"delivery-{self.name}-{i}")
            for i in range(self._worker_count)
        ]
        logger.info("Delivery queue '%s' started with %d workers", self.name, self._worker_count)

    async def stop(self) -> None:
        for timer in self._timers.values():
            timer.cancel()
        self._timers.clear()
        for worker in self._workers:
            worker.cancel()
        for worker in self._workers:
            try:
                await worker
            except asyncio.CancelledError:
                pass
        self._workers = []
        self._tracked.clear()
        self._in_flight.clear()
        logger.info("Delivery queue '%s' stopped", self.name)

    def enqueue(self, task: DeliveryTask, delay: float = 0.0) -> bool:
        """Schedule a task; returns False if the message is already tracked."""
        if self._ready is None:
            raise RuntimeError(f"Delivery queue '{self.name}' is not started")
        if task.message_id in self._tracked:
            logger.debug("Message %s already queued; ignoring", task.message_id)
            return False

        self._tracked.add(task.message_id)
        if delay > 0:
            loop = asyncio.get_running_loop()
            self._timers[task.message_id] = loop.call_later(delay, self._release, task)
        else:
            self._ready.put_nowait(task)
        return True

    def _release(self, task: DeliveryTask) -> None:
        self._timers.pop(task.message_id, None)
        if self._ready is not None:
            self._ready.put_nowait(task)

    async def _run(self, index: int) -> None:
        assert self._ready is not None
        while True:
            task = await self._ready.get()
            self._in_flight.add(task.message_id)
            outcome: Optional[DeliveryOutcome] = None
            try:
                outcome = await self._handler(task)
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception(
                    "Delivery handler crashed for message %s", task.message_id,
                    extra={"message_id": task.message_id, "outcome": "crashed"},
                )
            finally:
                self._in_flight.discard(task.message_id)
                self._tracked.discard(task.message_id)
                self._ready.task_done()
                self.processed += 1

            if outcome is not None and outcome.retry_in is not None:
                logger.info(
                    "Requeueing message %s in %.1fs", task.message_id, outcome.retry_in,
                    extra={"message_id": task.message_id, "outcome": "requeued"},
                )
                self.enqueue(task.after(outcome.attempts), delay=outcome.retry_in)

    async def drain(self, timeout: float = 30.0) -> bool:
        """Wait until nothing is ready, delayed or in flight."""
        deadline = time.monotonic() + timeout
        while self._tracked:
            if time.monotonic() >= deadline:
                return False
            await asyncio.sleep(0.01)
        return True
