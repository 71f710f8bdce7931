"""
Bounded background work queue for webhook side effects.

Webhook handlers acknowledge Slack immediately and enqueue the real work
here; a fixed pool of worker tasks drains the queue. The depth limit bounds
how many LLM/Notion/Slack calls a burst of events can put in flight, and a
full queue is reported back to the caller instead of growing without limit.

Failures are caught and logged at this boundary; they never reach the event
loop's unhandled-exception path.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional

logger = logging.getLogger("feedbot.intake.work_queue")


@dataclass
class _WorkItem:
    name: str
    func: Callable[..., Awaitable[Any]]
    args: tuple = ()
    submitted_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class WorkQueue:
    """Fixed worker pool over an asyncio.Queue with a depth limit."""

    def __init__(self, maxsize: int = 100, workers: int = 4):
        self._queue: asyncio.Queue[_WorkItem] = asyncio.Queue(maxsize=maxsize)
        self._workers = max(1, workers)
        self._worker_tasks: List[asyncio.Task] = []
        self._in_progress: Dict[int, str] = {}
        self.completed = 0
        self.failed = 0
        self.rejected = 0

    def submit(self, name: str, func: Callable[..., Awaitable[Any]], *args: Any) -> bool:
        """Enqueue ``func(*args)`` without waiting.

        Returns:
            False if the queue is full (the work was not accepted)
        """
        try:
            self._queue.put_nowait(_WorkItem(name=name, func=func, args=args))
        except asyncio.QueueFull:
            self.rejected += 1
            logger.warning("Work queue full (%d items), rejecting %s", self._queue.qsize(), name)
            return False
        logger.debug("Queued %s (queue_depth=%d)", name, self._queue.qsize())
        return True

    def has_room(self, count: int = 1) -> bool:
        """True if `count` more items would be accepted right now."""
        if self._queue.maxsize <= 0:
            return True
        return self._queue.qsize() + count <= self._queue.maxsize

    @property
    def depth(self) -> int:
        return self._queue.qsize()

    @property
    def running(self) -> bool:
        return any(not t.done() for t in self._worker_tasks)

    def stats(self) -> Dict[str, Any]:
        return {
            "depth": self.depth,
            "maxsize": self._queue.maxsize,
            "workers": self._workers,
            "in_progress": sorted(self._in_progress.values()),
            "completed": self.completed,
            "failed": self.failed,
            "rejected": self.rejected,
        }

    async def worker_loop(self, worker_id: int) -> None:
        """Run queued work items one at a time, forever."""
        while True:
            item = await self._queue.get()
            self._in_progress[worker_id] = item.name
            try:
                await item.func(*item.args)
                self.completed += 1
            except asyncio.CancelledError:
                raise
            except Exception:
                self.failed += 1
                logger.exception("Background task %s failed", item.name)
            finally:
                self._in_progress.pop(worker_id, None)
                self._queue.task_done()

    def start(self) -> None:
        """Spawn the worker tasks. Must be called from a running event loop."""
        if self.running:
            return
        self._worker_tasks = [
            asyncio.create_task(self.worker_loop(i), name=f"feedbot-worker-{i}")
            for i in range(self._workers)
        ]
        logger.info("Work queue started (%d workers, maxsize=%d)", self._workers, self._queue.maxsize)

    async def join(self, timeout: Optional[float] = None) -> None:
        """Wait until every accepted item has finished."""
        if timeout is None:
            await self._queue.join()
        else:
            await asyncio.wait_for(self._queue.join(), timeout)

    async def stop(self) -> None:
        for task in self._worker_tasks:
            task.cancel()
        for task in self._worker_tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._worker_tasks = []
        logger.info("Work queue stopped (%d items left unprocessed)", self._queue.qsize())
