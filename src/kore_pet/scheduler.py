"""Per-pet judgment queue.

One worker task per busy pet, fed by a queue of size one: triggers that arrive
while a run is already pending coalesce into it, and a trigger that arrives
during a run buys exactly one follow-up run. Callers never wait on judgment.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable

logger = logging.getLogger(__name__)


class JudgmentScheduler:
    def __init__(self, judge: Callable[[str], Awaitable[Any]]) -> None:
        self._judge = judge
        self._queues: dict[str, asyncio.Queue] = {}
        self._workers: dict[str, asyncio.Task] = {}
        self._loop: asyncio.AbstractEventLoop | None = None
        self._closed = False

    def _bind_loop(self) -> asyncio.AbstractEventLoop:
        loop = asyncio.get_running_loop()
        if loop is not self._loop:
            # Workers from a finished loop are dead; start over on this one.
            self._queues.clear()
            self._workers.clear()
            self._loop = loop
        return loop

    def submit(self, pet_id: str) -> bool:
        """Request a judgment run. Returns False when it coalesced into a pending one."""
        if self._closed:
            raise RuntimeError("scheduler is closed")
        loop = self._bind_loop()
        queue = self._queues.get(pet_id)
        if queue is None:
            queue = self._queues[pet_id] = asyncio.Queue(maxsize=1)
            self._workers[pet_id] = loop.create_task(
                self._work(pet_id, queue), name=f"judge-{pet_id}"
            )
        try:
            queue.put_nowait(pet_id)
        except asyncio.QueueFull:
            logger.debug("pet %s: judgment already pending", pet_id)
            return False
        return True

    async def _work(self, pet_id: str, queue: asyncio.Queue) -> None:
        """Run until the queue is empty, then retire. The next submit starts a new worker."""
        try:
            while True:
                await queue.get()
                try:
                    await self._judge(pet_id)
                except Exception:
                    logger.exception("pet %s: judgment run failed", pet_id)
                finally:
                    queue.task_done()
                if queue.empty():
                    return
        finally:
            if self._queues.get(pet_id) is queue:
                del self._queues[pet_id]
                del self._workers[pet_id]

    @property
    def workers(self) -> int:
        """Live worker tasks. Idle pets have none."""
        return len(self._workers)

    @property
    def pending(self) -> int:
        return sum(q.qsize() for q in self._queues.values())

    async def drain(self) -> None:
        """Wait until every submitted run has finished."""
        if self._loop is not asyncio.get_running_loop():
            return
        await asyncio.gather(*(q.join() for q in list(self._queues.values())))

    async def close(self) -> None:
        """Cancel all workers. Pending runs are dropped."""
        self._closed = True
        workers = list(self._workers.values())
        for task in workers:
            task.cancel()
        if workers and self._loop is asyncio.get_running_loop():
            await asyncio.gather(*workers, return_exceptions=True)
        self._workers.clear()
        self._queues.clear()
