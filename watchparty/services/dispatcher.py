"""
Per-room sequential event dispatch.

Each room gets one ordered inbound channel. Work submitted for a room runs
to completion before the next item for that room starts, so the relay never
interleaves two events of the same room.
"""

import asyncio
import logging
from typing import Any, Awaitable, Dict, Tuple

logger = logging.getLogger("watchparty.services.dispatcher")


class RoomDispatcher:
    """Runs queued work strictly in order, one worker per active room."""

    def __init__(self):
        self._queues: Dict[str, asyncio.Queue] = {}
        self._workers: Dict[str, asyncio.Task] = {}

    async def submit(self, room_id: str, work: Awaitable[Any]) -> Any:
        """Queue work for a room and wait for its result."""
        future = asyncio.get_running_loop().create_future()
        queue = self._queues.get(room_id)
        if queue is None:
            queue = self._queues[room_id] = asyncio.Queue()
        queue.put_nowait((work, future))

        if room_id not in self._workers:
            self._workers[room_id] = asyncio.create_task(self._run(room_id, queue))

        return await future

    async def _run(self, room_id: str, queue: asyncio.Queue) -> None:
        try:
            while not queue.empty():
                item: Tuple[Awaitable[Any], asyncio.Future] = queue.get_nowait()
                work, future = item
                try:
                    result = await work
                except asyncio.CancelledError:
                    future.cancel()
                    raise
                except Exception as e:
                    if not future.done():
                        future.set_exception(e)
                else:
                    if not future.done():
                        future.set_result(result)
                finally:
                    queue.task_done()
        finally:
            # Idle rooms keep no worker or queue around
            self._workers.pop(room_id, None)
            if self._queues.get(room_id) is queue and queue.empty():
                del self._queues[room_id]

    @property
    def active_rooms(self) -> int:
        return len(self._workers)

    async def shutdown(self) -> None:
        """Cancel all workers and fail any work still queued."""
        workers = list(self._workers.values())
        for task in workers:
            task.cancel()
        await asyncio.gather(*workers, return_exceptions=True)

        for queue in self._queues.values():
            while not queue.empty():
                work, future = queue.get_nowait()
                if hasattr(work, 'close'):
                    work.close()
                if not future.done():
                    future.cancel()
        self._queues.clear()
        self._workers.clear()
        logger.info("🛑 Room dispatcher stopped")
