import asyncio
import logging
from typing import Any, Coroutine

logger = logging.getLogger(__name__)


class BackgroundTasks:
    """Fire-and-forget tasks that are still tracked.

    Storage writes and UI opens must not hold up the inbound event stream, so
    they run as tasks.  Keeping a reference here stops them from being garbage
    collected mid-flight and lets callers wait for everything to settle.
    """

    def __init__(self):
        self._tasks: set[asyncio.Task] = set()
        # results of tasks finishing while drain() waits
        self._collected: list | None = None

    def __len__(self) -> int:
        return len(self._tasks)

    def spawn(self, coro: Coroutine[Any, Any, Any], *, label: str = "task") -> asyncio.Task:
        task = asyncio.create_task(self._guard(coro, label), name=label)
        self._tasks.add(task)
        task.add_done_callback(self._finished)
        return task

    def _finished(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if self._collected is None or task.cancelled() or task.exception() is not None:
            return
        result = task.result()
        if result is not None:
            self._collected.append(result)

    async def _guard(self, coro, label: str):
        try:
            return await coro
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error("Background %s failed: %s", label, e)
            return None

    async def drain(self) -> list:
        """Wait until no tracked task remains; return the non-None results of
        tasks that finished meanwhile, including tasks spawned while waiting."""
        collected = self._collected = [] if self._collected is None else self._collected
        try:
            while self._tasks:
                await asyncio.gather(*list(self._tasks), return_exceptions=True)
        finally:
            self._collected = None
        return collected

    def cancel_all(self) -> None:
        for task in list(self._tasks):
            task.cancel()
