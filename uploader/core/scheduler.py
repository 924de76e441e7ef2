"""Generation-aware task scheduler.

Every file drop opens a new generation. Work is scheduled with an optional
start delay (used to stagger calls to remote services) and is tagged with
the generation it belongs to, so a fresh drop can cancel everything from
the previous one in one call and late completions can be recognised as
stale.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any

logger = logging.getLogger(__name__)


class TaskScheduler:
    """Schedules delayed coroutines and cancels them per generation."""

    def __init__(self) -> None:
        self._generation = 0
        self._tasks: dict[int, set[asyncio.Task]] = {}

    @property
    def current_generation(self) -> int:
        return self._generation

    def new_generation(self) -> int:
        """Start a new generation and return its id."""
        self._generation += 1
        logger.debug(f"Scheduler generation -> {self._generation}")
        return self._generation

    def is_current(self, generation: int) -> bool:
        return generation == self._generation

    def schedule(
        self,
        task: Callable[[], Awaitable[Any]],
        delay: float = 0.0,
        generation: int | None = None,
        name: str | None = None,
    ) -> asyncio.Task:
        """Run `task()` after `delay` seconds as part of `generation`.

        `task` is a coroutine factory; it is not called until the delay
        has elapsed, so cancelling during the delay costs nothing.
        """
        gen = self._generation if generation is None else generation

        async def _runner():
            if delay > 0:
                await asyncio.sleep(delay)
            return await task()

        handle = asyncio.create_task(_runner(), name=name)
        bucket = self._tasks.setdefault(gen, set())
        bucket.add(handle)
        handle.add_done_callback(lambda t, g=gen: self._on_done(t, g))
        return handle

    def _on_done(self, task: asyncio.Task, generation: int) -> None:
        bucket = self._tasks.get(generation)
        if bucket is not None:
            bucket.discard(task)
            if not bucket:
                self._tasks.pop(generation, None)
        if task.cancelled():
            return
        if exc := task.exception():
            logger.error(f"Scheduled task {task.get_name()} failed: {exc}", exc_info=exc)

    def pending(self, generation: int | None = None) -> int:
        """Number of unfinished tasks for a generation (default: current)."""
        gen = self._generation if generation is None else generation
        return len(self._tasks.get(gen, ()))

    def cancel_generation(self, generation: int) -> int:
        """Cancel every unfinished task tagged with `generation`."""
        tasks = list(self._tasks.get(generation, ()))
        for task in tasks:
            task.cancel()
        if tasks:
            logger.info(f"Cancelled {len(tasks)} task(s) from generation {generation}")
        return len(tasks)

    async def wait_idle(self, generation: int | None = None) -> None:
        """Wait until a generation has no unfinished tasks.

        Tasks scheduled while waiting are waited for as well.
        """
        gen = self._generation if generation is None else generation
        while self._tasks.get(gen):
            await asyncio.gather(*list(self._tasks[gen]), return_exceptions=True)
            # let done callbacks run
            await asyncio.sleep(0)

    async def shutdown(self) -> None:
        """Cancel all generations and wait for the tasks to unwind."""
        tasks = [t for bucket in self._tasks.values() for t in bucket]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()
