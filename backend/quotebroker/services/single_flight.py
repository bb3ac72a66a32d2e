"""
Request coalescing for async work keyed by identity or symbol.

The first caller for a key starts the work as a task; callers arriving while
it runs await the same task and observe the same result or exception. The
entry is removed when the task finishes, so the next caller starts fresh.
"""
import asyncio
import logging
from typing import Awaitable, Callable, Dict, Hashable, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class SingleFlight:
    def __init__(self, name: str = "single-flight"):
        self.name = name
        self._in_flight: Dict[Hashable, asyncio.Task] = {}

    def in_flight(self, key: Hashable) -> bool:
        return key in self._in_flight

    async def do(self, key: Hashable, fn: Callable[[], Awaitable[T]]) -> T:
        # No await between lookup and registration, so two coroutines on the
        # same loop can never both start the work.
        task = self._in_flight.get(key)
        if task is None:
            task = asyncio.ensure_future(fn())
            self._in_flight[key] = task
            task.add_done_callback(lambda t, k=key: self._release(k, t))
        else:
            logger.debug(f"{self.name}: joining in-flight call for {key}")

        # Shield so one cancelled waiter does not cancel the shared work
        return await asyncio.shield(task)

    def _release(self, key: Hashable, task: asyncio.Task) -> None:
        if self._in_flight.get(key) is task:
            del self._in_flight[key]
        # Retrieve the exception so an unobserved failure is not reported
        # as "never retrieved" when every waiter was cancelled.
        if not task.cancelled():
            task.exception()

    def __len__(self) -> int:
        return len(self._in_flight)
