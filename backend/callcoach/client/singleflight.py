import asyncio
from typing import Any, Awaitable, Callable, Dict, Hashable


class SingleFlight:
    """
    At most one in-flight execution per key. Callers arriving while a call is
    running join it instead of starting their own; once it finishes the key is
    free again.
    """

    def __init__(self):
        self._inflight: Dict[Hashable, asyncio.Task] = {}

    def run(self, key: Hashable, factory: Callable[[], Awaitable[Any]]) -> asyncio.Task:
        task = self._inflight.get(key)
        if task is not None and not task.done():
            return task
        task = asyncio.get_running_loop().create_task(factory())
        self._inflight[key] = task
        task.add_done_callback(lambda t, key=key: self._release(key, t))
        return task

    def _release(self, key: Hashable, task: asyncio.Task) -> None:
        if self._inflight.get(key) is task:
            del self._inflight[key]

    def in_flight(self, key: Hashable) -> bool:
        task = self._inflight.get(key)
        return task is not None and not task.done()

    async def wait_all(self) -> None:
        tasks = [t for t in self._inflight.values() if not t.done()]
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
