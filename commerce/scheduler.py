import asyncio
import logging
from typing import Awaitable, Callable, List, Optional

logger = logging.getLogger("commerce-service")


class PeriodicTask:
    """Run ``job`` every ``interval`` seconds on the event loop.

    A failing run is logged and the loop keeps going.
    """

    def __init__(self, name: str, job: Callable[[], Awaitable[object]], interval: float,
                 run_at_start: bool = False):
        self.name = name
        self.job = job
        self.interval = interval
        self.run_at_start = run_at_start
        self._task: Optional[asyncio.Task] = None

    async def run_once(self):
        try:
            return await self.job()
        except Exception:
            logger.error(f"Background job {self.name} failed", extra={"event": self.name}, exc_info=True)
            return None

    async def _loop(self):
        if self.run_at_start:
            await self.run_once()
        while True:
            await asyncio.sleep(self.interval)
            await self.run_once()

    def start(self):
        if self._task is None:
            self._task = asyncio.create_task(self._loop(), name=self.name)
            logger.info(f"Background job {self.name} scheduled every {self.interval}s")

    async def stop(self):
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None


class Scheduler:
    def __init__(self, tasks: Optional[List[PeriodicTask]] = None):
        self.tasks = tasks or []

    def add(self, task: PeriodicTask):
        self.tasks.append(task)

    def start(self):
        for task in self.tasks:
            task.start()

    async def stop(self):
        for task in self.tasks:
            await task.stop()
