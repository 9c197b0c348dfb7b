"""Cancellable periodic asyncio task."""

import asyncio
from typing import Awaitable, Callable, Optional

import structlog


logger = structlog.get_logger(__name__)


class PeriodicTask:
    """
    Runs ``func`` every ``interval`` seconds until stopped.

    A failing run is logged and the schedule continues; only ``stop()``
    ends the loop.
    """

    def __init__(self, name: str, interval: float, func: Callable[[], Awaitable[object]]):
        if interval <= 0:
            raise ValueError("interval must be positive")

        self.name = name
        self.interval = interval
        self.func = func
        self.runs = 0
        self.failures = 0
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.get_running_loop().create_task(self._loop(), name=self.name)
        logger.info("Periodic task started", task=self.name, interval=self.interval)

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return

        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.info("Periodic task stopped", task=self.name, runs=self.runs, failures=self.failures)

    async def run_once(self) -> None:
        try:
            await self.func()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.failures += 1
            logger.error("Periodic task run failed", task=self.name, error=str(e), exc_info=True)
        finally:
            self.runs += 1

    async def _loop(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            await self.run_once()
