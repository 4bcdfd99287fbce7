"""
Background runner — periodic jobs owned by the application lifespan.

Each PeriodicTask runs its job once straight away, then every
``interval_seconds`` until stopped. A failing run is logged and the loop
carries on with the next tick.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any

logger = logging.getLogger(__name__)


class PeriodicTask:
    def __init__(
        self,
        name: str,
        interval_seconds: float,
        job: Callable[[], Awaitable[Any]],
        run_immediately: bool = True,
    ):
        self.name = name
        self.interval_seconds = interval_seconds
        self.job = job
        self.run_immediately = run_immediately
        self._task: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def run_once(self) -> Any:
        """Run the job a single time; errors are logged, never raised."""
        try:
            result = await self.job()
        except Exception:
            logger.exception("Background job %s failed", self.name)
            return None
        logger.debug("Background job %s finished: %s", self.name, result)
        return result

    async def _loop(self) -> None:
        if self.run_immediately:
            await self.run_once()
        while True:
            await asyncio.sleep(self.interval_seconds)
            await self.run_once()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._loop(), name=self.name)
        logger.info("Started background job %s (every %ss)", self.name, self.interval_seconds)

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            logger.info("Background job %s cancelled", self.name)
        self._task = None
