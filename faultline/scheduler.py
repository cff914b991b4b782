"""Owned background loop with an idempotent start/stop lifecycle."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable

logger = logging.getLogger(__name__)


class PeriodicTask:
    """Runs ``func`` now and then every ``interval`` seconds until stopped.

    start() and stop() are serialized by a lock, so two concurrent start()
    calls still leave exactly one loop running. A failing tick is logged and
    the loop carries on with the next one.

    Example:
        task = PeriodicTask("detector", detector.detect_errors, interval=30)
        await task.start()
        ...
        await task.stop()

    """

    def __init__(
        self,
        name: str,
        func: Callable[[], Awaitable[Any]],
        interval: float,
    ):
        self.name = name
        self.interval = interval
        self._func = func
        self._task: asyncio.Task | None = None
        self._lock = asyncio.Lock()
        self.ticks = 0

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> bool:
        """Start the loop. Returns False if it was already running."""
        async with self._lock:
            if self.is_running:
                logger.warning("%s is already running", self.name)
                return False
            self._task = asyncio.create_task(self._run(), name=f"faultline-{self.name}")
            logger.info("%s started (interval %.1fs)", self.name, self.interval)
            return True

    async def stop(self) -> bool:
        """Cancel the loop and wait for it to finish. Returns False if not running."""
        async with self._lock:
            task = self._task
            self._task = None
            if task is None or task.done():
                return False
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
            logger.info("%s stopped", self.name)
            return True

    async def _run(self) -> None:
        while True:
            try:
                await self._func()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.exception("%s tick failed: %s", self.name, e)
            self.ticks += 1
            await asyncio.sleep(self.interval)
