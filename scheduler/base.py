"""
PeriodicTask — a named background loop inside the FastAPI lifespan.

    task = PeriodicTask("message_scan", dispatcher.process_due_messages, interval_s=60)
    await task.start()
    ...
    await task.stop()

A failing cycle is logged and the loop carries on; stop() cancels the
loop and waits for it to finish.
"""
from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable, Optional

import structlog

logger = structlog.get_logger()


class PeriodicTask:

    def __init__(
        self,
        name: str,
        fn: Callable[[], Awaitable[Any]],
        interval_s: float,
        initial_delay_s: float = 0.0,
    ):
        self.name = name
        self._fn = fn
        self.interval_s = interval_s
        self.initial_delay_s = initial_delay_s
        self._running = False
        self._task: Optional[asyncio.Task] = None
        self.cycles = 0

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Start the loop as a background task."""
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._loop(), name=self.name)
        logger.info("periodic_task_started", task=self.name, interval_s=self.interval_s)

    async def stop(self) -> None:
        """Gracefully stop the loop."""
        self._running = False
        if self._task and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        self._task = None
        logger.info("periodic_task_stopped", task=self.name)

    async def run_once(self) -> Any:
        """Run a single cycle; errors are logged, not raised."""
        try:
            return await self._fn()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error("periodic_task_cycle_error", task=self.name, error=str(e), exc_info=True)
            return None
        finally:
            self.cycles += 1

    async def _loop(self) -> None:
        if self.initial_delay_s > 0:
            await asyncio.sleep(self.initial_delay_s)
        while self._running:
            await self.run_once()
            await asyncio.sleep(self.interval_s)
