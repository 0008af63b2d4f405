"""
Background timers for pruning, alert sweeps and health checks.
"""

import asyncio
from typing import Any, Awaitable, Callable, Optional

from shared.clock import Clock, SystemClock
from shared.logging import get_logger


class PeriodicTask:
    """Runs ``func`` every ``interval_seconds`` until stopped.

    A failing run is logged and the loop carries on.
    """

    def __init__(
        self,
        name: str,
        interval_seconds: float,
        func: Callable[[], Awaitable[Any]],
        clock: Optional[Clock] = None,
        run_immediately: bool = False,
    ):
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")
        self.name = name
        self.interval_seconds = interval_seconds
        self.func = func
        self.clock = clock or SystemClock()
        self.run_immediately = run_immediately
        self.logger = get_logger(f"core.scheduler.{name}")

        self.task: Optional[asyncio.Task] = None
        self.running = False
        self.runs = 0
        self.failures = 0
        self.last_result: Any = None

    async def run_once(self) -> Any:
        """Run the job a single time, absorbing errors."""
        self.runs += 1
        try:
            self.last_result = await self.func()
        except Exception as e:
            self.failures += 1
            self.logger.error("Periodic task failed", task=self.name, error=str(e))
            return None
        return self.last_result

    async def start(self):
        if self.running:
            return
        self.running = True
        self.task = asyncio.create_task(self._loop())
        self.logger.info("Periodic task started", task=self.name, interval_seconds=self.interval_seconds)

    async def stop(self):
        self.running = False
        if self.task:
            self.task.cancel()
            try:
                await self.task
            except asyncio.CancelledError:
                pass
            self.task = None
        self.logger.info("Periodic task stopped", task=self.name, runs=self.runs)

    async def _loop(self):
        if self.run_immediately:
            await self.run_once()
        while self.running:
            await self.clock.sleep(self.interval_seconds)
            if not self.running:
                break
            await self.run_once()
