"""
Injectable time source.

Components take a ``Clock`` instead of calling ``time.time``/``asyncio.sleep``
directly so TTLs, sliding windows, retry backoff and alert timestamps can be
driven by a simulated clock in tests (see ``shared.test_helpers.FakeClock``).
"""

import asyncio
import time
from typing import Protocol


class Clock(Protocol):
    """Wall-clock seconds plus a cooperative sleep."""

    def now(self) -> float:
        ...

    async def sleep(self, seconds: float) -> None:
        ...


class SystemClock:
    """Real time."""

    def now(self) -> float:
        return time.time()

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(seconds)
