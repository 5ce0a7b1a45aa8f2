from __future__ import annotations

import asyncio
import time
from typing import Any, Callable


def now_ms() -> int:
    return int(time.time() * 1000)


class LoopScheduler:
    """Schedules callbacks on the running asyncio loop.

    Anything exposing ``call_later(delay_s, callback)`` returning a handle with
    ``cancel()`` can stand in for it; tests drive a manual one.
    """

    def __init__(self, loop: asyncio.AbstractEventLoop | None = None) -> None:
        self._loop = loop

    def call_later(self, delay_s: float, callback: Callable[[], Any]) -> asyncio.TimerHandle:
        loop = self._loop or asyncio.get_running_loop()
        return loop.call_later(max(0.0, delay_s), callback)
