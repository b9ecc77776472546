from __future__ import annotations

import asyncio
import logging
from typing import Callable, Optional

logger = logging.getLogger(__name__)


class RegenerationScheduler:
    """
    A single repeating timer. `tick` is synchronous, so ticks never overlap;
    anything slow it triggers (persistence) must be spawned, not awaited.
    """

    def __init__(self, interval_s: float, tick: Callable[[], None]) -> None:
        if interval_s <= 0:
            raise ValueError("interval_s must be > 0")
        self.interval_s = interval_s
        self._tick = tick
        self._task: Optional[asyncio.Task] = None
        self.ticks = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.get_running_loop().create_task(self._run())

    def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        self._task = None

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.interval_s)
            self.ticks += 1
            try:
                self._tick()
            except Exception:
                logger.exception("regeneration tick failed")
