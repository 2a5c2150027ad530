"""Background loop with a tiered, self-adjusting interval."""

import asyncio
import logging
from typing import Awaitable, Callable

logger = logging.getLogger(__name__)

Check = Callable[[], Awaitable[bool]]


class AdaptiveTicker:
    """Run a check repeatedly, waiting one tier of the interval table between runs.

    The check returns True when it observed a change, which resets the wait
    to the fastest tier. False advances one tier, up to the last entry. A
    check that raises is logged and treated as a change. A single-entry
    table gives a plain fixed-period loop.
    """

    def __init__(self, name: str, intervals: list[float], check: Check):
        if not intervals:
            raise ValueError("At least one interval is required")
        self.name = name
        self.intervals = list(intervals)
        self.check = check
        self.index = 0
        self._stop_event = asyncio.Event()
        self._task: asyncio.Task | None = None

    @property
    def current_interval(self) -> float:
        return self.intervals[self.index]

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def reset(self) -> None:
        self.index = 0

    def advance(self) -> None:
        self.index = min(self.index + 1, len(self.intervals) - 1)

    def start(self, run_immediately: bool = False):
        """Start the loop on the running event loop."""
        if self.running:
            return
        self._stop_event = asyncio.Event()
        self._task = asyncio.create_task(
            self._run(run_immediately), name=f"ticker-{self.name}"
        )
        logger.info("%s started (interval %ss)", self.name, self.current_interval)

    async def stop(self):
        self._stop_event.set()
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("%s stopped", self.name)

    async def tick(self) -> bool:
        """Run the check once and adjust the interval."""
        try:
            changed = await self.check()
        except Exception:
            logger.exception("Error in %s loop", self.name)
            changed = True

        if changed:
            if self.index:
                logger.debug("%s: change seen, interval reset to %ss", self.name, self.intervals[0])
            self.reset()
        else:
            self.advance()
        return changed

    async def _run(self, run_immediately: bool):
        if run_immediately:
            await self.tick()
        while not self._stop_event.is_set():
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.current_interval)
                break
            except asyncio.TimeoutError:
                pass
            await self.tick()
