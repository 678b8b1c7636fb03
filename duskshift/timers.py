#!/usr/bin/env python3
"""Timers for the control loop.

Every timer is an asyncio task on the control loop, so callbacks run
serialized with commands and with each other. Callbacks are plain
synchronous functions. A failing callback is logged and the timer keeps
running.

Enable/disable and interval changes take effect for the next scheduled
firing; a callback that is already running always completes.
"""

import asyncio
import logging
from datetime import datetime
from typing import Callable, Dict, Optional

logger = logging.getLogger(__name__)

# Fraction of an interval below which the next boundary counts as already reached
ALIGNMENT_TOLERANCE = 0.01


class RepeatingTimer:
    """Fire a callback every ``interval`` seconds while enabled."""

    def __init__(
        self,
        callback: Callable[[], None],
        interval: float = 1.0,
        name: Optional[str] = None,
    ) -> None:
        self.callback = callback
        self.name = name or getattr(callback, "__name__", "timer")
        self._interval = interval
        self._task: Optional[asyncio.Task] = None

    @property
    def interval(self) -> float:
        return self._interval

    @interval.setter
    def interval(self, value: float) -> None:
        if value <= 0:
            raise ValueError(f"Timer interval must be positive, got {value}")
        self._interval = value

    @property
    def is_enabled(self) -> bool:
        return self._task is not None

    @is_enabled.setter
    def is_enabled(self, value: bool) -> None:
        if value == self.is_enabled:
            return
        if value:
            self._task = asyncio.get_running_loop().create_task(self._run())
            logger.debug(f"Timer '{self.name}' enabled (interval {self._interval}s)")
        else:
            task, self._task = self._task, None
            if not task.done():
                task.cancel()
            logger.debug(f"Timer '{self.name}' disabled")

    def next_delay(self) -> float:
        """Seconds until the next firing."""
        return self._interval

    async def _run(self) -> None:
        me = asyncio.current_task()
        while self._task is me:
            await asyncio.sleep(self.next_delay())
            if self._task is not me:
                break
            self._fire()

    def _fire(self) -> None:
        try:
            self.callback()
        except Exception as e:
            logger.error(f"Error in timer '{self.name}' callback: {e}")


class AlignedTimer(RepeatingTimer):
    """Repeating timer whose firings land on wall-clock interval boundaries.

    Boundaries are counted from local midnight, so a 60s timer fires at the
    top of every minute and a 6h timer at 00:00, 06:00, 12:00 and 18:00,
    regardless of when the process started.
    """

    def __init__(
        self,
        callback: Callable[[], None],
        interval: float = 60.0,
        name: Optional[str] = None,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        super().__init__(callback, interval, name)
        self._clock = clock

    def next_delay(self) -> float:
        now = self._clock()
        midnight = now.replace(hour=0, minute=0, second=0, microsecond=0)
        since_midnight = (now - midnight).total_seconds()
        delay = self._interval - (since_midnight % self._interval)
        # A wake that lands just short of the boundary must not fire twice
        if delay < self._interval * ALIGNMENT_TOLERANCE:
            delay += self._interval
        return delay


class Scheduler:
    """Named timers owned in one place.

    Callers flip declarative flags; the scheduler starts and stops the
    underlying tasks.
    """

    def __init__(self) -> None:
        self._timers: Dict[str, RepeatingTimer] = {}

    def add(self, name: str, timer: RepeatingTimer) -> RepeatingTimer:
        if name in self._timers:
            raise ValueError(f"Timer '{name}' already registered")
        timer.name = name
        self._timers[name] = timer
        return timer

    def get(self, name: str) -> RepeatingTimer:
        return self._timers[name]

    def names(self):
        return list(self._timers)

    def is_enabled(self, name: str) -> bool:
        return self._timers[name].is_enabled

    def set_enabled(self, name: str, enabled: bool) -> None:
        self._timers[name].is_enabled = enabled

    def set_interval(self, name: str, seconds: float) -> None:
        self._timers[name].interval = seconds

    def restart(self, name: str, seconds: Optional[float] = None) -> None:
        """Cancel a timer and arm it again, optionally with a new interval."""
        timer = self._timers[name]
        timer.is_enabled = False
        if seconds is not None:
            timer.interval = seconds
        timer.is_enabled = True

    def shutdown(self) -> None:
        """Cancel every timer. Safe to call more than once."""
        for timer in self._timers.values():
            timer.is_enabled = False
