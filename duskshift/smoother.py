#!/usr/bin/env python3
"""Time-based interpolation between two values.

A ValueSmoother runs at most one transition at a time. Each ``set()``
discards whatever trajectory was in flight and starts a new one from the
given start value; there is no blending between transitions.
"""

import asyncio
import logging
import time
from typing import Callable, Optional

logger = logging.getLogger(__name__)

# Seconds between emitted values
DEFAULT_STEP_INTERVAL = 0.02


class ValueSmoother:
    """Emit interpolated values to a callback until the end value is reached."""

    def __init__(
        self,
        step_interval: float = DEFAULT_STEP_INTERVAL,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.step_interval = step_interval
        self._clock = clock
        self._task: Optional[asyncio.Task] = None

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def set(
        self,
        start: float,
        end: float,
        on_step: Callable[[float], None],
        duration: float,
    ) -> None:
        """Start a transition from ``start`` to ``end`` over ``duration`` seconds.

        Must be called from the running event loop.
        """
        self.stop()

        if duration <= 0 or start == end:
            _emit(on_step, end)
            return

        self._task = asyncio.get_running_loop().create_task(
            self._run(start, end, on_step, duration)
        )

    def stop(self) -> None:
        """Cancel the current transition without a final callback."""
        if self._task is not None:
            if not self._task.done():
                self._task.cancel()
            self._task = None

    async def _run(
        self,
        start: float,
        end: float,
        on_step: Callable[[float], None],
        duration: float,
    ) -> None:
        began = self._clock()
        while True:
            await asyncio.sleep(self.step_interval)
            elapsed = self._clock() - began
            if elapsed >= duration:
                break
            _emit(on_step, start + (end - start) * min(elapsed / duration, 1.0))

        _emit(on_step, end)
        if self._task is asyncio.current_task():
            self._task = None


def _emit(on_step: Callable[[float], None], value: float) -> None:
    try:
        on_step(value)
    except Exception as e:
        logger.error(f"Error in smoothing step callback: {e}")
