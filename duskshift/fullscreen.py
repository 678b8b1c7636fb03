#!/usr/bin/env python3
"""Foreground fullscreen detection.

The monitor only watches while ``use_event_hooks`` is on. Listeners are
called on the control loop whenever the fullscreen state flips.
"""

import asyncio
import logging
import re
from typing import Callable, List, Optional

from .process import run_command

logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL = 2.0
XPROP_TIMEOUT = 2.0

_ACTIVE_WINDOW_RE = re.compile(r"window id # (0x[0-9a-fA-F]+)")


class FullscreenMonitor:
    """Base monitor: tracks state and listeners, never reports fullscreen."""

    def __init__(self) -> None:
        self._is_fullscreen = False
        self._use_event_hooks = False
        self._listeners: List[Callable[[], None]] = []

    @property
    def is_foreground_fullscreen(self) -> bool:
        return self._use_event_hooks and self._is_fullscreen

    @property
    def use_event_hooks(self) -> bool:
        return self._use_event_hooks

    @use_event_hooks.setter
    def use_event_hooks(self, value: bool) -> None:
        if value == self._use_event_hooks:
            return
        was_fullscreen = self.is_foreground_fullscreen
        self._use_event_hooks = value
        if value:
            self._start()
        else:
            self._stop()
            self._is_fullscreen = False
        if was_fullscreen != self.is_foreground_fullscreen:
            self._notify()

    def add_listener(self, callback: Callable[[], None]) -> None:
        if callback not in self._listeners:
            self._listeners.append(callback)

    def remove_listener(self, callback: Callable[[], None]) -> None:
        if callback in self._listeners:
            self._listeners.remove(callback)

    def set_fullscreen(self, value: bool) -> None:
        """Record a new fullscreen state and notify listeners on change."""
        if value == self._is_fullscreen:
            return
        self._is_fullscreen = value
        logger.debug(f"Foreground fullscreen changed to {value}")
        if self._use_event_hooks:
            self._notify()

    def _notify(self) -> None:
        for callback in list(self._listeners):
            try:
                callback()
            except Exception as e:
                logger.error(f"Error in fullscreen listener: {e}")

    def _start(self) -> None:
        pass

    def _stop(self) -> None:
        pass


class XpropFullscreenMonitor(FullscreenMonitor):
    """Poll the active X11 window's _NET_WM_STATE through ``xprop``."""

    def __init__(
        self,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        executable: str = "xprop",
        timeout: float = XPROP_TIMEOUT,
    ):
        super().__init__()
        self.poll_interval = poll_interval
        self.timeout = timeout
        self.executable = executable
        self._task: Optional[asyncio.Task] = None

    def _start(self) -> None:
        self._task = asyncio.get_running_loop().create_task(self._poll())
        logger.info("Started fullscreen monitoring")

    def _stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            self._task = None
            logger.info("Stopped fullscreen monitoring")

    async def _poll(self) -> None:
        while True:
            try:
                self.set_fullscreen(await self.query_fullscreen())
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Error polling fullscreen state: {e}")
            await asyncio.sleep(self.poll_interval)

    async def _xprop(self, *args: str) -> Optional[str]:
        return await run_command(
            self.executable, *args, timeout=self.timeout, failure_level=logging.DEBUG
        )

    async def query_fullscreen(self) -> bool:
        """Return True when the active window has the fullscreen state."""
        root = await self._xprop("-root", "_NET_ACTIVE_WINDOW")
        if not root:
            return False
        match = _ACTIVE_WINDOW_RE.search(root)
        if not match or int(match.group(1), 16) == 0:
            return False
        state = await self._xprop("-id", match.group(1), "_NET_WM_STATE")
        return bool(state) and "_NET_WM_STATE_FULLSCREEN" in state
