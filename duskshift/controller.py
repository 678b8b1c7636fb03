#!/usr/bin/env python3
"""Display controller - the control loop that owns all runtime state.

Every command, timer tick, settings change and fullscreen notification
runs on the asyncio event loop and funnels into this class. A state change
cascades through:

    temperature -> smoothing / instant transition -> gamma -> status

The only suspending operation is the internet sync. Its fetch runs as a
separate task and hands its result to the controller through a queue that
``run()`` consumes, so the commit always happens on the control loop and
always re-checks that sync is still enabled.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable, List, Optional

from .brain import ColorIntensity, TemperatureCurve
from .fullscreen import FullscreenMonitor
from .gamma import GammaApplier
from .geolocation import GeolocationService, SolarInfo
from .settings import GeoInfo, Settings
from .smoother import ValueSmoother
from .timers import AlignedTimer, RepeatingTimer, Scheduler

logger = logging.getLogger(__name__)

# Scheduler task names
TIMER_UPDATE = "temperature_update"
TIMER_POLLING = "gamma_polling"
TIMER_DISABLE_TEMPORARILY = "disable_temporarily"
TIMER_CYCLE_PREVIEW = "cycle_preview"
TIMER_INTERNET_SYNC = "internet_sync"

# Cycle preview: 0.05 simulated hours every 10 ms, 24 simulated hours in total
CYCLE_PREVIEW_INTERVAL = 0.01
CYCLE_PREVIEW_STEP = timedelta(hours=0.05)
CYCLE_PREVIEW_SPAN = timedelta(hours=24)

# Settings whose change invalidates the current temperature
TEMPERATURE_KEYS = frozenset({
    "min_temperature",
    "max_temperature",
    "default_temperature",
    "temperature_epsilon",
    "temperature_switch_duration",
    "sunrise_time",
    "sunset_time",
    "is_temperature_smoothing_enabled",
    "minimum_smoothing_temperature",
    "temperature_smoothing_duration",
})

CAN_START_CYCLE_PREVIEW = "can_start_cycle_preview"


class CycleState(Enum):
    """Classification of the active temperature."""
    DISABLED = "disabled"
    DAY = "day"
    NIGHT = "night"
    TRANSITION = "transition"


@dataclass(frozen=True)
class RuntimeState:
    """Read-only copy of the controller's state."""
    is_enabled: bool
    is_blocked: bool
    is_preview_mode_enabled: bool
    temperature: int
    preview_temperature: int
    time: datetime
    preview_time: datetime
    cycle_state: CycleState
    status_text: str


@dataclass(frozen=True)
class SyncResult:
    """Outcome of a successful internet sync fetch."""
    location: GeoInfo
    solar: SolarInfo


def classify_temperature(value: int, min_temperature: int, max_temperature: int) -> CycleState:
    """Day at or above max, night at or below min, transition in between."""
    if value >= max_temperature:
        return CycleState.DAY
    if value <= min_temperature:
        return CycleState.NIGHT
    return CycleState.TRANSITION


class DisplayController:
    """Track time of day and keep the display temperature in step with it."""

    def __init__(
        self,
        settings: Settings,
        gamma: GammaApplier,
        fullscreen: FullscreenMonitor,
        geolocation: GeolocationService,
        curve: Optional[TemperatureCurve] = None,
        smoother: Optional[ValueSmoother] = None,
        clock: Callable[[], datetime] = datetime.now,
        intensity_converter: Callable[[int], ColorIntensity] = ColorIntensity.from_temperature,
    ) -> None:
        self.settings = settings
        self.gamma = gamma
        self.fullscreen = fullscreen
        self.geolocation = geolocation
        self.curve = curve or TemperatureCurve(settings)
        self.smoother = smoother or ValueSmoother()
        self.intensity_converter = intensity_converter
        self._clock = clock

        self.scheduler = Scheduler()
        self.scheduler.add(TIMER_UPDATE, AlignedTimer(
            self.update_temperature, settings.temperature_update_interval, clock=clock))
        self.scheduler.add(TIMER_POLLING, RepeatingTimer(
            self.update_gamma, settings.gamma_polling_interval))
        self.scheduler.add(TIMER_DISABLE_TEMPORARILY, RepeatingTimer(
            self._end_temporary_disable))
        self.scheduler.add(TIMER_CYCLE_PREVIEW, RepeatingTimer(
            self._cycle_preview_tick, CYCLE_PREVIEW_INTERVAL))
        self.scheduler.add(TIMER_INTERNET_SYNC, AlignedTimer(
            self.internet_sync, settings.internet_sync_interval, clock=clock))

        # Runtime state
        now = clock()
        self._is_enabled = False
        self._is_blocked = False
        self._is_preview_mode_enabled = False
        self._temperature = settings.default_temperature
        self._preview_temperature = settings.default_temperature
        self._time = now
        self._preview_time = now
        self._cycle_state = CycleState.DISABLED
        self._status_text = ""

        self._listeners: List[Callable[[str, Any], None]] = []
        self._sync_results: asyncio.Queue = asyncio.Queue()
        self._sync_task: Optional[asyncio.Task] = None
        self._is_started = False
        self._is_shut_down = False

        self.settings.subscribe(self._on_settings_changed)
        self.fullscreen.add_listener(self.on_fullscreen_state_changed)

        self.update_status()

    # ------------------------------------------------------------------
    # Read access
    # ------------------------------------------------------------------
    @property
    def is_enabled(self) -> bool:
        return self._is_enabled

    @property
    def is_blocked(self) -> bool:
        return self._is_blocked

    @property
    def is_preview_mode_enabled(self) -> bool:
        return self._is_preview_mode_enabled

    @property
    def temperature(self) -> int:
        return self._temperature

    @property
    def preview_temperature(self) -> int:
        return self._preview_temperature

    @property
    def time(self) -> datetime:
        return self._time

    @property
    def preview_time(self) -> datetime:
        return self._preview_time

    @property
    def cycle_state(self) -> CycleState:
        return self._cycle_state

    @property
    def status_text(self) -> str:
        return self._status_text

    @property
    def can_start_cycle_preview(self) -> bool:
        return not self.scheduler.is_enabled(TIMER_CYCLE_PREVIEW)

    def snapshot(self) -> RuntimeState:
        return RuntimeState(
            is_enabled=self._is_enabled,
            is_blocked=self._is_blocked,
            is_preview_mode_enabled=self._is_preview_mode_enabled,
            temperature=self._temperature,
            preview_temperature=self._preview_temperature,
            time=self._time,
            preview_time=self._preview_time,
            cycle_state=self._cycle_state,
            status_text=self._status_text,
        )

    # ------------------------------------------------------------------
    # Change notification
    # ------------------------------------------------------------------
    def add_listener(self, callback: Callable[[str, Any], None]) -> None:
        """Register ``callback(field_name, value)`` for state changes."""
        if callback not in self._listeners:
            self._listeners.append(callback)

    def remove_listener(self, callback: Callable[[str, Any], None]) -> None:
        if callback in self._listeners:
            self._listeners.remove(callback)

    def _notify(self, name: str, value: Any) -> None:
        for callback in list(self._listeners):
            try:
                callback(name, value)
            except Exception as e:
                logger.error(f"Error in state listener for '{name}': {e}")

    def _set(self, name: str, value: Any) -> bool:
        """Assign a state field; notify and return True only if it changed."""
        attr = "_" + name
        if getattr(self, attr) == value:
            return False
        setattr(self, attr, value)
        self._notify(name, value)
        return True

    # ------------------------------------------------------------------
    # Cascading setters
    # ------------------------------------------------------------------
    def _set_temperature(self, value: int) -> None:
        if not self._set("temperature", value):
            return
        self.update_gamma()
        self.update_status()

    def _set_preview_temperature(self, value: int) -> None:
        if not self._set("preview_temperature", value):
            return
        if not self._is_preview_mode_enabled:
            return
        self.update_gamma()
        self.update_status()

    def _set_time(self, value: datetime) -> None:
        if self._set("time", value):
            self.update_status()

    def _set_preview_time(self, value: datetime) -> None:
        if self._set("preview_time", value):
            self.update_status()

    def _set_blocked(self, value: bool) -> None:
        if not self._set("is_blocked", value):
            return

        self.scheduler.set_enabled(TIMER_POLLING, self._should_poll())

        self.update_temperature()
        self.update_gamma()
        self.update_status()

    def _should_poll(self) -> bool:
        return self._is_enabled and not self._is_blocked and self.settings.is_gamma_polling_enabled

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------
    def set_enabled(self, value: bool) -> bool:
        """Turn the controller on or off. Returns False if nothing changed."""
        if not self._set("is_enabled", value):
            return False
        if value:
            self.scheduler.set_enabled(TIMER_DISABLE_TEMPORARILY, False)
        if value and not self._is_preview_mode_enabled:
            self.update_temperature()

        self.scheduler.set_enabled(TIMER_UPDATE, value)
        self.scheduler.set_enabled(TIMER_POLLING, self._should_poll())

        self.update_temperature()
        self.update_gamma()
        self.update_status()
        return True

    def toggle_enabled(self) -> None:
        self.set_enabled(not self._is_enabled)

    def set_preview_mode(self, value: bool) -> bool:
        if not self._set("is_preview_mode_enabled", value):
            return False
        self.update_gamma()
        self.update_status()
        return True

    def set_preview_temperature(self, value: int) -> bool:
        """Set the static preview temperature; ignored outside preview mode."""
        if not self._is_preview_mode_enabled:
            return False
        if value == self._preview_temperature:
            return False
        self._set_preview_temperature(value)
        return True

    def disable_temporarily(self, seconds: float) -> None:
        """Turn off now and back on after ``seconds``; a later call replaces the timer."""
        if seconds <= 0:
            raise ValueError(f"Disable duration must be positive, got {seconds}")
        self.scheduler.restart(TIMER_DISABLE_TEMPORARILY, seconds)
        self.set_enabled(False)
        logger.info(f"Disabled temporarily for {seconds}s")

    def _end_temporary_disable(self) -> None:
        self.scheduler.set_enabled(TIMER_DISABLE_TEMPORARILY, False)
        self.set_enabled(True)

    def start_cycle_preview(self) -> bool:
        """Start the accelerated 24-hour preview. Returns False if already running."""
        if not self.can_start_cycle_preview:
            return False

        self._set_preview_time(self._time)
        self.scheduler.set_enabled(TIMER_CYCLE_PREVIEW, True)
        self._notify(CAN_START_CYCLE_PREVIEW, False)

        logger.debug("Started cycle preview")
        return True

    def restore_original(self) -> None:
        self.gamma.restore_original()

    def restore_default(self) -> None:
        self.gamma.restore_default()

    def on_fullscreen_state_changed(self) -> None:
        if self._is_shut_down:
            return
        self._set_blocked(
            self.settings.is_fullscreen_blocking and self.fullscreen.is_foreground_fullscreen
        )
        logger.debug(f"Updated block status (to {self._is_blocked})")

    # ------------------------------------------------------------------
    # Recomputation
    # ------------------------------------------------------------------
    def _is_significant(self, current: int, new: int) -> bool:
        """Small changes are skipped unless they land exactly on a bound."""
        s = self.settings
        if new in (s.min_temperature, s.max_temperature):
            return True
        return abs(current - new) >= s.temperature_epsilon

    def update_temperature(self) -> None:
        self._set_time(self._clock())
        s = self.settings
        current = self._temperature
        if self._is_enabled and not self._is_blocked:
            new = self.curve.temperature_at(self._time)
        else:
            new = s.default_temperature
        diff = abs(current - new)

        if not self._is_significant(current, new):
            return

        if s.is_temperature_smoothing_enabled and diff >= s.minimum_smoothing_temperature:
            self.smoother.set(
                current, new,
                lambda value: self._set_temperature(int(round(value))),
                s.temperature_smoothing_duration,
            )
            logger.debug(f"Started smooth temperature transition (to {new})")
        else:
            self.smoother.stop()
            self._set_temperature(new)
            logger.debug(f"Updated temperature (to {self._temperature})")

    def update_gamma(self) -> None:
        temp = self._preview_temperature if self._is_preview_mode_enabled else self._temperature
        intensity = self.intensity_converter(temp)
        self.gamma.apply_linear(intensity)

        logger.debug(f"Set gamma (intensity to {intensity})")

    def update_status(self) -> None:
        s = self.settings
        cycle_active = self.scheduler.is_enabled(TIMER_CYCLE_PREVIEW)

        if self._is_preview_mode_enabled and not cycle_active:
            state = CycleState.DISABLED
            text = f"Temp: {self._preview_temperature}K   (preview)"
        elif self._is_preview_mode_enabled:
            state = classify_temperature(self._preview_temperature, s.min_temperature, s.max_temperature)
            text = f"Temp: {self._preview_temperature}K   Time: {self._preview_time:%H:%M}   (preview)"
        elif not self._is_enabled:
            state = CycleState.DISABLED
            text = "duskshift is off"
        elif self._is_blocked:
            state = CycleState.DISABLED
            text = "duskshift is blocked"
        else:
            state = classify_temperature(self._temperature, s.min_temperature, s.max_temperature)
            text = f"Temp: {self._temperature}K   Time: {self._time:%H:%M}"

        self._set("cycle_state", state)
        self._set("status_text", text)

    def update_configuration(self) -> None:
        s = self.settings
        self.fullscreen.use_event_hooks = s.is_fullscreen_blocking

        self.scheduler.set_interval(TIMER_UPDATE, s.temperature_update_interval)
        self.scheduler.set_interval(TIMER_POLLING, s.gamma_polling_interval)
        self.scheduler.set_interval(TIMER_INTERNET_SYNC, s.internet_sync_interval)

        self.scheduler.set_enabled(TIMER_POLLING, self._should_poll())
        self.scheduler.set_enabled(TIMER_INTERNET_SYNC, s.is_internet_sync_enabled)

        logger.debug("Updated configuration")

    def _on_settings_changed(self, name: str) -> None:
        if not self._is_started or self._is_shut_down:
            return

        self.update_configuration()

        if name == "is_fullscreen_blocking":
            self.on_fullscreen_state_changed()

        if name in TEMPERATURE_KEYS:
            self.update_temperature()
            # Bounds feed the cycle state even when the temperature holds
            self.update_status()

        if name == "is_internet_sync_enabled" and self.settings.is_internet_sync_enabled:
            self.internet_sync()

    # ------------------------------------------------------------------
    # Cycle preview
    # ------------------------------------------------------------------
    def _cycle_preview_tick(self) -> None:
        self._set_preview_time(self._preview_time + CYCLE_PREVIEW_STEP)
        current = self._preview_temperature
        new = self.curve.temperature_at(self._preview_time)

        if self._is_significant(current, new):
            self._set_preview_temperature(new)
            self.set_preview_mode(True)

        if self._preview_time - self._time >= CYCLE_PREVIEW_SPAN:
            self.scheduler.set_enabled(TIMER_CYCLE_PREVIEW, False)
            self.set_preview_mode(False)
            self.update_status()
            self._notify(CAN_START_CYCLE_PREVIEW, True)
            logger.debug("Finished cycle preview")

    # ------------------------------------------------------------------
    # Internet sync
    # ------------------------------------------------------------------
    def internet_sync(self) -> None:
        """Start a background fetch of location and sunrise/sunset times."""
        if self._sync_task is not None and not self._sync_task.done():
            logger.debug("Internet sync already in progress")
            return
        self._sync_task = asyncio.get_running_loop().create_task(self._fetch_sync_result())

    async def _fetch_sync_result(self) -> None:
        logger.debug("Start internet sync")
        try:
            location = await self.geolocation.geolocate()
            if location is None:
                return

            solar = await self.geolocation.get_solar_info(location)
            if solar is None:
                return
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning(f"Internet sync failed: {e}")
            return

        await self._sync_results.put(SyncResult(location, solar))
        logger.debug("End internet sync")

    def commit_sync_result(self, result: SyncResult) -> bool:
        """Store fetched solar times, unless sync was turned off meanwhile."""
        if self._is_shut_down:
            return False
        if not self.settings.is_internet_sync_enabled:
            logger.info("Internet sync was disabled during fetch, discarding result")
            return False

        self.settings.update(
            location=result.location,
            sunrise_time=round(result.solar.sunrise_hour, 4),
            sunset_time=round(result.solar.sunset_hour, 4),
        )
        logger.info(
            f"Solar info updated: sunrise {result.solar.sunrise:%H:%M}, "
            f"sunset {result.solar.sunset:%H:%M}"
        )
        return True

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    def start(self) -> None:
        """Apply configuration, kick off sync and enable. Needs a running loop."""
        if self._is_started:
            return
        self._is_started = True

        self._set_temperature(self.settings.default_temperature)
        self.update_configuration()
        if self.settings.is_internet_sync_enabled:
            self.internet_sync()
        self.set_enabled(True)
        logger.info("Display controller started")

    async def run(self) -> None:
        """Start, then commit sync results on this loop until cancelled."""
        self.start()
        try:
            while True:
                result = await self._sync_results.get()
                try:
                    self.commit_sync_result(result)
                except Exception as e:
                    logger.error(f"Error committing sync result: {e}")
        finally:
            self.shutdown()

    def shutdown(self) -> None:
        """Cancel every timer and background task. Safe to call more than once."""
        if self._is_shut_down:
            return
        self._is_shut_down = True

        self.smoother.stop()
        self.scheduler.shutdown()
        if self._sync_task is not None and not self._sync_task.done():
            self._sync_task.cancel()
        self._sync_task = None

        self.settings.unsubscribe(self._on_settings_changed)
        self.fullscreen.remove_listener(self.on_fullscreen_state_changed)
        self.fullscreen.use_event_hooks = False
        logger.info("Display controller shut down")
