#!/usr/bin/env python3
"""Test suite for controller.py - the display control loop."""

import asyncio
from datetime import datetime
from unittest.mock import AsyncMock, MagicMock
import pytest

from duskshift.brain import ColorIntensity
from duskshift.controller import (
    CAN_START_CYCLE_PREVIEW,
    TIMER_CYCLE_PREVIEW,
    TIMER_DISABLE_TEMPORARILY,
    TIMER_INTERNET_SYNC,
    TIMER_POLLING,
    TIMER_UPDATE,
    CycleState,
    DisplayController,
    RuntimeState,
    classify_temperature,
)
from duskshift.fullscreen import FullscreenMonitor
from duskshift.gamma import GammaApplier
from duskshift.geolocation import SolarInfo
from duskshift.settings import GeoInfo, Settings
from duskshift.smoother import ValueSmoother

NOON = datetime(2024, 6, 21, 12, 0)


class FakeClock:
    def __init__(self, now=NOON):
        self.now = now

    def __call__(self):
        return self.now


class ControllerTestBase:
    """Builds a controller with mocked collaborators and a fixed clock."""

    settings_overrides = {}

    def setup_method(self):
        values = dict(
            min_temperature=3900,
            max_temperature=6600,
            default_temperature=6600,
            temperature_epsilon=50,
            is_temperature_smoothing_enabled=False,
            is_internet_sync_enabled=False,
            is_gamma_polling_enabled=True,
            is_fullscreen_blocking=False,
            sunrise_time=7.0,
            sunset_time=19.0,
        )
        values.update(self.settings_overrides)
        self.settings = Settings(**values)

        self.curve = MagicMock()
        self.curve.temperature_at.return_value = 5000
        self.gamma = MagicMock(spec=GammaApplier)
        self.fullscreen = FullscreenMonitor()
        self.geolocation = MagicMock()
        self.geolocation.geolocate = AsyncMock(return_value=None)
        self.geolocation.get_solar_info = AsyncMock(return_value=None)
        self.clock = FakeClock()

        self.controller = DisplayController(
            settings=self.settings,
            gamma=self.gamma,
            fullscreen=self.fullscreen,
            geolocation=self.geolocation,
            curve=self.curve,
            smoother=ValueSmoother(step_interval=0.01),
            clock=self.clock,
        )

        self.events = []
        self.controller.add_listener(lambda name, value: self.events.append((name, value)))

    def last_gamma(self):
        return self.gamma.apply_linear.call_args.args[0]

    def timer_enabled(self, name):
        return self.controller.scheduler.is_enabled(name)


class TestStartAndEnable(ControllerTestBase):
    """Test startup and the enable/disable command."""

    def test_initial_state_before_start(self):
        assert self.controller.temperature == 6600
        assert not self.controller.is_enabled
        assert self.controller.cycle_state == CycleState.DISABLED
        assert self.controller.status_text == "duskshift is off"

    def test_settings_change_before_start_is_ignored(self):
        self.settings.update(max_temperature=6500)
        self.curve.temperature_at.assert_not_called()

    @pytest.mark.asyncio
    async def test_start_applies_curve(self):
        self.controller.start()

        assert self.controller.is_enabled
        assert self.controller.temperature == 5000
        assert self.controller.cycle_state == CycleState.TRANSITION
        assert self.controller.status_text == "Temp: 5000K   Time: 12:00"
        assert self.last_gamma() == ColorIntensity.from_temperature(5000)
        assert self.timer_enabled(TIMER_UPDATE)
        assert self.timer_enabled(TIMER_POLLING)
        assert not self.timer_enabled(TIMER_INTERNET_SYNC)
        assert ("is_enabled", True) in self.events
        assert ("temperature", 5000) in self.events
        self.controller.shutdown()

    @pytest.mark.asyncio
    async def test_set_enabled_same_value_is_noop(self):
        self.controller.start()
        self.gamma.reset_mock()
        self.curve.reset_mock()
        self.events.clear()

        assert self.controller.set_enabled(True) is False

        self.gamma.apply_linear.assert_not_called()
        self.curve.temperature_at.assert_not_called()
        assert self.events == []
        assert self.timer_enabled(TIMER_UPDATE)
        self.controller.shutdown()

    @pytest.mark.asyncio
    async def test_disable_reverts_to_default(self):
        self.controller.start()

        assert self.controller.set_enabled(False) is True

        assert self.controller.temperature == 6600
        assert self.controller.cycle_state == CycleState.DISABLED
        assert self.controller.status_text == "duskshift is off"
        assert not self.timer_enabled(TIMER_UPDATE)
        assert not self.timer_enabled(TIMER_POLLING)
        self.controller.shutdown()

    @pytest.mark.asyncio
    async def test_disabled_is_always_disabled_state(self):
        """Even at a day/night bound, off means Disabled."""
        self.curve.temperature_at.return_value = 6600
        self.controller.start()
        self.controller.set_enabled(False)

        assert self.controller.temperature == 6600
        assert self.controller.cycle_state == CycleState.DISABLED
        self.controller.shutdown()

    @pytest.mark.asyncio
    async def test_toggle_enabled(self):
        self.controller.start()

        self.controller.toggle_enabled()
        assert not self.controller.is_enabled

        self.controller.toggle_enabled()
        assert self.controller.is_enabled
        self.controller.shutdown()

    @pytest.mark.asyncio
    async def test_polling_respects_setting(self):
        self.settings.update(is_gamma_polling_enabled=False)
        self.controller.start()

        assert self.timer_enabled(TIMER_UPDATE)
        assert not self.timer_enabled(TIMER_POLLING)
        self.controller.shutdown()


class TestTemperatureUpdate(ControllerTestBase):
    """Test the epsilon rule, bound exactness and smoothing choice."""

    @pytest.mark.asyncio
    async def test_min_bound_applied_below_epsilon(self):
        self.curve.temperature_at.return_value = 3920
        self.controller.start()
        assert self.controller.temperature == 3920

        self.curve.temperature_at.return_value = 3900
        self.controller.update_temperature()

        assert self.controller.temperature == 3900
        assert self.controller.cycle_state == CycleState.NIGHT
        self.controller.shutdown()

    @pytest.mark.asyncio
    async def test_max_bound_applied_below_epsilon(self):
        self.settings.update(default_temperature=6500)
        self.curve.temperature_at.return_value = 6580
        self.controller.start()
        assert self.controller.temperature == 6580

        self.curve.temperature_at.return_value = 6600
        self.controller.update_temperature()

        assert self.controller.temperature == 6600
        assert self.controller.cycle_state == CycleState.DAY
        self.controller.shutdown()

    @pytest.mark.asyncio
    async def test_small_change_suppressed(self):
        self.controller.start()
        self.gamma.reset_mock()

        self.curve.temperature_at.return_value = 5030
        self.controller.update_temperature()
        self.curve.temperature_at.return_value = 4951
        self.controller.update_temperature()

        assert self.controller.temperature == 5000
        self.gamma.apply_linear.assert_not_called()
        self.controller.shutdown()

    @pytest.mark.asyncio
    async def test_change_at_epsilon_applied(self):
        self.controller.start()

        self.curve.temperature_at.return_value = 4950
        self.controller.update_temperature()

        assert self.controller.temperature == 4950
        self.controller.shutdown()

    @pytest.mark.asyncio
    async def test_update_refreshes_time(self):
        self.controller.start()

        self.clock.now = datetime(2024, 6, 21, 12, 30)
        self.controller.update_temperature()

        assert self.controller.time == datetime(2024, 6, 21, 12, 30)
        assert self.controller.status_text == "Temp: 5000K   Time: 12:30"
        self.controller.shutdown()


class TestSmoothing(ControllerTestBase):
    """Test smooth transitions driven by the controller."""

    settings_overrides = dict(
        is_temperature_smoothing_enabled=True,
        minimum_smoothing_temperature=400,
        temperature_smoothing_duration=0.1,
    )

    @pytest.mark.asyncio
    async def test_large_change_is_smoothed(self):
        self.curve.temperature_at.return_value = 4000
        self.controller.start()

        assert self.controller.temperature == 6600

        await asyncio.sleep(0.3)

        assert self.controller.temperature == 4000
        steps = [value for name, value in self.events if name == "temperature"]
        assert len(steps) > 1
        assert steps == sorted(steps, reverse=True)
        assert all(4000 <= v <= 6600 for v in steps)
        self.controller.shutdown()

    @pytest.mark.asyncio
    async def test_small_change_is_instant(self):
        self.curve.temperature_at.return_value = 4000
        self.controller.start()
        await asyncio.sleep(0.3)

        self.curve.temperature_at.return_value = 4200
        self.controller.update_temperature()

        assert self.controller.temperature == 4200
        self.controller.shutdown()


class TestClassification:
    """Test classify_temperature against the bounds."""

    def test_max_is_day(self):
        assert classify_temperature(6600, 3900, 6600) == CycleState.DAY

    def test_above_max_is_day(self):
        assert classify_temperature(6700, 3900, 6600) == CycleState.DAY

    def test_min_is_night(self):
        assert classify_temperature(3900, 3900, 6600) == CycleState.NIGHT

    def test_between_is_transition(self):
        assert classify_temperature(3901, 3900, 6600) == CycleState.TRANSITION
        assert classify_temperature(6599, 3900, 6600) == CycleState.TRANSITION


class TestBlocking(ControllerTestBase):
    """Test fullscreen blocking."""

    settings_overrides = dict(is_fullscreen_blocking=True)

    @pytest.mark.asyncio
    async def test_fullscreen_blocks(self):
        self.controller.start()
        assert self.fullscreen.use_event_hooks

        self.fullscreen.set_fullscreen(True)

        assert self.controller.is_blocked
        assert self.controller.temperature == 6600
        assert self.controller.cycle_state == CycleState.DISABLED
        assert self.controller.status_text == "duskshift is blocked"
        assert not self.timer_enabled(TIMER_POLLING)
        assert self.timer_enabled(TIMER_UPDATE)
        self.controller.shutdown()

    @pytest.mark.asyncio
    async def test_unblock_recomputes(self):
        self.controller.start()
        self.fullscreen.set_fullscreen(True)

        self.fullscreen.set_fullscreen(False)

        assert not self.controller.is_blocked
        assert self.controller.temperature == 5000
        assert self.timer_enabled(TIMER_POLLING)
        self.controller.shutdown()

    @pytest.mark.asyncio
    async def test_turning_blocking_off_unblocks(self):
        self.controller.start()
        self.fullscreen.set_fullscreen(True)

        self.settings.update(is_fullscreen_blocking=False)

        assert not self.controller.is_blocked
        assert not self.fullscreen.use_event_hooks
        assert self.controller.temperature == 5000
        self.controller.shutdown()

    @pytest.mark.asyncio
    async def test_preview_outranks_blocked(self):
        self.controller.start()
        self.fullscreen.set_fullscreen(True)

        self.controller.set_preview_mode(True)

        assert self.controller.is_blocked
        assert self.controller.cycle_state == CycleState.DISABLED
        assert self.controller.status_text == "Temp: 6600K   (preview)"
        self.controller.shutdown()


class TestBlockingDisabled(ControllerTestBase):

    @pytest.mark.asyncio
    async def test_fullscreen_ignored_without_blocking(self):
        self.controller.start()

        self.fullscreen.set_fullscreen(True)
        self.controller.on_fullscreen_state_changed()

        assert not self.controller.is_blocked
        assert self.controller.temperature == 5000
        self.controller.shutdown()


class TestPreviewMode(ControllerTestBase):
    """Test static preview mode."""

    @pytest.mark.asyncio
    async def test_preview_temperature_ignored_outside_preview(self):
        self.controller.start()

        assert self.controller.set_preview_temperature(4000) is False
        assert self.controller.preview_temperature == 6600
        self.controller.shutdown()

    @pytest.mark.asyncio
    async def test_preview_temperature_drives_gamma(self):
        self.controller.start()

        assert self.controller.set_preview_mode(True) is True
        assert self.controller.set_preview_temperature(4000) is True

        assert self.last_gamma() == ColorIntensity.from_temperature(4000)
        assert self.controller.cycle_state == CycleState.DISABLED
        assert self.controller.status_text == "Temp: 4000K   (preview)"
        self.controller.shutdown()

    @pytest.mark.asyncio
    async def test_same_preview_temperature_is_noop(self):
        self.controller.start()
        self.controller.set_preview_mode(True)
        self.controller.set_preview_temperature(4000)
        self.gamma.reset_mock()

        assert self.controller.set_preview_temperature(4000) is False
        self.gamma.apply_linear.assert_not_called()
        self.controller.shutdown()

    @pytest.mark.asyncio
    async def test_leaving_preview_restores_realtime(self):
        self.controller.start()
        self.controller.set_preview_mode(True)
        self.controller.set_preview_temperature(4000)

        self.controller.set_preview_mode(False)

        assert self.last_gamma() == ColorIntensity.from_temperature(5000)
        assert self.controller.status_text == "Temp: 5000K   Time: 12:00"
        assert self.controller.set_preview_mode(False) is False
        self.controller.shutdown()

    @pytest.mark.asyncio
    async def test_preview_mode_leaves_timers_alone(self):
        self.controller.start()

        self.controller.set_preview_mode(True)

        assert self.timer_enabled(TIMER_UPDATE)
        assert self.timer_enabled(TIMER_POLLING)
        self.controller.shutdown()


class TestDisableTemporarily(ControllerTestBase):
    """Test the one-shot re-enable timer."""

    @pytest.mark.asyncio
    async def test_reenables_after_duration(self):
        self.controller.start()

        self.controller.disable_temporarily(0.05)
        assert not self.controller.is_enabled

        await asyncio.sleep(0.15)

        assert self.controller.is_enabled
        assert not self.timer_enabled(TIMER_DISABLE_TEMPORARILY)
        self.controller.shutdown()

    @pytest.mark.asyncio
    async def test_second_call_replaces_pending_timer(self):
        self.controller.start()

        self.controller.disable_temporarily(0.15)
        await asyncio.sleep(0.05)
        self.controller.disable_temporarily(0.6)

        await asyncio.sleep(0.3)
        assert not self.controller.is_enabled

        await asyncio.sleep(0.5)
        assert self.controller.is_enabled
        self.controller.shutdown()

    @pytest.mark.asyncio
    async def test_manual_enable_cancels_pending(self):
        self.controller.start()
        self.controller.disable_temporarily(0.05)

        self.controller.set_enabled(True)

        assert not self.timer_enabled(TIMER_DISABLE_TEMPORARILY)
        self.controller.shutdown()

    @pytest.mark.asyncio
    async def test_non_positive_duration_rejected(self):
        self.controller.start()
        with pytest.raises(ValueError):
            self.controller.disable_temporarily(0)
        assert self.controller.is_enabled
        self.controller.shutdown()


def day_night_curve(moment: datetime) -> int:
    if 8 <= moment.hour < 18:
        return 6600
    if moment.hour < 6 or moment.hour >= 20:
        return 3900
    return 5000


class TestCyclePreview(ControllerTestBase):
    """Test the accelerated 24-hour simulation."""

    # 24 simulated hours in 0.05h steps
    TICKS = 480

    def setup_method(self):
        super().setup_method()
        self.curve.temperature_at.side_effect = day_night_curve

    @pytest.mark.asyncio
    async def test_start_guarded_while_running(self):
        self.controller.start()

        assert self.controller.start_cycle_preview() is True
        assert not self.controller.can_start_cycle_preview
        assert self.controller.start_cycle_preview() is False
        assert (CAN_START_CYCLE_PREVIEW, False) in self.events
        self.controller.shutdown()

    @pytest.mark.asyncio
    async def test_first_tick_enters_preview(self):
        self.controller.start()
        self.controller.start_cycle_preview()

        self.controller._cycle_preview_tick()

        assert self.controller.is_preview_mode_enabled
        assert self.controller.preview_time == datetime(2024, 6, 21, 12, 3)
        assert self.controller.cycle_state == CycleState.DAY
        assert self.controller.status_text == "Temp: 6600K   Time: 12:03   (preview)"
        self.controller.shutdown()

    @pytest.mark.asyncio
    async def test_runs_full_day_then_stops(self):
        self.controller.start()
        self.controller.start_cycle_preview()

        for i in range(self.TICKS):
            self.controller._cycle_preview_tick()
            if i == self.TICKS - 2:
                assert self.controller.is_preview_mode_enabled
                assert self.timer_enabled(TIMER_CYCLE_PREVIEW)

        assert not self.controller.is_preview_mode_enabled
        assert not self.timer_enabled(TIMER_CYCLE_PREVIEW)
        assert self.controller.can_start_cycle_preview
        assert (CAN_START_CYCLE_PREVIEW, True) in self.events
        assert self.controller.status_text == "Temp: 6600K   Time: 12:00"

        states = {value for name, value in self.events if name == "cycle_state"}
        assert {CycleState.DAY, CycleState.NIGHT, CycleState.TRANSITION} <= states
        self.controller.shutdown()

    @pytest.mark.asyncio
    async def test_preview_does_not_touch_realtime_temperature(self):
        self.controller.start()
        self.controller.start_cycle_preview()

        for _ in range(200):
            self.controller._cycle_preview_tick()

        assert self.controller.temperature == 6600
        assert self.controller.preview_temperature == 3900
        self.controller.shutdown()

    @pytest.mark.asyncio
    async def test_timer_drives_preview(self):
        self.controller.start()
        self.controller.start_cycle_preview()

        await asyncio.sleep(0.1)

        assert self.controller.preview_time > self.controller.time
        assert self.controller.is_preview_mode_enabled
        self.controller.shutdown()


class TestConfigurationChanges(ControllerTestBase):
    """Test reactions to individual settings."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("key,value", [
        ("min_temperature", 3800),
        ("max_temperature", 6500),
        ("default_temperature", 6500),
        ("temperature_epsilon", 10),
        ("temperature_switch_duration", 1.0),
        ("sunrise_time", 6.0),
        ("sunset_time", 20.0),
        ("is_temperature_smoothing_enabled", True),
        ("minimum_smoothing_temperature", 300),
        ("temperature_smoothing_duration", 1.0),
    ])
    async def test_temperature_keys_recompute(self, key, value):
        self.controller.start()
        self.curve.reset_mock()

        self.settings.update(**{key: value})

        self.curve.temperature_at.assert_called()
        self.controller.shutdown()

    @pytest.mark.asyncio
    async def test_bound_change_reclassifies_held_temperature(self):
        """Lowering max to the current temperature makes it day."""
        self.controller.start()
        assert self.controller.cycle_state == CycleState.TRANSITION

        self.settings.update(max_temperature=5000)

        assert self.controller.temperature == 5000
        assert self.controller.cycle_state == CycleState.DAY

        self.settings.update(max_temperature=6600, min_temperature=5000)

        assert self.controller.cycle_state == CycleState.NIGHT
        self.controller.shutdown()

    @pytest.mark.asyncio
    async def test_interval_changes_reach_timers(self):
        self.controller.start()

        self.settings.update(gamma_polling_interval=10.0, temperature_update_interval=120.0)

        assert self.controller.scheduler.get(TIMER_POLLING).interval == 10.0
        assert self.controller.scheduler.get(TIMER_UPDATE).interval == 120.0
        self.controller.shutdown()

    @pytest.mark.asyncio
    async def test_polling_toggle(self):
        self.controller.start()

        self.settings.update(is_gamma_polling_enabled=False)

        assert not self.timer_enabled(TIMER_POLLING)
        self.controller.shutdown()

    @pytest.mark.asyncio
    async def test_other_keys_do_not_recompute(self):
        self.controller.start()
        self.curve.reset_mock()

        self.settings.update(gamma_polling_interval=10.0)

        self.curve.temperature_at.assert_not_called()
        self.controller.shutdown()

    @pytest.mark.asyncio
    async def test_enabling_sync_triggers_fetch(self):
        self.controller.start()
        self.geolocation.geolocate.assert_not_awaited()

        self.settings.update(is_internet_sync_enabled=True)
        await asyncio.sleep(0.01)

        self.geolocation.geolocate.assert_awaited_once()
        assert self.timer_enabled(TIMER_INTERNET_SYNC)
        self.controller.shutdown()


SOLAR = SolarInfo(
    sunrise=datetime(2024, 6, 21, 4, 43),
    sunset=datetime(2024, 6, 21, 21, 21),
)
LONDON = GeoInfo(latitude=51.5074, longitude=-0.1278, timezone="Europe/London")


class TestInternetSync(ControllerTestBase):
    """Test fetching and committing solar times."""

    settings_overrides = dict(is_internet_sync_enabled=True)

    async def _run_briefly(self, delay=0.05):
        task = asyncio.create_task(self.controller.run())
        await asyncio.sleep(delay)
        return task

    async def _stop(self, task):
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

    @pytest.mark.asyncio
    async def test_successful_sync_commits(self):
        self.geolocation.geolocate.return_value = LONDON
        self.geolocation.get_solar_info.return_value = SOLAR

        task = await self._run_briefly()

        assert self.settings.sunrise_time == pytest.approx(4.7167, abs=1e-3)
        assert self.settings.sunset_time == pytest.approx(21.35, abs=1e-3)
        assert self.settings.location == LONDON
        self.geolocation.get_solar_info.assert_awaited_once_with(LONDON)
        await self._stop(task)

    @pytest.mark.asyncio
    async def test_geolocation_failure_skips_cycle(self):
        task = await self._run_briefly()

        self.geolocation.geolocate.assert_awaited_once()
        self.geolocation.get_solar_info.assert_not_awaited()
        assert self.settings.sunrise_time == 7.0
        await self._stop(task)

    @pytest.mark.asyncio
    async def test_solar_failure_skips_cycle(self):
        self.geolocation.geolocate.return_value = LONDON

        task = await self._run_briefly()

        assert self.settings.sunrise_time == 7.0
        assert self.settings.location is None
        await self._stop(task)

    @pytest.mark.asyncio
    async def test_fetch_exception_is_contained(self):
        self.geolocation.geolocate.side_effect = RuntimeError("dns exploded")

        task = await self._run_briefly()

        assert not task.done()
        assert self.controller.is_enabled
        await self._stop(task)

    @pytest.mark.asyncio
    async def test_sync_disabled_during_fetch_is_discarded(self):
        release = asyncio.Event()

        async def slow_geolocate():
            await release.wait()
            return LONDON

        self.geolocation.geolocate.side_effect = slow_geolocate
        self.geolocation.get_solar_info.return_value = SOLAR

        task = await self._run_briefly(0.01)
        self.settings.update(is_internet_sync_enabled=False)
        release.set()
        await asyncio.sleep(0.05)

        self.geolocation.get_solar_info.assert_awaited_once()
        assert self.settings.sunrise_time == 7.0
        assert self.settings.sunset_time == 19.0
        assert self.settings.location is None
        await self._stop(task)

    @pytest.mark.asyncio
    async def test_only_one_fetch_in_flight(self):
        release = asyncio.Event()

        async def slow_geolocate():
            await release.wait()
            return None

        self.geolocation.geolocate.side_effect = slow_geolocate

        task = await self._run_briefly(0.01)
        self.controller.internet_sync()
        self.controller.internet_sync()
        release.set()
        await asyncio.sleep(0.01)

        assert self.geolocation.geolocate.await_count == 1
        await self._stop(task)


class TestLifecycle(ControllerTestBase):
    """Test shutdown, snapshots and pass-through commands."""

    @pytest.mark.asyncio
    async def test_shutdown_cancels_everything(self):
        self.controller.start()
        self.controller.start_cycle_preview()

        self.controller.shutdown()
        self.controller.shutdown()

        for name in self.controller.scheduler.names():
            assert not self.timer_enabled(name)
        assert not self.fullscreen.use_event_hooks

    @pytest.mark.asyncio
    async def test_settings_ignored_after_shutdown(self):
        self.controller.start()
        self.controller.shutdown()
        self.curve.reset_mock()

        self.settings.update(sunrise_time=6.0)

        self.curve.temperature_at.assert_not_called()

    @pytest.mark.asyncio
    async def test_run_shuts_down_on_cancel(self):
        task = asyncio.create_task(self.controller.run())
        await asyncio.sleep(0.01)
        assert self.controller.is_enabled

        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert not self.timer_enabled(TIMER_UPDATE)

    @pytest.mark.asyncio
    async def test_snapshot(self):
        self.controller.start()

        snap = self.controller.snapshot()

        assert isinstance(snap, RuntimeState)
        assert snap.temperature == 5000
        assert snap.is_enabled
        assert not snap.is_blocked
        assert snap.time == NOON
        assert snap.cycle_state == CycleState.TRANSITION
        self.controller.shutdown()

    def test_restore_commands_forward(self):
        self.controller.restore_original()
        self.controller.restore_default()

        self.gamma.restore_original.assert_called_once_with()
        self.gamma.restore_default.assert_called_once_with()

    @pytest.mark.asyncio
    async def test_listener_error_isolated(self):
        def broken(name, value):
            raise RuntimeError("listener failed")

        self.controller.add_listener(broken)
        self.controller.start()

        assert self.controller.temperature == 5000
        self.controller.remove_listener(broken)
        self.controller.shutdown()

    @pytest.mark.asyncio
    async def test_polling_reasserts_gamma(self):
        self.settings.update(gamma_polling_interval=0.02)
        self.controller.start()
        self.gamma.reset_mock()

        await asyncio.sleep(0.1)

        assert self.gamma.apply_linear.call_count >= 2
        assert self.last_gamma() == ColorIntensity.from_temperature(5000)
        self.controller.shutdown()
