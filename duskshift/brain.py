#!/usr/bin/env python3
"""Brain module for duskshift - temperature curve and colour conversion.

Day/night model
---------------
* Night (min temperature) before the dawn ramp and after the dusk ramp
* Day (max temperature) between the two ramps
* Each ramp lasts ``temperature_switch_duration`` hours, centred on
  sunrise/sunset, and is linear in clock time
* Outside the ramps the bounds are returned exactly
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Tuple

from .settings import Settings

logger = logging.getLogger(__name__)

# Krystek polynomials are only defined over this range
MIN_CONVERTIBLE_TEMP = 1000
MAX_CONVERTIBLE_TEMP = 25000


def get_clock_hour(now: datetime) -> float:
    """Return the hour of day as a float (0-24)."""
    return now.hour + now.minute / 60 + now.second / 3600 + now.microsecond / 3_600_000_000


def ramp_value(hour: float, center: float, duration: float, y0: float, y1: float) -> float:
    """Linear ramp from y0 to y1 over ``duration`` hours centred on ``center``."""
    if duration <= 0:
        return y0 if hour < center else y1

    start = center - duration / 2
    end = center + duration / 2
    if hour <= start:
        return y0
    if hour >= end:
        return y1
    return y0 + (y1 - y0) * (hour - start) / duration


class TemperatureCurve:
    """Map a timestamp to a target colour temperature.

    Settings are read on every call so configuration changes apply to the
    next evaluation without rebuilding the curve.
    """

    def __init__(self, settings: Settings) -> None:
        self.settings = settings

    def temperature_at(self, now: datetime) -> int:
        s = self.settings
        hour = get_clock_hour(now)
        t_min = s.min_temperature
        t_max = s.max_temperature
        duration = max(0.0, s.temperature_switch_duration)

        # Night -> day around sunrise, day -> night around sunset
        if hour < (s.sunrise_time + s.sunset_time) / 2:
            value = ramp_value(hour, s.sunrise_time, duration, t_min, t_max)
        else:
            value = ramp_value(hour, s.sunset_time, duration, t_max, t_min)

        return int(round(max(t_min, min(t_max, value))))


# ---------------------------------------------------------------------------
# Colour conversion
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ColorIntensity:
    """Per-channel multipliers (0.0-1.0) for a display colour ramp."""
    red: float
    green: float
    blue: float

    @classmethod
    def identity(cls) -> "ColorIntensity":
        return cls(1.0, 1.0, 1.0)

    @classmethod
    def from_temperature(cls, kelvin: int) -> "ColorIntensity":
        """Convert a colour temperature to channel intensities.

        The brightest channel is normalised to 1.0 so only the white point
        moves, not the overall brightness.
        """
        r, g, b = color_temperature_to_linear_rgb(kelvin)
        peak = max(r, g, b)
        if peak <= 0:
            return cls.identity()
        return cls(
            round(r / peak, 4),
            round(g / peak, 4),
            round(b / peak, 4),
        )

    def __str__(self) -> str:
        return f"R:{self.red:.2f} G:{self.green:.2f} B:{self.blue:.2f}"


def color_temperature_to_xy(cct: float) -> Tuple[float, float]:
    """Convert color temperature to CIE 1931 x,y using Krystek polynomials."""
    T = max(MIN_CONVERTIBLE_TEMP, min(cct, MAX_CONVERTIBLE_TEMP))
    invT = 1000.0 / T

    if T <= 4000:
        x = (-0.2661239 * invT**3
             - 0.2343589 * invT**2
             + 0.8776956 * invT
             + 0.179910)
    else:
        x = (-3.0258469 * invT**3
             + 2.1070379 * invT**2
             + 0.2226347 * invT
             + 0.240390)

    if T <= 2222:
        y = (-1.1063814 * x**3
             - 1.34811020 * x**2
             + 2.18555832 * x
             - 0.20219683)
    elif T <= 4000:
        y = (-0.9549476 * x**3
             - 1.37418593 * x**2
             + 2.09137015 * x
             - 0.16748867)
    else:
        y = (3.0817580 * x**3
             - 5.87338670 * x**2
             + 3.75112997 * x
             - 0.37001483)

    return (x, y)


def color_temperature_to_linear_rgb(kelvin: float) -> Tuple[float, float, float]:
    """Convert colour temperature to linear RGB in [0, 1]."""
    x, y = color_temperature_to_xy(kelvin)

    Y = 1.0
    X = (x * Y) / y if y != 0 else 0
    Z = ((1 - x - y) * Y) / y if y != 0 else 0

    r =  3.2404542 * X - 1.5371385 * Y - 0.4985314 * Z
    g = -0.9692660 * X + 1.8760108 * Y + 0.0415560 * Z
    b =  0.0556434 * X - 0.2040259 * Y + 1.0572252 * Z

    r = max(0.0, r)
    g = max(0.0, g)
    b = max(0.0, b)

    max_val = max(r, g, b)
    if max_val > 1:
        r /= max_val
        g /= max_val
        b /= max_val

    return (r, g, b)
