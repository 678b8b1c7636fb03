#!/usr/bin/env python3
"""Settings for duskshift - observable configuration and JSON persistence.

Settings are:
- Loaded from JSON at startup (missing/corrupt file -> defaults)
- Held in one Settings object that is injected wherever it is needed
- Broadcast field-by-field to subscribers when they change
- Written back to JSON atomically on request
"""

from __future__ import annotations

import json
import logging
import os
import shutil
import tempfile
from dataclasses import dataclass, field, fields, asdict
from typing import Any, Callable, Dict, List, Optional

import aiofiles

logger = logging.getLogger(__name__)

SETTINGS_FILENAME = "settings.json"


@dataclass(frozen=True)
class GeoInfo:
    """Resolved location used for solar time lookups."""
    latitude: float
    longitude: float
    timezone: Optional[str] = None
    city: Optional[str] = None
    country: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "GeoInfo":
        return cls(
            latitude=float(data["latitude"]),
            longitude=float(data["longitude"]),
            timezone=data.get("timezone"),
            city=data.get("city"),
            country=data.get("country"),
        )


@dataclass(eq=False)
class Settings:
    """Runtime configuration.

    Temperatures are Kelvin, *_time values are hours (0-24), the switch
    duration is hours and every *_interval / *_duration ending in seconds
    is seconds.
    """

    # Temperature bounds
    min_temperature: int = 3900
    max_temperature: int = 6600
    default_temperature: int = 6600
    temperature_epsilon: int = 50

    # Curve
    sunrise_time: float = 7.0
    sunset_time: float = 18.5
    temperature_switch_duration: float = 1.5

    # Smoothing
    is_temperature_smoothing_enabled: bool = True
    minimum_smoothing_temperature: int = 400
    temperature_smoothing_duration: float = 2.0

    # Timers (seconds)
    temperature_update_interval: float = 60.0
    is_gamma_polling_enabled: bool = True
    gamma_polling_interval: float = 5.0
    internet_sync_interval: float = 6 * 3600.0

    # Toggles
    is_fullscreen_blocking: bool = False
    is_internet_sync_enabled: bool = True

    location: Optional[GeoInfo] = None

    _listeners: List[Callable[[str], None]] = field(
        default_factory=list, init=False, repr=False, compare=False
    )

    # ------------------------------------------------------------------
    # Change notification
    # ------------------------------------------------------------------
    def subscribe(self, callback: Callable[[str], None]) -> None:
        """Register a callback invoked with the name of each changed field."""
        if callback not in self._listeners:
            self._listeners.append(callback)

    def unsubscribe(self, callback: Callable[[str], None]) -> None:
        if callback in self._listeners:
            self._listeners.remove(callback)

    def update(self, **changes: Any) -> List[str]:
        """Assign the given fields and notify subscribers of the ones that changed.

        Returns:
            Names of the fields whose value actually changed.
        """
        names = field_names()
        for name in changes:
            if name not in names:
                raise AttributeError(f"Unknown setting '{name}'")

        changed = []
        for name, value in changes.items():
            if getattr(self, name) == value:
                continue
            setattr(self, name, value)
            changed.append(name)

        # Assign everything first so subscribers see a consistent snapshot
        for name in changed:
            logger.debug(f"Setting changed: {name}={getattr(self, name)!r}")
            for callback in list(self._listeners):
                callback(name)

        return changed

    # ------------------------------------------------------------------
    # Serialization
    # ------------------------------------------------------------------
    def to_dict(self) -> Dict[str, Any]:
        data = {name: getattr(self, name) for name in field_names()}
        if self.location is not None:
            data["location"] = asdict(self.location)
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Settings":
        """Build settings from a loaded dict, keeping defaults for bad values."""
        settings = cls()
        defaults = settings.to_dict()

        for key, value in data.items():
            if key not in defaults:
                logger.warning(f"Ignoring unknown setting '{key}'")
                continue

            if key == "location":
                if value is None:
                    continue
                try:
                    settings.location = GeoInfo.from_dict(value)
                except (KeyError, TypeError, ValueError) as e:
                    logger.warning(f"Invalid location in settings: {e}")
                continue

            coerced = _coerce(value, defaults[key])
            if coerced is None:
                logger.warning(
                    f"Invalid value for '{key}': {value!r}, keeping default {defaults[key]!r}"
                )
                continue
            setattr(settings, key, coerced)

        return settings


def field_names() -> List[str]:
    """Public setting names, in declaration order."""
    return [f.name for f in fields(Settings) if not f.name.startswith("_")]


def _coerce(value: Any, default: Any) -> Any:
    """Coerce a JSON value to the type of the default, or None if impossible."""
    if isinstance(default, bool):
        return value if isinstance(value, bool) else None
    if isinstance(default, int):
        if isinstance(value, bool):
            return None
        try:
            return int(value)
        except (ValueError, TypeError):
            return None
    if isinstance(default, float):
        if isinstance(value, bool):
            return None
        try:
            return float(value)
        except (ValueError, TypeError):
            return None
    return value


def get_default_settings_path() -> str:
    """Get the settings file path from the environment or the XDG config dir."""
    path = os.getenv("DUSKSHIFT_CONFIG")
    if path:
        return path
    config_home = os.getenv("XDG_CONFIG_HOME") or os.path.join(os.path.expanduser("~"), ".config")
    return os.path.join(config_home, "duskshift", SETTINGS_FILENAME)


async def load_settings(path: Optional[str] = None) -> Settings:
    """Load settings from a JSON file.

    A missing file yields defaults. A corrupt file is backed up next to the
    original as ``<path>.corrupted`` and defaults are used.
    """
    if path is None:
        path = get_default_settings_path()

    if not os.path.exists(path):
        logger.info(f"No settings file found at {path}, using defaults")
        return Settings()

    try:
        async with aiofiles.open(path, "r", encoding="utf-8") as f:
            content = await f.read()
        data = json.loads(content)
    except json.JSONDecodeError as e:
        logger.warning(f"JSON error reading {path}: {e}")
        try:
            shutil.copyfile(path, path + ".corrupted")
            logger.warning(f"Backed up corrupted file to {path}.corrupted")
        except OSError as copy_error:
            logger.warning(f"Could not back up corrupted settings: {copy_error}")
        return Settings()
    except OSError as e:
        logger.warning(f"Failed to read settings from {path}: {e}")
        return Settings()

    if not isinstance(data, dict):
        logger.warning(f"Invalid settings file format at {path}, using defaults")
        return Settings()

    logger.info(f"Loaded settings from {path}")
    return Settings.from_dict(data)


async def save_settings(settings: Settings, path: Optional[str] = None) -> bool:
    """Save settings to disk atomically.

    Returns:
        True if successful
    """
    if path is None:
        path = get_default_settings_path()

    directory = os.path.dirname(os.path.abspath(path))
    try:
        os.makedirs(directory, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(dir=directory, suffix=".tmp", prefix=".settings_")
        os.close(fd)
        try:
            async with aiofiles.open(tmp_path, "w", encoding="utf-8") as f:
                await f.write(json.dumps(settings.to_dict(), indent=2))
            os.replace(tmp_path, path)
        except BaseException:
            try:
                os.unlink(tmp_path)
            except OSError:
                pass
            raise
        logger.debug(f"Saved settings to {path}")
        return True
    except Exception as e:
        logger.error(f"Failed to save settings: {e}")
        return False
