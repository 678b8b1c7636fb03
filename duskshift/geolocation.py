#!/usr/bin/env python3
"""Location and sunrise/sunset lookup.

Both lookups return None on failure so the caller can simply skip the
current sync cycle; the next scheduled sync retries.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import date, datetime
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import aiohttp
from aiohttp import ClientSession, ClientTimeout
from astral import LocationInfo
from astral.sun import sun

from .brain import get_clock_hour
from .settings import GeoInfo

logger = logging.getLogger(__name__)

DEFAULT_GEOLOCATION_URL = "http://ip-api.com/json/"
DEFAULT_TIMEOUT = 10.0


@dataclass(frozen=True)
class SolarInfo:
    """Sunrise and sunset for one day at one location."""
    sunrise: datetime
    sunset: datetime

    @property
    def sunrise_hour(self) -> float:
        return get_clock_hour(self.sunrise)

    @property
    def sunset_hour(self) -> float:
        return get_clock_hour(self.sunset)


class GeolocationService:
    """Resolve the machine's location by IP and compute its solar times."""

    def __init__(
        self,
        url: str = DEFAULT_GEOLOCATION_URL,
        timeout: float = DEFAULT_TIMEOUT,
        session: Optional[ClientSession] = None,
    ):
        self.url = url
        self.timeout = timeout
        self._session = session

    async def _fetch_json(self, url: str) -> Optional[dict]:
        if self._session is not None:
            async with self._session.get(url) as resp:
                resp.raise_for_status()
                return await resp.json(content_type=None)

        async with ClientSession(timeout=ClientTimeout(total=self.timeout)) as session:
            async with session.get(url) as resp:
                resp.raise_for_status()
                return await resp.json(content_type=None)

    async def geolocate(self) -> Optional[GeoInfo]:
        """Look up the current location from the public IP address."""
        try:
            data = await self._fetch_json(self.url)
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            logger.warning(f"Geolocation request failed: {e}")
            return None

        if not isinstance(data, dict) or data.get("status", "success") != "success":
            logger.warning(f"Geolocation lookup unsuccessful: {data}")
            return None

        try:
            geo = GeoInfo(
                latitude=float(data["lat"]),
                longitude=float(data["lon"]),
                timezone=data.get("timezone"),
                city=data.get("city"),
                country=data.get("country"),
            )
        except (KeyError, TypeError, ValueError) as e:
            logger.warning(f"Geolocation response missing coordinates: {e}")
            return None

        logger.info(f"Geolocated to {geo.city or 'unknown city'} ({geo.latitude}, {geo.longitude})")
        return geo

    async def get_solar_info(self, geo: GeoInfo, day: Optional[date] = None) -> Optional[SolarInfo]:
        """Compute sunrise and sunset for ``geo`` on ``day`` (today by default)."""
        try:
            tzinfo = ZoneInfo(geo.timezone) if geo.timezone else None
        except (ZoneInfoNotFoundError, ValueError):
            logger.warning(f"Unknown timezone '{geo.timezone}', using local time")
            tzinfo = None

        if tzinfo is None:
            tzinfo = datetime.now().astimezone().tzinfo

        if day is None:
            day = datetime.now(tzinfo).date()

        loc = LocationInfo(latitude=geo.latitude, longitude=geo.longitude)
        try:
            events = sun(loc.observer, date=day, tzinfo=tzinfo)
        except ValueError as e:
            # Polar day/night: the sun never crosses the horizon
            logger.warning(f"No sunrise/sunset for {geo.latitude}, {geo.longitude} on {day}: {e}")
            return None

        return SolarInfo(sunrise=events["sunrise"], sunset=events["sunset"])
