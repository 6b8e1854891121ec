"""
IP geolocation lookup.

A pure local lookup: ``GeoIP2Locator`` reads a MaxMind City database from
disk, ``NullGeoLocator`` is used when none is configured. Absence of a result
degrades to "Unknown" and never fails the caller.
"""

import logging
from dataclasses import dataclass
from typing import Optional

import geoip2.database
import geoip2.errors

logger = logging.getLogger(__name__)

UNKNOWN = 'Unknown'


@dataclass(frozen=True)
class GeoLocation:
    city: str = UNKNOWN
    country: str = UNKNOWN
    latitude: Optional[float] = None
    longitude: Optional[float] = None

    @property
    def display(self) -> str:
        return f"{self.city}, {self.country}"


class GeoLocator:
    def lookup(self, ip_address: str) -> Optional[GeoLocation]:
        raise NotImplementedError


class NullGeoLocator(GeoLocator):
    def lookup(self, ip_address: str) -> Optional[GeoLocation]:
        return None


class GeoIP2Locator(GeoLocator):
    def __init__(self, database_path: str):
        self.reader = geoip2.database.Reader(database_path)

    def lookup(self, ip_address: str) -> Optional[GeoLocation]:
        if not ip_address:
            return None
        try:
            record = self.reader.city(ip_address)
        except (geoip2.errors.AddressNotFoundError, ValueError):
            return None
        return GeoLocation(
            city=record.city.name or UNKNOWN,
            country=record.country.iso_code or UNKNOWN,
            latitude=record.location.latitude,
            longitude=record.location.longitude,
        )

    def close(self):
        self.reader.close()


def build_geolocator(config) -> GeoLocator:
    path = config.GEOIP_DATABASE_PATH
    if not path:
        return NullGeoLocator()
    try:
        return GeoIP2Locator(path)
    except (OSError, ValueError) as e:
        logger.warning(f"GeoIP database unavailable ({e}) - locations will be reported as Unknown")
        return NullGeoLocator()


def describe(location: Optional[GeoLocation]) -> str:
    return location.display if location else UNKNOWN
