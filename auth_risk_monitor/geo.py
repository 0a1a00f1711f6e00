from __future__ import annotations

import logging
import math
from typing import Dict, Mapping, Optional, Protocol

import geoip2.database
import geoip2.errors

from .config import geoip_database_path
from .models import GeoLocation

logger = logging.getLogger(__name__)

EARTH_RADIUS_KM = 6371.0


class GeoLookupError(RuntimeError):
    """Raised by a geo locator when the lookup backend itself fails."""


class GeoLocator(Protocol):
    def locate(self, ip_address: str) -> Optional[GeoLocation]:
        ...


def haversine_distance(origin: GeoLocation, destination: GeoLocation) -> float:
    """Great-circle distance between two locations in kilometres."""
    lat1 = math.radians(origin.latitude)
    lat2 = math.radians(destination.latitude)
    d_lat = lat2 - lat1
    d_lng = math.radians(destination.longitude - origin.longitude)
    a = math.sin(d_lat / 2) ** 2 + math.cos(lat1) * math.cos(lat2) * math.sin(d_lng / 2) ** 2
    return EARTH_RADIUS_KM * 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))


DEFAULT_LOCATION = GeoLocation(
    country="US",
    region="California",
    city="San Francisco",
    latitude=37.7749,
    longitude=-122.4194,
    accuracy=100.0,
)


class StaticGeoLocator:
    """Resolves addresses from a fixed table, falling back to a default location."""

    def __init__(
        self,
        locations: Optional[Mapping[str, GeoLocation]] = None,
        default: Optional[GeoLocation] = DEFAULT_LOCATION,
    ):
        self.locations: Dict[str, GeoLocation] = dict(locations or {})
        self.default = default

    def locate(self, ip_address: str) -> Optional[GeoLocation]:
        location = self.locations.get(ip_address, self.default)
        if location is None:
            return None
        return GeoLocation(
            country=location.country,
            region=location.region,
            city=location.city,
            latitude=location.latitude,
            longitude=location.longitude,
            accuracy=location.accuracy,
        )


class GeoIP2Locator:
    """MaxMind GeoIP2/GeoLite2 city database lookup."""

    def __init__(self, database_path: str):
        self.reader = geoip2.database.Reader(database_path)

    def locate(self, ip_address: str) -> Optional[GeoLocation]:
        try:
            response = self.reader.city(ip_address)
        except (geoip2.errors.AddressNotFoundError, ValueError):
            return None
        except geoip2.errors.GeoIP2Error as exc:
            raise GeoLookupError(str(exc)) from exc

        if response.location.latitude is None or response.location.longitude is None:
            return None
        return GeoLocation(
            country=response.country.iso_code or "",
            region=response.subdivisions.most_specific.name or "",
            city=response.city.name or "",
            latitude=float(response.location.latitude),
            longitude=float(response.location.longitude),
            accuracy=float(response.location.accuracy_radius or 0),
        )

    def close(self) -> None:
        self.reader.close()


def build_geo_locator(database_path: Optional[str] = None) -> GeoLocator:
    path = database_path or geoip_database_path()
    if path:
        try:
            return GeoIP2Locator(path)
        except (OSError, ValueError, RuntimeError) as exc:
            logger.warning("Failed to load GeoIP database %s: %s", path, exc)
    return StaticGeoLocator()
