from __future__ import annotations

import math

from spillwatch.errors import ValidationError


EARTH_RADIUS_KM = 6371.0


def validate_coordinates(latitude: float, longitude: float) -> None:
    if not isinstance(latitude, (int, float)) or not isinstance(longitude, (int, float)):
        raise ValidationError("Coordinates must be numeric.")
    if math.isnan(latitude) or not -90.0 <= latitude <= 90.0:
        raise ValidationError(f"Latitude {latitude} is outside [-90, 90].")
    if math.isnan(longitude) or not -180.0 <= longitude <= 180.0:
        raise ValidationError(f"Longitude {longitude} is outside [-180, 180].")


def haversine_km(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Great-circle distance in kilometres between two WGS84 points."""

    d_lat = math.radians(lat2 - lat1)
    d_lon = math.radians(lon2 - lon1)
    a = (
        math.sin(d_lat / 2) ** 2
        + math.cos(math.radians(lat1)) * math.cos(math.radians(lat2)) * math.sin(d_lon / 2) ** 2
    )
    return EARTH_RADIUS_KM * 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))
