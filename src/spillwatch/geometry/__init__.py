from spillwatch.geometry.points import haversine_km, validate_coordinates

__all__ = ["haversine_km", "validate_coordinates"]
