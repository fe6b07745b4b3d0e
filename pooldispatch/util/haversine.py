"""Tiny haversine helpers for offline distance estimates."""

from math import radians, sin, cos, asin, sqrt

EARTH_RADIUS_KM = 6371.0


def km(a_lat: float, a_lon: float, b_lat: float, b_lon: float, radius_km: float = EARTH_RADIUS_KM) -> float:
    lat1, lon1, lat2, lon2 = map(radians, [a_lat, a_lon, b_lat, b_lon])  # deg->rad
    dlat = lat2 - lat1  # delta lat
    dlon = lon2 - lon1  # delta lon
    h = sin(dlat / 2) ** 2 + cos(lat1) * cos(lat2) * sin(dlon / 2) ** 2  # haversine
    return 2 * radius_km * asin(sqrt(min(h, 1.0)))  # arc length in km


def meters(a_lat: float, a_lon: float, b_lat: float, b_lon: float, radius_km: float = EARTH_RADIUS_KM) -> float:
    return km(a_lat, a_lon, b_lat, b_lon, radius_km) * 1000.0


def minutes_from_km(distance_km: float, speed_kmph: float) -> float:
    if speed_kmph <= 0:
        return 0.0  # guard
    return (distance_km / speed_kmph) * 60.0  # minutes
