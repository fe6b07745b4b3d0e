"""
Google Maps integration for geocoding and distance calculations.
Handles retries, bounded timeouts, and the haversine fallback used when the
provider is unavailable.
"""

import asyncio
import logging
from typing import Dict, List, Optional, Any
from dataclasses import dataclass

import httpx
from .errors import ProviderUnavailableError
from .schemas import AppConfig, Settings
from .util.haversine import km, minutes_from_km


logger = logging.getLogger(__name__)

TRAVEL_MODES = ("driving", "walking", "bicycling", "transit")

# Statuses that retrying cannot fix
FATAL_STATUSES = ("REQUEST_DENIED", "INVALID_REQUEST", "ZERO_RESULTS", "NOT_FOUND", "OVER_DAILY_LIMIT")
KEY_CHECK_ADDRESS = "1600 Amphitheatre Parkway, Mountain View, CA"
KEY_STATUS_MESSAGES = {
    "REQUEST_DENIED": "API key is invalid or restricted",
    "OVER_QUERY_LIMIT": "API key has exceeded quota",
    "OVER_DAILY_LIMIT": "API key has exceeded quota",
}


@dataclass(frozen=True)
class Coordinates:
    """Geographic coordinates."""
    lat: float
    lon: float

    def as_param(self) -> str:
        return f"{self.lat},{self.lon}"


@dataclass
class DistanceResult:
    """Distance and duration for one origin-destination pair."""
    distance_meters: float
    duration_seconds: float
    source: str = "google"  # google, haversine, placeholder

    @property
    def duration_minutes(self) -> float:
        return self.duration_seconds / 60.0


@dataclass
class GeocodeResult:
    """Resolved address."""
    lat: float
    lng: float
    formatted_address: str
    place_id: Optional[str] = None


@dataclass
class RouteMatrix:
    """Distance and duration matrix between locations."""
    origins: List[Coordinates]
    destinations: List[Coordinates]
    durations_minutes: List[List[float]]  # [origin_idx][dest_idx] = minutes
    distances_meters: List[List[float]]   # [origin_idx][dest_idx] = meters

    def get_duration(self, origin_idx: int, dest_idx: int) -> float:
        """Get duration in minutes between two points."""
        return self.durations_minutes[origin_idx][dest_idx]

    def get_distance(self, origin_idx: int, dest_idx: int) -> float:
        """Get distance in meters between two points."""
        return self.distances_meters[origin_idx][dest_idx]


class GoogleMapsClient:
    """Google Maps API client with retry logic. Every failure raises ProviderUnavailableError."""

    def __init__(self, config: AppConfig, http_client: Optional[httpx.AsyncClient] = None):
        """Initialize Google Maps client."""
        self.config = config
        self.base_url = config.google.base_url.rstrip("/")
        self.client = http_client or httpx.AsyncClient(timeout=config.google.timeout_seconds)

    async def _request(self, path: str, params: Dict[str, Any], api_key: str) -> Dict[str, Any]:
        """GET a Maps endpoint with retries; returns the decoded OK payload."""
        url = f"{self.base_url}/{path}"
        params = dict(params, key=api_key)
        last_error: Optional[Exception] = None

        for attempt in range(self.config.google.max_retries):
            try:
                response = await self.client.get(url, params=params, timeout=self.config.google.timeout_seconds)
                response.raise_for_status()
                data = response.json()
            except (httpx.HTTPError, ValueError) as e:
                last_error = e
            else:
                status = data.get("status")
                if status == "OK":
                    return data
                message = f"Google API {status}: {data.get('error_message', '')}".strip(": ")
                if status in FATAL_STATUSES:
                    raise ProviderUnavailableError(message)
                last_error = ProviderUnavailableError(message)

            logger.warning(f"Maps request attempt {attempt + 1} to {path} failed: {last_error}")
            if attempt < self.config.google.max_retries - 1:
                await asyncio.sleep(self.config.google.retry_delay_seconds * (2 ** attempt))

        raise ProviderUnavailableError(f"Maps request to {path} failed: {last_error}")

    async def geocode(self, address: str, api_key: str) -> GeocodeResult:
        """Geocode an address to coordinates."""
        data = await self._request("geocode/json", {"address": address}, api_key)
        results = data.get("results") or []
        if not results:
            raise ProviderUnavailableError(f"No geocoding results for '{address}'")
        try:
            first = results[0]
            location = first["geometry"]["location"]
            return GeocodeResult(
                lat=float(location["lat"]),
                lng=float(location["lng"]),
                formatted_address=first.get("formatted_address", address),
                place_id=first.get("place_id"),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise ProviderUnavailableError(f"Malformed geocoding response: {e}")

    async def key_status(self, api_key: str) -> str:
        """One geocode of a known address, no retries; returns the API status string."""
        params = {"address": KEY_CHECK_ADDRESS, "key": api_key}
        try:
            response = await self.client.get(
                f"{self.base_url}/geocode/json", params=params, timeout=self.config.google.timeout_seconds
            )
            response.raise_for_status()
            return str(response.json().get("status"))
        except (httpx.HTTPError, ValueError) as e:
            raise ProviderUnavailableError(f"Maps key check failed: {e}")

    async def distance_row(
        self,
        origin: Coordinates,
        destinations: List[Coordinates],
        mode: str,
        api_key: str
    ) -> List[Optional[DistanceResult]]:
        """
        One row of the Distance Matrix API.
        Elements the API could not route come back as None.
        """
        params = {
            "origins": origin.as_param(),
            "destinations": "|".join(d.as_param() for d in destinations),
            "mode": mode,
            "units": "metric",
        }
        data = await self._request("distancematrix/json", params, api_key)
        try:
            elements = data["rows"][0]["elements"]
        except (KeyError, IndexError, TypeError):
            raise ProviderUnavailableError("Malformed distance matrix response")
        if len(elements) != len(destinations):
            raise ProviderUnavailableError(
                f"Distance matrix returned {len(elements)} elements for {len(destinations)} destinations"
            )

        row: List[Optional[DistanceResult]] = []
        for j, element in enumerate(elements):
            if element.get("status") != "OK":
                logger.warning(f"No route to destination {j}: {element.get('status')}")
                row.append(None)
                continue
            try:
                row.append(DistanceResult(
                    distance_meters=float(element["distance"]["value"]),
                    duration_seconds=float(element["duration"]["value"]),
                ))
            except (KeyError, TypeError, ValueError):
                logger.warning(f"Malformed matrix element for destination {j}")
                row.append(None)
        return row

    async def close(self):
        """Close the HTTP client."""
        await self.client.aclose()


class DistanceProvider:
    """
    High-level interface for distance lookups.

    The org key (if any) is passed per call and falls back to the system key
    from Settings. Distance calls recover from provider failures with a
    haversine estimate; geocoding does not.
    """

    def __init__(
        self,
        config: AppConfig,
        settings: Settings,
        google_client: Optional[GoogleMapsClient] = None
    ):
        """Initialize distance provider."""
        self.config = config
        self.default_api_key = settings.google_maps_api_key
        self.google_client = google_client or GoogleMapsClient(config)

        if not self.default_api_key:
            logger.warning("GOOGLE_MAPS_API_KEY not set - distances fall back to haversine estimates")

    def resolve_api_key(self, org_api_key: Optional[str] = None) -> Optional[str]:
        """Org-specific key, else the system-wide default."""
        return org_api_key or self.default_api_key

    def haversine(self, origin: Coordinates, destination: Coordinates, mode: str = "driving") -> DistanceResult:
        """Great-circle estimate at the configured average speed for the mode."""
        d_km = km(origin.lat, origin.lon, destination.lat, destination.lon, self.config.routing.earth_radius_km)
        minutes = minutes_from_km(d_km, self.config.routing.speed_for(mode))
        return DistanceResult(distance_meters=d_km * 1000.0, duration_seconds=minutes * 60.0, source="haversine")

    async def distance(
        self,
        origin: Coordinates,
        destination: Coordinates,
        mode: str = "driving",
        api_key: Optional[str] = None
    ) -> DistanceResult:
        """Provider distance for one pair, haversine when the provider fails."""
        results = await self.distance_many(origin, [destination], mode, api_key)
        result = results[0]
        if result.source == "placeholder":
            # A single unroutable pair is better estimated than zeroed
            return self.haversine(origin, destination, mode)
        return result

    async def distance_many(
        self,
        origin: Coordinates,
        destinations: List[Coordinates],
        mode: str = "driving",
        api_key: Optional[str] = None
    ) -> List[DistanceResult]:
        """
        Distances from one origin to N destinations, in the same order.

        A failed call falls back to haversine for every destination; a single
        failed element degrades to a zero-distance placeholder.
        """
        if not destinations:
            return []
        if mode not in TRAVEL_MODES:
            mode = "driving"

        if self.config.dev.mock_google_api:
            return [self.haversine(origin, d, mode) for d in destinations]

        key = self.resolve_api_key(api_key)
        if not key:
            logger.debug("No maps API key; using haversine estimates")
            return [self.haversine(origin, d, mode) for d in destinations]

        try:
            row = await self.google_client.distance_row(origin, destinations, mode, key)
        except ProviderUnavailableError as e:
            logger.warning(f"Distance provider unavailable, using haversine fallback: {e}")
            return [self.haversine(origin, d, mode) for d in destinations]

        return [
            r if r is not None else DistanceResult(0.0, 0.0, source="placeholder")
            for r in row
        ]

    async def travel_matrix(
        self,
        origins: List[Coordinates],
        destinations: List[Coordinates],
        mode: str = "driving",
        api_key: Optional[str] = None
    ) -> RouteMatrix:
        """
        Full matrix built from one batch row per origin.

        Unroutable elements are estimated with haversine; a zero leg would
        make the solver pick that stop first.
        """
        durations: List[List[float]] = []
        distances: List[List[float]] = []
        for origin in origins:
            row = await self.distance_many(origin, destinations, mode, api_key)
            row = [
                self.haversine(origin, dest, mode) if r.source == "placeholder" else r
                for r, dest in zip(row, destinations)
            ]
            durations.append([r.duration_minutes for r in row])
            distances.append([r.distance_meters for r in row])
        return RouteMatrix(
            origins=origins,
            destinations=destinations,
            durations_minutes=durations,
            distances_meters=distances
        )

    async def geocode(self, address: str, api_key: Optional[str] = None) -> GeocodeResult:
        """Resolve an address; there is no offline fallback."""
        if self.config.dev.mock_google_api:
            return self._mock_geocode(address)

        key = self.resolve_api_key(api_key)
        if not key:
            raise ProviderUnavailableError("Google Maps API key not configured")
        return await self.google_client.geocode(address, key)

    async def verify_api_key(self, api_key: Optional[str] = None) -> Dict[str, Any]:
        """Check a key (the org's, else the system default) against the Geocoding API."""
        key = self.resolve_api_key(api_key)
        if not key:
            return {"valid": False, "message": "No API key provided"}
        if self.config.dev.mock_google_api:
            return {"valid": True, "message": "Mock maps mode; key not checked"}

        try:
            status = await self.google_client.key_status(key)
        except ProviderUnavailableError as e:
            logger.warning(f"Maps key verification failed: {e}")
            return {"valid": False, "message": str(e)}

        if status == "OK":
            return {"valid": True, "message": None}
        message = KEY_STATUS_MESSAGES.get(status, f"API key validation failed: {status}")
        return {"valid": False, "message": message}

    def _mock_geocode(self, address: str) -> GeocodeResult:
        """Mock geocoding for development/testing."""
        # Stable checksum so the same address always lands on the same point
        hash_val = sum(ord(c) * (i + 1) for i, c in enumerate(address.lower())) % 10000
        lat = 5.55 + (hash_val % 100) / 1000.0
        lng = -0.25 + (hash_val % 500) / 1000.0

        logger.debug(f"Mock geocoding '{address}' -> ({lat:.6f}, {lng:.6f})")
        return GeocodeResult(lat=lat, lng=lng, formatted_address=address)

    async def close(self):
        """Clean up resources."""
        await self.google_client.close()
