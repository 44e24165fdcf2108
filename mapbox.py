"""Thin Mapbox HTTP client: forward geocoding and Optimized Trips v1."""
import logging
import os
from typing import List, Optional, Sequence, Tuple
from urllib.parse import quote

import requests

from schemas import GeoPoint

logger = logging.getLogger("ewaste.mapbox")

MAPBOX_API_KEY = os.getenv("MAPBOX_API_KEY", "")
MAPBOX_BASE_URL = os.getenv("MAPBOX_BASE_URL", "https://api.mapbox.com")
MAPBOX_TIMEOUT = float(os.getenv("MAPBOX_TIMEOUT", "10"))


class MapboxError(Exception):
    def __init__(self, message: str, status_code: Optional[int] = None, code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.code = code


class MapboxClient:
    def __init__(self, access_token: str = MAPBOX_API_KEY, base_url: str = MAPBOX_BASE_URL,
                 timeout: float = MAPBOX_TIMEOUT, session: Optional[requests.Session] = None):
        self.access_token = access_token
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()

    def _get(self, url: str, params: dict) -> dict:
        if not self.access_token:
            raise MapboxError("Mapbox API key is not configured.")
        params = dict(params, access_token=self.access_token)
        try:
            r = self.session.get(url, params=params, timeout=self.timeout)
        except requests.Timeout as e:
            raise MapboxError(f"Mapbox request timed out after {self.timeout}s") from e
        except requests.RequestException as e:
            raise MapboxError(f"Mapbox request failed: {e}") from e
        try:
            data = r.json()
        except ValueError:
            data = {}
        if not isinstance(data, dict):
            raise MapboxError("Mapbox returned an unexpected response body", status_code=r.status_code)
        if r.status_code >= 400:
            raise MapboxError(
                data.get("message") or f"Mapbox returned HTTP {r.status_code}",
                status_code=r.status_code,
                code=data.get("code"),
            )
        return data

    def geocode(self, address: str) -> Optional[GeoPoint]:
        url = f"{self.base_url}/geocoding/v5/mapbox.places/{quote(address)}.json"
        data = self._get(url, {"limit": 1})
        features = data.get("features") or []
        if not features or len(features[0].get("center") or []) != 2:
            return None
        lng, lat = features[0]["center"]
        return GeoPoint(lat=lat, lng=lng)

    def optimized_trip(self, coordinates: Sequence[Tuple[float, float]], profile: str = "mapbox/driving") -> dict:
        """Call Optimized Trips v1 with (lng, lat) pairs as a round trip from the first point."""
        coords = ";".join(f"{lng},{lat}" for lng, lat in coordinates)
        url = f"{self.base_url}/optimized-trips/v1/{profile}/{coords}"
        data = self._get(url, {
            "roundtrip": "true",
            "source": "first",
            "destination": "last",
            "steps": "true",
            "geometries": "geojson",
            "overview": "full",
        })
        if data.get("code") != "Ok":
            raise MapboxError(
                f"{data.get('message') or 'Unknown Mapbox error'} (Code: {data.get('code') or 'Error'})",
                code=data.get("code"),
            )
        return data


def geocode_best_effort(client: Optional[MapboxClient], address: str) -> Optional[GeoPoint]:
    """Geocode for request creation; failures leave the request without a location."""
    if client is None:
        return None
    try:
        point = client.geocode(address)
    except MapboxError as e:
        logger.error(f"Geocoding failed for '{address}': {e.message}")
        return None
    if point is None:
        logger.warning(f"Geocoding returned no results for '{address}'")
    return point


def as_lng_lat(points: List[GeoPoint]) -> List[Tuple[float, float]]:
    return [(p.lng, p.lat) for p in points]
