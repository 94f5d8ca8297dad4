"""Client utilities for the Google Places API."""

import logging
from typing import Any, Dict, Optional, Tuple

import requests

from leadpipe.core.errors import ProviderError
from leadpipe.core.models import PlacesPage

logger = logging.getLogger(__name__)
_SESSION = requests.Session()
_BASE_URL = "https://maps.googleapis.com/maps/api/place"
_GEOCODE_URL = "https://maps.googleapis.com/maps/api/geocode/json"
_OK_STATUSES = {"OK", "ZERO_RESULTS"}

DETAIL_FIELDS = (
    "place_id,name,formatted_address,formatted_phone_number,international_phone_number,geometry,"
    "website,rating,user_ratings_total,types,address_components,opening_hours"
)


class GooglePlacesError(ProviderError):
    """Raised when the Places API returns a non-successful response."""


def _get(url: str, params: Dict[str, Any], operation: str) -> Dict[str, Any]:
    try:
        response = _SESSION.get(url, params=params, timeout=10)
        response.raise_for_status()
    except requests.HTTPError as exc:
        status_code = getattr(exc.response, "status_code", None)
        logger.error("%s failed with HTTP %s: %s", operation, status_code, exc)
        raise GooglePlacesError(str(exc), status=f"HTTP {status_code}") from exc
    except requests.RequestException as exc:
        logger.error("%s request failed: %s", operation, exc)
        raise GooglePlacesError(str(exc), status="NETWORK_ERROR") from exc

    payload = response.json()
    status = payload.get("status")
    if status not in _OK_STATUSES:
        logger.error("%s failed: status=%s, error_message=%s", operation, status, payload.get("error_message"))
        raise GooglePlacesError(payload.get("error_message") or status or "unknown error", status=status)
    return payload


def text_search(
    query: str,
    api_key: str,
    pagetoken: Optional[str] = None,
    location: Optional[Tuple[float, float]] = None,
    radius_m: Optional[int] = None,
) -> Dict[str, Any]:
    params: Dict[str, Any] = {"query": query, "key": api_key}
    if pagetoken:
        params["pagetoken"] = pagetoken
    if location:
        params["location"] = f"{location[0]},{location[1]}"
        if radius_m:
            params["radius"] = radius_m
    return _get(f"{_BASE_URL}/textsearch/json", params, "text_search")


def place_details(place_id: str, api_key: str) -> Dict[str, Any]:
    params = {"place_id": place_id, "key": api_key, "fields": DETAIL_FIELDS}
    payload = _get(f"{_BASE_URL}/details/json", params, "place_details")
    return payload.get("result", {})


def geocode(address: str, api_key: str) -> Optional[Tuple[float, float]]:
    """Resolve a free-text location into (lat, lng); None when Google has no match."""
    payload = _get(_GEOCODE_URL, {"address": address, "key": api_key}, "geocode")
    results = payload.get("results") or []
    if not results:
        logger.warning("Geocoding returned no results for %s", address)
        return None
    location = results[0].get("geometry", {}).get("location", {})
    if location.get("lat") is None or location.get("lng") is None:
        return None
    return float(location["lat"]), float(location["lng"])


class GooglePlacesProvider:
    """Places directory backed by Text Search, Place Details and Geocoding."""

    name = "google_places"
    page_size = 20

    def __init__(self, api_key: str) -> None:
        if not api_key:
            raise GooglePlacesError("GOOGLE_API_KEY is required", status="REQUEST_DENIED")
        self.api_key = api_key
        self._geocoded: Dict[str, Optional[Tuple[float, float]]] = {}

    def _location_for(self, location: str) -> Optional[Tuple[float, float]]:
        if location not in self._geocoded:
            self._geocoded[location] = geocode(location, self.api_key)
        return self._geocoded[location]

    def search_page(self, terms: str, location: str, radius_km: float, cursor: Optional[str] = None) -> PlacesPage:
        query = f"{terms} in {location}"
        if cursor:
            payload = text_search(query=query, api_key=self.api_key, pagetoken=cursor)
        else:
            coords = self._location_for(location)
            payload = text_search(
                query=query,
                api_key=self.api_key,
                location=coords,
                radius_m=int(radius_km * 1000) if coords else None,
            )
        return PlacesPage(records=list(payload.get("results", [])), next_cursor=payload.get("next_page_token"))

    def details(self, provider_ref: str) -> Dict[str, Any]:
        return place_details(place_id=provider_ref, api_key=self.api_key)
