"""SerpAPI Google Maps helpers used as an alternative places directory."""

from __future__ import annotations

import logging
import random
import time
from typing import Any, Dict, List, Optional, Tuple

from serpapi import GoogleSearch

from leadpipe.core.errors import ProviderError
from leadpipe.core.models import PlacesPage

logger = logging.getLogger(__name__)

RETRY_LIMIT = 2
RETRY_DELAY_SECONDS = 1.2
PAGE_SIZE = 20
_NO_RESULTS_MARKERS = ("hasn't returned any results", "no results")


class SerpApiError(ProviderError):
    """Raised when SerpAPI answers with an error payload or keeps failing."""


def build_serpapi_params(query: str, api_key: str, ll: Optional[str] = None, start: int = 0) -> Dict[str, Any]:
    """Construct SerpAPI request parameters for the Google Maps engine."""
    if not query or not query.strip():
        raise ValueError("Query must be provided for SerpAPI lookups.")

    params: Dict[str, Any] = {
        "engine": "google_maps",
        "q": query.strip(),
        "api_key": api_key,
        "type": "search",
    }
    if ll:
        params["ll"] = ll
    if start:
        params["start"] = start
    return params


def _is_no_results(message: str) -> bool:
    lowered = message.lower()
    return any(marker in lowered for marker in _NO_RESULTS_MARKERS)


def fetch_from_serpapi(params: Dict[str, Any]) -> Dict[str, Any]:
    """Call SerpAPI and return the raw JSON response with retry logic.

    SerpAPI charges per request, so every attempt is logged to make usage
    visible in aggregated logs.
    """
    attempt = 0
    while True:
        attempt += 1
        try:
            logger.info("Calling SerpAPI (attempt %s) for q=%s start=%s", attempt, params.get("q"), params.get("start", 0))
            data = GoogleSearch(params).get_dict()
        except Exception as exc:  # noqa: BLE001 - the client raises bare exceptions on network errors
            logger.warning("SerpAPI request failed (attempt %s/%s): %s", attempt, RETRY_LIMIT + 1, exc)
            if attempt > RETRY_LIMIT:
                logger.error("SerpAPI request exhausted retries for q=%s", params.get("q"))
                raise SerpApiError(str(exc), status="NETWORK_ERROR") from exc
            time.sleep(RETRY_DELAY_SECONDS + random.uniform(0, 0.8))
            continue

        if not data:
            raise SerpApiError("SerpAPI returned an empty payload.", status="EMPTY_RESPONSE")
        if "error" in data:
            message = str(data.get("error") or "unknown error")
            if _is_no_results(message):
                logger.info("SerpAPI reported no results for q=%s", params.get("q"))
                return {"local_results": []}
            raise SerpApiError(message, status="ERROR")
        return data


def _extract_items(data: Dict[str, Any]) -> List[Dict[str, Any]]:
    """SerpAPI sometimes returns local_results as a list or nested dict."""
    local_results = data.get("local_results")
    if isinstance(local_results, list):
        return [item for item in local_results if isinstance(item, dict)]
    if isinstance(local_results, dict):
        for maybe in (local_results.get("places"), local_results.get("results")):
            if isinstance(maybe, list):
                return [item for item in maybe if isinstance(item, dict)]
    place_results = data.get("place_results")
    if isinstance(place_results, dict):
        return [place_results]
    return []


def _format_ll(coords: Optional[Tuple[float, float]], radius_km: float) -> Optional[str]:
    if not coords:
        return None
    lat, lng = coords
    # Rough zoom for the requested radius: 14z ~ 5 km, one level per doubling.
    zoom = 14
    span = 5.0
    while span < radius_km and zoom > 8:
        span *= 2
        zoom -= 1
    return f"@{lat},{lng},{zoom}z"


class SerpApiMapsProvider:
    """Places directory backed by the SerpAPI ``google_maps`` engine."""

    name = "serpapi"
    page_size = PAGE_SIZE

    def __init__(self, api_key: str) -> None:
        if not api_key:
            raise SerpApiError("SERPAPI_API_KEY is required", status="REQUEST_DENIED")
        self.api_key = api_key
        self._coords: Dict[str, Optional[Tuple[float, float]]] = {}

    def _location_for(self, location: str) -> Optional[Tuple[float, float]]:
        """Resolve the search area's centre once per location via the maps engine."""
        if location not in self._coords:
            data = fetch_from_serpapi(build_serpapi_params(location, self.api_key))
            gps = (data.get("place_results") or {}).get("gps_coordinates") or {}
            if gps.get("latitude") is None or gps.get("longitude") is None:
                logger.warning("SerpAPI could not place %s; searching without a radius", location)
                self._coords[location] = None
            else:
                self._coords[location] = (float(gps["latitude"]), float(gps["longitude"]))
        return self._coords[location]

    def search_page(self, terms: str, location: str, radius_km: float, cursor: Optional[str] = None) -> PlacesPage:
        start = int(cursor) if cursor else 0
        params = build_serpapi_params(
            f"{terms} in {location}",
            self.api_key,
            ll=_format_ll(self._location_for(location), radius_km),
            start=start,
        )
        data = fetch_from_serpapi(params)
        items = _extract_items(data)
        pagination = data.get("serpapi_pagination") or {}
        next_cursor = str(start + PAGE_SIZE) if items and pagination.get("next") else None
        return PlacesPage(records=items, next_cursor=next_cursor)

    def details(self, provider_ref: str) -> Dict[str, Any]:
        params = {"engine": "google_maps", "type": "place", "place_id": provider_ref, "api_key": self.api_key}
        data = fetch_from_serpapi(params)
        place = data.get("place_results")
        return place if isinstance(place, dict) else {}
