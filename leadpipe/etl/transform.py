"""Utilities for transforming directory responses into candidate records."""

import logging
from typing import Any, Dict, Iterable, Optional, Sequence, Tuple

from leadpipe.core.models import Candidate
from leadpipe.etl.dedupe import candidate_id, identity_key

logger = logging.getLogger(__name__)

_IGNORE_TYPES = {"point_of_interest", "establishment", "political", "premise"}


def parse_city_state(address_components: Iterable[Dict[str, Any]]) -> Tuple[Optional[str], Optional[str]]:
    city = None
    state = None
    for component in address_components or []:
        types = set(component.get("types", []))
        if "locality" in types or ("administrative_area_level_2" in types and city is None):
            city = component.get("long_name")
        if "administrative_area_level_1" in types:
            state = component.get("short_name") or component.get("long_name")
    return city, state


def _extract_primary_type(types: Iterable[str]) -> Optional[str]:
    for type_name in types or []:
        if type_name not in _IGNORE_TYPES:
            return type_name
    return None


def _strip_or_none(value: Any) -> Optional[str]:
    if value is None:
        return None
    value_str = str(value).strip()
    return value_str or None


def _safe_float(value: Any) -> Optional[float]:
    try:
        if value is None:
            return None
        return float(value)
    except (TypeError, ValueError):
        return None


def _safe_int(value: Any) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return int(value)
    if isinstance(value, str):
        digits = "".join(ch for ch in value if ch.isdigit())
        if digits:
            return int(digits)
    return None


def google_record_to_row(result: Dict[str, Any]) -> Dict[str, Any]:
    """Flatten a Places search/details result into a provider-neutral row."""
    geometry = result.get("geometry", {}).get("location", {})
    opening_hours = result.get("opening_hours") or {}
    city, state = parse_city_state(result.get("address_components", []))
    return {
        "provider_ref": result.get("place_id"),
        "name": _strip_or_none(result.get("name")),
        "address": _strip_or_none(result.get("formatted_address") or result.get("vicinity")),
        "phone": _strip_or_none(result.get("international_phone_number") or result.get("formatted_phone_number")),
        "website": _strip_or_none(result.get("website")),
        "rating": _safe_float(result.get("rating")),
        "review_count": _safe_int(result.get("user_ratings_total")),
        "lat": _safe_float(geometry.get("lat")),
        "lng": _safe_float(geometry.get("lng")),
        "types": tuple(result.get("types") or ()),
        "primary_type": _extract_primary_type(result.get("types", [])),
        "hours_listed": bool(opening_hours.get("weekday_text") or opening_hours.get("periods")),
        "city": city,
        "state": state,
    }


def serpapi_record_to_row(raw: Dict[str, Any]) -> Dict[str, Any]:
    """Flatten a SerpAPI local/place result into a provider-neutral row."""
    gps = raw.get("gps_coordinates") or {}
    types = raw.get("types") or ([raw["type"]] if raw.get("type") else [])
    return {
        "provider_ref": raw.get("place_id") or raw.get("data_id"),
        "name": _strip_or_none(raw.get("title") or raw.get("name")),
        "address": _strip_or_none(raw.get("address")),
        "phone": _strip_or_none(raw.get("phone")),
        "website": _strip_or_none(raw.get("website")),
        "rating": _safe_float(raw.get("rating")),
        "review_count": _safe_int(raw.get("reviews_count") or raw.get("reviews")),
        "lat": _safe_float(gps.get("latitude")),
        "lng": _safe_float(gps.get("longitude")),
        "types": tuple(types),
        "primary_type": _extract_primary_type(types),
        "hours_listed": bool(raw.get("operating_hours") or raw.get("hours")),
        "city": None,
        "state": None,
    }


_ROW_BUILDERS = {
    "google_places": google_record_to_row,
    "serpapi": serpapi_record_to_row,
}


def record_to_row(record: Dict[str, Any], provider: str) -> Dict[str, Any]:
    try:
        builder = _ROW_BUILDERS[provider]
    except KeyError:
        raise ValueError(f"Unknown places provider {provider!r}") from None
    return builder(record)


def merge_rows(search_row: Dict[str, Any], details_row: Dict[str, Any]) -> Dict[str, Any]:
    """Overlay details fields on a search row without dropping known values."""
    merged = dict(search_row)
    for key, value in details_row.items():
        if value not in (None, "", (), False):
            merged[key] = value
    return merged


def guess_franchise(name: Optional[str], markers: Sequence[str]) -> bool:
    lowered = (name or "").lower()
    return any(marker in lowered for marker in markers)


def to_candidate(
    row: Dict[str, Any],
    *,
    provider: str,
    franchise_markers: Sequence[str] = (),
    default_region: Optional[str] = "US",
    raw: Optional[Dict[str, Any]] = None,
) -> Optional[Candidate]:
    """Build a Candidate from a provider-neutral row; None when it has no name."""
    name = row.get("name")
    if not name:
        logger.debug("Skipping record without a name: %s", row.get("provider_ref"))
        return None
    address = row.get("address") or ""
    key = identity_key(name, address, row.get("phone"), default_region)
    return Candidate(
        id=candidate_id(key),
        name=name,
        address=address,
        provider_ref=row.get("provider_ref"),
        provider=provider,
        website=row.get("website"),
        phone=row.get("phone"),
        lat=row.get("lat"),
        lng=row.get("lng"),
        franchise_guess=guess_franchise(name, franchise_markers),
        rating=row.get("rating"),
        review_count=row.get("review_count"),
        hours_listed=bool(row.get("hours_listed")),
        types=tuple(row.get("types") or ()),
        raw_snapshot=raw,
    )
