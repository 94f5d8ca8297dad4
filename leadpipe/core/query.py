"""Validation of the structured search request produced by the prompt parser."""

from __future__ import annotations

import logging
import math
from typing import Any, Dict, List, Mapping, Tuple, Union

from leadpipe.core.errors import ValidationError
from leadpipe.core.models import Constraint, Constraints, Geo, Query

logger = logging.getLogger(__name__)

KNOWN_VERTICALS = ("dentist", "law_firm", "contractor", "hvac", "roofing", "generic")
CONSTRAINT_KEYS = ("no_website", "has_chatbot", "has_online_booking", "owner_identified", "franchise")
SORT_OPTIONS = ("score_desc", "score_asc", "name_asc")
DEFAULT_RADIUS_KM = 40.0
MIN_RADIUS_KM = 1.0
MAX_RADIUS_KM = 100.0
MAX_TARGET = 500


def _clean_str(value: Any) -> str:
    if value is None:
        return ""
    return str(value).strip()


def _parse_constraints(raw: Any, field_name: str, errors: List[str]) -> Tuple[Constraint, ...]:
    if raw is None:
        return ()
    if not isinstance(raw, list):
        errors.append(f"constraints.{field_name} must be a list")
        return ()

    parsed: List[Constraint] = []
    for index, item in enumerate(raw):
        if not isinstance(item, Mapping) or not item:
            errors.append(f"constraints.{field_name}[{index}] must be a non-empty object")
            continue
        for key, value in item.items():
            if key not in CONSTRAINT_KEYS:
                errors.append(f"constraints.{field_name}[{index}] has unknown key {key!r}")
                continue
            if not isinstance(value, bool):
                errors.append(f"constraints.{field_name}[{index}].{key} must be a boolean")
                continue
            parsed.append(Constraint(key=key, value=value))
    return tuple(parsed)


def _parse_string_list(raw: Any, field_name: str, errors: List[str]) -> Tuple[str, ...]:
    if raw is None:
        return ()
    if not isinstance(raw, list) or not all(isinstance(item, str) for item in raw):
        errors.append(f"{field_name} must be a list of strings")
        return ()
    return tuple(item.strip() for item in raw if item.strip())


def parse_query(payload: Union[Query, Mapping[str, Any]]) -> Query:
    """Validate a query payload and return an immutable :class:`Query`.

    All problems are collected and reported together in one ValidationError so
    that callers can surface every issue to the user at once.
    """
    if isinstance(payload, Query):
        return payload
    if not isinstance(payload, Mapping):
        raise ValidationError("query must be an object")

    errors: List[str] = []

    version = payload.get("version", 1)
    if version != 1:
        errors.append("version must be 1")

    vertical = _clean_str(payload.get("vertical")).lower()
    if not vertical:
        errors.append("vertical is required")

    geo_raw = payload.get("geo")
    city = state = ""
    radius_km = DEFAULT_RADIUS_KM
    if not isinstance(geo_raw, Mapping):
        errors.append("geo must be an object with city and state")
    else:
        city = _clean_str(geo_raw.get("city"))
        state = _clean_str(geo_raw.get("state"))
        if not city or not state:
            errors.append("geo.city and geo.state are required")
        radius_raw = geo_raw.get("radius_km")
        if radius_raw is not None:
            if isinstance(radius_raw, bool) or not isinstance(radius_raw, (int, float)):
                errors.append("geo.radius_km must be numeric")
            elif not MIN_RADIUS_KM <= float(radius_raw) <= MAX_RADIUS_KM:
                errors.append(f"geo.radius_km must be between {MIN_RADIUS_KM:g} and {MAX_RADIUS_KM:g}")
            else:
                radius_km = float(radius_raw)

    constraints_raw = payload.get("constraints") or {}
    if not isinstance(constraints_raw, Mapping):
        errors.append("constraints must be an object")
        constraints_raw = {}
    must = _parse_constraints(constraints_raw.get("must"), "must", errors)
    optional = _parse_constraints(constraints_raw.get("optional"), "optional", errors)

    result_size = payload.get("result_size")
    target = 0
    if not isinstance(result_size, Mapping) or "target" not in result_size:
        errors.append("result_size.target is required")
    else:
        target_raw = result_size.get("target")
        if (
            isinstance(target_raw, bool)
            or not isinstance(target_raw, (int, float))
            or not math.isfinite(target_raw)
            or int(target_raw) != target_raw
        ):
            errors.append("result_size.target must be an integer")
        elif not 1 <= int(target_raw) <= MAX_TARGET:
            errors.append(f"result_size.target must be between 1 and {MAX_TARGET}")
        else:
            target = int(target_raw)

    sort_by = _clean_str(payload.get("sort_by")) or "score_desc"
    if sort_by not in SORT_OPTIONS:
        errors.append(f"sort_by must be one of {', '.join(SORT_OPTIONS)}")

    exclusions = _parse_string_list(payload.get("exclusions"), "exclusions", errors)
    compliance_flags = _parse_string_list(payload.get("compliance_flags"), "compliance_flags", errors)
    lead_profile = _clean_str(payload.get("lead_profile")) or "generic"

    if errors:
        logger.info("Rejected query: %s", "; ".join(errors))
        raise ValidationError("; ".join(errors))

    if vertical not in KNOWN_VERTICALS:
        logger.debug("Vertical %s is not a known vertical; searching by its own text", vertical)

    return Query(
        vertical=vertical,
        geo=Geo(city=city, state=state, radius_km=radius_km),
        target=target,
        constraints=Constraints(must=must, optional=optional),
        exclusions=exclusions,
        sort_by=sort_by,
        compliance_flags=compliance_flags,
        lead_profile=lead_profile,
        version=1,
    )


def query_summary(query: Query) -> Dict[str, Any]:
    """Compact representation used in log lines."""
    return {
        "vertical": query.vertical,
        "location": query.geo.location,
        "radius_km": query.geo.radius_km,
        "target": query.target,
    }
