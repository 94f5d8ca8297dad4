"""Core data models shared by the discovery, extraction, scoring and job layers."""

from __future__ import annotations

import math
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union

from leadpipe.core.errors import ValidationError

SignalValue = Union[bool, int, float, Dict[str, Any]]

CATEGORIES = ("ICP", "Pain", "Reachability", "ComplianceRisk")

# Value kind expected for every signal type the extractor knows about.
SIGNAL_VALUE_KINDS: Dict[str, str] = {
    "no_website": "bool",
    "has_website": "bool",
    "has_phone": "bool",
    "hours_listed": "bool",
    "franchise_guess": "bool",
    "review_count": "number",
    "rating": "number",
    "website_error": "object",
    "has_chatbot": "bool",
    "has_online_booking": "bool",
    "has_payment_processor": "bool",
    "has_analytics": "bool",
    "has_crm": "bool",
    "has_marketing_automation": "bool",
    "social_links": "object",
    "has_ssl": "bool",
    "mobile_friendly": "bool",
    "response_time_ms": "number",
    "has_privacy_policy": "bool",
    "has_structured_data": "bool",
    "owner_identified": "bool",
    "owner_name": "object",
    "contact_email": "object",
    "contact_phone": "object",
}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def value_kind(value: Any) -> Optional[str]:
    """Return the tagged-union kind of a signal value, or None when unsupported."""
    if isinstance(value, bool):
        return "bool"
    if isinstance(value, (int, float)):
        return "number"
    if isinstance(value, Mapping):
        return "object"
    return None


class JobStatus(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED)


@dataclass(frozen=True)
class Geo:
    city: str
    state: str
    radius_km: float = 40.0

    @property
    def location(self) -> str:
        return f"{self.city}, {self.state}"


@dataclass(frozen=True)
class Constraint:
    """A single expectation on a boolean signal, e.g. ``no_website == True``."""

    key: str
    value: bool

    def to_dict(self) -> Dict[str, bool]:
        return {self.key: self.value}


@dataclass(frozen=True)
class Constraints:
    must: Tuple[Constraint, ...] = ()
    optional: Tuple[Constraint, ...] = ()


@dataclass(frozen=True)
class Query:
    """Validated, immutable search request handed over by the prompt parser."""

    vertical: str
    geo: Geo
    target: int
    constraints: Constraints = field(default_factory=Constraints)
    exclusions: Tuple[str, ...] = ()
    sort_by: str = "score_desc"
    compliance_flags: Tuple[str, ...] = ()
    lead_profile: str = "generic"
    version: int = 1

    def to_dict(self) -> Dict[str, Any]:
        return {
            "version": self.version,
            "vertical": self.vertical,
            "geo": {"city": self.geo.city, "state": self.geo.state, "radius_km": self.geo.radius_km},
            "constraints": {
                "must": [c.to_dict() for c in self.constraints.must],
                "optional": [c.to_dict() for c in self.constraints.optional],
            },
            "exclusions": list(self.exclusions),
            "result_size": {"target": self.target},
            "sort_by": self.sort_by,
            "compliance_flags": list(self.compliance_flags),
            "lead_profile": self.lead_profile,
        }


@dataclass(slots=True)
class Candidate:
    """Deduplicated business resolved from the places directory."""

    id: str
    name: str
    address: str
    provider_ref: Optional[str] = None
    provider: str = "google_places"
    website: Optional[str] = None
    phone: Optional[str] = None
    lat: Optional[float] = None
    lng: Optional[float] = None
    franchise_guess: Optional[bool] = None
    rating: Optional[float] = None
    review_count: Optional[int] = None
    hours_listed: bool = False
    types: Tuple[str, ...] = ()
    raw_snapshot: Optional[Dict[str, Any]] = field(default=None, repr=False)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["types"] = list(self.types)
        data.pop("raw_snapshot", None)
        return data


@dataclass(frozen=True)
class Signal:
    """A single typed, evidenced observation about a business."""

    business_id: str
    type: str
    value: SignalValue
    confidence: float
    source_key: str
    evidence_url: Optional[str] = None
    evidence_snippet: Optional[str] = None
    detected_at: datetime = field(default_factory=utcnow)

    def __post_init__(self) -> None:
        if not self.type:
            raise ValidationError("signal type is required")
        kind = value_kind(self.value)
        if kind is None:
            raise ValidationError(f"signal {self.type} has unsupported value {self.value!r}")
        expected = SIGNAL_VALUE_KINDS.get(self.type)
        if expected is not None and kind != expected:
            raise ValidationError(f"signal {self.type} expects a {expected} value, got {kind}")
        if kind == "number" and not math.isfinite(float(self.value)):
            raise ValidationError(f"signal {self.type} value must be finite")
        if not 0.0 <= float(self.confidence) <= 1.0:
            raise ValidationError(f"signal {self.type} confidence {self.confidence} is outside [0, 1]")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "business_id": self.business_id,
            "type": self.type,
            "value": self.value,
            "confidence": self.confidence,
            "evidence_url": self.evidence_url,
            "evidence_snippet": self.evidence_snippet,
            "source_key": self.source_key,
            "detected_at": self.detected_at.isoformat(),
        }


@dataclass
class Lead:
    """A scored candidate within a specific job."""

    job_id: str
    business_id: str
    score: int
    subscores: Dict[str, float]
    weighted_subscores: Dict[str, float]
    justifications: List[str]
    position: int
    profile: str
    name: str = ""
    rank: Optional[int] = None
    constraints_matched: bool = True

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class JobSummary:
    total_found: int = 0
    total_enriched: int = 0
    total_scored: int = 0
    processing_time_ms: int = 0


@dataclass
class JobProgress:
    processed: int = 0
    target: int = 0


@dataclass
class Job:
    id: str
    query: Query
    profile: str
    status: JobStatus = JobStatus.QUEUED
    summary: JobSummary = field(default_factory=JobSummary)
    progress: JobProgress = field(default_factory=JobProgress)
    error: Optional[str] = None
    cancel_requested: bool = False
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "query": self.query.to_dict(),
            "profile": self.profile,
            "status": self.status.value,
            "summary": asdict(self.summary),
            "progress": asdict(self.progress),
            "error": self.error,
            "cancel_requested": self.cancel_requested,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }


@dataclass
class PlacesPage:
    """One page of raw directory records plus the opaque cursor of the next page."""

    records: List[Dict[str, Any]]
    next_cursor: Optional[str] = None
