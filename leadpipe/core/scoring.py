"""Deterministic, explainable lead scoring."""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Mapping, Optional, Sequence

from leadpipe.core.errors import ValidationError
from leadpipe.core.models import CATEGORIES, Constraint, Constraints, Signal
from leadpipe.core.profiles import ScoringProfile

RESOLUTION_POLICIES = ("most_recent", "highest_confidence")

ICP_BASE = 25
RISK_BASE = 5
MAX_SOCIAL_PLATFORMS = 5
SLOW_RESPONSE_MS = 3000
FAST_RESPONSE_MS = 800

# Constraint keys that do not share a name with the signal they test.
_CONSTRAINT_SIGNALS = {"franchise": "franchise_guess"}


@dataclass
class ScoreResult:
    score: int
    subscores: Dict[str, float]
    weighted_subscores: Dict[str, float]
    justifications: List[str] = field(default_factory=list)


@dataclass
class ConstraintMatch:
    must_satisfied: bool
    optional_matched: int
    optional_total: int
    failed: List[str] = field(default_factory=list)


def resolve_signals(signals: Iterable[Signal], policy: str = "most_recent") -> Dict[str, Signal]:
    """Pick one signal per type; input order is store order (oldest first)."""
    if policy not in RESOLUTION_POLICIES:
        raise ValidationError(f"unknown resolution policy {policy!r}")

    resolved: Dict[str, Signal] = {}
    for signal in signals:
        current = resolved.get(signal.type)
        if current is None or policy == "most_recent" or signal.confidence >= current.confidence:
            resolved[signal.type] = signal
    return resolved


def _flag(resolved: Mapping[str, Signal], signal_type: str) -> Optional[bool]:
    signal = resolved.get(signal_type)
    if signal is None or not isinstance(signal.value, bool):
        return None
    return signal.value


def _number(resolved: Mapping[str, Signal], signal_type: str) -> Optional[float]:
    signal = resolved.get(signal_type)
    if signal is None or isinstance(signal.value, bool) or not isinstance(signal.value, (int, float)):
        return None
    return float(signal.value)


def social_platform_count(resolved: Mapping[str, Signal]) -> int:
    signal = resolved.get("social_links")
    if signal is None or not isinstance(signal.value, Mapping):
        return 0
    return sum(1 for links in signal.value.values() if links)


class _Tally:
    def __init__(self) -> None:
        self.points: Dict[str, float] = {category: 0.0 for category in CATEGORIES}
        self.justifications: List[str] = []

    def add(self, category: str, points: int, reason: str) -> None:
        self.points[category] += points
        self.justifications.append(f"{reason} ({points:+d} {category} points)")


def _apply_rules(resolved: Mapping[str, Signal]) -> _Tally:
    tally = _Tally()
    socials = social_platform_count(resolved)

    tally.add("ICP", ICP_BASE, "ICP base")
    if _flag(resolved, "franchise_guess") is False:
        tally.add("ICP", 10, "Independent business, not a franchise")
    if _flag(resolved, "has_structured_data"):
        tally.add("ICP", 3, "Structured business data on website")
    if _flag(resolved, "hours_listed"):
        tally.add("ICP", 3, "Business hours listed")
    if socials >= 2:
        tally.add("ICP", 2, "Established presence on multiple social platforms")

    if _flag(resolved, "no_website"):
        tally.add("Pain", 15, "No website")
    if _flag(resolved, "has_chatbot") is False:
        tally.add("Pain", 10, "No chat widget")
    if _flag(resolved, "has_online_booking") is False:
        tally.add("Pain", 10, "No online booking system")
    if _flag(resolved, "has_ssl") is False:
        tally.add("Pain", 4, "Website not served over HTTPS")
    if _flag(resolved, "mobile_friendly") is False:
        tally.add("Pain", 3, "Website not mobile friendly")
    response_ms = _number(resolved, "response_time_ms")
    if response_ms is not None and response_ms >= SLOW_RESPONSE_MS:
        tally.add("Pain", 3, f"Slow website ({response_ms:.0f} ms)")
    elif response_ms is not None and response_ms <= FAST_RESPONSE_MS:
        tally.add("Pain", -3, f"Fast website ({response_ms:.0f} ms)")
    tally.points["Pain"] = max(0.0, tally.points["Pain"])

    if _flag(resolved, "owner_identified"):
        tally.add("Reachability", 15, "Owner identified")
    if "contact_email" in resolved:
        tally.add("Reachability", 5, "Contact email found")
    if "contact_phone" in resolved or _flag(resolved, "has_phone"):
        tally.add("Reachability", 4, "Phone number available")
    if socials:
        counted = min(socials, MAX_SOCIAL_PLATFORMS)
        tally.add("Reachability", 2 * counted, f"Active on {counted} social platform{'s' if counted != 1 else ''}")

    tally.add("ComplianceRisk", RISK_BASE, "Compliance risk base")
    if _flag(resolved, "has_ssl") is False:
        tally.add("ComplianceRisk", 3, "No SSL certificate")
    if _flag(resolved, "has_privacy_policy") is False:
        tally.add("ComplianceRisk", 2, "No privacy policy")
    return tally


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def score(signals: Sequence[Signal], profile: ScoringProfile, policy: str = "most_recent") -> ScoreResult:
    """Score one candidate's signal history with ``profile``.

    Pure: identical inputs always give identical results.
    """
    resolved = resolve_signals(signals, policy)
    tally = _apply_rules(resolved)

    weighted = {category: tally.points[category] * profile.weight(category) / 100 for category in CATEGORIES}
    final = weighted["ICP"] + weighted["Pain"] + weighted["Reachability"] - weighted["ComplianceRisk"]
    final = min(100.0, max(0.0, final))

    return ScoreResult(
        score=round_half_up(final),
        subscores=dict(tally.points),
        weighted_subscores=weighted,
        justifications=tally.justifications,
    )


def _constraint_value(constraint: Constraint, resolved: Mapping[str, Signal]) -> Optional[bool]:
    signal_type = _CONSTRAINT_SIGNALS.get(constraint.key, constraint.key)
    value = _flag(resolved, signal_type)
    if value is None and signal_type == "no_website":
        has_website = _flag(resolved, "has_website")
        value = None if has_website is None else not has_website
    return value


def match_constraints(
    signals: Sequence[Signal], constraints: Constraints, policy: str = "most_recent"
) -> ConstraintMatch:
    """Check ``must``/``optional`` constraints; an unknown signal never satisfies one."""
    resolved = resolve_signals(signals, policy)
    failed: List[str] = []
    for constraint in constraints.must:
        if _constraint_value(constraint, resolved) is not constraint.value:
            failed.append(constraint.key)
    optional_matched = sum(
        1 for constraint in constraints.optional if _constraint_value(constraint, resolved) is constraint.value
    )
    return ConstraintMatch(
        must_satisfied=not failed,
        optional_matched=optional_matched,
        optional_total=len(constraints.optional),
        failed=failed,
    )
