"""Scoring profiles: named weightings of the four score categories."""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Union

import yaml

from leadpipe.core.errors import ConfigError, ValidationError
from leadpipe.core.models import CATEGORIES

logger = logging.getLogger(__name__)

BUILTIN_PROFILES_PATH = Path(__file__).resolve().parents[1] / "data" / "profiles.yaml"
CUSTOM_PROFILE_NAME = "custom"


@dataclass(frozen=True)
class ScoringProfile:
    name: str
    weights: Dict[str, float]
    description: Optional[str] = None
    vertical: Optional[str] = None

    def weight(self, category: str) -> float:
        return self.weights[category]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "weights": dict(self.weights),
            "description": self.description,
            "vertical": self.vertical,
        }


def validate_weights(raw: Any, name: str = CUSTOM_PROFILE_NAME) -> Dict[str, float]:
    """Return normalised weights or raise ValidationError.

    Every category must be present, non-negative, and the total must be 100.
    """
    if not isinstance(raw, Mapping):
        raise ValidationError(f"profile {name!r}: weights must be an object")

    unknown = sorted(set(raw) - set(CATEGORIES))
    if unknown:
        raise ValidationError(f"profile {name!r}: unknown weight categories {unknown}")

    weights: Dict[str, float] = {}
    for category in CATEGORIES:
        value = raw.get(category)
        if value is None:
            raise ValidationError(f"profile {name!r}: missing weight for {category}")
        if isinstance(value, bool) or not isinstance(value, (int, float)) or not math.isfinite(value):
            raise ValidationError(f"profile {name!r}: weight {category} must be a number")
        if value < 0:
            raise ValidationError(f"profile {name!r}: weight {category} must not be negative")
        weights[category] = float(value)

    total = sum(weights.values())
    if not math.isclose(total, 100.0, abs_tol=1e-9):
        raise ValidationError(f"profile {name!r}: weights must sum to 100, got {total:g}")
    return weights


def profile_from_mapping(name: str, data: Mapping[str, Any]) -> ScoringProfile:
    return ScoringProfile(
        name=name,
        weights=validate_weights(data.get("weights"), name),
        description=data.get("description"),
        vertical=data.get("vertical"),
    )


def _read_profiles(path: Path) -> Dict[str, ScoringProfile]:
    try:
        with path.open("r", encoding="utf-8") as fh:
            data = yaml.safe_load(fh) or {}
    except OSError as exc:
        raise ConfigError(f"Unable to read profiles file {path}: {exc}") from exc
    except yaml.YAMLError as exc:
        raise ConfigError(f"Profiles file {path} is not valid YAML: {exc}") from exc

    entries = data.get("profiles") if isinstance(data, Mapping) else None
    if not isinstance(entries, Mapping):
        raise ConfigError(f"Profiles file {path} needs a top-level 'profiles' mapping")

    profiles: Dict[str, ScoringProfile] = {}
    for name, entry in entries.items():
        if not isinstance(entry, Mapping):
            raise ConfigError(f"Profile {name!r} in {path} must be a mapping")
        try:
            profiles[str(name)] = profile_from_mapping(str(name), entry)
        except ValidationError as exc:
            raise ConfigError(f"{path}: {exc}") from exc
    return profiles


class ProfileRegistry:
    """Name → profile lookup for built-in and externally supplied profiles."""

    def __init__(self, profiles: Mapping[str, ScoringProfile]) -> None:
        self._profiles = dict(profiles)

    def __contains__(self, name: object) -> bool:
        return name in self._profiles

    def names(self) -> List[str]:
        return sorted(self._profiles)

    def get(self, name: str) -> ScoringProfile:
        try:
            return self._profiles[name]
        except KeyError:
            raise ValidationError(f"unknown scoring profile {name!r}; known: {', '.join(self.names())}") from None

    def resolve(self, profile_or_weights: Union[str, ScoringProfile, Mapping[str, Any], None],
                default: str = "generic") -> ScoringProfile:
        """Accept a profile name, a profile, ``{"profile": name}``, ``{"weights": {...}}`` or bare weights."""
        if profile_or_weights is None:
            return self.get(default)
        if isinstance(profile_or_weights, ScoringProfile):
            return profile_or_weights
        if isinstance(profile_or_weights, str):
            return self.get(profile_or_weights.strip())
        if isinstance(profile_or_weights, Mapping):
            if "profile" in profile_or_weights and "weights" not in profile_or_weights:
                name = profile_or_weights["profile"]
                if not isinstance(name, str):
                    raise ValidationError("profile must be a string")
                return self.get(name.strip())
            if "weights" in profile_or_weights:
                name = str(profile_or_weights.get("name") or CUSTOM_PROFILE_NAME)
                return profile_from_mapping(name, profile_or_weights)
            return ScoringProfile(name=CUSTOM_PROFILE_NAME, weights=validate_weights(profile_or_weights))
        raise ValidationError(f"cannot build a scoring profile from {type(profile_or_weights).__name__}")


@lru_cache(maxsize=4)
def load_profiles(extra_path: Optional[str] = None) -> ProfileRegistry:
    """Load the packaged profiles, then overlay any from ``extra_path``."""
    profiles = _read_profiles(BUILTIN_PROFILES_PATH)
    if extra_path:
        extra = _read_profiles(Path(extra_path))
        overridden = sorted(set(extra) & set(profiles))
        if overridden:
            logger.info("Profiles from %s override built-ins: %s", extra_path, ", ".join(overridden))
        profiles.update(extra)
    logger.info("Loaded %d scoring profiles", len(profiles))
    return ProfileRegistry(profiles)
