"""Loading of the versioned website pattern catalogue."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Pattern, Tuple

import yaml

from leadpipe.core.errors import ConfigError

logger = logging.getLogger(__name__)

DEFAULT_CATALOGUE_PATH = Path(__file__).resolve().parents[1] / "data" / "patterns.yaml"


@dataclass(frozen=True)
class VendorPattern:
    match: str
    confidence: float
    name: Optional[str] = None

    @property
    def is_vendor(self) -> bool:
        return self.name is not None


@dataclass(frozen=True)
class PatternMatch:
    pattern: VendorPattern
    offset: int


@dataclass(frozen=True)
class PatternFamily:
    signal_type: str
    label: str
    vendors: Tuple[VendorPattern, ...]
    keywords: Tuple[VendorPattern, ...]
    absent_confidence: float

    def find(self, lowered_html: str) -> Optional[PatternMatch]:
        """Return the most specific match: any vendor string beats any keyword."""
        for group in (self.vendors, self.keywords):
            best: Optional[PatternMatch] = None
            for pattern in group:
                offset = lowered_html.find(pattern.match)
                if offset < 0:
                    continue
                if best is None or pattern.confidence > best.pattern.confidence:
                    best = PatternMatch(pattern=pattern, offset=offset)
            if best is not None:
                return best
        return None


@dataclass(frozen=True)
class OwnerPattern:
    regex: Pattern[str]
    confidence: float
    role: Optional[str] = None


@dataclass(frozen=True)
class PatternCatalogue:
    version: int
    families: Tuple[PatternFamily, ...]
    social_platforms: Dict[str, Tuple[str, ...]]
    owner_patterns: Tuple[OwnerPattern, ...]
    generic_mailboxes: Tuple[str, ...]
    franchise_markers: Tuple[str, ...]
    privacy_markers: Tuple[str, ...]

    @property
    def source_key(self) -> str:
        return f"website:v{self.version}"


def _confidence(raw: Any, where: str) -> float:
    try:
        value = float(raw)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"{where}: confidence must be numeric") from exc
    if not 0.0 <= value <= 1.0:
        raise ConfigError(f"{where}: confidence {value} is outside [0, 1]")
    return value


def _patterns(raw: Any, where: str, vendor: bool) -> Tuple[VendorPattern, ...]:
    items: List[VendorPattern] = []
    for index, entry in enumerate(raw or []):
        if not isinstance(entry, Mapping) or not entry.get("match"):
            raise ConfigError(f"{where}[{index}] needs a match string")
        items.append(
            VendorPattern(
                match=str(entry["match"]).lower(),
                confidence=_confidence(entry.get("confidence"), f"{where}[{index}]"),
                name=str(entry.get("name") or entry["match"]) if vendor else None,
            )
        )
    return tuple(items)


def parse_catalogue(data: Mapping[str, Any]) -> PatternCatalogue:
    if not isinstance(data, Mapping):
        raise ConfigError("pattern catalogue must be a mapping")

    families: List[PatternFamily] = []
    for signal_type, family in (data.get("families") or {}).items():
        where = f"families.{signal_type}"
        if not isinstance(family, Mapping):
            raise ConfigError(f"{where} must be a mapping")
        families.append(
            PatternFamily(
                signal_type=signal_type,
                label=str(family.get("label") or signal_type),
                vendors=_patterns(family.get("vendors"), f"{where}.vendors", vendor=True),
                keywords=_patterns(family.get("keywords"), f"{where}.keywords", vendor=False),
                absent_confidence=_confidence(family.get("absent_confidence", 0.7), where),
            )
        )

    owner_patterns: List[OwnerPattern] = []
    for index, entry in enumerate(data.get("owner_patterns") or []):
        try:
            regex = re.compile(entry["pattern"])
        except (KeyError, TypeError, re.error) as exc:
            raise ConfigError(f"owner_patterns[{index}] is not a valid regular expression: {exc}") from exc
        owner_patterns.append(
            OwnerPattern(
                regex=regex,
                confidence=_confidence(entry.get("confidence", 0.7), f"owner_patterns[{index}]"),
                role=entry.get("role"),
            )
        )

    socials = {
        str(platform): tuple(str(host).lower() for host in hosts or ())
        for platform, hosts in (data.get("social_platforms") or {}).items()
    }

    return PatternCatalogue(
        version=int(data.get("version", 1)),
        families=tuple(families),
        social_platforms=socials,
        owner_patterns=tuple(owner_patterns),
        generic_mailboxes=tuple(str(m).lower() for m in data.get("generic_mailboxes") or ()),
        franchise_markers=tuple(str(m).lower() for m in data.get("franchise_markers") or ()),
        privacy_markers=tuple(str(m).lower() for m in data.get("privacy_markers") or ()),
    )


@lru_cache(maxsize=4)
def load_catalogue(path: Optional[str] = None) -> PatternCatalogue:
    """Read and validate the catalogue, defaulting to the packaged YAML file."""
    catalogue_path = Path(path) if path else DEFAULT_CATALOGUE_PATH
    try:
        with catalogue_path.open("r", encoding="utf-8") as fh:
            data = yaml.safe_load(fh) or {}
    except OSError as exc:
        raise ConfigError(f"Unable to read pattern catalogue {catalogue_path}: {exc}") from exc
    except yaml.YAMLError as exc:
        raise ConfigError(f"Pattern catalogue {catalogue_path} is not valid YAML: {exc}") from exc

    catalogue = parse_catalogue(data)
    logger.info(
        "Loaded pattern catalogue v%s from %s (%d families)",
        catalogue.version,
        catalogue_path,
        len(catalogue.families),
    )
    return catalogue
