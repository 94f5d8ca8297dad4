"""Identity normalisation and streaming deduplication of directory records."""

from __future__ import annotations

import logging
import re
import unicodedata
import uuid
from typing import Optional, Set, Tuple

import phonenumbers

logger = logging.getLogger(__name__)

# Stable namespace so the same business always maps to the same candidate id.
CANDIDATE_NAMESPACE = uuid.UUID("6f4a3c52-8e0b-5d7e-9a43-2f1f0c6b9d11")

_ADDRESS_ABBREVIATIONS = {
    "street": "st",
    "avenue": "ave",
    "road": "rd",
    "boulevard": "blvd",
    "drive": "dr",
    "lane": "ln",
    "court": "ct",
    "place": "pl",
    "parkway": "pkwy",
    "highway": "hwy",
    "suite": "ste",
    "north": "n",
    "south": "s",
    "east": "e",
    "west": "w",
    "usa": "us",
}
_NON_ALNUM = re.compile(r"[^a-z0-9]+")


def _fold(value: Optional[str]) -> str:
    text = unicodedata.normalize("NFKD", value or "")
    text = "".join(ch for ch in text if not unicodedata.combining(ch)).lower()
    text = text.replace("&", " and ")
    return " ".join(_NON_ALNUM.sub(" ", text).split())


def normalize_name(name: Optional[str]) -> str:
    return _fold(name)


def normalize_address(address: Optional[str]) -> str:
    words = _fold(address).split()
    folded = " ".join(_ADDRESS_ABBREVIATIONS.get(word, word) for word in words)
    return folded.replace("united states", "us")


def normalize_phone(phone: Optional[str], default_region: Optional[str] = "US") -> str:
    """Return an E.164 phone string, or the bare digits when it cannot be parsed."""
    if not phone or not phone.strip():
        return ""
    try:
        parsed = phonenumbers.parse(phone, default_region)
    except phonenumbers.NumberParseException:
        return re.sub(r"\D", "", phone)
    if not phonenumbers.is_possible_number(parsed):
        return re.sub(r"\D", "", phone)
    return phonenumbers.format_number(parsed, phonenumbers.PhoneNumberFormat.E164)


def identity_key(
    name: Optional[str],
    address: Optional[str],
    phone: Optional[str],
    default_region: Optional[str] = "US",
) -> Tuple[str, str, str]:
    return normalize_name(name), normalize_address(address), normalize_phone(phone, default_region)


def candidate_id(key: Tuple[str, str, str]) -> str:
    return str(uuid.uuid5(CANDIDATE_NAMESPACE, "|".join(key)))


class Deduplicator:
    """Remembers identity keys seen within one discovery run."""

    def __init__(self) -> None:
        self._seen: Set[Tuple[str, str, str]] = set()
        self.duplicates = 0

    def __len__(self) -> int:
        return len(self._seen)

    def add(self, key: Tuple[str, str, str]) -> bool:
        """Record ``key``; return False when it was already seen."""
        if key in self._seen:
            self.duplicates += 1
            logger.debug("Dropping duplicate record %s", key)
            return False
        self._seen.add(key)
        return True
