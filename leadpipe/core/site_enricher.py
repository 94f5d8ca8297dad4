"""Website fetching and HTML inspection helpers used by the signal extractor."""

from __future__ import annotations

import codecs
import json
import logging
import re
import time
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Set, Tuple
from urllib.parse import urljoin, urlparse, urlunparse

import phonenumbers
import requests
from bs4 import BeautifulSoup

from leadpipe.core.catalogue import OwnerPattern
from leadpipe.core.errors import ExtractionFailure

logger = logging.getLogger(__name__)

MAX_BODY_BYTES = 2 * 1024 * 1024
CONNECT_TIMEOUT = 3.05
TRANSIENT_RETRIES = 1

EMAIL_REGEX = re.compile(r"[A-Z0-9._%+-]+@[A-Z0-9.-]+\.[A-Z]{2,}", re.IGNORECASE)
PHONE_CANDIDATE_REGEX = re.compile(r"\+?\(?\d[\d\s().\-]{6,}\d")
_IGNORED_EMAIL_SUFFIXES = (".png", ".jpg", ".jpeg", ".gif", ".svg", ".webp")
_OWNER_TITLES = re.compile(r"owner|founder|principal|president|partner|dds|dmd|attorney|ceo", re.IGNORECASE)


@dataclass
class FetchedPage:
    url: str
    final_url: str
    status_code: int
    content_type: str
    html: str
    elapsed_ms: int

    @property
    def is_https(self) -> bool:
        return urlparse(self.final_url).scheme == "https"

    def soup(self) -> BeautifulSoup:
        return BeautifulSoup(self.html, "html.parser")


@dataclass
class ContactFinding:
    value: str
    confidence: float
    method: str
    evidence: Optional[str] = None


@dataclass
class OwnerFinding:
    name: str
    role: Optional[str]
    confidence: float
    method: str
    evidence: Optional[str] = None


def sanitize_website(raw_url: Optional[str]) -> Optional[str]:
    """Normalise raw website strings into absolute URLs (https when no scheme is given)."""

    if not raw_url:
        return None

    url = raw_url.strip()
    if not url:
        return None

    parsed = urlparse(url)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        parsed = urlparse(f"https://{url.split('://', 1)[-1]}")

    if not parsed.netloc or "." not in parsed.netloc:
        return None

    normalized_path = parsed.path or "/"
    if not normalized_path.startswith("/"):
        normalized_path = f"/{normalized_path}"

    normalized = parsed._replace(path=normalized_path, fragment="")
    return urlunparse(normalized)


def _read_body(response: requests.Response, deadline: float) -> bytes:
    chunks: List[bytes] = []
    size = 0
    for chunk in response.iter_content(chunk_size=16384):
        if not chunk:
            continue
        chunks.append(chunk)
        size += len(chunk)
        if size >= MAX_BODY_BYTES:
            logger.debug("Truncating body of %s at %d bytes", response.url, size)
            break
        if time.monotonic() > deadline:
            raise ExtractionFailure("timeout while reading body", url=response.url)
    return b"".join(chunks)


def _resolve_encoding(response: requests.Response) -> str:
    encoding = response.encoding or "utf-8"
    try:
        return codecs.lookup(encoding).name
    except LookupError:
        logger.debug("Unknown charset %r from %s; decoding as utf-8", encoding, response.url)
        return "utf-8"


def fetch_page(session: requests.Session, url: str, *, timeout: float) -> FetchedPage:
    """GET ``url`` once (plus one retry on network errors) and return the HTML page.

    Raises ExtractionFailure for HTTP errors, non-HTML content, timeouts and
    network failures; HTTP status errors are never retried.
    """
    attempt = 0
    while True:
        attempt += 1
        started = time.monotonic()
        try:
            response = session.get(
                url,
                timeout=(min(CONNECT_TIMEOUT, timeout), timeout),
                allow_redirects=True,
                stream=True,
            )
            try:
                if response.status_code >= 400:
                    raise ExtractionFailure(
                        f"HTTP {response.status_code}", url=response.url or url, status=response.status_code
                    )
                content_type = response.headers.get("Content-Type", "").lower()
                if "html" not in content_type:
                    raise ExtractionFailure(f"non-HTML content ({content_type or 'unknown'})", url=response.url or url)
                body = _read_body(response, started + timeout)
            finally:
                response.close()
        except (requests.ConnectionError, requests.Timeout) as exc:
            if attempt <= TRANSIENT_RETRIES:
                logger.info("Transient error fetching %s (%s); retrying once", url, exc)
                continue
            raise ExtractionFailure(f"network error: {exc.__class__.__name__}", url=url) from exc
        except requests.RequestException as exc:
            raise ExtractionFailure(f"request failed: {exc.__class__.__name__}", url=url) from exc

        elapsed_ms = int((time.monotonic() - started) * 1000)
        encoding = _resolve_encoding(response)
        return FetchedPage(
            url=url,
            final_url=response.url or url,
            status_code=response.status_code,
            content_type=content_type,
            html=body.decode(encoding, errors="replace"),
            elapsed_ms=elapsed_ms,
        )


def extract_emails(text: str) -> List[str]:
    """Return unique emails discovered in a text blob."""

    candidates = {
        match.group(0).lower().rstrip(".")
        for match in EMAIL_REGEX.finditer(text or "")
        if not match.group(0).lower().endswith(_IGNORED_EMAIL_SUFFIXES)
    }
    return sorted(candidates)


def extract_mailto_links(soup: BeautifulSoup) -> List[str]:
    emails: Set[str] = set()
    for anchor in soup.find_all("a", href=True):
        href = anchor["href"].strip()
        if href.lower().startswith("mailto:"):
            email = href.split(":", 1)[1].split("?")[0].strip().lower()
            if EMAIL_REGEX.fullmatch(email):
                emails.add(email)
    return sorted(emails)


def normalize_phone_e164(raw: str, default_region: Optional[str]) -> Optional[str]:
    try:
        parsed = phonenumbers.parse(raw, default_region)
    except phonenumbers.NumberParseException:
        return None
    if not phonenumbers.is_possible_number(parsed):
        return None
    return phonenumbers.format_number(parsed, phonenumbers.PhoneNumberFormat.E164)


def extract_phones(text: str, default_region: Optional[str] = None) -> List[str]:
    """Return E.164 phone strings parsed from text when possible."""

    if not text:
        return []

    normalized: Set[str] = set()
    for raw in PHONE_CANDIDATE_REGEX.findall(text):
        candidate = normalize_phone_e164(raw.strip(), default_region)
        if candidate:
            normalized.add(candidate)
    return sorted(normalized)


def extract_tel_links(soup: BeautifulSoup, default_region: Optional[str]) -> List[str]:
    numbers: Set[str] = set()
    for anchor in soup.find_all("a", href=True):
        href = anchor["href"].strip()
        if href.lower().startswith("tel:"):
            phone = normalize_phone_e164(href.split(":", 1)[1], default_region)
            if phone:
                numbers.add(phone)
    return sorted(numbers)


def _host_matches(host: str, allowed_hosts: Iterable[str]) -> bool:
    host = host.lower().split(":")[0]
    if host.startswith("www."):
        host = host[4:]
    return any(host == allowed or host.endswith(f".{allowed}") for allowed in allowed_hosts)


def extract_social_links(
    soup: BeautifulSoup, base_url: str, platforms: Mapping[str, Sequence[str]]
) -> Dict[str, List[str]]:
    """Collect platform-specific social URLs present in anchor tags."""

    results: Dict[str, Set[str]] = {platform: set() for platform in platforms}
    for anchor in soup.find_all("a", href=True):
        href = anchor["href"].strip()
        if not href:
            continue

        absolute = urljoin(base_url, href)
        parsed = urlparse(absolute)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            continue
        path = parsed.path.rstrip("/")
        if not path:
            continue  # bare platform homepages are share buttons, not profiles

        for platform, allowed_hosts in platforms.items():
            if _host_matches(parsed.netloc, allowed_hosts):
                results[platform].add(urlunparse(("https", parsed.netloc.lower(), path, "", "", "")))

    return {platform: sorted(links) for platform, links in results.items() if links}


def extract_json_ld(soup: BeautifulSoup) -> List[Dict[str, Any]]:
    """Parse every JSON-LD block, flattening lists and ``@graph`` containers."""

    blocks: List[Dict[str, Any]] = []
    for script in soup.find_all("script", attrs={"type": "application/ld+json"}):
        raw = script.string or script.get_text() or ""
        if not raw.strip():
            continue
        try:
            data = json.loads(raw)
        except ValueError:
            logger.debug("Ignoring malformed JSON-LD block")
            continue
        stack: List[Any] = [data]
        while stack:
            item = stack.pop(0)
            if isinstance(item, list):
                stack.extend(item)
            elif isinstance(item, dict):
                blocks.append(item)
                if isinstance(item.get("@graph"), list):
                    stack.extend(item["@graph"])
    return blocks


def _as_list(value: Any) -> List[Any]:
    if value is None:
        return []
    return value if isinstance(value, list) else [value]


def _person_name(person: Any) -> Optional[str]:
    if isinstance(person, str):
        return person.strip() or None
    if isinstance(person, dict):
        name = person.get("name")
        if isinstance(name, str) and name.strip():
            return name.strip()
        parts = [person.get("givenName"), person.get("familyName")]
        joined = " ".join(p.strip() for p in parts if isinstance(p, str) and p.strip())
        return joined or None
    return None


def find_structured_owner(blocks: Sequence[Dict[str, Any]]) -> Optional[OwnerFinding]:
    for block in blocks:
        for founder in _as_list(block.get("founder")):
            name = _person_name(founder)
            if name:
                return OwnerFinding(name=name, role="Founder", confidence=0.9, method="structured_data",
                                    evidence=f"JSON-LD founder: {name}")
        for key in ("employee", "member", "employees", "members"):
            for person in _as_list(block.get(key)):
                title = person.get("jobTitle") if isinstance(person, dict) else None
                name = _person_name(person)
                if name and isinstance(title, str) and _OWNER_TITLES.search(title):
                    return OwnerFinding(name=name, role=title.strip(), confidence=0.9, method="structured_data",
                                        evidence=f"JSON-LD {key}: {name} ({title.strip()})")
        types = {t.lower() for t in _as_list(block.get("@type")) if isinstance(t, str)}
        title = block.get("jobTitle")
        if "person" in types and isinstance(title, str) and _OWNER_TITLES.search(title):
            name = _person_name(block)
            if name:
                return OwnerFinding(name=name, role=title.strip(), confidence=0.9, method="structured_data",
                                    evidence=f"JSON-LD Person: {name} ({title.strip()})")
    return None


def find_structured_contacts(
    blocks: Sequence[Dict[str, Any]], default_region: Optional[str]
) -> Tuple[Optional[ContactFinding], Optional[ContactFinding]]:
    email: Optional[ContactFinding] = None
    phone: Optional[ContactFinding] = None
    for block in blocks:
        raw_email = block.get("email")
        if email is None and isinstance(raw_email, str):
            cleaned = raw_email.replace("mailto:", "").strip().lower()
            if EMAIL_REGEX.fullmatch(cleaned):
                email = ContactFinding(cleaned, 0.85, "structured_data", f"JSON-LD email: {cleaned}")
        raw_phone = block.get("telephone")
        if phone is None and isinstance(raw_phone, str):
            normalized = normalize_phone_e164(raw_phone, default_region)
            if normalized:
                phone = ContactFinding(normalized, 0.85, "structured_data", f"JSON-LD telephone: {raw_phone.strip()}")
    return email, phone


def find_owner_in_text(text: str, patterns: Sequence[OwnerPattern]) -> Optional[OwnerFinding]:
    for pattern in patterns:
        match = pattern.regex.search(text or "")
        if not match:
            continue
        groups = match.groupdict()
        name = (groups.get("name") or "").strip()
        if not name:
            continue
        role = groups.get("role") or pattern.role
        return OwnerFinding(
            name=name,
            role=role.strip() if role else None,
            confidence=pattern.confidence,
            method="text_pattern",
            evidence=snippet_around(text, match.start()),
        )
    return None


def is_generic_mailbox(email: str, generic_mailboxes: Sequence[str]) -> bool:
    local = email.split("@", 1)[0].lower()
    return local in generic_mailboxes


def choose_best_email(
    mailto_emails: Sequence[str], text_emails: Sequence[str], generic_mailboxes: Sequence[str]
) -> Optional[Tuple[ContactFinding, bool]]:
    """Pick the most personal email: mailto links beat free text, generic boxes come last."""

    for emails, confidence, method in ((mailto_emails, 0.75, "mailto_link"), (text_emails, 0.7, "text_regex")):
        for email in emails:
            if not is_generic_mailbox(email, generic_mailboxes):
                return ContactFinding(email, confidence, method, email), False

    for email in list(mailto_emails) + list(text_emails):
        return ContactFinding(email, 0.6, "generic_mailbox", email), True
    return None


def has_privacy_policy(soup: BeautifulSoup, lowered_html: str, markers: Sequence[str]) -> bool:
    for anchor in soup.find_all("a", href=True):
        href = anchor["href"].lower()
        text = anchor.get_text(" ", strip=True).lower()
        if "privacy" in href or "privacy" in text:
            return True
    return any(marker in lowered_html for marker in markers)


def has_mobile_viewport(soup: BeautifulSoup) -> bool:
    meta = soup.find("meta", attrs={"name": re.compile("^viewport$", re.IGNORECASE)})
    if meta is None:
        return False
    return "width=device-width" in (meta.get("content") or "").lower().replace(" ", "")


def snippet_around(text: str, offset: int, *, radius: int = 60) -> str:
    start = max(0, offset - radius)
    end = min(len(text), offset + radius)
    cleaned = re.sub(r"\s+", " ", text[start:end]).strip()
    prefix = "..." if start > 0 else ""
    suffix = "..." if end < len(text) else ""
    return f"{prefix}{cleaned}{suffix}"
