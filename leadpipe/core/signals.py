"""Turn a candidate's directory record and website into typed signals."""

from __future__ import annotations

import logging
import threading
from typing import Any, Dict, List, Optional

import requests

from leadpipe.core.catalogue import PatternCatalogue, load_catalogue
from leadpipe.core.config import Settings, get_settings
from leadpipe.core.errors import ExtractionFailure
from leadpipe.core.models import Candidate, Signal
from leadpipe.core.site_enricher import (
    FetchedPage,
    choose_best_email,
    extract_emails,
    extract_json_ld,
    extract_mailto_links,
    extract_phones,
    extract_social_links,
    extract_tel_links,
    fetch_page,
    find_owner_in_text,
    find_structured_contacts,
    find_structured_owner,
    has_mobile_viewport,
    has_privacy_policy,
    sanitize_website,
    snippet_around,
)

logger = logging.getLogger(__name__)

DIRECTORY_SOURCE = "directory"
DIRECTORY_CONFIDENCE = 0.95
FRANCHISE_CONFIDENCE = 0.6


def directory_evidence_url(candidate: Candidate) -> Optional[str]:
    if not candidate.provider_ref:
        return None
    return f"https://www.google.com/maps/place/?q=place_id:{candidate.provider_ref}"


class SignalExtractor:
    """Produces the full signal set for one candidate.

    Safe to share across worker threads: each thread gets its own
    ``requests.Session`` unless one is injected.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        catalogue: Optional[PatternCatalogue] = None,
        session: Optional[requests.Session] = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.catalogue = catalogue or load_catalogue(self.settings.pattern_catalogue_path or None)
        self._session = session
        self._local = threading.local()

    @property
    def source_key(self) -> str:
        return self.catalogue.source_key

    def _get_session(self) -> requests.Session:
        if self._session is not None:
            return self._session
        session = getattr(self._local, "session", None)
        if session is None:
            session = requests.Session()
            session.headers.update({"User-Agent": self.settings.user_agent})
            self._local.session = session
        return session

    def extract(self, candidate: Candidate) -> List[Signal]:
        signals = self.directory_signals(candidate)
        if candidate.website:
            signals.extend(self.website_signals(candidate))
        logger.debug("Extracted %d signals for %s", len(signals), candidate.name)
        return signals

    # ---------- Directory ----------

    def directory_signals(self, candidate: Candidate) -> List[Signal]:
        evidence_url = directory_evidence_url(candidate)

        def directory(signal_type: str, value: Any, snippet: Optional[str] = None) -> Signal:
            return Signal(
                business_id=candidate.id,
                type=signal_type,
                value=value,
                confidence=DIRECTORY_CONFIDENCE,
                source_key=DIRECTORY_SOURCE,
                evidence_url=evidence_url,
                evidence_snippet=snippet,
            )

        signals: List[Signal] = []
        if candidate.review_count is not None:
            signals.append(directory("review_count", candidate.review_count, f"{candidate.review_count} reviews"))
        if candidate.rating is not None:
            signals.append(directory("rating", candidate.rating, f"Rated {candidate.rating}"))
        signals.append(directory("has_phone", bool(candidate.phone), candidate.phone))
        signals.append(directory("has_website", bool(candidate.website), candidate.website))
        signals.append(directory("hours_listed", bool(candidate.hours_listed)))
        if not candidate.website:
            signals.append(directory("no_website", True, "No website listed in the business directory"))
        if candidate.franchise_guess is not None:
            signals.append(
                Signal(
                    business_id=candidate.id,
                    type="franchise_guess",
                    value=bool(candidate.franchise_guess),
                    confidence=FRANCHISE_CONFIDENCE,
                    source_key=DIRECTORY_SOURCE,
                    evidence_url=evidence_url,
                    evidence_snippet=candidate.name,
                )
            )
        return signals

    # ---------- Website ----------

    def website_signals(self, candidate: Candidate) -> List[Signal]:
        url = sanitize_website(candidate.website)
        if not url:
            return [self._error_signal(candidate, candidate.website, ExtractionFailure("invalid website url"), 0.8)]

        try:
            page = fetch_page(self._get_session(), url, timeout=self.settings.fetch_timeout)
        except ExtractionFailure as exc:
            logger.warning("Website fetch failed for %s (%s): %s", candidate.name, url, exc.reason)
            if exc.status is not None:
                confidence = 0.9
            elif exc.reason.startswith(("network error", "timeout", "request failed")):
                confidence = 0.85
            else:
                confidence = 0.8
            return [self._error_signal(candidate, exc.url or url, exc, confidence)]

        try:
            return self._scan_page(candidate, page)
        except Exception as exc:  # noqa: BLE001
            logger.warning("Unable to parse website for %s (%s): %s", candidate.name, page.final_url, exc)
            failure = ExtractionFailure(f"unparseable page: {exc.__class__.__name__}", url=page.final_url)
            return [self._error_signal(candidate, page.final_url, failure, 0.8)]

    def _error_signal(
        self, candidate: Candidate, url: Optional[str], failure: ExtractionFailure, confidence: float
    ) -> Signal:
        value: Dict[str, Any] = {"reason": failure.reason}
        if failure.status is not None:
            value["status"] = failure.status
        return Signal(
            business_id=candidate.id,
            type="website_error",
            value=value,
            confidence=confidence,
            source_key=self.source_key,
            evidence_url=url,
            evidence_snippet=failure.reason,
        )

    def _scan_page(self, candidate: Candidate, page: FetchedPage) -> List[Signal]:
        catalogue = self.catalogue
        soup = page.soup()
        lowered_html = page.html.lower()
        text = soup.get_text(" ", strip=True)
        signals: List[Signal] = []

        def website(signal_type: str, value: Any, confidence: float, snippet: Optional[str] = None) -> None:
            signals.append(
                Signal(
                    business_id=candidate.id,
                    type=signal_type,
                    value=value,
                    confidence=confidence,
                    source_key=catalogue.source_key,
                    evidence_url=page.final_url,
                    evidence_snippet=snippet,
                )
            )

        for family in catalogue.families:
            match = family.find(lowered_html)
            if match is None:
                website(family.signal_type, False, family.absent_confidence, f"No {family.label} detected")
                continue
            found = match.pattern
            label = found.name if found.is_vendor else f'keyword "{found.match}"'
            snippet = snippet_around(page.html, match.offset)
            website(family.signal_type, True, found.confidence, f"{label}: {snippet}")

        socials = extract_social_links(soup, page.final_url, catalogue.social_platforms)
        if socials:
            website("social_links", socials, 0.9, ", ".join(sorted(socials)))

        website("has_ssl", page.is_https, 0.95, page.final_url)
        mobile = has_mobile_viewport(soup)
        website("mobile_friendly", mobile, 0.85 if mobile else 0.7,
                "viewport meta tag present" if mobile else "No responsive viewport meta tag")
        website("response_time_ms", page.elapsed_ms, 0.9, f"Homepage responded in {page.elapsed_ms} ms")
        privacy = has_privacy_policy(soup, lowered_html, catalogue.privacy_markers)
        website("has_privacy_policy", privacy, 0.8,
                "Privacy policy linked" if privacy else "No privacy policy found")

        blocks = extract_json_ld(soup)
        website("has_structured_data", bool(blocks), 0.9,
                f"{len(blocks)} JSON-LD blocks" if blocks else "No JSON-LD structured data")

        signals.extend(self._contact_signals(candidate, page, soup, text, blocks))
        return signals

    def _contact_signals(self, candidate: Candidate, page: FetchedPage, soup, text: str, blocks) -> List[Signal]:
        region = self.settings.default_phone_region
        signals: List[Signal] = []

        def contact(signal_type: str, value: Any, confidence: float, snippet: Optional[str]) -> None:
            signals.append(
                Signal(
                    business_id=candidate.id,
                    type=signal_type,
                    value=value,
                    confidence=confidence,
                    source_key=self.source_key,
                    evidence_url=page.final_url,
                    evidence_snippet=snippet,
                )
            )

        owner = find_structured_owner(blocks) or find_owner_in_text(text, self.catalogue.owner_patterns)
        if owner:
            contact("owner_identified", True, owner.confidence, owner.evidence)
            contact("owner_name", {"name": owner.name, "role": owner.role, "method": owner.method},
                    owner.confidence, owner.evidence)
        else:
            contact("owner_identified", False, 0.6, "No owner or principal named on the website")

        structured_email, structured_phone = find_structured_contacts(blocks, region)
        if structured_email and structured_email.value.split("@", 1)[0] not in self.catalogue.generic_mailboxes:
            contact("contact_email", {"email": structured_email.value, "method": structured_email.method,
                                      "generic": False}, structured_email.confidence, structured_email.evidence)
        else:
            mailto = extract_mailto_links(soup)
            text_emails = [email for email in extract_emails(text) if email not in mailto]
            if structured_email:
                mailto = [structured_email.value] + [email for email in mailto if email != structured_email.value]
            best = choose_best_email(mailto, text_emails, self.catalogue.generic_mailboxes)
            if best:
                finding, generic = best
                contact("contact_email", {"email": finding.value, "method": finding.method, "generic": generic},
                        finding.confidence, finding.evidence)

        if structured_phone:
            contact("contact_phone", {"phone": structured_phone.value, "method": structured_phone.method},
                    structured_phone.confidence, structured_phone.evidence)
        else:
            tel_links = extract_tel_links(soup, region)
            if tel_links:
                contact("contact_phone", {"phone": tel_links[0], "method": "tel_link"}, 0.75, tel_links[0])
            else:
                phones = extract_phones(text, region)
                if phones:
                    contact("contact_phone", {"phone": phones[0], "method": "text_regex"}, 0.65, phones[0])
        return signals
