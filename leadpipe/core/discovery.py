"""Paginated, deduplicated business discovery over a places directory."""

from __future__ import annotations

import logging
import time
from dataclasses import asdict, dataclass
from typing import Any, Callable, Dict, Iterator, Optional, Protocol, Set

from leadpipe.core.catalogue import PatternCatalogue, load_catalogue
from leadpipe.core.config import Settings, get_settings
from leadpipe.core.errors import ConfigError, ProviderError
from leadpipe.core.models import Candidate, PlacesPage, Query
from leadpipe.etl.dedupe import Deduplicator, identity_key
from leadpipe.etl.transform import merge_rows, record_to_row, to_candidate
from leadpipe.vendors.google_places import GooglePlacesProvider
from leadpipe.vendors.serpapi_maps import SerpApiMapsProvider

logger = logging.getLogger(__name__)

VERTICAL_SEARCH_TERMS = {
    "dentist": "dentist",
    "law_firm": "law firm",
    "contractor": "general contractor",
    "hvac": "hvac contractor",
    "roofing": "roofing contractor",
    "generic": "local business",
}

# Details failures that mean every further call will fail too.
FATAL_DETAIL_STATUSES = {"OVER_QUERY_LIMIT", "REQUEST_DENIED", "HTTP 401", "HTTP 403", "HTTP 429"}


class PlacesProvider(Protocol):
    name: str
    page_size: int

    def search_page(self, terms: str, location: str, radius_km: float, cursor: Optional[str] = None) -> PlacesPage:
        ...

    def details(self, provider_ref: str) -> Dict[str, Any]:
        ...


def search_terms_for(vertical: str) -> str:
    return VERTICAL_SEARCH_TERMS.get(vertical, vertical.replace("_", " "))


def build_provider(settings: Optional[Settings] = None) -> PlacesProvider:
    settings = settings or get_settings()
    if settings.discovery_provider == "google_places":
        return GooglePlacesProvider(settings.google_api_key)
    if settings.discovery_provider == "serpapi":
        return SerpApiMapsProvider(settings.serpapi_api_key)
    raise ConfigError(f"Unknown discovery provider {settings.discovery_provider!r}")


@dataclass
class DiscoveryStats:
    pages: int = 0
    raw_records: int = 0
    excluded: int = 0
    duplicates: int = 0
    details_lookups: int = 0
    details_failures: int = 0
    yielded: int = 0

    def as_dict(self) -> Dict[str, int]:
        return asdict(self)


class PlaceDiscovery:
    """Streams unique candidates for a query, one directory page at a time.

    ``cursor`` always holds the cursor of the next page that has not been
    requested yet; pass it back to ``discover`` to resume.
    """

    def __init__(
        self,
        provider: PlacesProvider,
        settings: Optional[Settings] = None,
        catalogue: Optional[PatternCatalogue] = None,
        *,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.provider = provider
        self.settings = settings or get_settings()
        self.catalogue = catalogue or load_catalogue(self.settings.pattern_catalogue_path or None)
        self.cursor: Optional[str] = None
        self.stats = DiscoveryStats()
        self._sleep = sleep
        self._clock = clock
        self._last_page_at: Optional[float] = None

    def _wait_for_next_page(self) -> None:
        if self._last_page_at is None:
            return
        remaining = self.settings.page_delay_seconds - (self._clock() - self._last_page_at)
        if remaining > 0:
            logger.debug("Waiting %.2fs before the next page", remaining)
            self._sleep(remaining)

    def _fetch_page(self, terms: str, query: Query) -> PlacesPage:
        self._wait_for_next_page()
        page = self.provider.search_page(terms, query.geo.location, query.geo.radius_km, self.cursor)
        self._last_page_at = self._clock()
        self.stats.pages += 1
        if len(page.records) > self.provider.page_size:
            logger.debug("Truncating page of %d records to %d", len(page.records), self.provider.page_size)
        records = page.records[: self.provider.page_size]
        logger.info("Fetched %d records on page %d for %r", len(records), self.stats.pages, terms)
        return PlacesPage(records=records, next_cursor=page.next_cursor)

    def _enrich_row(self, row: Dict[str, Any]) -> Dict[str, Any]:
        """Fill phone/website from the details endpoint when the search record lacks them."""
        provider_ref = row.get("provider_ref")
        if not provider_ref or (row.get("phone") and row.get("website")):
            return row
        self.stats.details_lookups += 1
        try:
            details = self.provider.details(provider_ref)
        except ProviderError as exc:
            if exc.status in FATAL_DETAIL_STATUSES:
                raise
            self.stats.details_failures += 1
            logger.warning("Details lookup failed for %s (%s); using search record", provider_ref, exc)
            return row
        if not details:
            return row
        return merge_rows(row, record_to_row(details, self.provider.name))

    def _is_excluded(self, name: str, query: Query) -> bool:
        lowered = name.lower()
        return any(fragment.lower() in lowered for fragment in query.exclusions)

    def discover(
        self,
        query: Query,
        cursor: Optional[str] = None,
        should_stop: Optional[Callable[[], bool]] = None,
    ) -> Iterator[Candidate]:
        """Yield at most ``query.target`` unique candidates.

        Pages stop being requested once ``query.target`` raw records have been
        observed or the directory has no further page. ``should_stop`` is polled
        before every page and details request; once it returns True discovery
        ends without further directory calls.
        """
        stopped = should_stop or (lambda: False)
        terms = search_terms_for(query.vertical)
        region = self.settings.default_phone_region
        self.cursor = cursor
        deduper = Deduplicator()
        seen_refs: Set[str] = set()
        observed = 0
        yielded = 0

        while True:
            if stopped():
                logger.info("Discovery stopped before page %d", self.stats.pages + 1)
                return
            page = self._fetch_page(terms, query)
            self.cursor = page.next_cursor
            observed += len(page.records)
            self.stats.raw_records += len(page.records)

            for record in page.records:
                row = record_to_row(record, self.provider.name)
                if not row.get("name"):
                    continue
                if self._is_excluded(row["name"], query):
                    self.stats.excluded += 1
                    logger.debug("Excluding %s by name", row["name"])
                    continue
                provider_ref = row.get("provider_ref")
                if provider_ref and provider_ref in seen_refs:
                    self.stats.duplicates += 1
                    continue

                if stopped():
                    logger.info("Discovery stopped after %d candidates", yielded)
                    return
                row = self._enrich_row(row)
                if provider_ref:
                    seen_refs.add(provider_ref)
                if not deduper.add(identity_key(row["name"], row.get("address"), row.get("phone"), region)):
                    self.stats.duplicates += 1
                    continue

                candidate = to_candidate(
                    row,
                    provider=self.provider.name,
                    franchise_markers=self.catalogue.franchise_markers,
                    default_region=region,
                    raw=record,
                )
                if candidate is None:
                    continue
                yielded += 1
                self.stats.yielded += 1
                yield candidate
                if yielded >= query.target:
                    logger.info("Reached target of %d unique candidates", query.target)
                    return

            if not page.next_cursor or observed >= query.target:
                logger.info(
                    "Discovery finished after %d pages: %s", self.stats.pages, self.stats.as_dict()
                )
                return
