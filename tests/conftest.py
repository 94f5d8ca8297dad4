import sys
from pathlib import Path

import pytest

# Ensure the `leadpipe` package is importable when running pytest from the repo root.
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from leadpipe.core.catalogue import load_catalogue  # noqa: E402
from leadpipe.core.config import Settings  # noqa: E402
from leadpipe.core.models import PlacesPage  # noqa: E402
from leadpipe.core.profiles import load_profiles  # noqa: E402


class FakeProvider:
    """In-memory places directory serving pre-built pages keyed by cursor."""

    name = "google_places"
    page_size = 20

    def __init__(self, pages, details=None, details_error=None, search_error=None):
        self.pages = pages
        self.details_map = details or {}
        self.details_error = details_error
        self.search_error = search_error
        self.search_calls = []
        self.details_calls = []

    def search_page(self, terms, location, radius_km, cursor=None):
        self.search_calls.append((terms, location, radius_km, cursor))
        if self.search_error is not None and cursor in self.search_error:
            raise self.search_error[cursor]
        records, next_cursor = self.pages[cursor]
        return PlacesPage(records=list(records), next_cursor=next_cursor)

    def details(self, provider_ref):
        self.details_calls.append(provider_ref)
        if self.details_error is not None:
            raise self.details_error
        return self.details_map.get(provider_ref, {})


def place(place_id, name, address="1 Main St, Columbia, SC", phone="(803) 555-0100", website=None, **extra):
    record = {
        "place_id": place_id,
        "name": name,
        "formatted_address": address,
        "international_phone_number": phone,
        "rating": 4.6,
        "user_ratings_total": 41,
        "types": ["dentist", "health", "point_of_interest"],
        "geometry": {"location": {"lat": 34.0, "lng": -81.0}},
    }
    if website:
        record["website"] = website
    record.update(extra)
    return record


@pytest.fixture
def settings():
    return Settings(
        google_api_key="test-key",
        page_delay_seconds=0.0,
        fetch_timeout=2.0,
        extraction_workers=2,
        max_concurrent_jobs=1,
        persistence_retries=2,
        persistence_backoff=0.0,
    )


@pytest.fixture
def catalogue():
    return load_catalogue()


@pytest.fixture
def profiles():
    return load_profiles()


@pytest.fixture
def provider_cls():
    return FakeProvider


@pytest.fixture
def make_place():
    return place
