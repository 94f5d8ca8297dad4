from dataclasses import replace

import pytest

from leadpipe.core.discovery import PlaceDiscovery, build_provider, search_terms_for
from leadpipe.core.errors import ProviderError
from leadpipe.core.query import parse_query
from leadpipe.vendors.google_places import GooglePlacesProvider
from leadpipe.vendors.serpapi_maps import SerpApiMapsProvider


def _query(target=10, **extra):
    payload = {"vertical": "dentist", "geo": {"city": "Columbia", "state": "SC"}, "result_size": {"target": target}}
    payload.update(extra)
    return parse_query(payload)


def _discovery(provider, settings, catalogue, **kwargs):
    return PlaceDiscovery(provider, settings, catalogue, **kwargs)


def test_duplicates_are_dropped(settings, catalogue, provider_cls, make_place):
    records = [
        make_place("p1", "Smile Dental"),
        make_place("p1", "Smile Dental"),
        make_place("p2", "Smile Dental", phone="+1 803-555-0100"),
        make_place("p3", "Bright Dental", phone="(803) 555-0101"),
        make_place("p4", "Gentle Care Dentistry", phone="(803) 555-0102"),
        make_place("p5", "Columbia Family Dental", phone="(803) 555-0103"),
        make_place("p6", "Main Street Dental", phone="(803) 555-0104"),
    ]
    provider = provider_cls({None: (records, None)})
    discovery = _discovery(provider, settings, catalogue)

    candidates = list(discovery.discover(_query()))

    assert [c.name for c in candidates] == [
        "Smile Dental",
        "Bright Dental",
        "Gentle Care Dentistry",
        "Columbia Family Dental",
        "Main Street Dental",
    ]
    assert len({c.id for c in candidates}) == 5
    assert discovery.stats.duplicates == 2
    assert provider.search_calls[0][:3] == ("dentist", "Columbia, SC", 40.0)


def test_page_is_truncated_to_page_size(settings, catalogue, provider_cls, make_place):
    records = [make_place(f"p{i}", f"Dental Office {i}", phone=f"(803) 555-01{i:02d}") for i in range(25)]
    provider = provider_cls({None: (records, None)})

    candidates = list(_discovery(provider, settings, catalogue).discover(_query(target=100)))

    assert len(candidates) == provider.page_size


def test_stops_once_target_raw_records_observed(settings, catalogue, provider_cls, make_place):
    page_one = [
        make_place("p1", "Smile Dental"),
        make_place("p1", "Smile Dental"),
        make_place("p2", "Bright Dental", phone="(803) 555-0101"),
    ]
    page_two = [make_place("p3", "Gentle Care Dentistry", phone="(803) 555-0102")]
    provider = provider_cls({None: (page_one, "next"), "next": (page_two, None)})

    candidates = list(_discovery(provider, settings, catalogue).discover(_query(target=3)))

    assert len(candidates) == 2
    assert len(provider.search_calls) == 1


def test_never_yields_more_than_target(settings, catalogue, provider_cls, make_place):
    records = [make_place(f"p{i}", f"Dental Office {i}", phone=f"(803) 555-01{i:02d}") for i in range(6)]
    provider = provider_cls({None: (records, "next")})

    candidates = list(_discovery(provider, settings, catalogue).discover(_query(target=4)))

    assert len(candidates) == 4


def test_follows_cursor_and_waits_between_pages(settings, catalogue, provider_cls, make_place):
    provider = provider_cls({
        None: ([make_place("p1", "Smile Dental")], "tok-2"),
        "tok-2": ([make_place("p2", "Bright Dental", phone="(803) 555-0101")], None),
    })
    sleeps = []
    discovery = _discovery(
        provider,
        replace(settings, page_delay_seconds=2.0),
        catalogue,
        sleep=sleeps.append,
        clock=lambda: 100.0,
    )

    candidates = list(discovery.discover(_query()))

    assert [c.name for c in candidates] == ["Smile Dental", "Bright Dental"]
    assert [call[3] for call in provider.search_calls] == [None, "tok-2"]
    assert sleeps == [2.0]
    assert discovery.cursor is None


def test_resume_from_cursor(settings, catalogue, provider_cls, make_place):
    provider = provider_cls({"tok-2": ([make_place("p2", "Bright Dental")], "tok-3"), "tok-3": ([], None)})
    discovery = _discovery(provider, settings, catalogue)

    candidates = list(discovery.discover(_query(target=1), cursor="tok-2"))

    assert [c.name for c in candidates] == ["Bright Dental"]
    assert provider.search_calls[0][3] == "tok-2"
    assert discovery.cursor == "tok-3"


def test_exclusions_match_name_fragments(settings, catalogue, provider_cls, make_place):
    provider = provider_cls({None: (
        [make_place("p1", "Aspen Dental - Columbia"), make_place("p2", "Bright Dental", phone="(803) 555-0101")],
        None,
    )})
    discovery = _discovery(provider, settings, catalogue)

    candidates = list(discovery.discover(_query(exclusions=["aspen"])))

    assert [c.name for c in candidates] == ["Bright Dental"]
    assert discovery.stats.excluded == 1


def test_details_fill_missing_website(settings, catalogue, provider_cls, make_place):
    provider = provider_cls(
        {None: ([make_place("p1", "Smile Dental")], None)},
        details={"p1": {"place_id": "p1", "name": "Smile Dental", "website": "https://smile.example"}},
    )

    candidate = next(_discovery(provider, settings, catalogue).discover(_query()))

    assert candidate.website == "https://smile.example"
    assert candidate.franchise_guess is False
    assert provider.details_calls == ["p1"]


def test_details_skipped_when_record_is_complete(settings, catalogue, provider_cls, make_place):
    provider = provider_cls({None: ([make_place("p1", "Smile Dental", website="https://smile.example")], None)})

    list(_discovery(provider, settings, catalogue).discover(_query()))

    assert provider.details_calls == []


def test_non_fatal_details_error_falls_back(settings, catalogue, provider_cls, make_place):
    provider = provider_cls(
        {None: ([make_place("p1", "Smile Dental")], None)},
        details_error=ProviderError("not found", status="NOT_FOUND"),
    )
    discovery = _discovery(provider, settings, catalogue)

    candidates = list(discovery.discover(_query()))

    assert len(candidates) == 1
    assert candidates[0].website is None
    assert discovery.stats.details_failures == 1


def test_fatal_details_error_aborts(settings, catalogue, provider_cls, make_place):
    provider = provider_cls(
        {None: ([make_place("p1", "Smile Dental")], None)},
        details_error=ProviderError("quota exceeded", status="OVER_QUERY_LIMIT"),
    )

    with pytest.raises(ProviderError):
        list(_discovery(provider, settings, catalogue).discover(_query()))


def test_search_error_propagates_after_earlier_pages(settings, catalogue, provider_cls, make_place):
    provider = provider_cls(
        {None: ([make_place("p1", "Smile Dental")], "tok-2")},
        search_error={"tok-2": ProviderError("denied", status="REQUEST_DENIED")},
    )
    seen = []

    with pytest.raises(ProviderError):
        for candidate in _discovery(provider, settings, catalogue).discover(_query()):
            seen.append(candidate.name)

    assert seen == ["Smile Dental"]


def test_empty_directory_yields_nothing(settings, catalogue, provider_cls):
    provider = provider_cls({None: ([], None)})

    assert list(_discovery(provider, settings, catalogue).discover(_query())) == []


def test_search_terms_and_provider_factory(settings):
    assert search_terms_for("law_firm") == "law firm"
    assert search_terms_for("med_spa") == "med spa"
    assert isinstance(build_provider(settings), GooglePlacesProvider)
    assert isinstance(build_provider(replace(settings, discovery_provider="serpapi", serpapi_api_key="serp-key")), SerpApiMapsProvider)


def test_stop_callback_halts_directory_calls(settings, catalogue, provider_cls, make_place):
    provider = provider_cls({
        None: ([make_place("p1", "Smile Dental"), make_place("p2", "Bright Dental", phone="(803) 555-0101")], "tok-2"),
        "tok-2": ([make_place("p3", "Gentle Care Dentistry", phone="(803) 555-0102")], None),
    })
    stop = {"requested": False}
    names = []

    for candidate in _discovery(provider, settings, catalogue).discover(_query(), should_stop=lambda: stop["requested"]):
        names.append(candidate.name)
        stop["requested"] = True

    assert names == ["Smile Dental"]
    assert len(provider.search_calls) == 1
    assert provider.details_calls == ["p1"]
