import pytest
import requests
from bs4 import BeautifulSoup

from leadpipe.core import site_enricher
from leadpipe.core.errors import ExtractionFailure


class DummyResponse:
    def __init__(self, status_code=200, body="<html></html>", content_type="text/html; charset=utf-8", url=None):
        self.status_code = status_code
        self.headers = {"Content-Type": content_type}
        self.url = url
        self.encoding = "utf-8"
        self._body = body.encode("utf-8")
        self.closed = False

    def iter_content(self, chunk_size=1):
        for start in range(0, len(self._body), chunk_size):
            yield self._body[start:start + chunk_size]

    def close(self):
        self.closed = True


class DummySession:
    def __init__(self, responses):
        self.responses = list(responses)
        self.calls = []

    def get(self, url, **kwargs):
        self.calls.append((url, kwargs))
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        if response.url is None:
            response.url = url
        return response


def test_sanitize_website_adds_scheme_and_path():
    assert site_enricher.sanitize_website("example.com") == "https://example.com/"
    assert site_enricher.sanitize_website(" http://example.com/about#team ") == "http://example.com/about"
    assert site_enricher.sanitize_website("not a url") is None
    assert site_enricher.sanitize_website(None) is None


def test_fetch_page_returns_html_and_final_url():
    session = DummySession([DummyResponse(body="<html><p>Hi</p></html>", url="https://example.com/home")])

    page = site_enricher.fetch_page(session, "http://example.com/", timeout=5)

    assert page.final_url == "https://example.com/home"
    assert page.is_https is True
    assert "<p>Hi</p>" in page.html
    assert session.calls[0][1]["allow_redirects"] is True
    assert session.calls[0][1]["stream"] is True


def test_fetch_page_retries_once_on_connection_error():
    session = DummySession([requests.ConnectionError("reset"), DummyResponse()])

    page = site_enricher.fetch_page(session, "https://example.com/", timeout=5)

    assert page.status_code == 200
    assert len(session.calls) == 2


def test_fetch_page_gives_up_after_second_timeout():
    session = DummySession([requests.Timeout("slow"), requests.Timeout("slow")])

    with pytest.raises(ExtractionFailure) as excinfo:
        site_enricher.fetch_page(session, "https://example.com/", timeout=5)

    assert excinfo.value.reason.startswith("network error")
    assert excinfo.value.status is None


def test_fetch_page_does_not_retry_http_errors():
    session = DummySession([DummyResponse(status_code=500), DummyResponse()])

    with pytest.raises(ExtractionFailure) as excinfo:
        site_enricher.fetch_page(session, "https://example.com/", timeout=5)

    assert excinfo.value.status == 500
    assert len(session.calls) == 1


def test_fetch_page_decodes_unknown_charset_as_utf8():
    response = DummyResponse(body="<html><p>Café Dental</p></html>", content_type="text/html; charset=utf8mb4")
    response.encoding = "utf8mb4"
    session = DummySession([response])

    page = site_enricher.fetch_page(session, "https://example.com/", timeout=5)

    assert "Café Dental" in page.html


def test_fetch_page_rejects_non_html():
    session = DummySession([DummyResponse(content_type="application/pdf")])

    with pytest.raises(ExtractionFailure) as excinfo:
        site_enricher.fetch_page(session, "https://example.com/menu.pdf", timeout=5)

    assert "non-HTML" in excinfo.value.reason


def test_extract_emails_and_phones():
    text = "Write to Jane@Smile.example or call (803) 555-0100. logo@2x.png"

    assert site_enricher.extract_emails(text) == ["jane@smile.example"]
    assert site_enricher.extract_phones(text, "US") == ["+18035550100"]


def test_extract_social_links_ignores_share_buttons(catalogue):
    soup = BeautifulSoup(
        '<a href="https://www.facebook.com/smiledental/">fb</a>'
        '<a href="https://facebook.com/">share</a>'
        '<a href="https://x.com/smile">x</a>'
        '<a href="https://dropbox.com/s/file">files</a>',
        "html.parser",
    )

    links = site_enricher.extract_social_links(soup, "https://smile.example/", catalogue.social_platforms)

    assert links == {
        "facebook": ["https://www.facebook.com/smiledental"],
        "twitter": ["https://x.com/smile"],
    }


def test_structured_owner_and_contacts():
    soup = BeautifulSoup(
        '<script type="application/ld+json">'
        '{"@context": "https://schema.org", "@graph": [{"@type": "Dentist", "name": "Smile Dental",'
        ' "email": "mailto:jane@smile.example", "telephone": "(803) 555-0100",'
        ' "employee": [{"@type": "Person", "name": "Jane Smith", "jobTitle": "Owner, DDS"}]}]}'
        "</script>",
        "html.parser",
    )
    blocks = site_enricher.extract_json_ld(soup)

    owner = site_enricher.find_structured_owner(blocks)
    email, phone = site_enricher.find_structured_contacts(blocks, "US")

    assert owner.name == "Jane Smith"
    assert owner.confidence == 0.9
    assert email.value == "jane@smile.example"
    assert phone.value == "+18035550100"


def test_malformed_json_ld_is_ignored():
    soup = BeautifulSoup('<script type="application/ld+json">{not json</script>', "html.parser")
    assert site_enricher.extract_json_ld(soup) == []


def test_owner_patterns_in_text(catalogue):
    owner = site_enricher.find_owner_in_text(
        "Meet our team. Dr. Jane Smith has practiced here since 2004.", catalogue.owner_patterns
    )

    assert owner.name == "Jane Smith"
    assert owner.method == "text_pattern"
    assert 0.6 <= owner.confidence <= 0.75


def test_choose_best_email_skips_generic_mailboxes(catalogue):
    best, generic = site_enricher.choose_best_email(
        ["info@smile.example"], ["jane@smile.example"], catalogue.generic_mailboxes
    )
    assert best.value == "jane@smile.example"
    assert generic is False

    best, generic = site_enricher.choose_best_email(["info@smile.example"], [], catalogue.generic_mailboxes)
    assert best.value == "info@smile.example"
    assert best.confidence == 0.6
    assert generic is True

    assert site_enricher.choose_best_email([], [], catalogue.generic_mailboxes) is None


def test_mobile_viewport_and_privacy_policy(catalogue):
    soup = BeautifulSoup(
        '<meta name="viewport" content="width=device-width, initial-scale=1">'
        '<a href="/legal/privacy">Privacy</a>',
        "html.parser",
    )

    assert site_enricher.has_mobile_viewport(soup) is True
    assert site_enricher.has_privacy_policy(soup, str(soup).lower(), catalogue.privacy_markers) is True
    assert site_enricher.has_mobile_viewport(BeautifulSoup("<p></p>", "html.parser")) is False
