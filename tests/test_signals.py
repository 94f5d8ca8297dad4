import pytest
import requests

from leadpipe.core.models import Candidate
from leadpipe.core.signals import SignalExtractor


class DummyResponse:
    def __init__(self, status_code=200, body="", content_type="text/html", url=None):
        self.status_code = status_code
        self.headers = {"Content-Type": content_type}
        self.url = url
        self.encoding = "utf-8"
        self._body = body.encode("utf-8")

    def iter_content(self, chunk_size=1):
        yield self._body

    def close(self):
        pass


class DummySession:
    def __init__(self, *responses):
        self.responses = list(responses)
        self.calls = []

    def get(self, url, **kwargs):
        self.calls.append(url)
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        response.url = response.url or url
        return response


RICH_PAGE = """
<html><head>
<meta name="viewport" content="width=device-width, initial-scale=1">
<script src="https://assets.calendly.com/assets/external/widget.js"></script>
<script type="application/ld+json">
{"@type": "Dentist", "name": "Smile Dental", "telephone": "+1 803 555 0100",
 "founder": {"@type": "Person", "name": "Jane Smith"}}
</script>
</head><body>
<a href="https://www.facebook.com/smiledental">Facebook</a>
<a href="https://instagram.com/smiledental">Instagram</a>
<a href="mailto:info@smile.example">Email us</a>
<a href="/privacy-policy">Privacy Policy</a>
</body></html>
"""


def _candidate(**overrides):
    data = dict(
        id="biz-1",
        name="Smile Dental",
        address="1 Main St, Columbia, SC",
        provider_ref="pid-1",
        phone="(803) 555-0100",
        website="https://smile.example",
        franchise_guess=False,
        rating=4.7,
        review_count=88,
        hours_listed=True,
    )
    data.update(overrides)
    return Candidate(**data)


def _by_type(signals):
    result = {}
    for signal in signals:
        result.setdefault(signal.type, []).append(signal)
    return result


def test_candidate_without_website_gets_one_no_website_signal(settings, catalogue):
    session = DummySession()
    extractor = SignalExtractor(settings, catalogue, session=session)

    signals = _by_type(extractor.extract(_candidate(website=None)))

    assert len(signals["no_website"]) == 1
    assert signals["no_website"][0].value is True
    assert signals["no_website"][0].confidence >= 0.9
    assert signals["has_website"][0].value is False
    assert signals["franchise_guess"][0].confidence == 0.6
    assert "website_error" not in signals
    assert session.calls == []


def test_http_error_becomes_single_website_error(settings, catalogue):
    extractor = SignalExtractor(settings, catalogue, session=DummySession(DummyResponse(status_code=500)))

    signals = extractor.website_signals(_candidate())

    assert len(signals) == 1
    error = signals[0]
    assert error.type == "website_error"
    assert error.value == {"reason": "HTTP 500", "status": 500}
    assert error.confidence == 0.9
    assert error.source_key == catalogue.source_key


def test_network_failure_confidence(settings, catalogue):
    session = DummySession(requests.ConnectionError("reset"), requests.ConnectionError("reset"))
    extractor = SignalExtractor(settings, catalogue, session=session)

    signals = extractor.website_signals(_candidate())

    assert [s.type for s in signals] == ["website_error"]
    assert signals[0].confidence == 0.85
    assert "status" not in signals[0].value


def test_non_html_confidence(settings, catalogue):
    extractor = SignalExtractor(settings, catalogue, session=DummySession(DummyResponse(content_type="image/png")))

    signals = extractor.website_signals(_candidate())

    assert signals[0].confidence == 0.8


def test_unknown_charset_keeps_directory_and_website_signals(settings, catalogue):
    response = DummyResponse(body=RICH_PAGE, content_type="text/html; charset=utf8mb4")
    response.encoding = "utf8mb4"
    extractor = SignalExtractor(settings, catalogue, session=DummySession(response))

    signals = extractor.extract(_candidate())

    types = {s.type for s in signals}
    assert "has_phone" in types
    assert "has_online_booking" in types
    assert "website_error" not in types


def test_rich_page_signals(settings, catalogue):
    extractor = SignalExtractor(settings, catalogue, session=DummySession(DummyResponse(body=RICH_PAGE)))

    signals = _by_type(extractor.website_signals(_candidate()))

    for family in catalogue.families:
        assert len(signals[family.signal_type]) == 1
    booking = signals["has_online_booking"][0]
    assert booking.value is True
    assert booking.confidence == 0.95
    assert "Calendly" in booking.evidence_snippet
    assert signals["has_chatbot"][0].value is False
    assert signals["has_chatbot"][0].confidence == 0.75

    assert set(signals["social_links"][0].value) == {"facebook", "instagram"}
    assert signals["has_ssl"][0].value is True
    assert signals["mobile_friendly"][0].value is True
    assert signals["mobile_friendly"][0].confidence == 0.85
    assert signals["has_privacy_policy"][0].value is True
    assert signals["has_structured_data"][0].value is True
    assert signals["response_time_ms"][0].value >= 0

    assert signals["owner_identified"][0].value is True
    assert signals["owner_identified"][0].confidence == 0.9
    assert signals["owner_name"][0].value["name"] == "Jane Smith"
    assert signals["contact_phone"][0].value["phone"] == "+18035550100"
    assert signals["contact_phone"][0].confidence == 0.85

    email = signals["contact_email"][0]
    assert email.value == {"email": "info@smile.example", "method": "generic_mailbox", "generic": True}
    assert email.confidence == 0.6


def test_owner_absent_and_personal_email_preferred(settings, catalogue):
    body = (
        "<html><body><p>Call us today.</p>"
        '<a href="mailto:info@smile.example">info</a>'
        '<a href="mailto:jane@smile.example">Jane</a>'
        "</body></html>"
    )
    extractor = SignalExtractor(settings, catalogue, session=DummySession(DummyResponse(body=body, url="http://smile.example/")))

    signals = _by_type(extractor.website_signals(_candidate()))

    assert signals["owner_identified"][0].value is False
    assert signals["owner_identified"][0].confidence == 0.6
    assert "owner_name" not in signals
    assert signals["contact_email"][0].value["email"] == "jane@smile.example"
    assert signals["contact_email"][0].value["generic"] is False
    assert signals["has_ssl"][0].value is False
    assert signals["mobile_friendly"][0].value is False
    assert signals["mobile_friendly"][0].confidence == 0.7
    assert signals["has_structured_data"][0].value is False


@pytest.mark.parametrize("website", ["not a url", "ftp://"])
def test_invalid_website_is_recorded_not_raised(settings, catalogue, website):
    extractor = SignalExtractor(settings, catalogue, session=DummySession())

    signals = extractor.website_signals(_candidate(website=website))

    assert [s.type for s in signals] == ["website_error"]
    assert signals[0].value["reason"] == "invalid website url"
