import pytest

from leadpipe.core.models import Signal
from leadpipe.core.store import InMemoryLeadStore
from leadpipe.jobs import run_query_server
from leadpipe.jobs.orchestrator import JobOrchestrator


class InlineExecutor:
    def submit(self, fn, *args):
        fn(*args)

    def shutdown(self, wait=True):
        pass


class OwnerExtractor:
    def extract(self, candidate):
        return [Signal(business_id=candidate.id, type="owner_identified", value=True, confidence=0.9, source_key="test")]


PAYLOAD = {
    "version": 1,
    "vertical": "dentist",
    "geo": {"city": "Columbia", "state": "SC", "radius_km": 25},
    "result_size": {"target": 5},
}


@pytest.fixture
def orchestrator(monkeypatch, settings, catalogue, profiles, provider_cls, make_place):
    provider = provider_cls({None: (
        [make_place("p1", "Smile Dental"), make_place("p2", "Bright Dental", phone="(803) 555-0101")],
        None,
    )})
    instance = JobOrchestrator(
        InMemoryLeadStore(),
        settings=settings,
        provider_factory=lambda _settings: provider,
        extractor=OwnerExtractor(),
        profiles=profiles,
        catalogue=catalogue,
        executor=InlineExecutor(),
        sleep=lambda _: None,
    )
    monkeypatch.setattr(run_query_server, "_orchestrator", instance)
    monkeypatch.setattr(run_query_server, "get_settings", lambda: settings)
    return instance


@pytest.fixture
def client(orchestrator):
    return run_query_server.app.test_client()


def test_health_endpoint(client):
    response = client.get("/healthz")
    assert response.status_code == 200
    assert response.get_json()["status"] == "ok"
    assert response.get_json()["discovery_provider"] == "google_places"


def test_submit_job_validates_payload(client):
    assert client.post("/jobs", json=[1, 2]).status_code == 400
    assert client.post("/jobs", json={}).status_code == 400
    assert client.post("/jobs", json={**PAYLOAD, "result_size": {"target": 0}}).status_code == 400
    assert client.post("/jobs", json={**PAYLOAD, "profile": "unknown_profile"}).status_code == 400


@pytest.mark.parametrize("token", ["Infinity", "NaN"])
def test_submit_job_rejects_non_finite_target(client, token):
    body = (
        '{"version": 1, "vertical": "dentist", "geo": {"city": "Columbia", "state": "SC"}, '
        '"result_size": {"target": %s}}' % token
    )

    response = client.post("/jobs", data=body, content_type="application/json")

    assert response.status_code == 400
    assert "result_size.target" in response.get_json()["error"]


def test_submit_job_runs_and_exposes_leads(client):
    response = client.post("/jobs", json={**PAYLOAD, "profile": "dentist_intake"})

    assert response.status_code == 202
    job = response.get_json()["data"]
    assert job["status"] == "queued"
    assert job["profile"] == "dentist_intake"

    polled = client.get(f"/jobs/{job['id']}").get_json()["data"]
    assert polled["status"] == "completed"
    assert polled["summary"]["total_found"] == 2

    leads = client.get(f"/jobs/{job['id']}/leads?sort_by=name_asc").get_json()["data"]
    assert [lead["name"] for lead in leads] == ["Bright Dental", "Smile Dental"]
    assert "Owner identified (+15 Reachability points)" in leads[0]["justifications"]


def test_unknown_job_is_404(client):
    assert client.get("/jobs/missing").status_code == 404
    assert client.get("/jobs/missing/leads").status_code == 404
    assert client.post("/jobs/missing/cancel").status_code == 404


def test_bad_sort_is_400(client):
    job = client.post("/jobs", json=PAYLOAD).get_json()["data"]
    assert client.get(f"/jobs/{job['id']}/leads?sort_by=random").status_code == 400


def test_rescore_endpoint(client):
    job = client.post("/jobs", json=PAYLOAD).get_json()["data"]

    assert client.post(f"/jobs/{job['id']}/rescore", json={}).status_code == 400
    bad = client.post(f"/jobs/{job['id']}/rescore", json={"weights": {"ICP": 100}})
    assert bad.status_code == 400

    response = client.post(
        f"/jobs/{job['id']}/rescore",
        json={"weights": {"ICP": 10, "Pain": 10, "Reachability": 70, "ComplianceRisk": 10}},
    )
    assert response.status_code == 200
    assert response.get_json()["data"] == {"updated_count": 2}

    leads = client.get(f"/jobs/{job['id']}/leads").get_json()["data"]
    assert {lead["profile"] for lead in leads} == {"custom"}


def test_cancel_endpoint(client, orchestrator):
    job = orchestrator.create_job(PAYLOAD)

    response = client.post(f"/jobs/{job.id}/cancel")

    assert response.status_code == 202
    assert response.get_json()["data"]["error"] == "cancelled"
    assert client.post(f"/jobs/{job.id}/cancel").status_code == 409
    assert client.post(f"/jobs/{job.id}/rescore", json={"profile": "generic"}).status_code == 409
