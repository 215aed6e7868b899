from __future__ import annotations

from contextlib import contextmanager

from app.main import app
from app.services.prospecting.attempt_store import InMemoryAttemptStore
from app.services.prospecting.service import ProspectPipelineService, get_pipeline_service
from tests.utils import MAPS_FIELDS, StubAdapter, make_settings, make_target, unavailable

TARGET_KEY = "acme-plumbing-denver-co"


def _build_service(store=None, **overrides) -> ProspectPipelineService:
    adapters = {
        "google_maps": StubAdapter(MAPS_FIELDS),
        "web_search": unavailable("upstream 502"),
        "google_reviews": StubAdapter({"review_count": 12}),
        "registry": StubAdapter({"registry_entity_status": "Good Standing"}),
        "competitor_research": StubAdapter({"competitor_count": 4}),
    }
    adapters.update(overrides)
    return ProspectPipelineService.from_settings(
        make_settings(pipeline_early_stop=False),
        adapters=adapters,
        attempt_store=store if store is not None else InMemoryAttemptStore(),
    )


@contextmanager
def _override_service(service: ProspectPipelineService):
    app.dependency_overrides[get_pipeline_service] = lambda: service
    try:
        yield
    finally:
        app.dependency_overrides.pop(get_pipeline_service, None)
        service.close()


def _payload(**overrides) -> dict[str, object]:
    payload: dict[str, object] = {"name": "Acme Plumbing LLC", "city": "Denver", "state": "CO"}
    payload.update(overrides)
    return payload


def test_run_then_fetch_record_and_status(client):
    with _override_service(_build_service()):
        response = client.post("/api/prospects", json=_payload())
        assert response.status_code == 200
        body = response.json()
        assert body["target_key"] == TARGET_KEY
        assert body["ran"] is True
        assert body["attempt"]["successful_passes"] == [1, 3, 4, 5]
        assert body["attempt"]["failed_passes"] == [2]
        assert body["record"]["resolved_fields"]["phone"]["resolved_value"] == "(303) 555-0100"

        record = client.get(f"/api/prospects/{TARGET_KEY}")
        assert record.status_code == 200
        assert record.json()["target"]["name"] == "Acme Plumbing LLC"

        status = client.get(f"/api/prospects/{TARGET_KEY}/status")
        assert status.status_code == 200
        assert status.json()["next_retry_passes"] == [2]


def test_retry_with_nothing_due_reports_not_ran(client):
    service = _build_service(web_search=StubAdapter({"website": "acme.example"}))
    with _override_service(service):
        first = client.post("/api/prospects", json=_payload(mode="force"))
        assert first.json()["attempt"]["next_retry_passes"] == []

        response = client.post("/api/prospects", json=_payload(mode="retry"))
        assert response.status_code == 200
        body = response.json()
        assert body["ran"] is False
        assert body["attempt"] is None
        assert body["record"]["target"]["city"] == "Denver"


def test_only_passes_runs_requested_subset(client):
    with _override_service(_build_service()):
        response = client.post("/api/prospects", json=_payload(passes=[1, 4]))

        assert response.status_code == 200
        results = response.json()["attempt"]["pass_results"]
        assert [result["pass_id"] for result in results] == [1, 4]


def test_unknown_pass_returns_422(client):
    with _override_service(_build_service()):
        response = client.post("/api/prospects", json=_payload(passes=[9]))

        assert response.status_code == 422
        assert "9" in response.json()["detail"]


def test_passes_with_retry_mode_rejected(client):
    with _override_service(_build_service()):
        response = client.post("/api/prospects", json=_payload(mode="retry", passes=[1]))

        assert response.status_code == 422


def test_unknown_fields_in_payload_rejected(client):
    with _override_service(_build_service()):
        response = client.post("/api/prospects", json=_payload(priority="high"))

        assert response.status_code == 422


def test_persistence_failure_returns_503(client):
    class BrokenStore(InMemoryAttemptStore):
        def record_attempt(self, target, attempt):
            raise OSError("disk full")

    with _override_service(_build_service(store=BrokenStore())):
        response = client.post("/api/prospects", json=_payload())

        assert response.status_code == 503


def test_missing_prospect_returns_404(client):
    with _override_service(_build_service()):
        assert client.get("/api/prospects/nobody-here").status_code == 404
        assert client.get("/api/prospects/nobody-here/status").status_code == 404


def test_health_endpoints(client):
    service = _build_service()
    with _override_service(service):
        service.process(make_target())

        health = client.get("/health")
        assert health.status_code == 200
        assert health.json()["status"] == "healthy"

        ready = client.get("/health/ready")
        assert ready.status_code == 200
        assert ready.json()["pending_retries"] == 1

