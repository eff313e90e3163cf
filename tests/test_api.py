import pytest
from fastapi.testclient import TestClient

import matchengine.main as main


@pytest.fixture
def client(scenario_service):
    # Override dependency for tests
    main.app.dependency_overrides[main.get_service] = lambda: scenario_service
    yield TestClient(main.app)
    main.app.dependency_overrides.clear()


def test_rebuild_endpoint(client, scenario_service):
    response = client.post("/matches/rebuild")
    assert response.status_code == 200
    data = response.json()
    assert data["projects_count"] == 1
    assert data["products_count"] == 2
    assert data["matches_upserted"] == 1
    assert data["matches_deleted_stale"] == 0
    assert data["errors"] == []
    assert data["run_id"] in scenario_service.run_log_manager.runs


def test_rebuild_endpoint_conflict_when_locked(client, scenario_service):
    scenario_service.lock_available = False
    response = client.post("/matches/rebuild")
    assert response.status_code == 409


def test_rebuild_endpoint_reports_fatal_error(client, scenario_service):
    scenario_service.embedding_manager.fail = RuntimeError("embedding store unavailable")
    response = client.post("/matches/rebuild")
    assert response.status_code == 500
    assert "embedding store unavailable" in response.json()["detail"]


def test_project_recompute_endpoint(client):
    response = client.post("/projects/P/matches/recompute")
    assert response.status_code == 200
    assert response.json() == {"project_id": "P", "upserted_count": 1, "errors": []}


def test_project_and_product_match_reads(client):
    client.post("/matches/rebuild")

    response = client.get("/projects/P/matches", params={"min_score": 40, "limit": 5})
    assert response.status_code == 200
    items = response.json()["items"]
    assert [(i["product_id"], i["score"], i["tier"]) for i in items] == [("A", 85, "strong")]
    assert items[0]["evidence_image_ids"] == ["p-img-1", "a-img-1"]

    response = client.get("/products/A/matches")
    assert [i["project_id"] for i in response.json()["items"]] == ["P"]

    response = client.get("/images/a-img-1/matches")
    assert len(response.json()["items"]) == 1


def test_min_score_filters_reads(client):
    client.post("/matches/rebuild")
    response = client.get("/projects/P/matches", params={"min_score": 90})
    assert response.json()["items"] == []


def test_unknown_tier_filter_is_bad_request(client):
    response = client.get("/projects/P/matches", params={"tier": "bogus"})
    assert response.status_code == 400


def test_limit_is_validated(client):
    response = client.get("/projects/P/matches", params={"limit": 0})
    assert response.status_code == 422


def test_run_endpoints(client):
    assert client.get("/runs/latest").status_code == 404

    run_id = client.post("/matches/rebuild").json()["run_id"]

    latest = client.get("/runs/latest").json()
    assert latest["run_id"] == run_id
    assert latest["status"] == "completed"
    assert client.get(f"/runs/{run_id}").json()["matches_upserted"] == 1
    assert client.get("/runs/does-not-exist").status_code == 404
    assert client.get("/runs/00000000-0000-0000-0000-000000000000").status_code == 404


def test_status_endpoint(client, scenario_service):
    scenario_service.queue_manager.enqueue_project("P")
    data = client.get("/status").json()
    assert data["status"] == "healthy"
    assert data["database_connected"] is True
    assert data["queued_projects"] == 1

    scenario_service.connected = False
    assert client.get("/status").json()["database_connected"] is False


def test_admin_rebuild_request_and_queues(client, scenario_service):
    response = client.post("/admin/rebuild-request")
    assert response.json()["request_id"] == 1

    data = client.get("/admin/queues").json()
    assert data == {"queued_projects": [], "pending_rebuild_request": 1}


def test_service_unavailable_without_startup():
    main.app.dependency_overrides.clear()
    main.db_service = None
    response = TestClient(main.app).get("/status")
    assert response.status_code == 503
