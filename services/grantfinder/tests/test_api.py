from __future__ import annotations

import sqlite3
from pathlib import Path

import pytest
from fastapi.testclient import TestClient
from grantfinder.main import create_app
from grantfinder.settings import ServiceSettings

pytestmark = pytest.mark.integration

GRANTS = [
    {
        "id": "nsf-ai",
        "title": "AI Research Institutes",
        "description": "Foundational machine learning research",
        "agency_name": "NSF",
        "categories": ["AI", "Science"],
        "award_ceiling": 500000,
        "close_date": "2099-03-01T00:00:00Z",
    },
    {
        "id": "nsf-edu",
        "title": "AI Education Pilots",
        "description": "Classroom tooling",
        "agency_name": "NSF",
        "categories": ["AI", "Education"],
        "award_ceiling": 150000,
        "close_date": "2099-01-15T00:00:00Z",
    },
    {
        "id": "doe-grid",
        "title": "Grid Modernization",
        "description": "Energy storage demonstrations",
        "agency_name": "DOE",
        "categories": ["Energy"],
        "award_ceiling": 2000000,
        "close_date": "2099-02-01T00:00:00Z",
    },
    {
        "id": "nih-open",
        "title": "Open Health Data",
        "description": "Rolling submissions",
        "agency_name": "NIH",
        "categories": ["Health"],
    },
    {
        "id": "old-call",
        "title": "Expired AI Call",
        "agency_name": "NSF",
        "categories": ["AI"],
        "close_date": "2001-01-01T00:00:00Z",
    },
]


@pytest.fixture
def client(tmp_path: Path):
    settings = ServiceSettings(
        database_path=str(tmp_path / "grantfinder.sqlite3"),
        target_count=3,
    )
    app = create_app(settings=settings)
    with TestClient(app) as test_client:
        response = test_client.post("/grants", json={"grants": GRANTS})
        assert response.json() == {"updated": len(GRANTS)}
        yield test_client


def test_health_reports_service_name(client: TestClient) -> None:
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "ok", "service": "grantfinder"}


def test_metrics_group_requests_by_route_template(client: TestClient) -> None:
    client.get("/grants/nsf-ai")
    client.get("/grants/doe-grid")
    client.get("/grants/unknown")

    body = client.get("/metrics").json()

    endpoint = body["endpoints"]["GET /grants/{grant_id}"]
    assert endpoint["count"] == 3
    assert endpoint["4xx"] == 1
    assert body["totals"]["errors"] >= 1
    assert set(body["counters"]) >= {"interactions_committed", "replenishments"}
    assert endpoint["latency_ms_max"] >= endpoint["latency_ms_avg"] >= 0


def test_unhandled_error_is_logged_and_counted(
    client: TestClient,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    async def broken(*args, **kwargs):
        raise RuntimeError("boom")

    monkeypatch.setattr(client.app.state.finder, "get_grant", broken)

    response = client.get("/grants/nsf-ai", headers={"x-request-id": "req-500"})

    assert response.status_code == 500
    assert response.json() == {"detail": "Internal Server Error", "request_id": "req-500"}
    endpoint = client.get("/metrics").json()["endpoints"]["GET /grants/{grant_id}"]
    assert endpoint["5xx"] == 1


def test_incoming_request_id_is_preserved(client: TestClient) -> None:
    response = client.get("/health", headers={"x-request-id": "manual-request-id"})
    assert response.headers.get("x-request-id") == "manual-request-id"


def test_search_pages_are_disjoint(client: TestClient) -> None:
    first = client.post("/grants/search", json={"filters": {}, "page": 1, "page_size": 2})
    second = client.post("/grants/search", json={"filters": {}, "page": 2, "page_size": 2})

    assert first.status_code == 200
    first_body = first.json()
    second_body = second.json()
    assert first_body["total_count"] == 5
    assert [item["id"] for item in first_body["items"]] == ["old-call", "nsf-edu"]
    assert [item["id"] for item in second_body["items"]] == ["doe-grid", "nsf-ai"]


def test_search_filters_by_text_and_funding(client: TestClient) -> None:
    response = client.post(
        "/grants/search",
        json={
            "filters": {
                "search_term": "ai",
                "funding": {"min": 200000, "include_null": False},
                "sort_by": "amount",
            },
        },
    )

    assert response.status_code == 200
    assert [item["id"] for item in response.json()["items"]] == ["nsf-ai"]


@pytest.mark.parametrize(
    "payload",
    [
        {"filters": {}, "page": 0, "page_size": 6},
        {"filters": {}, "page": 1, "page_size": 500},
        {"filters": {"sort_by": "popularity"}},
        {"filters": {"funding": {"min": 10, "max": 5}}},
    ],
)
def test_invalid_search_is_rejected(client: TestClient, payload: dict) -> None:
    response = client.post("/grants/search", json=payload)
    assert response.status_code == 422


def test_grant_detail_and_similar(client: TestClient) -> None:
    assert client.get("/grants/missing").status_code == 404
    assert client.get("/grants/missing/similar").status_code == 404

    detail = client.get("/grants/nsf-ai")
    similar = client.get("/grants/nsf-ai/similar")

    assert detail.json()["agency_name"] == "NSF"
    assert [item["id"] for item in similar.json()] == ["nsf-edu"]


def test_preferences_default_update_and_reset(client: TestClient) -> None:
    default = client.get("/users/user-1/preferences").json()
    assert default["is_default"] is True
    assert default["profile"]["funding_max"] == 5_000_000

    updated = client.put(
        "/users/user-1/preferences",
        json={"topics": ["Energy"], "agencies": ["DOE"], "deadline_days": 0},
    )
    assert updated.status_code == 200
    assert updated.json()["is_default"] is False
    assert client.get("/users/user-1/preferences").json()["profile"]["topics"] == ["Energy"]

    invalid = client.put(
        "/users/user-1/preferences",
        json={"funding_min": 10, "funding_max": 5},
    )
    assert invalid.status_code == 422

    reset = client.delete("/users/user-1/preferences")
    assert reset.json()["is_default"] is True
    assert client.get("/users/user-1/preferences").json()["is_default"] is True


def test_recommendations_follow_preferences(client: TestClient) -> None:
    client.put("/users/user-1/preferences", json={"topics": ["AI"], "agencies": ["NSF"]})

    response = client.get("/users/user-1/recommendations")

    assert response.status_code == 200
    body = response.json()
    assert body["target_count"] == 3
    ids = [item["grant"]["id"] for item in body["recommendations"]]
    assert ids[:2] == ["nsf-ai", "nsf-edu"]
    assert len(ids) == 3
    assert "old-call" not in ids
    assert [item["rank"] for item in body["recommendations"]] == [1, 2, 3]
    assert client.get("/users/user-1/recommendations?target_count=0").status_code == 422


def test_interaction_lifecycle(client: TestClient) -> None:
    client.get("/users/user-1/recommendations")

    saved = client.post("/users/user-1/interactions", json={"grant_id": "nsf-ai", "action": "saved"})
    assert saved.status_code == 200
    assert saved.json()["action"] == "saved"

    state = client.get("/users/user-1/interactions").json()
    assert state["saved"] == ["nsf-ai"]

    by_action = client.get("/users/user-1/interactions?action=saved").json()
    assert [grant["id"] for grant in by_action["grants"]] == ["nsf-ai"]

    recommended = client.get("/users/user-1/recommendations").json()
    assert "nsf-ai" not in [item["grant"]["id"] for item in recommended["recommendations"]]

    undone = client.delete("/users/user-1/interactions/nsf-ai?action=saved")
    assert undone.json()["action"] is None
    assert undone.json()["previous_action"] == "saved"

    history = client.get("/users/user-1/interactions/nsf-ai/history").json()
    assert history["current_action"] is None
    assert [record["action"] for record in history["records"]] == ["saved", None]

    metrics = client.get("/metrics").json()
    assert metrics["counters"]["interactions_committed"] == 2


def test_invalid_action_is_rejected(client: TestClient) -> None:
    response = client.post(
        "/users/user-1/interactions",
        json={"grant_id": "nsf-ai", "action": "starred"},
    )
    assert response.status_code == 422


def test_failed_commit_returns_retryable_503(
    client: TestClient,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    def unavailable(*args, **kwargs):
        raise sqlite3.OperationalError("database is locked")

    monkeypatch.setattr(client.app.state.repository, "append_interaction", unavailable)

    response = client.post(
        "/users/user-1/interactions",
        json={"grant_id": "nsf-ai", "action": "applied"},
    )

    assert response.status_code == 503
    assert response.json()["detail"]["retryable"] is True
    assert client.get("/users/user-1/interactions").json()["applied"] == []


@pytest.mark.parametrize(
    ("method", "path", "storage_call"),
    [
        ("GET", "/grants/nsf-ai", "get_grant"),
        ("GET", "/grants/nsf-ai/similar", "get_grant"),
        ("GET", "/users/user-1/preferences", "get_preference_profile"),
        ("PUT", "/users/user-1/preferences", "upsert_preference_profile"),
        ("DELETE", "/users/user-1/preferences", "delete_preference_profile"),
        ("GET", "/users/user-1/interactions/nsf-ai/history", "list_interaction_history"),
    ],
)
def test_storage_outage_on_reads_returns_retryable_503(
    client: TestClient,
    monkeypatch: pytest.MonkeyPatch,
    method: str,
    path: str,
    storage_call: str,
) -> None:
    def unavailable(*args, **kwargs):
        raise sqlite3.OperationalError("database is locked")

    monkeypatch.setattr(client.app.state.repository, storage_call, unavailable)
    body = {"topics": ["AI"]} if method == "PUT" else None

    response = client.request(method, path, json=body)

    assert response.status_code == 503
    assert response.json()["detail"]["retryable"] is True


def test_end_session(client: TestClient) -> None:
    client.get("/users/user-1/recommendations")

    assert client.delete("/users/user-1/session").json() == {"discarded": True}
    assert client.delete("/users/user-1/session").json() == {"discarded": False}
