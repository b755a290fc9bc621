from __future__ import annotations

from pathlib import Path

import pytest
from fastapi.testclient import TestClient
from grantfinder.main import create_app
from grantfinder.settings import ServiceSettings
from pytest_bdd import given, parsers, scenario, then, when

pytestmark = pytest.mark.bdd


@scenario("features/grantfinder.feature", "Saving a recommended grant replaces it in the recommendations")
def test_saving_replaces_recommendation() -> None:
    pass


@scenario("features/grantfinder.feature", "Saving the same grant twice clears it")
def test_saving_twice_clears() -> None:
    pass


@scenario("features/grantfinder.feature", "Paging through search results")
def test_paging_search_results() -> None:
    pass


@pytest.fixture
def client(tmp_path: Path):
    settings = ServiceSettings(
        database_path=str(tmp_path / "grantfinder.sqlite3"),
        target_count=3,
    )
    with TestClient(create_app(settings=settings)) as test_client:
        yield test_client


@pytest.fixture
def context() -> dict[str, object]:
    return {}


def recommended_ids(client: TestClient, user_id: str) -> list[str]:
    response = client.get(f"/users/{user_id}/recommendations")
    assert response.status_code == 200
    return [item["grant"]["id"] for item in response.json()["recommendations"]]


@given("a catalogue of open grants")
def given_catalogue(client: TestClient) -> None:
    grants = [
        {
            "id": f"g-{index:02d}",
            "title": f"Research Grant {index}",
            "categories": ["Science"],
            "award_ceiling": 100000 * index,
            "close_date": f"2099-01-{index:02d}T00:00:00Z",
        }
        for index in range(1, 6)
    ]
    response = client.post("/grants", json={"grants": grants})
    assert response.status_code == 200


@given(parsers.parse('recommendations have been requested for "{user_id}"'))
def given_recommendations(client: TestClient, user_id: str) -> None:
    assert len(recommended_ids(client, user_id)) == 3


@when(parsers.parse('"{user_id}" saves grant "{grant_id}"'))
def when_user_saves(client: TestClient, user_id: str, grant_id: str) -> None:
    response = client.post(
        f"/users/{user_id}/interactions",
        json={"grant_id": grant_id, "action": "saved"},
    )
    assert response.status_code == 200


@when(parsers.parse("the catalogue is searched for page {page:d} with {page_size:d} results per page"))
def when_catalogue_searched(
    client: TestClient,
    context: dict[str, object],
    page: int,
    page_size: int,
) -> None:
    context["response"] = client.post(
        "/grants/search",
        json={"filters": {}, "page": page, "page_size": page_size},
    )


@then(parsers.parse('grant "{grant_id}" is in the saved list of "{user_id}"'))
def then_grant_saved(client: TestClient, grant_id: str, user_id: str) -> None:
    state = client.get(f"/users/{user_id}/interactions").json()
    assert grant_id in state["saved"]


@then(parsers.parse('the saved list of "{user_id}" is empty'))
def then_saved_list_empty(client: TestClient, user_id: str) -> None:
    state = client.get(f"/users/{user_id}/interactions").json()
    assert state["saved"] == []


@then(parsers.parse('the recommendations for "{user_id}" no longer include "{grant_id}"'))
def then_not_recommended(client: TestClient, user_id: str, grant_id: str) -> None:
    assert grant_id not in recommended_ids(client, user_id)


@then(parsers.parse('the recommendations for "{user_id}" hold {count:d} grants'))
def then_recommendation_count(client: TestClient, user_id: str, count: int) -> None:
    assert len(recommended_ids(client, user_id)) == count


@then(parsers.parse('the search returns grants "{grant_ids}" out of {total:d}'))
def then_search_results(context: dict[str, object], grant_ids: str, total: int) -> None:
    response = context["response"]
    assert response.status_code == 200
    body = response.json()
    assert [item["id"] for item in body["items"]] == [value.strip() for value in grant_ids.split(",")]
    assert body["total_count"] == total
