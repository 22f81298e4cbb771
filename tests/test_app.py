from __future__ import annotations

from pathlib import Path
import json
import sys

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from fakes import FakeResponse, FakeSession, completion
from recipe_keeper import create_app
from recipe_keeper.config import ENDPOINT_KEY, MODEL_KEY
from recipe_keeper.image_cache import LocalImageCache
from recipe_keeper.storage import InMemoryBlobStore
from recipe_keeper.store import RECIPES_KEY

PAGE_URL = "https://cooking.example.com/tea"
ENDPOINT = "https://llm.example.com/v1/chat/completions"

TEA_JSON = {
    "name": "Tea",
    "ingredientsGroups": [{"title": "", "items": ["Water", "Tea bag"]}],
    "instructionGroups": [{"title": "", "items": ["1) Boil\n2) Steep"]}],
    "tags": ["drink"],
}


@pytest.fixture(autouse=True)
def clear_ai_environment(monkeypatch):
    for name in ("RECIPE_AI_ENDPOINT", "RECIPE_AI_MODEL", "RECIPE_AI_API_KEY", "RECIPE_AI_MODEL_CONFIG_URL"):
        monkeypatch.delenv(name, raising=False)


def create_test_client(tmp_path, session=None, blob_store=None, configured=True):
    blob_store = blob_store or InMemoryBlobStore()
    if configured:
        blob_store.set(ENDPOINT_KEY, ENDPOINT)
        blob_store.set(MODEL_KEY, "test-model")
    session = session or FakeSession()
    app = create_app(
        blob_store=blob_store,
        image_cache=LocalImageCache(str(tmp_path / "images"), session=session),
        session=session,
    )
    app.config.update(TESTING=True)
    return app.test_client(), app.config["RECIPE_STORE"], blob_store


def test_list_shows_existing_recipes(tmp_path):
    legacy = [{"id": "soup", "name": "Soup", "ingredients": ["Salt"], "instructions": ["Boil"]}]
    blob_store = InMemoryBlobStore({RECIPES_KEY: json.dumps(legacy)})
    client, _, _ = create_test_client(tmp_path, blob_store=blob_store)

    response = client.get("/recipes")

    assert response.status_code == 200
    data = response.get_json()
    assert data[0]["name"] == "Soup"
    assert data[0]["schemaVersion"] == 2
    assert data[0]["instructionGroups"][0]["items"] == ["Boil"]


def test_can_add_recipe_from_flat_lists(tmp_path):
    client, store, _ = create_test_client(tmp_path)

    response = client.post(
        "/recipes",
        json={"name": "Summer Salad", "ingredients": ["tomatoes", "cucumber"], "instructions": ["Mix everything."]},
    )

    assert response.status_code == 201
    recipe = store.get_by_id(response.get_json()["id"])
    assert [item.name for item in recipe.ingredients] == ["tomatoes", "cucumber"]
    assert recipe.instructions == ["Mix everything."]


def test_cannot_add_recipe_without_name(tmp_path):
    client, store, _ = create_test_client(tmp_path)

    response = client.post("/recipes", json={"name": "  "})

    assert response.status_code == 400
    assert store.count() == 0
    assert "Please provide a recipe name." in response.get_json()["error"]


def test_get_unknown_recipe_is_404(tmp_path):
    client, _, _ = create_test_client(tmp_path)

    assert client.get("/recipes/missing").status_code == 404


def test_update_replaces_recipe_keeping_id(tmp_path):
    client, store, _ = create_test_client(tmp_path)
    created = client.post("/recipes", json={"name": "Veggie Curry", "ingredients": ["carrots"]}).get_json()

    response = client.put(
        f"/recipes/{created['id']}",
        json={
            "id": "ignored",
            "name": "Spicy Veggie Curry",
            "ingredientsGroups": [{"title": "Paste", "items": ["chili"]}, {"items": ["carrots", "potatoes"]}],
            "instructionGroups": [{"items": ["Add spices."]}],
        },
    )

    assert response.status_code == 200
    updated = store.get_by_id(created["id"])
    assert updated.name == "Spicy Veggie Curry"
    assert [item.name for item in updated.ingredients] == ["chili", "carrots", "potatoes"]
    assert updated.instructions == ["Add spices."]
    assert store.count() == 1


def test_update_unknown_recipe_is_404(tmp_path):
    client, _, _ = create_test_client(tmp_path)

    assert client.put("/recipes/missing", json={"name": "x"}).status_code == 404


def test_delete_recipe_removes_item(tmp_path):
    client, store, _ = create_test_client(tmp_path)
    created = client.post("/recipes", json={"name": "Tofu Stir Fry"}).get_json()

    response = client.delete(f"/recipes/{created['id']}")

    assert response.status_code == 204
    assert store.get_by_id(created["id"]) is None
    assert client.delete(f"/recipes/{created['id']}").status_code == 404


def test_import_adds_extracted_recipe(tmp_path):
    session = FakeSession(
        pages={PAGE_URL: FakeResponse(text="<h1>Tea</h1><p>Boil water, steep.</p>")},
        posts=[completion(json.dumps(TEA_JSON))],
    )
    client, store, blob_store = create_test_client(tmp_path, session=session)

    response = client.post("/recipes/import", json={"url": PAGE_URL, "extraInstructions": "metric please"})

    assert response.status_code == 201
    data = response.get_json()
    assert data["instructions"] == ["Boil", "Steep"]
    assert data["sourceUrl"] == PAGE_URL
    assert store.count() == 1
    assert json.loads(blob_store.get(RECIPES_KEY))[0]["name"] == "Tea"
    assert "metric please" in session.post_calls[0]["json"]["messages"][1]["content"]


def test_failed_import_leaves_store_untouched(tmp_path):
    session = FakeSession(
        pages={PAGE_URL: FakeResponse(text="<p>Tea</p>")},
        posts=[FakeResponse(status_code=500, text="boom")],
    )
    client, store, blob_store = create_test_client(tmp_path, session=session)

    response = client.post("/recipes/import", json={"url": PAGE_URL})

    assert response.status_code == 502
    assert store.count() == 0
    assert blob_store.get(RECIPES_KEY) is None


def test_import_without_model_settings_is_a_client_error(tmp_path):
    client, _, _ = create_test_client(tmp_path, configured=False)

    response = client.post("/recipes/import", json={"url": PAGE_URL})

    assert response.status_code == 400
    assert "No AI model is configured" in response.get_json()["error"]


def test_import_requires_url(tmp_path):
    client, _, _ = create_test_client(tmp_path)

    assert client.post("/recipes/import", json={}).status_code == 400


def test_model_settings_are_saved_after_successful_connection_test(tmp_path):
    session = FakeSession(posts=[FakeResponse(json_data={"choices": []})])
    client, _, blob_store = create_test_client(tmp_path, session=session, configured=False)

    response = client.put(
        "/settings/model",
        json={"endpoint": "https://other.example.com", "model": "gpt-4o-mini", "apiKey": "sk-test"},
    )

    assert response.status_code == 200
    assert response.get_json() == {"endpoint": "https://other.example.com", "model": "gpt-4o-mini", "hasApiKey": True}
    assert blob_store.get(MODEL_KEY) == "gpt-4o-mini"
    assert client.get("/settings/model").get_json()["hasApiKey"] is True


def test_model_settings_are_not_saved_when_connection_test_fails(tmp_path):
    session = FakeSession(posts=[FakeResponse(status_code=401, text="invalid key")])
    client, _, blob_store = create_test_client(tmp_path, session=session, configured=False)

    response = client.put("/settings/model", json={"endpoint": "https://other.example.com", "model": "m"})

    assert response.status_code == 502
    assert "Status: 401" in response.get_json()["error"]
    assert blob_store.get(ENDPOINT_KEY) is None


def test_model_settings_require_endpoint_and_model(tmp_path):
    client, _, _ = create_test_client(tmp_path, configured=False)

    response = client.put("/settings/model", json={"model": "m"})

    assert response.status_code == 400
