from __future__ import annotations

from pathlib import Path
import json
import sys
import threading

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from recipe_keeper.image_cache import LocalImageCache
from recipe_keeper.models import CURRENT_SCHEMA_VERSION, Recipe
from recipe_keeper.storage import InMemoryBlobStore
from recipe_keeper.store import RECIPES_KEY, RecipeStore


class RecordingBlobStore(InMemoryBlobStore):
    def __init__(self, initial=None) -> None:
        super().__init__(initial)
        self.writes = 0

    def set(self, key: str, value: str) -> None:
        self.writes += 1
        super().set(key, value)


def make_recipe(name: str = "Pancakes", **kwargs) -> Recipe:
    return Recipe.from_flat(
        name=name,
        ingredients=["Flour", "Milk", "Egg"],
        instructions=["Whisk", "Fry"],
        **kwargs,
    )


def test_add_then_reload_round_trips():
    blob_store = InMemoryBlobStore()
    store = RecipeStore(blob_store)
    recipe = make_recipe()

    assert store.add(recipe) is True

    restarted = RecipeStore(blob_store)
    restarted.load()
    loaded = restarted.get_by_id(recipe.id)

    assert loaded is not None
    assert [item.name for item in loaded.ingredients] == ["Flour", "Milk", "Egg"]
    assert [item.id for item in loaded.ingredients] == [item.id for item in recipe.ingredients]
    assert loaded.instructions == ["Whisk", "Fry"]
    assert loaded.schema_version == CURRENT_SCHEMA_VERSION


def test_load_migrates_and_writes_back_legacy_records():
    legacy = [{"id": "old", "name": "Soup", "ingredients": [{"id": "x", "name": "Salt"}], "instructions": ["Boil"]}]
    blob_store = RecordingBlobStore({RECIPES_KEY: json.dumps(legacy)})
    store = RecipeStore(blob_store)

    store.load()

    assert blob_store.writes == 1
    stored = json.loads(blob_store.get(RECIPES_KEY))
    assert stored[0]["schemaVersion"] == CURRENT_SCHEMA_VERSION
    assert stored[0]["ingredientsGroups"][0]["items"][0]["name"] == "Salt"
    assert store.get_by_id("old").instructions == ["Boil"]


def test_ids_generated_on_load_survive_a_restart():
    raw = json.dumps(
        [
            {
                "name": "Soup",
                "schemaVersion": 2,
                "ingredientsGroups": [{"title": None, "items": ["Salt"]}],
                "instructionGroups": [{"title": None, "items": ["Boil"]}],
            }
        ]
    )
    blob_store = RecordingBlobStore({RECIPES_KEY: raw})

    first = RecipeStore(blob_store)
    first.load()
    second = RecipeStore(blob_store)
    second.load()

    assert blob_store.writes == 1
    before, after = first.get_all()[0], second.get_all()[0]
    assert after.id == before.id
    assert second.get_by_id(before.id) is not None
    assert [group.id for group in after.ingredients_groups] == [group.id for group in before.ingredients_groups]
    assert [item.id for item in after.ingredients] == [item.id for item in before.ingredients]


def test_load_of_current_records_does_not_write():
    blob_store = RecordingBlobStore()
    RecipeStore(blob_store).add(make_recipe())
    blob_store.writes = 0

    RecipeStore(blob_store).load()

    assert blob_store.writes == 0


@pytest.mark.parametrize("raw", ["{not json", '{"name": "not a list"}', "42"])
def test_corrupt_blob_loads_as_empty(raw):
    store = RecipeStore(InMemoryBlobStore({RECIPES_KEY: raw}))
    received = []
    store.subscribe(received.append)

    store.load()

    assert store.get_all() == []
    assert received == [[]]


def test_malformed_elements_still_load():
    raw = json.dumps([{"name": "Ok", "schemaVersion": 2}, None, {"ingredients": 3}])
    store = RecipeStore(InMemoryBlobStore({RECIPES_KEY: raw}))

    store.load()

    assert store.count() == 3
    assert store.get_all()[0].name == "Ok"


def test_update_replaces_matching_recipe():
    store = RecipeStore(InMemoryBlobStore())
    recipe = make_recipe()
    store.add(recipe)

    edited = make_recipe(name="Crepes", id=recipe.id)
    store.update(edited)

    assert store.count() == 1
    assert store.get_by_id(recipe.id).name == "Crepes"


def test_update_with_unknown_id_is_ignored():
    blob_store = RecordingBlobStore()
    store = RecipeStore(blob_store)
    received = []
    store.subscribe(received.append)

    store.update(make_recipe(id="missing"))

    assert store.count() == 0
    assert blob_store.writes == 0
    assert received == []


def test_blank_name_is_rejected():
    store = RecipeStore(InMemoryBlobStore())

    with pytest.raises(ValueError):
        store.add(make_recipe(name="   "))
    assert store.count() == 0


def test_returned_recipes_are_copies():
    store = RecipeStore(InMemoryBlobStore())
    recipe = make_recipe()
    store.add(recipe)

    recipe.name = "Mutated after add"
    fetched = store.get_by_id(recipe.id)
    fetched.ingredients_groups[0].items.clear()
    store.get_all()[0].tags.append("mutated")

    stored = store.get_by_id(recipe.id)
    assert stored.name == "Pancakes"
    assert len(stored.ingredients) == 3
    assert stored.tags == []


def test_get_all_keeps_insertion_order():
    store = RecipeStore(InMemoryBlobStore())
    for name in ("A", "B", "C"):
        store.add(make_recipe(name=name))

    assert [recipe.name for recipe in store.get_all()] == ["A", "B", "C"]


def test_listeners_receive_full_collection():
    store = RecipeStore(InMemoryBlobStore())
    received = []
    store.subscribe(received.append)

    first = make_recipe(name="First")
    store.add(first)
    store.add(make_recipe(name="Second"))
    store.delete(first.id)

    assert [[recipe.name for recipe in snapshot] for snapshot in received] == [
        ["First"],
        ["First", "Second"],
        ["Second"],
    ]


def test_unsubscribed_listener_is_not_called():
    store = RecipeStore(InMemoryBlobStore())
    received = []
    store.subscribe(received.append)
    store.unsubscribe(received.append)

    store.add(make_recipe())

    assert received == []


def test_subscribe_waits_for_running_mutation():
    store = RecipeStore(InMemoryBlobStore())
    received = []

    with store._lock:
        worker = threading.Thread(target=store.subscribe, args=(received.append,))
        worker.start()
        worker.join(timeout=0.1)
        assert worker.is_alive()

    worker.join(timeout=5)
    assert not worker.is_alive()
    store.add(make_recipe())
    assert len(received) == 1


def test_delete_removes_cached_image(tmp_path):
    cache = LocalImageCache(str(tmp_path / "images"))
    cache.mkdir(cache.directory)
    image_path = cache.new_image_path("https://example.com/photo.png")
    Path(image_path).write_bytes(b"png")

    store = RecipeStore(InMemoryBlobStore(), image_cache=cache)
    recipe = make_recipe(image_uri=image_path)
    store.add(recipe)

    store.delete(recipe.id)

    assert not Path(image_path).exists()
    assert store.get_by_id(recipe.id) is None


def test_delete_leaves_files_outside_the_cache(tmp_path):
    outside = tmp_path / "elsewhere.jpg"
    outside.write_bytes(b"jpg")
    cache = LocalImageCache(str(tmp_path / "images"))

    store = RecipeStore(InMemoryBlobStore(), image_cache=cache)
    external = make_recipe(image_uri=str(outside))
    remote = make_recipe(image_uri="https://example.com/a.jpg")
    no_image = make_recipe()
    for recipe in (external, remote, no_image):
        store.add(recipe)

    for recipe in (external, remote, no_image):
        store.delete(recipe.id)

    assert outside.exists()
    assert store.count() == 0


def test_delete_survives_image_removal_failure(tmp_path):
    class BrokenCache(LocalImageCache):
        def unlink(self, path: str) -> None:
            raise PermissionError("read-only")

    cache = BrokenCache(str(tmp_path))
    image_path = cache.new_image_path("https://example.com/photo.jpg")
    Path(image_path).write_bytes(b"jpg")

    store = RecipeStore(InMemoryBlobStore(), image_cache=cache)
    recipe = make_recipe(image_uri=image_path)
    store.add(recipe)

    store.delete(recipe.id)

    assert store.get_by_id(recipe.id) is None


def test_delete_of_unknown_id_is_noop():
    blob_store = RecordingBlobStore()
    store = RecipeStore(blob_store)

    store.delete("missing")

    assert blob_store.writes == 0
