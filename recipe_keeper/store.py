from __future__ import annotations

import json
import logging
import threading
from typing import Callable, List, Optional, Set

from .migrations import migrate_to_latest
from .models import CURRENT_SCHEMA_VERSION, Recipe
from .storage import BlobStore, ImageCache

logger = logging.getLogger(__name__)

RECIPES_KEY = "SavedRecipes"

Listener = Callable[[List[Recipe]], None]


class RecipeStore:
    """Authoritative in-memory recipe collection backed by a blob store.

    One instance is created by the application and handed to its consumers.
    Every mutation persists the whole collection under :data:`RECIPES_KEY`
    and then notifies subscribers with the full, current list.
    """

    def __init__(
        self,
        blob_store: BlobStore,
        *,
        image_cache: Optional[ImageCache] = None,
        key: str = RECIPES_KEY,
    ) -> None:
        self._blob_store = blob_store
        self._image_cache = image_cache
        self._key = key
        self._recipes: List[Recipe] = []
        self._listeners: Set[Listener] = set()
        self._lock = threading.RLock()

    def load(self) -> None:
        """Replace the collection with the persisted one, migrating old records."""

        with self._lock:
            records = self._read_records()
            needs_write_back = False
            recipes: List[Recipe] = []

            for record in records:
                recipe = Recipe.from_dict(migrate_to_latest(record))
                # Ids generated while decoding only stay stable once persisted.
                if record != recipe.to_dict():
                    needs_write_back = True
                recipes.append(recipe)

            self._recipes = recipes
            if needs_write_back:
                logger.info("Rewriting stored recipes at schema version %s", CURRENT_SCHEMA_VERSION)
                self._persist()
            self._notify()

    def add(self, recipe: Recipe) -> bool:
        _require_name(recipe)
        with self._lock:
            self._recipes.append(recipe.copy())
            self._persist()
            self._notify()
        return True

    def update(self, recipe: Recipe) -> None:
        """Replace the recipe sharing ``recipe.id``; unknown ids are ignored."""

        _require_name(recipe)
        with self._lock:
            for index, existing in enumerate(self._recipes):
                if existing.id == recipe.id:
                    self._recipes[index] = recipe.copy()
                    break
            else:
                return
            self._persist()
            self._notify()

    def delete(self, recipe_id: str) -> None:
        with self._lock:
            recipe = next((item for item in self._recipes if item.id == recipe_id), None)
            if recipe is None:
                return

            self._release_image(recipe.image_uri)
            self._recipes = [item for item in self._recipes if item.id != recipe_id]
            self._persist()
            self._notify()

    def get_by_id(self, recipe_id: str) -> Optional[Recipe]:
        with self._lock:
            for recipe in self._recipes:
                if recipe.id == recipe_id:
                    return recipe.copy()
        return None

    def get_all(self) -> List[Recipe]:
        with self._lock:
            return [recipe.copy() for recipe in self._recipes]

    def count(self) -> int:
        with self._lock:
            return len(self._recipes)

    def subscribe(self, listener: Listener) -> None:
        with self._lock:
            self._listeners.add(listener)

    def unsubscribe(self, listener: Listener) -> None:
        with self._lock:
            self._listeners.discard(listener)

    def _read_records(self) -> list:
        try:
            raw = self._blob_store.get(self._key)
        except Exception:  # pragma: no cover - depends on the backend
            logger.exception("Failed to read stored recipes")
            return []

        if not raw:
            return []

        try:
            records = json.loads(raw)
        except ValueError:
            logger.exception("Stored recipes are corrupt; starting with an empty collection")
            return []

        if not isinstance(records, list):
            logger.error("Stored recipes are not a list (got %s); ignoring them", type(records).__name__)
            return []
        return records

    def _persist(self) -> None:
        payload = json.dumps([recipe.to_dict() for recipe in self._recipes])
        try:
            self._blob_store.set(self._key, payload)
        except Exception:  # pragma: no cover - depends on the backend
            logger.exception("Failed to save recipes")

    def _release_image(self, image_uri: Optional[str]) -> None:
        if not image_uri or self._image_cache is None or not self._image_cache.contains(image_uri):
            return

        try:
            if self._image_cache.exists(image_uri):
                self._image_cache.unlink(image_uri)
        except OSError:
            logger.exception("Error deleting recipe image %s", image_uri)

    def _notify(self) -> None:
        snapshot = [recipe.copy() for recipe in self._recipes]
        for listener in list(self._listeners):
            listener(list(snapshot))


def _require_name(recipe: Recipe) -> None:
    if not recipe.name or not recipe.name.strip():
        raise ValueError("Please provide a recipe name.")


__all__ = ["RECIPES_KEY", "RecipeStore"]
