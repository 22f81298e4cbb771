import logging
import os
from typing import Any, Optional, Tuple

import requests
from flask import Flask, jsonify, request

from .config import GenerationSettings, probe_connection
from .exceptions import ConfigurationError, ExtractionError
from .extractor import RecipeExtractor
from .image_cache import LocalImageCache
from .migrations import migrate_to_latest
from .models import CURRENT_SCHEMA_VERSION, Recipe
from .storage import BlobStore, ImageCache
from .store import RecipeStore

try:
    from .gcp_storage import FirestoreBlobStore
except ImportError:  # pragma: no cover - allows running tests without optional deps
    FirestoreBlobStore = None  # type: ignore[assignment]

logger = logging.getLogger(__name__)


def create_app(
    blob_store: Optional[BlobStore] = None,
    image_cache: Optional[ImageCache] = None,
    session: Optional[requests.Session] = None,
) -> Flask:
    """Create and configure the Flask application.

    Parameters
    ----------
    blob_store:
        Optional durable blob store. When ``None`` the application will use
        :class:`FirestoreBlobStore` configured through environment variables.
    image_cache:
        Optional image cache. Defaults to :class:`LocalImageCache` in
        ``RECIPE_IMAGE_DIR``.
    session:
        Optional :class:`requests.Session` used for every outgoing request.
    """

    app = Flask(__name__)

    if blob_store is None:
        if FirestoreBlobStore is None:
            raise RuntimeError(
                "google-cloud-firestore is not installed. Install optional dependencies "
                "or pass an explicit blob store to create_app."
            )
        blob_store = FirestoreBlobStore.from_env()

    http = session or requests.Session()
    if image_cache is None:
        image_cache = LocalImageCache.from_env(session=http)

    store = RecipeStore(blob_store, image_cache=image_cache)
    store.load()

    app.config["BLOB_STORE"] = blob_store
    app.config["IMAGE_CACHE"] = image_cache
    app.config["HTTP_SESSION"] = http
    app.config["RECIPE_STORE"] = store
    app.config.setdefault("CORS_PROXY", os.environ.get("RECIPE_CORS_PROXY") or None)
    app.config["GENERATION_DEFAULTS"] = GenerationSettings.from_env(session=http)

    def build_extractor() -> RecipeExtractor:
        settings = GenerationSettings.load(app.config["BLOB_STORE"], defaults=app.config["GENERATION_DEFAULTS"])
        return RecipeExtractor(
            settings,
            image_cache=app.config["IMAGE_CACHE"],
            session=app.config["HTTP_SESSION"],
            cors_proxy=app.config["CORS_PROXY"],
        )

    @app.get("/recipes")
    def list_recipes():
        recipes = app.config["RECIPE_STORE"].get_all()
        return jsonify([recipe.to_dict() for recipe in recipes])

    @app.get("/recipes/<recipe_id>")
    def get_recipe(recipe_id: str):
        recipe = app.config["RECIPE_STORE"].get_by_id(recipe_id)
        if recipe is None:
            return _error("Recipe not found.", 404)
        return jsonify(recipe.to_dict())

    @app.post("/recipes")
    def create_recipe():
        recipe_store: RecipeStore = app.config["RECIPE_STORE"]

        payload = _json_body()
        payload.pop("id", None)
        recipe = _recipe_from_payload(payload)

        try:
            recipe_store.add(recipe)
        except ValueError as exc:
            return _error(str(exc), 400)

        return jsonify(recipe.to_dict()), 201

    @app.put("/recipes/<recipe_id>")
    def update_recipe(recipe_id: str):
        recipe_store: RecipeStore = app.config["RECIPE_STORE"]

        if recipe_store.get_by_id(recipe_id) is None:
            return _error("Recipe not found.", 404)

        payload = _json_body()
        payload["id"] = recipe_id
        recipe = _recipe_from_payload(payload)

        try:
            recipe_store.update(recipe)
        except ValueError as exc:
            return _error(str(exc), 400)

        return jsonify(recipe.to_dict())

    @app.delete("/recipes/<recipe_id>")
    def delete_recipe(recipe_id: str):
        recipe_store: RecipeStore = app.config["RECIPE_STORE"]

        if recipe_store.get_by_id(recipe_id) is None:
            return _error("Recipe not found.", 404)

        recipe_store.delete(recipe_id)
        return "", 204

    @app.post("/recipes/import")
    def import_recipe():
        recipe_store: RecipeStore = app.config["RECIPE_STORE"]

        payload = _json_body()
        url = payload.get("url")
        if not isinstance(url, str) or not url.strip():
            return _error("Please provide a recipe URL.", 400)

        extra_instructions = payload.get("extraInstructions")
        if not isinstance(extra_instructions, str):
            extra_instructions = None

        try:
            recipe = build_extractor().extract(url.strip(), extra_instructions)
        except ConfigurationError as exc:
            return _error(str(exc), 400)
        except ExtractionError as exc:
            logger.warning("Failed to extract recipe from %s: %s", url, exc)
            return _error(f"Failed to extract recipe: {exc}", 502)

        recipe_store.add(recipe)
        return jsonify(recipe.to_dict()), 201

    @app.get("/settings/model")
    def get_model_settings():
        settings = GenerationSettings.load(app.config["BLOB_STORE"], defaults=app.config["GENERATION_DEFAULTS"])
        return jsonify(
            {
                "endpoint": settings.endpoint,
                "model": settings.model,
                "hasApiKey": bool(settings.api_key),
            }
        )

    @app.put("/settings/model")
    def save_model_settings():
        payload = _json_body()
        settings = GenerationSettings(
            endpoint=_text_field(payload, "endpoint"),
            model=_text_field(payload, "model"),
            api_key=_text_field(payload, "apiKey"),
        )
        if not settings.is_configured:
            return _error("Please fill in at least the endpoint and model name.", 400)

        try:
            response = probe_connection(settings, session=app.config["HTTP_SESSION"])
        except requests.RequestException as exc:
            return _error(f"Failed to connect to the endpoint. Settings were not saved: {exc}", 502)

        if not response.ok:
            return _error(
                f"The endpoint returned an error (Status: {response.status_code}). "
                f"Settings were not saved.\n\n{response.text}",
                502,
            )

        settings.save(app.config["BLOB_STORE"])
        return jsonify({"endpoint": settings.endpoint, "model": settings.model, "hasApiKey": bool(settings.api_key)})

    return app


def _json_body() -> dict:
    payload = request.get_json(silent=True)
    return dict(payload) if isinstance(payload, dict) else {}


def _text_field(payload: dict, key: str) -> Optional[str]:
    value = payload.get(key)
    if not isinstance(value, str):
        return None
    return value.strip() or None


def _recipe_from_payload(payload: dict) -> Recipe:
    # Manual entries may send flat lists instead of groups.
    payload["schemaVersion"] = CURRENT_SCHEMA_VERSION
    return Recipe.from_dict(migrate_to_latest(payload))


def _error(message: str, status: int) -> Tuple[Any, int]:
    return jsonify({"error": message}), status


__all__ = ["create_app", "Recipe", "RecipeStore"]
