"""Configuration for the text-generation service.

Settings saved by the user live in the blob store under the ``ai_model_*``
keys; any field left unset there falls back to the ``RECIPE_AI_*``
environment variables.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from typing import Any, List, Mapping, Optional

import requests

from .storage import BlobStore

logger = logging.getLogger(__name__)

ENDPOINT_KEY = "ai_model_endpoint"
MODEL_KEY = "ai_model_name"
API_KEY_KEY = "ai_model_api_key"

DEFAULT_TEMPERATURE = 0.1
DEFAULT_SEED = 1997
PROBE_TIMEOUT = 10


@dataclass
class ModelConfig:
    model: str
    temperature: float = DEFAULT_TEMPERATURE
    seed: int = DEFAULT_SEED
    supports_response_format: bool = True

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ModelConfig":
        model = data.get("model")
        if not isinstance(model, str) or not model.strip():
            raise ValueError("Model config requires a 'model' name.")
        return cls(
            model=model.strip(),
            temperature=float(data.get("temperature", DEFAULT_TEMPERATURE)),
            seed=int(data.get("seed", DEFAULT_SEED)),
            supports_response_format=bool(data.get("supportsResponseFormat", True)),
        )


@dataclass
class GenerationSettings:
    endpoint: Optional[str] = None
    model: Optional[str] = None
    api_key: Optional[str] = None
    fallback_models: List[ModelConfig] = field(default_factory=list)

    @property
    def is_configured(self) -> bool:
        return bool(self.endpoint and self.model)

    def model_configs(self) -> List[ModelConfig]:
        """Return the models to try, the configured one first."""

        configs: List[ModelConfig] = []
        if self.model:
            configs.append(ModelConfig(model=self.model))
        configs.extend(config for config in self.fallback_models if config.model != self.model)
        return configs

    @classmethod
    def from_env(cls, session: Optional[requests.Session] = None) -> "GenerationSettings":
        """Build settings from ``RECIPE_AI_*`` environment variables."""

        fallback_models = [
            ModelConfig(model=name.strip())
            for name in os.environ.get("RECIPE_AI_FALLBACK_MODELS", "").split(",")
            if name.strip()
        ]

        config_url = os.environ.get("RECIPE_AI_MODEL_CONFIG_URL")
        if config_url:
            fallback_models = load_remote_model_configs(config_url, session=session) or fallback_models

        return cls(
            endpoint=os.environ.get("RECIPE_AI_ENDPOINT") or None,
            model=os.environ.get("RECIPE_AI_MODEL") or None,
            api_key=os.environ.get("RECIPE_AI_API_KEY") or None,
            fallback_models=fallback_models,
        )

    @classmethod
    def load(
        cls,
        blob_store: BlobStore,
        defaults: Optional["GenerationSettings"] = None,
        session: Optional[requests.Session] = None,
    ) -> "GenerationSettings":
        """Read saved settings, filling unset fields from ``defaults``.

        ``defaults`` is built from the environment when not given.
        """

        if defaults is None:
            defaults = cls.from_env(session=session)
        return cls(
            endpoint=blob_store.get(ENDPOINT_KEY) or defaults.endpoint,
            model=blob_store.get(MODEL_KEY) or defaults.model,
            api_key=blob_store.get(API_KEY_KEY) or defaults.api_key,
            fallback_models=defaults.fallback_models,
        )

    def save(self, blob_store: BlobStore) -> None:
        if not self.is_configured:
            raise ValueError("Please fill in at least the endpoint and model name.")

        blob_store.set(ENDPOINT_KEY, self.endpoint)
        blob_store.set(MODEL_KEY, self.model)
        if self.api_key:
            blob_store.set(API_KEY_KEY, self.api_key)
        else:
            blob_store.remove(API_KEY_KEY)

    def headers(self) -> dict:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers


def probe_connection(
    settings: GenerationSettings,
    session: Optional[requests.Session] = None,
    timeout: float = PROBE_TIMEOUT,
) -> requests.Response:
    """Send a one-message request to the configured endpoint.

    Network failures propagate as :class:`requests.RequestException`; the
    caller inspects the returned response status.
    """

    http = session or requests.Session()
    return http.post(
        settings.endpoint,
        json={"model": settings.model, "messages": [{"role": "user", "content": "test"}]},
        headers=settings.headers(),
        timeout=timeout,
    )


def load_remote_model_configs(url: str, session: Optional[requests.Session] = None) -> List[ModelConfig]:
    """Fetch a JSON list of model configs; return ``[]`` on any failure."""

    http = session or requests.Session()
    try:
        response = http.get(
            url,
            headers={"Accept": "application/json", "Cache-Control": "no-cache"},
            timeout=PROBE_TIMEOUT,
        )
        response.raise_for_status()
        payload = response.json()
        if not isinstance(payload, list):
            raise ValueError("model config is not a list")
        configs = [ModelConfig.from_dict(item) for item in payload if isinstance(item, dict)]
    except (requests.RequestException, ValueError, TypeError) as exc:
        logger.warning("Could not load model config from %s: %s", url, exc)
        return []

    logger.info("Loaded %d model configs from %s", len(configs), url)
    return configs


__all__ = [
    "API_KEY_KEY",
    "ENDPOINT_KEY",
    "GenerationSettings",
    "MODEL_KEY",
    "ModelConfig",
    "load_remote_model_configs",
    "probe_connection",
]
