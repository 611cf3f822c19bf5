"""Model catalog: built-in models, user-configured custom models and matching."""

from __future__ import annotations

import json
import logging
from collections.abc import Iterable
from dataclasses import dataclass
from pathlib import Path

logger = logging.getLogger(__name__)

CUSTOM_MODEL_PREFIX = "custom:"


@dataclass(slots=True, frozen=True)
class ModelInfo:
    """Model selectable for an agent session."""

    id: str
    display_name: str
    model: str
    provider: str | None = None


BUILTIN_MODELS: tuple[ModelInfo, ...] = (
    ModelInfo(
        id="claude-sonnet-4-5-20250929",
        display_name="Claude Sonnet 4.5",
        model="claude-sonnet-4-5-20250929",
    ),
    ModelInfo(
        id="claude-opus-4-20250514",
        display_name="Claude Opus 4",
        model="claude-opus-4-20250514",
    ),
    ModelInfo(
        id="claude-3-5-haiku-20241022",
        display_name="Claude 3.5 Haiku",
        model="claude-3-5-haiku-20241022",
    ),
)


def load_custom_models(settings_path: Path) -> list[ModelInfo]:
    """Read ``customModels`` from an agent settings file; problems yield no models."""

    try:
        payload = json.loads(settings_path.read_text("utf-8"))
    except FileNotFoundError:
        return []
    except (OSError, json.JSONDecodeError) as error:
        logger.warning("Ignoring unreadable model settings %s: %s", settings_path, error)
        return []

    raw_models = payload.get("customModels") if isinstance(payload, dict) else None
    if not isinstance(raw_models, list):
        return []

    models: list[ModelInfo] = []
    for raw in raw_models:
        if not isinstance(raw, dict) or not raw.get("id") or not raw.get("model"):
            continue
        models.append(
            ModelInfo(
                id=str(raw["id"]),
                display_name=str(raw.get("displayName") or raw["model"]),
                model=str(raw["model"]),
                provider=raw.get("provider"),
            ),
        )
    return models


def all_models(settings_path: Path | None = None) -> list[ModelInfo]:
    """Return built-in models followed by custom models."""

    custom = load_custom_models(settings_path) if settings_path is not None else []
    return [*BUILTIN_MODELS, *custom]


def find_model(model_id: str, settings_path: Path | None = None) -> ModelInfo | None:
    for model in all_models(settings_path):
        if model.id == model_id:
            return model
    return None


def is_custom_model(model_id: str) -> bool:
    return model_id.startswith(CUSTOM_MODEL_PREFIX)


def match_available_model(requested: str, available: Iterable[str]) -> str | None:
    """Pick the first available id equal to ``requested`` or extending it.

    ``claude-sonnet-4-5`` matches ``claude-sonnet-4-5-20250929`` and
    ``claude-sonnet-4-5[1m]`` but not ``claude-sonnet-4-50``.
    """

    for model_id in available:
        if (
            model_id == requested
            or model_id.startswith(f"{requested}-")
            or model_id.startswith(f"{requested}[")
        ):
            return model_id
    return None
