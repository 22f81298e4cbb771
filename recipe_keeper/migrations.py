"""Upgrade stored recipe records to the current schema.

Records come from the blob store untouched, so nothing about their shape can
be trusted. Every function in this module is total: malformed input degrades
to the closest valid structure instead of raising.
"""

from __future__ import annotations

import logging
import math
from typing import Any, Callable, Dict, List

from .models import CURRENT_SCHEMA_VERSION, Ingredient, RecipeStep, as_list, clean_title

logger = logging.getLogger(__name__)

OLDEST_SCHEMA_VERSION = 1

Migrator = Callable[[Dict[str, Any]], Dict[str, Any]]


def _text(value: Any) -> str:
    if isinstance(value, str):
        return value
    return "" if value is None else str(value)


def _ingredient_dicts(value: Any) -> List[dict]:
    return [Ingredient.coerce(item).to_dict() for item in as_list(value)]


def _instruction_strings(value: Any) -> List[str]:
    return [text for text in (_text(item) for item in as_list(value)) if text.strip()]


def _normalize_step(step_like: Any) -> RecipeStep:
    if not isinstance(step_like, dict):
        step_like = {}
    return RecipeStep(
        title=clean_title(step_like.get("title")),
        ingredients=[Ingredient.coerce(item) for item in as_list(step_like.get("ingredients"))],
        instructions=_instruction_strings(step_like.get("instructions")),
    )


def _legacy_steps(record: Dict[str, Any]) -> List[RecipeStep]:
    steps = record.get("steps")
    if isinstance(steps, dict):
        steps = [steps]
    if not isinstance(steps, list) or not steps:
        return []
    return [_normalize_step(step) for step in steps]


def _groups_from_steps(steps: List[RecipeStep]) -> tuple[List[dict], List[dict]]:
    ingredients_groups = [
        {"title": step.title, "items": [item.to_dict() for item in step.ingredients]} for step in steps
    ]
    instruction_groups = [{"title": step.title, "items": list(step.instructions)} for step in steps]
    return ingredients_groups, instruction_groups


def migrate_v1_to_v2(record: Dict[str, Any]) -> Dict[str, Any]:
    """Wrap the flat version 1 lists into one untitled group per side.

    Records written while the step structure existed carry ``steps``; those
    are turned into groups instead so their titles survive. A side that
    already holds a group list is kept as it is, so the migrator is safe on
    records that lost their version stamp.
    """

    out = dict(record)
    name = record.get("name")
    out["name"] = name if isinstance(name, str) else ""

    steps = _legacy_steps(record)
    from_steps = _groups_from_steps(steps) if steps else None

    if not isinstance(record.get("ingredientsGroups"), list):
        if from_steps is not None:
            out["ingredientsGroups"] = from_steps[0]
        else:
            out["ingredientsGroups"] = [{"title": None, "items": _ingredient_dicts(record.get("ingredients"))}]

    if not isinstance(record.get("instructionGroups"), list):
        if from_steps is not None:
            out["instructionGroups"] = from_steps[1]
        else:
            out["instructionGroups"] = [{"title": None, "items": _instruction_strings(record.get("instructions"))}]

    out["schemaVersion"] = 2
    return out


# Keyed by the version a migrator upgrades *from*.
MIGRATIONS: Dict[int, Migrator] = {
    1: migrate_v1_to_v2,
}


def detect_version(record: Dict[str, Any]) -> int:
    version = record.get("schemaVersion")
    if isinstance(version, bool):
        return OLDEST_SCHEMA_VERSION
    if isinstance(version, int):
        return version
    if isinstance(version, float) and math.isfinite(version) and version.is_integer():
        return int(version)
    return OLDEST_SCHEMA_VERSION


def _normalize_groups(value: Any, item_coercer: Callable[[Any], list]) -> List[dict]:
    groups = []
    for group in as_list(value):
        if not isinstance(group, dict):
            # A bare list or string where a group belongs: treat it as the items.
            group = {"items": group}
        normalized = {"title": clean_title(group.get("title")), "items": item_coercer(group.get("items"))}
        if isinstance(group.get("id"), str) and group["id"]:
            normalized["id"] = group["id"]
        groups.append(normalized)
    return groups


def _normalize_latest(record: Dict[str, Any]) -> Dict[str, Any]:
    out = dict(record)
    steps = _legacy_steps(record)
    from_steps = _groups_from_steps(steps) if steps else None

    if out.get("ingredientsGroups") is None:
        if from_steps is not None:
            out["ingredientsGroups"] = from_steps[0]
        else:
            out["ingredientsGroups"] = [{"title": None, "items": _ingredient_dicts(record.get("ingredients"))}]
    out["ingredientsGroups"] = _normalize_groups(out["ingredientsGroups"], _ingredient_dicts)

    if out.get("instructionGroups") is None:
        if from_steps is not None:
            out["instructionGroups"] = from_steps[1]
        else:
            out["instructionGroups"] = [{"title": None, "items": _instruction_strings(record.get("instructions"))}]
    out["instructionGroups"] = _normalize_groups(out["instructionGroups"], _instruction_strings)

    if steps:
        out["steps"] = [step.to_dict() for step in steps]
    out["schemaVersion"] = CURRENT_SCHEMA_VERSION
    return out


def migrate_to_latest(record: Any) -> Dict[str, Any]:
    """Return ``record`` upgraded to :data:`CURRENT_SCHEMA_VERSION`.

    The migrator chain stops at the current version or at the first version
    with no registered migrator. A final normalization pass then guarantees
    both group lists are present and well formed.
    """

    if not isinstance(record, dict):
        logger.warning("Discarding non-object recipe record of type %s", type(record).__name__)
        record = {}

    version = detect_version(record)
    out = dict(record)
    out["schemaVersion"] = version

    while version < CURRENT_SCHEMA_VERSION:
        migrator = MIGRATIONS.get(version)
        if migrator is None:
            logger.warning("No migrator registered for schema version %s", version)
            break
        out = migrator(out)
        version += 1
        out["schemaVersion"] = version

    return _normalize_latest(out)


__all__ = ["MIGRATIONS", "OLDEST_SCHEMA_VERSION", "detect_version", "migrate_to_latest", "migrate_v1_to_v2"]
