from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Iterable, List, Optional

CURRENT_SCHEMA_VERSION = 2


def generate_id() -> str:
    """Return a time based identifier with a random suffix."""

    return f"{int(time.time() * 1000)}_{uuid.uuid4().hex[:9]}"


def _optional_text(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        value = str(value)
    if not isinstance(value, str):
        return None
    return value.strip() or None


def clean_title(value: Any) -> Optional[str]:
    if not isinstance(value, str):
        return None
    return value.strip() or None


def as_list(value: Any) -> list:
    if value is None:
        return []
    if isinstance(value, list):
        return value
    if isinstance(value, tuple):
        return list(value)
    return [value]


@dataclass(eq=False)
class Ingredient:
    """A single ingredient line. Identity is the ``id``, never the text."""

    name: str
    id: str = field(default_factory=generate_id)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Ingredient):
            return NotImplemented
        return self.id == other.id

    def __hash__(self) -> int:
        return hash(self.id)

    @classmethod
    def coerce(cls, value: Any) -> "Ingredient":
        """Wrap a bare string (or anything else) into an ingredient."""

        if isinstance(value, Ingredient):
            return cls(name=value.name, id=value.id)
        if isinstance(value, dict):
            name = value.get("name")
            if not isinstance(name, str):
                name = "" if name is None else str(name)
            ingredient_id = value.get("id")
            if isinstance(ingredient_id, str) and ingredient_id:
                return cls(name=name, id=ingredient_id)
            return cls(name=name)
        if isinstance(value, str):
            return cls(name=value)
        return cls(name="" if value is None else str(value))

    def to_dict(self) -> dict:
        return {"id": self.id, "name": self.name}


@dataclass
class IngredientGroup:
    title: Optional[str] = None
    items: List[Ingredient] = field(default_factory=list)
    id: str = field(default_factory=generate_id)

    @classmethod
    def from_dict(cls, data: Any) -> "IngredientGroup":
        if not isinstance(data, dict):
            data = {}
        group_id = data.get("id")
        return cls(
            id=group_id if isinstance(group_id, str) and group_id else generate_id(),
            title=clean_title(data.get("title")),
            items=[Ingredient.coerce(item) for item in as_list(data.get("items"))],
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "title": self.title,
            "items": [item.to_dict() for item in self.items],
        }


@dataclass
class InstructionGroup:
    title: Optional[str] = None
    items: List[str] = field(default_factory=list)
    id: str = field(default_factory=generate_id)

    @classmethod
    def from_dict(cls, data: Any) -> "InstructionGroup":
        if not isinstance(data, dict):
            data = {}
        group_id = data.get("id")
        items = [item if isinstance(item, str) else str(item) for item in as_list(data.get("items")) if item is not None]
        return cls(
            id=group_id if isinstance(group_id, str) and group_id else generate_id(),
            title=clean_title(data.get("title")),
            items=[item for item in items if item.strip()],
        )

    def to_dict(self) -> dict:
        return {"id": self.id, "title": self.title, "items": list(self.items)}


@dataclass
class RecipeStep:
    """Legacy grouping of ingredients and instructions.

    Only read when upgrading old records; new recipes use the group pair on
    :class:`Recipe`.
    """

    title: Optional[str] = None
    ingredients: List[Ingredient] = field(default_factory=list)
    instructions: List[str] = field(default_factory=list)
    id: str = field(default_factory=generate_id)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "title": self.title,
            "ingredients": [item.to_dict() for item in self.ingredients],
            "instructions": list(self.instructions),
        }


@dataclass
class Recipe:
    """Aggregate root for a stored recipe.

    ``ingredients_groups`` and ``instruction_groups`` are the source of truth.
    The flat ``ingredients`` and ``instructions`` views are derived from them
    on every access, and ``schema_version`` is always stamped to
    :data:`CURRENT_SCHEMA_VERSION`.
    """

    name: str
    id: str = field(default_factory=generate_id)
    image_uri: Optional[str] = None
    ingredients_groups: List[IngredientGroup] = field(default_factory=list)
    instruction_groups: List[InstructionGroup] = field(default_factory=list)
    source_url: Optional[str] = None
    cooking_time: Optional[str] = None
    calories: Optional[str] = None
    tags: List[str] = field(default_factory=list)
    user_id: Optional[str] = None
    schema_version: int = CURRENT_SCHEMA_VERSION

    def __post_init__(self) -> None:
        self.schema_version = CURRENT_SCHEMA_VERSION

    @property
    def ingredients(self) -> List[Ingredient]:
        return [item for group in self.ingredients_groups for item in group.items]

    @property
    def instructions(self) -> List[str]:
        return [item for group in self.instruction_groups for item in group.items]

    @classmethod
    def from_flat(
        cls,
        *,
        name: str,
        ingredients: Iterable[Any] = (),
        instructions: Iterable[str] = (),
        **kwargs: Any,
    ) -> "Recipe":
        """Build a recipe from flat lists, wrapping them in untitled groups."""

        return cls(
            name=name,
            ingredients_groups=[IngredientGroup(items=[Ingredient.coerce(item) for item in ingredients])],
            instruction_groups=[InstructionGroup(items=[step for step in instructions if step and step.strip()])],
            **kwargs,
        )

    @classmethod
    def from_dict(cls, data: Any) -> "Recipe":
        """Decode a current-schema record, coercing every field.

        Records at older schema versions must pass through
        :func:`recipe_keeper.migrations.migrate_to_latest` first.
        """

        if not isinstance(data, dict):
            data = {}

        name = data.get("name")
        recipe_id = data.get("id")
        tags = [tag if isinstance(tag, str) else str(tag) for tag in as_list(data.get("tags")) if tag is not None]
        user_id = data.get("userId")

        return cls(
            id=recipe_id if isinstance(recipe_id, str) and recipe_id else generate_id(),
            name=name if isinstance(name, str) else "",
            image_uri=_optional_text(data.get("imageUri")),
            ingredients_groups=[IngredientGroup.from_dict(group) for group in as_list(data.get("ingredientsGroups"))],
            instruction_groups=[InstructionGroup.from_dict(group) for group in as_list(data.get("instructionGroups"))],
            source_url=_optional_text(data.get("sourceUrl")),
            cooking_time=_optional_text(data.get("cookingTime")),
            calories=_optional_text(data.get("calories")),
            tags=[tag for tag in tags if tag.strip()],
            user_id=user_id if isinstance(user_id, str) and user_id else None,
        )

    def to_dict(self) -> dict:
        """Return the persisted (camelCase) representation."""

        return {
            "id": self.id,
            "name": self.name,
            "imageUri": self.image_uri,
            "ingredients": [item.to_dict() for item in self.ingredients],
            "instructions": self.instructions,
            "ingredientsGroups": [group.to_dict() for group in self.ingredients_groups],
            "instructionGroups": [group.to_dict() for group in self.instruction_groups],
            "sourceUrl": self.source_url,
            "cookingTime": self.cooking_time,
            "calories": self.calories,
            "tags": list(self.tags),
            "userId": self.user_id,
            "schemaVersion": self.schema_version,
        }

    def copy(self) -> "Recipe":
        return Recipe.from_dict(self.to_dict())


__all__ = [
    "CURRENT_SCHEMA_VERSION",
    "Ingredient",
    "IngredientGroup",
    "InstructionGroup",
    "Recipe",
    "RecipeStep",
    "generate_id",
]
