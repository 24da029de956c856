"""
Model generator - builds Pydantic row models from ModelDefinition.

Row models are frozen: a caller holding an entity cannot change it in
place, and every data access operation hands back a new value.

Generation is cached per distinct definition, so an endpoint module that
generates ``Recipe`` for its annotations gets the very class the data
access layer builds from the same registry.
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field, create_model

from tablerpc.specs.model import FieldSpec, FieldType, ModelDefinition

# =============================================================================
# Type Mapping
# =============================================================================


def field_type_to_python(field_type: FieldType) -> Any:
    """Map a semantic field type to the Python type used on row models."""
    return field_type.python_type


class RowModel(BaseModel):
    """
    Base class of every generated row model.

    ``id`` stays None until the data access layer inserts the row.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    id: int | None = Field(default=None, description="Identity, assigned on insert")


def _build_field_info(field: FieldSpec) -> tuple[Any, Any]:
    """
    Build the (type, default) pair for create_model.

    Every field is optional at construction time. Required fields are
    enforced by insert and update, so callers can build values piecemeal.
    """
    python_type = field_type_to_python(field.type)
    if python_type is not Any:
        python_type = python_type | None
    return (python_type, Field(default=field.python_default))


# =============================================================================
# Model Generation
# =============================================================================


_MODEL_CACHE: dict[str, type[RowModel]] = {}


def generate_row_model(definition: ModelDefinition) -> type[RowModel]:
    """
    Generate (or reuse) the row model for a ModelDefinition.

    Example:
        >>> Recipe = generate_row_model(recipe_definition)
        >>> Recipe(author="Gemini", ingredients="eggs").id is None
        True
    """
    key = definition.model_dump_json()
    if key in _MODEL_CACHE:
        return _MODEL_CACHE[key]

    field_definitions: dict[str, Any] = {
        field.name: _build_field_info(field) for field in definition.fields
    }
    model = create_model(
        definition.name,
        __base__=RowModel,
        __doc__=f"Row model for {definition.name}",
        __module__=__name__,
        **field_definitions,
    )
    _MODEL_CACHE[key] = model
    return model


def generate_all_row_models(definitions: list[ModelDefinition]) -> dict[str, type[RowModel]]:
    """Generate row models for all definitions, keyed by class name."""
    return {definition.name: generate_row_model(definition) for definition in definitions}

