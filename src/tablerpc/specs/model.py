"""
Model definition types.

Defines declared model classes, their fields, and the schema snapshots
recorded alongside every migration.
"""

from __future__ import annotations

import re
from collections.abc import Iterable
from datetime import date, datetime
from enum import StrEnum
from functools import lru_cache
from typing import Any
from uuid import UUID

import pydantic
from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    TypeAdapter,
    ValidationInfo,
    field_validator,
    model_validator,
)

_SQL_IDENTIFIER = re.compile(r"^[a-zA-Z_][a-zA-Z0-9_]*$")

IDENTITY_FIELD = "id"


# =============================================================================
# Field Type System
# =============================================================================


class FieldType(StrEnum):
    """Semantic field types."""

    STRING = "string"
    TEXT = "text"
    INT = "int"
    DOUBLE = "double"
    BOOL = "bool"
    TIMESTAMP = "timestamp"
    DATE = "date"
    UUID = "uuid"
    JSON = "json"

    @property
    def python_type(self) -> Any:
        """The Python type row models use for this field type."""
        return _PYTHON_TYPES[self]

    def coerce(self, value: Any) -> Any:
        """Validate a value into the Python type; raises pydantic.ValidationError."""
        return _adapter(self).validate_python(value)

    def to_json(self, value: Any) -> Any:
        """The JSON form of a value, as recorded in snapshots."""
        adapter = _adapter(self)
        return adapter.dump_python(adapter.validate_python(value), mode="json")


_PYTHON_TYPES: dict[FieldType, Any] = {
    FieldType.STRING: str,
    FieldType.TEXT: str,
    FieldType.INT: int,
    FieldType.DOUBLE: float,
    FieldType.BOOL: bool,
    FieldType.TIMESTAMP: datetime,
    FieldType.DATE: date,
    FieldType.UUID: UUID,
    FieldType.JSON: Any,
}


@lru_cache(maxsize=None)
def _adapter(field_type: FieldType) -> TypeAdapter[Any]:
    return TypeAdapter(_PYTHON_TYPES[field_type])


class FieldSpec(BaseModel):
    """
    A declared field of a model class.

    Attributes:
        name: Field identifier (the column name for table models)
        type: Semantic type
        nullable: Declared with a trailing ``?``
        default: Value stored when the field is left unset, kept in its JSON
            form (timestamps as ISO-8601 strings) so a definition compares
            equal to itself after a snapshot round trip
    """

    name: str = Field(description="Field name")
    type: FieldType = Field(description="Semantic field type")
    nullable: bool = Field(default=False, description="May the field hold null?")
    default: Any | None = Field(default=None, description="Default value")

    model_config = ConfigDict(frozen=True)

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        if not v.isidentifier() or not _SQL_IDENTIFIER.match(v):
            raise ValueError(f"Field name '{v}' must be a valid identifier")
        if v == IDENTITY_FIELD:
            raise ValueError(f"Field name '{IDENTITY_FIELD}' is reserved for the identity column")
        return v

    @field_validator("default")
    @classmethod
    def normalize_default(cls, v: Any, info: ValidationInfo) -> Any:
        field_type = info.data.get("type")
        if v is None or field_type is None:
            return v
        try:
            return field_type.to_json(v)
        except pydantic.ValidationError:
            raise ValueError(f"Default {v!r} is not a valid {field_type} value") from None

    @property
    def python_default(self) -> Any:
        """The default as a value of the field's Python type."""
        return None if self.default is None else self.type.coerce(self.default)

    @property
    def required(self) -> bool:
        """A required field must be set before the row is inserted."""
        return not self.nullable and self.default is None


class ModelDefinition(BaseModel):
    """
    A declared model class.

    Example:
        ModelDefinition(
            name="Recipe",
            table="recipes",
            fields=[
                FieldSpec(name="author", type=FieldType.STRING),
                FieldSpec(name="date", type=FieldType.TIMESTAMP),
            ],
        )
    """

    name: str = Field(description="Class name")
    table: str | None = Field(default=None, description="Mapped table, if persisted")
    fields: list[FieldSpec] = Field(default_factory=list, description="Fields in declaration order")

    model_config = ConfigDict(frozen=True)

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        if not v.isidentifier():
            raise ValueError(f"Class name '{v}' must be a valid identifier")
        return v

    @field_validator("table")
    @classmethod
    def validate_table(cls, v: str | None) -> str | None:
        if v is not None and (not _SQL_IDENTIFIER.match(v) or v.startswith("_tablerpc")):
            raise ValueError(f"Table name '{v}' is not a usable SQL identifier")
        return v

    @model_validator(mode="after")
    def validate_unique_fields(self) -> ModelDefinition:
        seen: set[str] = set()
        for field in self.fields:
            if field.name in seen:
                raise ValueError(f"Field '{field.name}' is declared twice on {self.name}")
            seen.add(field.name)
        return self

    @property
    def is_table(self) -> bool:
        return self.table is not None

    @property
    def field_names(self) -> list[str]:
        return [f.name for f in self.fields]

    def get_field(self, name: str) -> FieldSpec | None:
        for field in self.fields:
            if field.name == name:
                return field
        return None


# =============================================================================
# Snapshots
# =============================================================================


class SchemaSnapshot(BaseModel):
    """
    The table-mapped model definitions as recorded by one migration.

    Sequence ``0`` is the empty snapshot that precedes the first migration.
    """

    sequence: int = Field(default=0, ge=0)
    models: list[ModelDefinition] = Field(default_factory=list)

    model_config = ConfigDict(frozen=True)

    @classmethod
    def empty(cls) -> SchemaSnapshot:
        return cls()

    @classmethod
    def from_definitions(
        cls, definitions: Iterable[ModelDefinition], sequence: int = 0
    ) -> SchemaSnapshot:
        return cls(sequence=sequence, models=[d for d in definitions if d.is_table])

    def get(self, name: str) -> ModelDefinition | None:
        for model in self.models:
            if model.name == name:
                return model
        return None

    @property
    def tables(self) -> dict[str, ModelDefinition]:
        return {m.table: m for m in self.models if m.table}
