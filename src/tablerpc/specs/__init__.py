"""
Schema specification types.

This module exports the model declaration types and the schema registry.
"""

from tablerpc.specs.loader import (
    load_model_file,
    load_registry,
    parse_field_type,
    parse_model_document,
)
from tablerpc.specs.model import (
    IDENTITY_FIELD,
    FieldSpec,
    FieldType,
    ModelDefinition,
    SchemaSnapshot,
)
from tablerpc.specs.registry import SchemaRegistry

__all__ = [
    "IDENTITY_FIELD",
    "FieldSpec",
    "FieldType",
    "ModelDefinition",
    "SchemaSnapshot",
    "SchemaRegistry",
    "load_model_file",
    "load_registry",
    "parse_field_type",
    "parse_model_document",
]
