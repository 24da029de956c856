"""
Rendering of method annotations as Python source.

The dispatcher describes its methods with these strings, the stub
generator writes them into client modules, and stub verification compares
them. Model classes render by class name, so a server row model and the
generated client class of the same name compare equal.
"""

from __future__ import annotations

import types
import typing
from datetime import date, datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel

from tablerpc.errors import ValidationError

_SIMPLE_NAMES: dict[Any, str] = {
    str: "str",
    int: "int",
    float: "float",
    bool: "bool",
    bytes: "bytes",
    datetime: "datetime",
    date: "date",
    UUID: "UUID",
    Any: "Any",
    None: "None",
    type(None): "None",
}

_GENERIC_NAMES: dict[Any, str] = {
    list: "list",
    dict: "dict",
    set: "set",
    frozenset: "frozenset",
    tuple: "tuple",
}


def _is_union(origin: Any) -> bool:
    return origin is typing.Union or origin is types.UnionType


def render_annotation(annotation: Any) -> str:
    """
    Render an annotation as source text.

    Raises:
        ValidationError: The annotation cannot cross the wire
    """
    if annotation in _SIMPLE_NAMES:
        return _SIMPLE_NAMES[annotation]
    if isinstance(annotation, type) and issubclass(annotation, BaseModel):
        return annotation.__name__

    origin = typing.get_origin(annotation)
    args = typing.get_args(annotation)
    if _is_union(origin):
        return " | ".join(render_annotation(arg) for arg in args)
    if origin in _GENERIC_NAMES:
        name = _GENERIC_NAMES[origin]
        if not args:
            return name
        rendered = [("..." if arg is Ellipsis else render_annotation(arg)) for arg in args]
        return f"{name}[{', '.join(rendered)}]"
    if origin is typing.Literal:
        return f"Literal[{', '.join(repr(arg) for arg in args)}]"
    if annotation in _GENERIC_NAMES:
        return _GENERIC_NAMES[annotation]

    raise ValidationError(f"Unsupported annotation {annotation!r}")


def referenced_models(annotation: Any) -> list[type[BaseModel]]:
    """Model classes mentioned anywhere inside an annotation."""
    if isinstance(annotation, type) and issubclass(annotation, BaseModel):
        return [annotation]
    found: list[type[BaseModel]] = []
    for arg in typing.get_args(annotation):
        for model in referenced_models(arg):
            if model not in found:
                found.append(model)
    return found
