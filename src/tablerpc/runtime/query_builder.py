"""
Query builder for filtering and ordering.

Provides SQL generation for filter operators, ordering and limit/offset.
Every ordered query ends with ``id ASC`` so ties resolve deterministically.
"""

from __future__ import annotations

import re
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

from tablerpc.errors import ValidationError
from tablerpc.specs.model import IDENTITY_FIELD

_VALID_IDENTIFIER_PATTERN = re.compile(r"^[a-zA-Z_][a-zA-Z0-9_]*$")


def quote_identifier(name: str, context: str = "identifier") -> str:
    """
    Validate and double-quote a SQL identifier.

    Raises:
        ValidationError: If the name contains anything but letters, digits and underscores
    """
    if not name or not _VALID_IDENTIFIER_PATTERN.match(name):
        raise ValidationError(
            f"Invalid SQL {context} '{name}': must contain only letters, digits, "
            "and underscores, and cannot start with a digit"
        )
    return f'"{name}"'


class FilterOperator(StrEnum):
    """Supported filter operators."""

    EQ = "eq"
    NE = "ne"
    GT = "gt"
    GTE = "gte"
    LT = "lt"
    LTE = "lte"
    CONTAINS = "contains"
    ICONTAINS = "icontains"
    STARTSWITH = "startswith"
    IN = "in"
    NOT_IN = "not_in"
    ISNULL = "isnull"


OPERATOR_SQL: dict[FilterOperator, str] = {
    FilterOperator.EQ: "{field} = ?",
    FilterOperator.NE: "{field} != ?",
    FilterOperator.GT: "{field} > ?",
    FilterOperator.GTE: "{field} >= ?",
    FilterOperator.LT: "{field} < ?",
    FilterOperator.LTE: "{field} <= ?",
    FilterOperator.CONTAINS: "{field} LIKE ? ESCAPE '\\'",
    FilterOperator.ICONTAINS: "LOWER({field}) LIKE LOWER(?) ESCAPE '\\'",
    FilterOperator.STARTSWITH: "{field} LIKE ? ESCAPE '\\'",
    FilterOperator.IN: "{field} IN ({placeholders})",
    FilterOperator.NOT_IN: "{field} NOT IN ({placeholders})",
}


def _escape_like(value: str) -> str:
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


@dataclass
class FilterCondition:
    """A single filter condition."""

    field: str
    operator: FilterOperator
    value: Any

    @classmethod
    def parse(cls, key: str, value: Any) -> FilterCondition:
        """
        Parse a filter key-value pair.

        Examples:
            - ("author", "Gemini") -> author = 'Gemini'
            - ("date__gt", t) -> date > t
            - ("ingredients__contains", "egg") -> ingredients LIKE '%egg%'
        """
        name, sep, op = key.rpartition("__")
        if not sep:
            return cls(field=key, operator=FilterOperator.EQ, value=value)
        try:
            operator = FilterOperator(op.lower())
        except ValueError:
            raise ValidationError(f"Unknown filter operator '{op}' in '{key}'") from None
        return cls(field=name, operator=operator, value=value)

    def to_sql(self, convert: Callable[[Any], Any] = lambda v: v) -> tuple[str, list[Any]]:
        """
        Convert the condition to a SQL fragment and parameters.

        Args:
            convert: Converts a Python value to its stored representation
        """
        field_ref = quote_identifier(self.field, "column")

        if self.operator == FilterOperator.ISNULL:
            return (f"{field_ref} IS NULL" if self.value else f"{field_ref} IS NOT NULL"), []

        if self.operator == FilterOperator.EQ and self.value is None:
            return f"{field_ref} IS NULL", []
        if self.operator == FilterOperator.NE and self.value is None:
            return f"{field_ref} IS NOT NULL", []

        if self.operator in (FilterOperator.IN, FilterOperator.NOT_IN):
            values = self.value if isinstance(self.value, (list, tuple, set)) else [self.value]
            values = [convert(v) for v in values]
            if not values:
                # Empty IN matches nothing, empty NOT IN matches everything
                return ("0" if self.operator == FilterOperator.IN else "1"), []
            placeholders = ", ".join("?" * len(values))
            sql = OPERATOR_SQL[self.operator].format(field=field_ref, placeholders=placeholders)
            return sql, values

        if self.operator in (FilterOperator.CONTAINS, FilterOperator.ICONTAINS):
            pattern = f"%{_escape_like(str(self.value))}%"
            return OPERATOR_SQL[self.operator].format(field=field_ref), [pattern]

        if self.operator == FilterOperator.STARTSWITH:
            pattern = f"{_escape_like(str(self.value))}%"
            return OPERATOR_SQL[self.operator].format(field=field_ref), [pattern]

        return OPERATOR_SQL[self.operator].format(field=field_ref), [convert(self.value)]


@dataclass
class QueryBuilder:
    """
    Builds SELECT and COUNT statements for one table.

    Attributes:
        table_name: Table to query
        columns: Known column names; filters and ordering must use these
        converters: Per-column Python-to-storage value converters
    """

    table_name: str
    columns: list[str]
    converters: dict[str, Callable[[Any], Any]] = field(default_factory=dict)
    conditions: list[FilterCondition] = field(default_factory=list)
    order_by: str | None = None
    descending: bool = False
    limit: int | None = None
    offset: int | None = None

    def _check_column(self, name: str, context: str) -> None:
        if name != IDENTITY_FIELD and name not in self.columns:
            raise ValidationError(f"Unknown field '{name}' in {context} for '{self.table_name}'")

    def add_filters(self, filters: Mapping[str, Any]) -> QueryBuilder:
        for key, value in filters.items():
            condition = FilterCondition.parse(key, value)
            self._check_column(condition.field, "filter")
            self.conditions.append(condition)
        return self

    def set_order(self, order_by: str | None, descending: bool = False) -> QueryBuilder:
        if order_by is not None:
            self._check_column(order_by, "order clause")
        self.order_by = order_by
        self.descending = descending
        return self

    def set_window(self, limit: int | None = None, offset: int | None = None) -> QueryBuilder:
        if limit is not None and limit < 0:
            raise ValidationError("limit must not be negative")
        if offset is not None and offset < 0:
            raise ValidationError("offset must not be negative")
        self.limit = limit
        self.offset = offset
        return self

    def _where(self) -> tuple[str, list[Any]]:
        if not self.conditions:
            return "", []
        parts: list[str] = []
        params: list[Any] = []
        for condition in self.conditions:
            convert = self.converters.get(condition.field, lambda v: v)
            sql, values = condition.to_sql(convert)
            parts.append(sql)
            params.extend(values)
        return " WHERE " + " AND ".join(parts), params

    def _order(self) -> str:
        identity = quote_identifier(IDENTITY_FIELD)
        if self.order_by is None or self.order_by == IDENTITY_FIELD:
            direction = "DESC" if self.order_by and self.descending else "ASC"
            return f" ORDER BY {identity} {direction}"
        direction = "DESC" if self.descending else "ASC"
        return f" ORDER BY {quote_identifier(self.order_by)} {direction}, {identity} ASC"

    def build_select(self) -> tuple[str, list[Any]]:
        table = quote_identifier(self.table_name, "table")
        where, params = self._where()
        sql = f"SELECT * FROM {table}{where}{self._order()}"
        if self.limit is not None or self.offset is not None:
            sql += " LIMIT ? OFFSET ?"
            params = [*params, -1 if self.limit is None else self.limit, self.offset or 0]
        return sql, params

    def build_count(self) -> tuple[str, list[Any]]:
        table = quote_identifier(self.table_name, "table")
        where, params = self._where()
        return f"SELECT COUNT(*) FROM {table}{where}", params
