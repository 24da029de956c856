"""
Data access layer - typed CRUD bindings for table-mapped models.

One TableAccessor exists per table model. Accessors are built from the
schema registry at startup and injected into endpoints; nothing here is
global. Every operation takes the caller's Session: it joins the session's
open transaction, or runs in its own implicit transaction otherwise.
"""

from __future__ import annotations

import json
import sqlite3
from collections.abc import Iterable, Iterator, Mapping
from datetime import UTC, date, datetime
from typing import Any, Generic, TypeVar
from uuid import UUID

import pydantic

from tablerpc.errors import NotFoundError, ValidationError
from tablerpc.runtime.logging import get_logger
from tablerpc.runtime.model_generator import RowModel, generate_all_row_models
from tablerpc.runtime.query_builder import QueryBuilder, quote_identifier
from tablerpc.runtime.session import Session
from tablerpc.specs.model import IDENTITY_FIELD, FieldType, ModelDefinition
from tablerpc.specs.registry import SchemaRegistry

T = TypeVar("T", bound=RowModel)


# =============================================================================
# SQLite Type Mapping
# =============================================================================


_SQLITE_TYPES: dict[FieldType, str] = {
    FieldType.STRING: "TEXT",
    FieldType.TEXT: "TEXT",
    FieldType.INT: "INTEGER",
    FieldType.DOUBLE: "REAL",
    FieldType.BOOL: "INTEGER",  # SQLite uses 0/1 for bool
    FieldType.TIMESTAMP: "TEXT",  # ISO 8601
    FieldType.DATE: "TEXT",  # ISO 8601
    FieldType.UUID: "TEXT",
    FieldType.JSON: "TEXT",
}


def field_type_to_sqlite(field_type: FieldType) -> str:
    """Convert a semantic field type to its SQLite column type."""
    return _SQLITE_TYPES[field_type]


def python_to_sqlite(value: Any, field_type: FieldType | None = None) -> Any:
    """Convert a Python value to its stored representation."""
    if value is None:
        return None
    if field_type == FieldType.JSON:
        return json.dumps(value, default=str)
    if isinstance(value, bool):
        return 1 if value else 0
    if isinstance(value, datetime):
        if value.tzinfo is not None:
            value = value.astimezone(UTC)
        return value.isoformat()
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, UUID):
        return str(value)
    if isinstance(value, (dict, list)):
        return json.dumps(value, default=str)
    return value


def sqlite_to_python(value: Any, field_type: FieldType | None = None) -> Any:
    """Convert a stored value back to Python based on the field type."""
    if value is None or field_type is None:
        return value
    if field_type == FieldType.TIMESTAMP:
        return datetime.fromisoformat(value)
    if field_type == FieldType.DATE:
        return date.fromisoformat(value)
    if field_type == FieldType.UUID:
        return UUID(value)
    if field_type == FieldType.BOOL:
        return bool(value)
    if field_type == FieldType.DOUBLE:
        return float(value)
    if field_type == FieldType.JSON:
        return json.loads(value)
    if field_type in (FieldType.STRING, FieldType.TEXT) and not isinstance(value, str):
        return str(value)
    return value


# =============================================================================
# Lazy Result Sequence
# =============================================================================


class RowSequence(Generic[T]):
    """
    Lazy, finite, restartable sequence of query results.

    Nothing runs until iteration starts; every new iteration re-runs the
    query against the session, so a sequence can be walked more than once.
    """

    batch_size = 100

    def __init__(self, accessor: TableAccessor[T], session: Session, sql: str, params: list[Any]):
        self._accessor = accessor
        self._session = session
        self.sql = sql
        self.params = params

    def __iter__(self) -> Iterator[T]:
        cursor = self._session.execute(self.sql, self.params)
        try:
            while rows := cursor.fetchmany(self.batch_size):
                for row in rows:
                    yield self._accessor._row_to_model(row)
        finally:
            cursor.close()

    def all(self) -> list[T]:
        return list(self)

    def first(self) -> T | None:
        return next(iter(self), None)

    def __repr__(self) -> str:
        return f"RowSequence({self._accessor.table_name!r}, {self.sql!r})"


# =============================================================================
# Table Accessor
# =============================================================================


class TableAccessor(Generic[T]):
    """
    Typed CRUD operations for one table-mapped model.

    Entities are frozen row models. Insert and update return new values; the
    caller's value is never modified.
    """

    def __init__(self, definition: ModelDefinition, model_class: type[T]):
        if not definition.is_table:
            raise ValidationError(f"Model '{definition.name}' is not mapped to a table")
        self.definition = definition
        self.model_class = model_class
        self.table_name: str = definition.table  # type: ignore[assignment]
        self._table = quote_identifier(self.table_name, "table")
        self._field_types: dict[str, FieldType] = {f.name: f.type for f in definition.fields}
        self._log = get_logger("DB")

    # -------------------------------------------------------------------------
    # Conversions
    # -------------------------------------------------------------------------

    def _coerce(self, entity: T | Mapping[str, Any]) -> T:
        if isinstance(entity, self.model_class):
            return entity
        if isinstance(entity, Mapping):
            try:
                return self.model_class.model_validate(dict(entity))
            except pydantic.ValidationError as e:
                raise ValidationError(_summarize(e, self.definition.name)) from e
        raise ValidationError(
            f"Expected a {self.definition.name} entity, got {type(entity).__name__}"
        )

    def _prepare(self, entity: T, apply_defaults: bool) -> dict[str, Any]:
        """
        Field values to store; fails if a required field is unset.

        Defaults fill only fields the caller never set, and only on insert:
        an update stores exactly what the entity holds, nulls included.
        """
        values: dict[str, Any] = {}
        missing: list[str] = []
        explicit = entity.model_fields_set
        for field in self.definition.fields:
            value = getattr(entity, field.name)
            if apply_defaults and value is None and field.name not in explicit:
                value = field.python_default
            if value is None and not field.nullable:
                missing.append(field.name)
            values[field.name] = value
        if missing:
            raise ValidationError(
                f"{self.definition.name} is missing required field(s): {', '.join(missing)}"
            )
        return values

    def _to_params(self, values: Mapping[str, Any]) -> list[Any]:
        return [python_to_sqlite(v, self._field_types.get(k)) for k, v in values.items()]

    def _row_to_model(self, row: sqlite3.Row) -> T:
        data = {
            key: sqlite_to_python(row[key], self._field_types.get(key))
            for key in row.keys()
            if key == IDENTITY_FIELD or key in self._field_types
        }
        return self.model_class.model_construct(**data)

    def _converters(self) -> dict[str, Any]:
        return {
            name: (lambda v, t=field_type: python_to_sqlite(v, t))
            for name, field_type in self._field_types.items()
        }

    def _builder(
        self,
        filter: Mapping[str, Any] | None = None,
        order_by: str | None = None,
        order_descending: bool = False,
        limit: int | None = None,
        offset: int | None = None,
    ) -> QueryBuilder:
        builder = QueryBuilder(
            table_name=self.table_name,
            columns=self.definition.field_names,
            converters=self._converters(),
        )
        if filter:
            builder.add_filters(filter)
        builder.set_order(order_by, order_descending)
        builder.set_window(limit, offset)
        return builder

    # -------------------------------------------------------------------------
    # Operations
    # -------------------------------------------------------------------------

    def insert(self, session: Session, entity: T | Mapping[str, Any]) -> T:
        """
        Insert an entity and return a copy with its identity assigned.

        Raises:
            ValidationError: A required field is unset, or the entity already has an id
        """
        row = self._coerce(entity)
        if row.id is not None:
            raise ValidationError(
                f"{self.definition.name} already has identity {row.id}; use update()"
            )
        values = self._prepare(row, apply_defaults=True)

        if values:
            columns = ", ".join(quote_identifier(name) for name in values)
            placeholders = ", ".join("?" * len(values))
            sql = f"INSERT INTO {self._table} ({columns}) VALUES ({placeholders})"
        else:
            sql = f"INSERT INTO {self._table} DEFAULT VALUES"

        with session.transaction() as conn:
            try:
                cursor = conn.execute(sql, self._to_params(values))
            except sqlite3.IntegrityError as e:
                raise ValidationError(
                    f"Insert into {self.table_name} violates a constraint",
                ) from e
            identity = cursor.lastrowid

        self._log.debug(f"Inserted {self.table_name}#{identity}")
        return row.model_copy(update={**values, IDENTITY_FIELD: identity})

    def insert_all(self, session: Session, entities: Iterable[T | Mapping[str, Any]]) -> list[T]:
        """Insert several entities atomically; all or none are stored."""
        with session.transaction():
            return [self.insert(session, entity) for entity in entities]

    def find(
        self,
        session: Session,
        filter: Mapping[str, Any] | None = None,
        order_by: str | None = None,
        order_descending: bool = False,
        limit: int | None = None,
        offset: int | None = None,
    ) -> RowSequence[T]:
        """
        Query rows lazily.

        Args:
            filter: ``{"field": value}`` or ``{"field__op": value}``; absent returns all rows
            order_by: Field to order by; ties break by id ascending
            order_descending: Reverse the order_by direction
            limit: Maximum number of rows
            offset: Rows to skip

        Raises:
            ValidationError: Unknown field or operator, negative limit/offset
        """
        builder = self._builder(filter, order_by, order_descending, limit, offset)
        sql, params = builder.build_select()
        return RowSequence(self, session, sql, params)

    def find_first(
        self,
        session: Session,
        filter: Mapping[str, Any] | None = None,
        order_by: str | None = None,
        order_descending: bool = False,
        offset: int | None = None,
    ) -> T | None:
        return self.find(session, filter, order_by, order_descending, 1, offset).first()

    def find_by_id(self, session: Session, id: int) -> T | None:
        sql = f"SELECT * FROM {self._table} WHERE {quote_identifier(IDENTITY_FIELD)} = ?"
        row = session.execute(sql, (id,)).fetchone()
        return self._row_to_model(row) if row is not None else None

    def count(self, session: Session, filter: Mapping[str, Any] | None = None) -> int:
        sql, params = self._builder(filter).build_count()
        return int(session.execute(sql, params).fetchone()[0])

    def update(self, session: Session, entity: T | Mapping[str, Any]) -> T:
        """
        Replace every stored field of an existing row.

        Raises:
            ValidationError: The entity has no id or misses a required field
            NotFoundError: No row with that id exists (nothing is changed)
        """
        row = self._coerce(entity)
        if row.id is None:
            raise ValidationError(f"Cannot update a {self.definition.name} without an id")
        values = self._prepare(row, apply_defaults=False)

        with session.transaction() as conn:
            if values:
                assignments = ", ".join(f"{quote_identifier(name)} = ?" for name in values)
                sql = (
                    f"UPDATE {self._table} SET {assignments} "
                    f"WHERE {quote_identifier(IDENTITY_FIELD)} = ?"
                )
                params = [*self._to_params(values), row.id]
            else:
                sql = (
                    f"UPDATE {self._table} SET {quote_identifier(IDENTITY_FIELD)} = "
                    f"{quote_identifier(IDENTITY_FIELD)} WHERE {quote_identifier(IDENTITY_FIELD)} = ?"
                )
                params = [row.id]
            try:
                cursor = conn.execute(sql, params)
            except sqlite3.IntegrityError as e:
                raise ValidationError(
                    f"Update of {self.table_name}#{row.id} violates a constraint"
                ) from e
            if cursor.rowcount == 0:
                raise NotFoundError(f"{self.definition.name} with id {row.id} does not exist")

        return row.model_copy(update=values)

    def delete(self, session: Session, id: int) -> T:
        """
        Delete a row and return its last stored value.

        Raises:
            NotFoundError: No row with that id exists
        """
        with session.transaction() as conn:
            existing = self.find_by_id(session, id)
            if existing is None:
                raise NotFoundError(f"{self.definition.name} with id {id} does not exist")
            conn.execute(
                f"DELETE FROM {self._table} WHERE {quote_identifier(IDENTITY_FIELD)} = ?",
                (id,),
            )
        self._log.debug(f"Deleted {self.table_name}#{id}")
        return existing


def _summarize(error: pydantic.ValidationError, name: str) -> str:
    details = "; ".join(
        f"{'.'.join(str(p) for p in err['loc']) or name}: {err['msg']}" for err in error.errors()
    )
    return f"Invalid {name}: {details}"


# =============================================================================
# Data Access Layer
# =============================================================================


class DataAccessLayer:
    """
    Row models and table accessors for every registered model.

    Accessors are reachable by class name: ``dal.accessor("Recipe")`` or
    ``dal.Recipe``.
    """

    def __init__(self, registry: SchemaRegistry):
        self.registry = registry
        self.models: dict[str, type[RowModel]] = generate_all_row_models(registry.models())
        self._accessors: dict[str, TableAccessor[Any]] = {
            definition.name: TableAccessor(definition, self.models[definition.name])
            for definition in registry.table_models()
        }

    def accessor(self, name: str) -> TableAccessor[Any]:
        try:
            return self._accessors[name]
        except KeyError:
            raise NotFoundError(f"No table accessor for model '{name}'") from None

    def model(self, name: str) -> type[RowModel]:
        try:
            return self.models[name]
        except KeyError:
            raise NotFoundError(f"Model '{name}' is not registered") from None

    def accessors(self) -> dict[str, TableAccessor[Any]]:
        return dict(self._accessors)

    def __getattr__(self, name: str) -> TableAccessor[Any]:
        if name.startswith("_"):
            raise AttributeError(name)
        try:
            return self.accessor(name)
        except NotFoundError:
            raise AttributeError(f"DataAccessLayer has no accessor '{name}'") from None
