"""
Migration planning and application.

The planner diffs the previous schema snapshot against the current model
definitions and produces an ordered MigrationScript. The runner applies
stored scripts to a SQLite database, strictly in sequence order.

Planned operations:
- create_table: a new table model (identity column plus every field)
- add_column: a field added to an existing table model
- alter_column: a widening type change, a required field made nullable,
  or a changed default (SQLite rebuilds the table)
- drop_column / drop_table: a removed field or table model

Rejected with UnsupportedChangeError (the whole diff fails):
- narrowing type changes (data loss)
- nullable -> required (existing nulls)
- a new required column without default on an existing table
- renaming a table or moving a table to another class (ambiguous)
"""

from __future__ import annotations

import logging
import sqlite3
import threading
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from tablerpc.errors import NotFoundError, UnsupportedChangeError
from tablerpc.runtime.logging import get_logger, log_with_context
from tablerpc.runtime.query_builder import quote_identifier
from tablerpc.runtime.repository import field_type_to_sqlite, python_to_sqlite
from tablerpc.runtime.session import Database, _table_exists
from tablerpc.specs.model import (
    IDENTITY_FIELD,
    FieldSpec,
    FieldType,
    ModelDefinition,
    SchemaSnapshot,
)

logger = get_logger("MIGRATE")

# =============================================================================
# Migration Types
# =============================================================================


class MigrationAction(StrEnum):
    """Types of migration actions."""

    CREATE_TABLE = "create_table"
    ADD_COLUMN = "add_column"
    ALTER_COLUMN = "alter_column"
    DROP_COLUMN = "drop_column"
    DROP_TABLE = "drop_table"


# Creates before alters before drops
_ACTION_RANK: dict[MigrationAction, int] = {
    MigrationAction.CREATE_TABLE: 0,
    MigrationAction.ADD_COLUMN: 0,
    MigrationAction.ALTER_COLUMN: 1,
    MigrationAction.DROP_COLUMN: 2,
    MigrationAction.DROP_TABLE: 2,
}

_TEXTUAL = (FieldType.STRING, FieldType.TEXT)

# (from, to) pairs that never lose data
_WIDENINGS: set[tuple[FieldType, FieldType]] = {
    (FieldType.INT, FieldType.DOUBLE),
    (FieldType.BOOL, FieldType.INT),
    (FieldType.DATE, FieldType.TIMESTAMP),
    (FieldType.STRING, FieldType.TEXT),
    (FieldType.TEXT, FieldType.STRING),
    (FieldType.JSON, FieldType.TEXT),
} | {
    (source, target)
    for source in (
        FieldType.INT,
        FieldType.DOUBLE,
        FieldType.BOOL,
        FieldType.UUID,
        FieldType.TIMESTAMP,
        FieldType.DATE,
    )
    for target in _TEXTUAL
}


def is_widening(source: FieldType, target: FieldType) -> bool:
    return source == target or (source, target) in _WIDENINGS


def _sql_literal(value: Any, field_type: FieldType | None) -> str:
    if field_type is not None and value is not None:
        value = field_type.coerce(value)
    stored = python_to_sqlite(value, field_type)
    if stored is None:
        return "NULL"
    if isinstance(stored, (int, float)):
        return repr(stored)
    text = str(stored).replace("'", "''")
    return f"'{text}'"


class ColumnSpec(BaseModel):
    """A column as it appears in DDL."""

    name: str
    type: FieldType
    nullable: bool = True
    default: Any | None = None
    primary_key: bool = False

    model_config = ConfigDict(frozen=True)

    @classmethod
    def identity(cls) -> ColumnSpec:
        return cls(name=IDENTITY_FIELD, type=FieldType.INT, nullable=False, primary_key=True)

    @classmethod
    def from_field(cls, field: FieldSpec) -> ColumnSpec:
        return cls(name=field.name, type=field.type, nullable=field.nullable, default=field.default)

    def to_sql(self) -> str:
        name = quote_identifier(self.name, "column")
        if self.primary_key:
            return f"{name} INTEGER PRIMARY KEY AUTOINCREMENT"
        parts = [name, field_type_to_sqlite(self.type)]
        if not self.nullable:
            parts.append("NOT NULL")
        if self.default is not None:
            parts.append(f"DEFAULT {_sql_literal(self.default, self.type)}")
        return " ".join(parts)


class MigrationStep(BaseModel):
    """A single schema-change operation."""

    action: MigrationAction
    model: str = Field(description="Class name the step belongs to")
    table: str
    column: ColumnSpec | None = None
    columns: list[ColumnSpec] = Field(default_factory=list, description="create_table columns")
    previous: ColumnSpec | None = Field(default=None, description="alter_column: old column")

    model_config = ConfigDict(frozen=True)

    def to_sql(self) -> list[str]:
        """Render the step as SQLite statements."""
        table = quote_identifier(self.table, "table")
        if self.action == MigrationAction.CREATE_TABLE:
            columns = ", ".join(c.to_sql() for c in self.columns)
            return [f"CREATE TABLE {table} ({columns})"]
        if self.action == MigrationAction.ADD_COLUMN:
            assert self.column is not None
            return [f"ALTER TABLE {table} ADD COLUMN {self.column.to_sql()}"]
        if self.action == MigrationAction.ALTER_COLUMN:
            assert self.column is not None
            # SQLite cannot alter a column in place; the runner rebuilds the table
            return [f"-- rebuild {table}: {self.column.to_sql()}"]
        if self.action == MigrationAction.DROP_COLUMN:
            assert self.column is not None
            return [f"ALTER TABLE {table} DROP COLUMN {quote_identifier(self.column.name)}"]
        return [f"DROP TABLE {table}"]

    def describe(self) -> str:
        if self.action == MigrationAction.CREATE_TABLE:
            return f"create table {self.table} ({', '.join(c.name for c in self.columns)})"
        if self.action == MigrationAction.DROP_TABLE:
            return f"drop table {self.table}"
        assert self.column is not None
        verb = self.action.value.replace("_", " ")
        if self.action == MigrationAction.ALTER_COLUMN and self.previous is not None:
            return (
                f"{verb} {self.table}.{self.column.name} "
                f"({self.previous.type}{'?' if self.previous.nullable else ''} -> "
                f"{self.column.type}{'?' if self.column.nullable else ''})"
            )
        return f"{verb} {self.table}.{self.column.name}"


class MigrationScript(BaseModel):
    """
    One forward transition between two consecutive schema snapshots.

    Attributes:
        sequence: Position in the migration store (1, 2, 3, ...)
        name: Short human label
        steps: Ordered operations
        snapshot: The schema after this script is applied
    """

    sequence: int = Field(ge=1)
    name: str = "migration"
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    steps: list[MigrationStep] = Field(default_factory=list)
    snapshot: SchemaSnapshot

    model_config = ConfigDict(frozen=True)

    @property
    def is_empty(self) -> bool:
        return len(self.steps) == 0

    def to_sql(self) -> str:
        lines = [f"-- Migration {self.sequence:04d}: {self.name}"]
        for step in self.steps:
            lines.extend(f"{sql};" for sql in step.to_sql())
        return "\n".join(lines) + "\n"


# =============================================================================
# Migration Planning
# =============================================================================


class MigrationPlanner:
    """Plans migrations by comparing a schema snapshot to current definitions."""

    def diff(
        self,
        previous: SchemaSnapshot,
        current: Iterable[ModelDefinition],
        name: str = "migration",
        sequence: int | None = None,
    ) -> MigrationScript:
        """
        Create the script that moves ``previous`` to ``current``.

        Args:
            previous: The last recorded snapshot (``SchemaSnapshot.empty()`` initially)
            current: Current model definitions; non-table models are ignored
            name: Label for the script
            sequence: Defaults to ``previous.sequence + 1``

        Raises:
            UnsupportedChangeError: A change cannot be applied without losing data
        """
        current_models = [d for d in current if d.is_table]
        current_names = {m.name for m in current_models}
        previous_by_name = {m.name: m for m in previous.models}
        previous_tables = {m.table: m.name for m in previous.models}

        planned: list[tuple[int, str, int, MigrationStep]] = []

        for model in current_models:
            old = previous_by_name.get(model.name)
            if old is None:
                owner = previous_tables.get(model.table)
                if owner is not None:
                    raise UnsupportedChangeError(
                        f"Table '{model.table}' belongs to model '{owner}'; "
                        f"moving it to '{model.name}' is ambiguous",
                        table=model.table,
                    )
                planned.append((0, model.name, 0, self._create_table(model)))
                continue

            if old.table != model.table:
                raise UnsupportedChangeError(
                    f"Model '{model.name}' changed table '{old.table}' -> '{model.table}'; "
                    "table renames are not supported",
                    table=old.table,
                )
            planned.extend(self._diff_fields(old, model))

        for old in previous.models:
            if old.name not in current_names:
                step = MigrationStep(
                    action=MigrationAction.DROP_TABLE, model=old.name, table=old.table or ""
                )
                planned.append((_ACTION_RANK[step.action], old.name, 0, step))

        planned.sort(key=lambda item: item[:3])
        script = MigrationScript(
            sequence=sequence if sequence is not None else previous.sequence + 1,
            name=name,
            steps=[step for *_, step in planned],
            snapshot=SchemaSnapshot.from_definitions(
                current_models, sequence if sequence is not None else previous.sequence + 1
            ),
        )
        log_with_context(
            logger,
            logging.INFO,
            f"Planned migration {script.sequence:04d} with {len(script.steps)} step(s)",
            steps=[s.describe() for s in script.steps],
        )
        return script

    def _create_table(self, model: ModelDefinition) -> MigrationStep:
        return MigrationStep(
            action=MigrationAction.CREATE_TABLE,
            model=model.name,
            table=model.table or "",
            columns=[ColumnSpec.identity(), *(ColumnSpec.from_field(f) for f in model.fields)],
        )

    def _diff_fields(
        self, old: ModelDefinition, new: ModelDefinition
    ) -> list[tuple[int, str, int, MigrationStep]]:
        table = new.table or ""
        old_fields = {f.name: f for f in old.fields}
        new_fields = {f.name: f for f in new.fields}
        planned: list[tuple[int, str, int, MigrationStep]] = []

        for index, field in enumerate(new.fields):
            before = old_fields.get(field.name)
            if before is None:
                if field.required:
                    raise UnsupportedChangeError(
                        f"Cannot add required column '{table}.{field.name}' without a default: "
                        "existing rows have no value for it",
                        table=table,
                        column=field.name,
                    )
                step = MigrationStep(
                    action=MigrationAction.ADD_COLUMN,
                    model=new.name,
                    table=table,
                    column=ColumnSpec.from_field(field),
                )
                planned.append((_ACTION_RANK[step.action], new.name, index, step))
                continue

            if before == field:
                continue
            if not is_widening(before.type, field.type):
                raise UnsupportedChangeError(
                    f"Changing '{table}.{field.name}' from {before.type} to {field.type} "
                    "would lose data",
                    table=table,
                    column=field.name,
                )
            if before.nullable and not field.nullable:
                raise UnsupportedChangeError(
                    f"Making '{table}.{field.name}' required would reject existing null values",
                    table=table,
                    column=field.name,
                )
            step = MigrationStep(
                action=MigrationAction.ALTER_COLUMN,
                model=new.name,
                table=table,
                column=ColumnSpec.from_field(field),
                previous=ColumnSpec.from_field(before),
            )
            planned.append((_ACTION_RANK[step.action], new.name, index, step))

        for index, field in enumerate(old.fields):
            if field.name not in new_fields:
                step = MigrationStep(
                    action=MigrationAction.DROP_COLUMN,
                    model=new.name,
                    table=table,
                    column=ColumnSpec.from_field(field),
                )
                planned.append((_ACTION_RANK[step.action], new.name, index, step))

        return planned


# =============================================================================
# Schema Introspection
# =============================================================================


@dataclass
class ColumnInfo:
    """Information about a live database column."""

    name: str
    type: str
    not_null: bool
    default: Any
    is_pk: bool

    def to_sql(self) -> str:
        if self.is_pk and self.name == IDENTITY_FIELD:
            return ColumnSpec.identity().to_sql()
        parts = [quote_identifier(self.name, "column"), self.type or "TEXT"]
        if self.is_pk:
            parts.append("PRIMARY KEY")
        elif self.not_null:
            parts.append("NOT NULL")
        if self.default is not None:
            parts.append(f"DEFAULT {self.default}")
        return " ".join(parts)


def get_table_schema(conn: sqlite3.Connection, table_name: str) -> list[ColumnInfo]:
    """Get column information for a table."""
    cursor = conn.execute(f"PRAGMA table_info({quote_identifier(table_name, 'table')})")
    return [
        ColumnInfo(
            name=row[1],
            type=row[2],
            not_null=bool(row[3]),
            default=row[4],
            is_pk=bool(row[5]),
        )
        for row in cursor.fetchall()
    ]


# =============================================================================
# Migration Runner
# =============================================================================


# Only one apply run at a time in this process
_APPLY_LOCK = threading.Lock()


@dataclass
class AppliedMigration:
    sequence: int
    name: str
    applied_at: datetime


class MigrationRunner:
    """
    Applies stored migration scripts in sequence order.

    Each script runs in one IMMEDIATE transaction together with its history
    row, so a failure leaves neither partial schema changes nor a record.
    """

    HISTORY_TABLE = "_tablerpc_migrations"

    def __init__(self, database: Database, store: Any):
        self.database = database
        self.store = store

    def _ensure_history(self, conn: sqlite3.Connection) -> None:
        conn.execute(
            f"""
            CREATE TABLE IF NOT EXISTS {self.HISTORY_TABLE} (
                sequence INTEGER PRIMARY KEY,
                name TEXT NOT NULL,
                applied_at TEXT NOT NULL,
                steps INTEGER NOT NULL
            )
            """
        )

    def history(self) -> list[AppliedMigration]:
        """Applied migrations, oldest first."""
        with self.database.connection() as conn:
            self._ensure_history(conn)
            rows = conn.execute(
                f"SELECT sequence, name, applied_at FROM {self.HISTORY_TABLE} ORDER BY sequence"
            ).fetchall()
        return [
            AppliedMigration(
                sequence=row["sequence"],
                name=row["name"],
                applied_at=datetime.fromisoformat(row["applied_at"]),
            )
            for row in rows
        ]

    def applied_sequences(self) -> list[int]:
        return [m.sequence for m in self.history()]

    def pending(self) -> list[MigrationScript]:
        """
        Scripts not yet applied, in sequence order.

        Raises:
            NotFoundError: The history references a migration missing from the store
        """
        scripts = self.store.list()
        known = {s.sequence for s in scripts}
        applied = self.applied_sequences()
        missing = [seq for seq in applied if seq not in known]
        if missing:
            raise NotFoundError(
                f"Applied migration(s) {', '.join(f'{s:04d}' for s in missing)} "
                "are missing from the migration store"
            )
        last = max(applied, default=0)
        return [s for s in scripts if s.sequence > last]

    def apply_pending(self) -> list[MigrationScript]:
        """
        Apply every pending script; with nothing pending this is a no-op.

        Returns:
            The scripts that were applied
        """
        with _APPLY_LOCK:
            pending = self.pending()
            if not pending:
                logger.info("No pending migrations")
                return []
            applied = [script for script in pending if self._apply(script, record=True)]
        logger.info(f"Applied {len(applied)} migration(s)")
        return applied

    def apply_script(self, script: MigrationScript, record: bool = True) -> bool:
        """
        Apply one script directly.

        Raises:
            UnsupportedChangeError: A step is already reflected in the live schema
        """
        with _APPLY_LOCK:
            return self._apply(script, record=record)

    def _apply(self, script: MigrationScript, record: bool) -> bool:
        conn = self.database.connect()
        try:
            self._ensure_history(conn)
            conn.execute("BEGIN IMMEDIATE")
            try:
                if record and self._is_recorded(conn, script.sequence):
                    # Another process applied it after we computed the pending list
                    conn.execute("ROLLBACK")
                    return False
                for step in script.steps:
                    self._check_step(conn, step)
                    self._execute_step(conn, step)
                if record:
                    conn.execute(
                        f"INSERT INTO {self.HISTORY_TABLE} (sequence, name, applied_at, steps) "
                        "VALUES (?, ?, ?, ?)",
                        (
                            script.sequence,
                            script.name,
                            datetime.now(UTC).isoformat(),
                            len(script.steps),
                        ),
                    )
                conn.execute("COMMIT")
            except BaseException:
                if conn.in_transaction:
                    conn.execute("ROLLBACK")
                raise
        finally:
            conn.close()

        log_with_context(
            logger,
            logging.INFO,
            f"Applied migration {script.sequence:04d} ({script.name})",
            steps=[s.describe() for s in script.steps],
        )
        return True

    def _is_recorded(self, conn: sqlite3.Connection, sequence: int) -> bool:
        row = conn.execute(
            f"SELECT 1 FROM {self.HISTORY_TABLE} WHERE sequence = ?", (sequence,)
        ).fetchone()
        return row is not None

    def _check_step(self, conn: sqlite3.Connection, step: MigrationStep) -> None:
        """Refuse steps whose effect is already present (or whose target is gone)."""
        exists = _table_exists(conn, step.table)
        if step.action == MigrationAction.CREATE_TABLE:
            if exists:
                raise UnsupportedChangeError(
                    f"Table '{step.table}' already exists", table=step.table
                )
            return
        if not exists:
            raise UnsupportedChangeError(f"Table '{step.table}' does not exist", table=step.table)
        if step.action == MigrationAction.DROP_TABLE:
            return

        assert step.column is not None
        columns = {c.name for c in get_table_schema(conn, step.table)}
        present = step.column.name in columns
        if step.action == MigrationAction.ADD_COLUMN and present:
            raise UnsupportedChangeError(
                f"Column '{step.table}.{step.column.name}' already exists",
                table=step.table,
                column=step.column.name,
            )
        if step.action in (MigrationAction.ALTER_COLUMN, MigrationAction.DROP_COLUMN) and not present:
            raise UnsupportedChangeError(
                f"Column '{step.table}.{step.column.name}' does not exist",
                table=step.table,
                column=step.column.name,
            )

    def _execute_step(self, conn: sqlite3.Connection, step: MigrationStep) -> None:
        if step.action == MigrationAction.ALTER_COLUMN:
            self._rebuild_table(conn, step)
            return
        for sql in step.to_sql():
            conn.execute(sql)

    def _rebuild_table(self, conn: sqlite3.Connection, step: MigrationStep) -> None:
        """Recreate the table with one column redefined, keeping rows and the id counter."""
        assert step.column is not None
        live = get_table_schema(conn, step.table)
        definitions = [
            step.column.to_sql() if column.name == step.column.name else column.to_sql()
            for column in live
        ]
        names = ", ".join(quote_identifier(c.name) for c in live)
        table = quote_identifier(step.table, "table")
        temp = quote_identifier(f"_tablerpc_rebuild_{step.table}", "table")

        counter = conn.execute(
            "SELECT seq FROM sqlite_sequence WHERE name = ?", (step.table,)
        ).fetchone()

        conn.execute(f"CREATE TABLE {temp} ({', '.join(definitions)})")
        conn.execute(f"INSERT INTO {temp} ({names}) SELECT {names} FROM {table}")
        conn.execute(f"DROP TABLE {table}")
        conn.execute(f"ALTER TABLE {temp} RENAME TO {table}")

        # The copy only advances the counter to the highest surviving id
        if counter is not None:
            cursor = conn.execute(
                "UPDATE sqlite_sequence SET seq = ? WHERE name = ?", (counter[0], step.table)
            )
            if cursor.rowcount == 0:
                conn.execute(
                    "INSERT INTO sqlite_sequence (name, seq) VALUES (?, ?)",
                    (step.table, counter[0]),
                )


# =============================================================================
# High-Level API
# =============================================================================


def apply_migrations(database: Database, store: Any) -> list[MigrationScript]:
    """Apply all pending migrations from a store. Main entry point at startup."""
    return MigrationRunner(database, store).apply_pending()
