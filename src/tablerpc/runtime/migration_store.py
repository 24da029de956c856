"""
File-based, append-only store for migration scripts.

Layout (one directory per script)::

    migrations/
        0001_initial/
            migration.json   # the MigrationScript
            snapshot.json    # schema after the script
            migration.sql    # rendered DDL, informational only
        0002_add_rating/
            ...

Scripts are never rewritten. A new script is staged in a hidden directory
and renamed into place, so a crash never leaves a half-written entry.
"""

from __future__ import annotations

import re
import shutil
from pathlib import Path

import pydantic

from tablerpc.errors import MigrationStoreError, NotFoundError
from tablerpc.runtime.logging import get_logger
from tablerpc.runtime.migrations import MigrationPlanner, MigrationScript
from tablerpc.specs.model import SchemaSnapshot
from tablerpc.specs.registry import SchemaRegistry

logger = get_logger("MIGRATE")

_ENTRY_PATTERN = re.compile(r"^(\d{4,})_([a-z0-9_]+)$")

_list = list


def slugify(name: str) -> str:
    return re.sub(r"[^a-z0-9]+", "_", name.lower()).strip("_") or "migration"


class MigrationStore:
    """Persist and retrieve migration scripts."""

    SCRIPT_FILE = "migration.json"
    SNAPSHOT_FILE = "snapshot.json"
    SQL_FILE = "migration.sql"

    def __init__(self, path: Path | str) -> None:
        self.path = Path(path)

    # ------------------------------------------------------------------
    # Read
    # ------------------------------------------------------------------

    def _entries(self) -> _list[tuple[int, Path]]:
        if not self.path.exists():
            return []
        entries: _list[tuple[int, Path]] = []
        for child in self.path.iterdir():
            match = _ENTRY_PATTERN.match(child.name)
            if child.is_dir() and match:
                entries.append((int(match.group(1)), child))
        entries.sort(key=lambda entry: entry[0])
        return entries

    def _load(self, sequence: int, directory: Path) -> MigrationScript:
        script_file = directory / self.SCRIPT_FILE
        try:
            script = MigrationScript.model_validate_json(script_file.read_text())
        except OSError as e:
            raise MigrationStoreError(f"Cannot read {script_file}: {e}") from e
        except pydantic.ValidationError as e:
            raise MigrationStoreError(f"{script_file} is not a valid migration script") from e
        if script.sequence != sequence:
            raise MigrationStoreError(
                f"{script_file} declares sequence {script.sequence}, "
                f"but its directory says {sequence}"
            )
        return script

    def list(self) -> _list[MigrationScript]:
        """
        All scripts in sequence order.

        Raises:
            NotFoundError: The sequence does not start at 1 or has a gap
            MigrationStoreError: Two directories share a sequence, or a script is unreadable
        """
        scripts: _list[MigrationScript] = []
        expected = 1
        for sequence, directory in self._entries():
            if sequence < expected:
                raise MigrationStoreError(f"Migration {sequence:04d} exists more than once")
            if sequence > expected:
                raise NotFoundError(f"Migration {expected:04d} is missing from {self.path}")
            scripts.append(self._load(sequence, directory))
            expected += 1
        return scripts

    def get(self, sequence: int) -> MigrationScript:
        for script in self.list():
            if script.sequence == sequence:
                return script
        raise NotFoundError(f"Migration {sequence:04d} does not exist")

    def latest_snapshot(self) -> SchemaSnapshot:
        """Schema after the last script; the empty snapshot for an empty store."""
        scripts = self.list()
        return scripts[-1].snapshot if scripts else SchemaSnapshot.empty()

    def next_sequence(self) -> int:
        return len(self.list()) + 1

    # ------------------------------------------------------------------
    # Write
    # ------------------------------------------------------------------

    def write(self, script: MigrationScript) -> Path:
        """
        Append a script to the store. Returns its directory.

        Raises:
            MigrationStoreError: The sequence exists already or is not the next one
        """
        expected = self.next_sequence()
        if script.sequence != expected:
            raise MigrationStoreError(
                f"Cannot write migration {script.sequence:04d}: "
                f"the next sequence in {self.path} is {expected:04d}"
            )

        name = f"{script.sequence:04d}_{slugify(script.name)}"
        target = self.path / name
        if target.exists():
            raise MigrationStoreError(f"{target} already exists")

        staging = self.path / f".{name}.tmp"
        if staging.exists():
            shutil.rmtree(staging)
        staging.mkdir(parents=True)
        try:
            (staging / self.SCRIPT_FILE).write_text(script.model_dump_json(indent=2))
            (staging / self.SNAPSHOT_FILE).write_text(script.snapshot.model_dump_json(indent=2))
            (staging / self.SQL_FILE).write_text(script.to_sql())
            staging.rename(target)
        except OSError as e:
            shutil.rmtree(staging, ignore_errors=True)
            raise MigrationStoreError(f"Cannot write {target}: {e}") from e

        logger.info(f"Wrote migration {name} ({len(script.steps)} step(s))")
        return target


def create_migration(
    registry: SchemaRegistry,
    store: MigrationStore,
    name: str = "migration",
    force: bool = False,
) -> MigrationScript | None:
    """
    Plan the next migration from the registry and write it to the store.

    Returns:
        The written script, or None when nothing changed (unless ``force``)

    Raises:
        UnsupportedChangeError: The change set cannot be migrated safely
    """
    previous = store.latest_snapshot()
    script = MigrationPlanner().diff(
        previous, registry.models(), name=name, sequence=store.next_sequence()
    )
    if script.is_empty and not force:
        logger.info("No schema changes detected")
        return None
    store.write(script)
    return script
