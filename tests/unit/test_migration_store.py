"""Tests for the file-based migration store."""

from pathlib import Path

import pytest

from tablerpc.errors import MigrationStoreError, NotFoundError
from tablerpc.runtime.migration_store import MigrationStore, create_migration, slugify
from tablerpc.runtime.migrations import MigrationPlanner
from tablerpc.specs import FieldSpec, FieldType, ModelDefinition, SchemaRegistry, SchemaSnapshot


def _script(store: MigrationStore, registry: SchemaRegistry, name: str = "initial"):
    return MigrationPlanner().diff(
        store.latest_snapshot(), registry.models(), name=name, sequence=store.next_sequence()
    )


class TestSlugify:
    def test_slugify(self) -> None:
        assert slugify("Add rating") == "add_rating"
        assert slugify("  --  ") == "migration"
        assert slugify("v2: Recipes!") == "v2_recipes"


class TestMigrationStore:
    def test_empty_store(self, store: MigrationStore) -> None:
        assert store.list() == []
        assert store.latest_snapshot() == SchemaSnapshot.empty()
        assert store.next_sequence() == 1

    def test_write_and_read(self, store: MigrationStore, registry: SchemaRegistry) -> None:
        script = _script(store, registry)

        directory = store.write(script)

        assert directory.name == "0001_initial"
        assert sorted(p.name for p in directory.iterdir()) == [
            "migration.json",
            "migration.sql",
            "snapshot.json",
        ]
        assert "CREATE TABLE" in (directory / "migration.sql").read_text()
        assert store.list() == [script]
        assert store.get(1) == script
        assert store.latest_snapshot() == script.snapshot
        assert store.next_sequence() == 2

    def test_no_staging_left_behind(self, store: MigrationStore, registry: SchemaRegistry) -> None:
        store.write(_script(store, registry))

        assert [p.name for p in store.path.iterdir()] == ["0001_initial"]

    def test_wrong_sequence_rejected(self, store: MigrationStore, registry: SchemaRegistry) -> None:
        script = MigrationPlanner().diff(SchemaSnapshot.empty(), registry.models(), sequence=2)

        with pytest.raises(MigrationStoreError, match="next sequence"):
            store.write(script)

    def test_scripts_are_never_rewritten(
        self, store: MigrationStore, registry: SchemaRegistry
    ) -> None:
        script = _script(store, registry)
        store.write(script)

        with pytest.raises(MigrationStoreError):
            store.write(script)

    def test_get_missing(self, store: MigrationStore) -> None:
        with pytest.raises(NotFoundError):
            store.get(1)

    def test_gap_detected(self, store: MigrationStore, registry: SchemaRegistry) -> None:
        store.write(_script(store, registry))
        (store.path / "0001_initial").rename(store.path / "0002_initial")

        with pytest.raises(NotFoundError, match="0001"):
            store.list()

    def test_duplicate_sequence_detected(
        self, store: MigrationStore, registry: SchemaRegistry
    ) -> None:
        store.write(_script(store, registry))
        directory = store.path / "0001_initial"
        copy = store.path / "0001_copy"
        copy.mkdir()
        for file in directory.iterdir():
            (copy / file.name).write_bytes(file.read_bytes())

        with pytest.raises(MigrationStoreError, match="more than once"):
            store.list()

    def test_corrupt_script(self, store: MigrationStore, registry: SchemaRegistry) -> None:
        store.write(_script(store, registry))
        (store.path / "0001_initial" / "migration.json").write_text("{not json")

        with pytest.raises(MigrationStoreError, match="not a valid migration script"):
            store.list()

    def test_unrelated_entries_ignored(self, store: MigrationStore, tmp_path: Path) -> None:
        store.path.mkdir(parents=True)
        (store.path / "README.md").write_text("notes")
        (store.path / "scratch").mkdir()

        assert store.list() == []


class TestCreateMigration:
    def test_creates_initial(self, store: MigrationStore, registry: SchemaRegistry) -> None:
        script = create_migration(registry, store, "initial")

        assert script is not None
        assert script.sequence == 1
        assert [m.name for m in script.snapshot.models] == ["Recipe"]

    def test_no_changes_writes_nothing(
        self, store: MigrationStore, registry: SchemaRegistry
    ) -> None:
        create_migration(registry, store, "initial")

        assert create_migration(registry, store, "again") is None
        assert len(store.list()) == 1

    def test_force_writes_empty_script(
        self, store: MigrationStore, registry: SchemaRegistry
    ) -> None:
        create_migration(registry, store, "initial")

        script = create_migration(registry, store, "checkpoint", force=True)

        assert script is not None
        assert script.is_empty
        assert [s.sequence for s in store.list()] == [1, 2]

    def test_diffs_against_latest_snapshot(
        self, store: MigrationStore, recipe_definition: ModelDefinition
    ) -> None:
        create_migration(SchemaRegistry([recipe_definition]), store, "initial")
        extended = recipe_definition.model_copy(
            update={
                "fields": [
                    *recipe_definition.fields,
                    FieldSpec(name="notes", type=FieldType.TEXT, nullable=True),
                ]
            }
        )

        script = create_migration(SchemaRegistry([extended]), store, "add notes")

        assert script is not None
        assert [s.describe() for s in script.steps] == ["add column recipes.notes"]
        assert store.latest_snapshot().models == [extended]
