"""Shared pytest fixtures for tablerpc tests."""

from collections.abc import Iterator
from pathlib import Path

import pytest
from recipes_app import RECIPE, RecipeEndpoint, StatusEndpoint, build_registry

from tablerpc.runtime.dispatcher import EndpointDispatcher
from tablerpc.runtime.migration_store import MigrationStore, create_migration
from tablerpc.runtime.migrations import MigrationRunner
from tablerpc.runtime.repository import DataAccessLayer, TableAccessor
from tablerpc.runtime.session import Database, Session, SessionFactory
from tablerpc.specs import ModelDefinition, SchemaRegistry


@pytest.fixture
def recipe_definition() -> ModelDefinition:
    return RECIPE


@pytest.fixture
def registry() -> SchemaRegistry:
    return build_registry()


@pytest.fixture
def database(tmp_path: Path) -> Iterator[Database]:
    """A SQLite file database in a temporary directory."""
    db = Database(tmp_path / "test.db")
    yield db
    db.close()


@pytest.fixture
def store(tmp_path: Path) -> MigrationStore:
    return MigrationStore(tmp_path / "migrations")


@pytest.fixture
def migrated_database(
    database: Database, store: MigrationStore, registry: SchemaRegistry
) -> Database:
    """Database with the recipe schema created through a stored migration."""
    create_migration(registry, store, "initial")
    MigrationRunner(database, store).apply_pending()
    return database


@pytest.fixture
def dal(registry: SchemaRegistry) -> DataAccessLayer:
    return DataAccessLayer(registry)


@pytest.fixture
def recipes(dal: DataAccessLayer) -> TableAccessor:
    return dal.accessor("Recipe")


@pytest.fixture
def session_factory(migrated_database: Database) -> SessionFactory:
    return SessionFactory(migrated_database, passwords={"api_key": "s3cret"})


@pytest.fixture
def session(session_factory: SessionFactory) -> Iterator[Session]:
    with session_factory.session("test", "test") as s:
        yield s


@pytest.fixture
def dispatcher(session_factory: SessionFactory, dal: DataAccessLayer) -> EndpointDispatcher:
    dispatcher = EndpointDispatcher(session_factory)
    dispatcher.register(RecipeEndpoint(dal))
    dispatcher.register(StatusEndpoint(dal))
    return dispatcher
