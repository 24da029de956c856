"""
tablerpc runtime.

Server-side machinery built from a SchemaRegistry:
- Row models and table accessors (the data access layer)
- Migration planning, storage and application
- Sessions, the endpoint dispatcher and the FastAPI server

Example usage:
    >>> from tablerpc.runtime import Endpoint, create_app
    >>> from tablerpc.specs import load_registry
    >>>
    >>> registry = load_registry("models")
    >>> app = create_app(config, registry, [RecipeEndpoint], apply_migrations=True)
"""

from tablerpc.runtime.dispatcher import (
    CallResult,
    Endpoint,
    EndpointDispatcher,
    ErrorEnvelope,
    MethodDescriptor,
    ParameterInfo,
)
from tablerpc.runtime.migration_store import MigrationStore, create_migration
from tablerpc.runtime.migrations import (
    ColumnSpec,
    MigrationAction,
    MigrationPlanner,
    MigrationRunner,
    MigrationScript,
    MigrationStep,
    apply_migrations,
)
from tablerpc.runtime.model_generator import RowModel, generate_all_row_models, generate_row_model
from tablerpc.runtime.repository import DataAccessLayer, RowSequence, TableAccessor
from tablerpc.runtime.server import TableRpcApp, create_app, run_server
from tablerpc.runtime.session import Database, Session, SessionFactory

__all__ = [
    # Data access
    "DataAccessLayer",
    "RowModel",
    "RowSequence",
    "TableAccessor",
    "generate_all_row_models",
    "generate_row_model",
    # Migrations
    "ColumnSpec",
    "MigrationAction",
    "MigrationPlanner",
    "MigrationRunner",
    "MigrationScript",
    "MigrationStep",
    "MigrationStore",
    "apply_migrations",
    "create_migration",
    # Sessions
    "Database",
    "Session",
    "SessionFactory",
    # Dispatch
    "CallResult",
    "Endpoint",
    "EndpointDispatcher",
    "ErrorEnvelope",
    "MethodDescriptor",
    "ParameterInfo",
    # Server
    "TableRpcApp",
    "create_app",
    "run_server",
]
