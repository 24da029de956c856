"""
tablerpc server - exposes an EndpointDispatcher over HTTP.

Routes:
- POST /rpc/{endpoint}/{method}: JSON object of arguments in,
  ``{"result": ...}`` or ``{"error": {"kind", "message"}}`` out
- GET /rpc: dispatcher method signatures
- GET /health: liveness

Startup either applies pending migrations (``apply_migrations=True``)
before the first request is served, or logs a warning when some are
pending.
"""

from __future__ import annotations

import json
from collections.abc import AsyncIterator, Iterable
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool

from tablerpc._version import get_version
from tablerpc.config import ServerConfig
from tablerpc.errors import ValidationError
from tablerpc.runtime.dispatcher import Endpoint, EndpointDispatcher
from tablerpc.runtime.exception_handlers import (
    envelope_response,
    register_exception_handlers,
)
from tablerpc.runtime.logging import get_logger
from tablerpc.runtime.migration_store import MigrationStore
from tablerpc.runtime.migrations import MigrationRunner
from tablerpc.runtime.repository import DataAccessLayer
from tablerpc.runtime.session import Database, SessionFactory
from tablerpc.specs.registry import SchemaRegistry

logger = get_logger("API")

EndpointSource = type[Endpoint] | Endpoint


# =============================================================================
# Application Builder
# =============================================================================


class TableRpcApp:
    """
    Builds a FastAPI application around one registry and a set of endpoints.

    Example:
        >>> builder = TableRpcApp(config, registry, [RecipeEndpoint])
        >>> app = builder.build()
    """

    def __init__(
        self,
        config: ServerConfig,
        registry: SchemaRegistry,
        endpoints: Iterable[EndpointSource],
        apply_migrations: bool = False,
        database: Database | None = None,
    ):
        self.config = config
        self.registry = registry
        self.apply_migrations = apply_migrations
        self._owns_database = database is None
        self.database = database or Database(
            config.database.path, busy_timeout_ms=config.database.busy_timeout_ms
        )
        self.store = MigrationStore(Path(config.migrations_dir))
        self.db = DataAccessLayer(registry)
        self.dispatcher = EndpointDispatcher(SessionFactory(self.database, config.passwords))
        for source in endpoints:
            endpoint = source if isinstance(source, Endpoint) else source(self.db)
            self.dispatcher.register(endpoint)

    def _startup(self) -> None:
        runner = MigrationRunner(self.database, self.store)
        if self.apply_migrations:
            runner.apply_pending()
            return
        pending = runner.pending()
        if pending:
            logger.warning(
                f"{len(pending)} migration(s) pending "
                f"({', '.join(f'{s.sequence:04d}' for s in pending)}); "
                "start with --apply-migrations or run 'tablerpc migrate'"
            )

    @asynccontextmanager
    async def lifespan(self, app: FastAPI) -> AsyncIterator[None]:
        await run_in_threadpool(self._startup)
        logger.info(f"Serving {len(self.dispatcher.methods())} method(s)")
        yield
        if self._owns_database:
            self.database.close()

    def build(self) -> FastAPI:
        app = FastAPI(
            title="tablerpc",
            version=get_version(),
            lifespan=self.lifespan,
        )
        app.state.dispatcher = self.dispatcher
        app.state.database = self.database
        app.state.db = self.db

        register_exception_handlers(app)
        dispatcher = self.dispatcher

        @app.post("/rpc/{endpoint}/{method}")
        async def call(endpoint: str, method: str, request: Request) -> JSONResponse:
            arguments = await _read_arguments(request)
            outcome = await dispatcher.call(endpoint, method, arguments)
            if outcome.error is not None:
                return envelope_response(outcome.error.kind, outcome.error.message)
            return JSONResponse(content=outcome.to_response())

        @app.get("/rpc")
        async def describe() -> dict[str, Any]:
            return {"methods": dispatcher.describe()}

        @app.get("/health")
        async def health() -> dict[str, Any]:
            return {"status": "ok", "version": get_version()}

        return app


async def _read_arguments(request: Request) -> dict[str, Any]:
    body = await request.body()
    if not body.strip():
        return {}
    try:
        arguments = json.loads(body)
    except json.JSONDecodeError as e:
        raise ValidationError(f"Request body is not valid JSON: {e.msg}") from e
    if not isinstance(arguments, dict):
        raise ValidationError("Request body must be a JSON object of arguments")
    return arguments


# =============================================================================
# Convenience Functions
# =============================================================================


def create_app(
    config: ServerConfig,
    registry: SchemaRegistry,
    endpoints: Iterable[EndpointSource],
    apply_migrations: bool = False,
    database: Database | None = None,
) -> FastAPI:
    """
    Create a FastAPI application serving the given endpoints.

    Args:
        config: Server configuration (database, migrations directory, passwords)
        registry: Declared models
        endpoints: Endpoint classes (instantiated with the data access layer) or instances
        apply_migrations: Apply pending migrations at startup
        database: Use an existing Database instead of opening ``config.database.path``

    Returns:
        FastAPI application
    """
    return TableRpcApp(config, registry, endpoints, apply_migrations, database).build()


def run_server(
    config: ServerConfig,
    registry: SchemaRegistry,
    endpoints: Iterable[EndpointSource],
    apply_migrations: bool = False,
) -> None:
    """Run a tablerpc server with uvicorn."""
    import uvicorn

    app = create_app(config, registry, endpoints, apply_migrations)
    uvicorn.run(
        app,
        host=config.api_server.host,
        port=config.api_server.port,
        log_level=config.log_level.lower(),
    )
