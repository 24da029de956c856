"""Unit tests for exception handlers - every error leaves as an envelope."""

from __future__ import annotations

import json
from typing import Any
from unittest.mock import MagicMock

import pytest
from fastapi.exceptions import RequestValidationError

from tablerpc.errors import (
    DuplicateModelError,
    NotFoundError,
    TableRpcError,
    UnsupportedChangeError,
    ValidationError,
)
from tablerpc.runtime.exception_handlers import (
    envelope_response,
    register_exception_handlers,
    status_for,
)


@pytest.fixture
def handlers() -> dict[type, Any]:
    """Capture the handlers register_exception_handlers installs."""
    app = MagicMock()
    captured: dict[type, Any] = {}

    def capture_handler(exc_class: type) -> Any:
        def decorator(fn: Any) -> Any:
            captured[exc_class] = fn
            return fn

        return decorator

    app.exception_handler = capture_handler
    register_exception_handlers(app)
    return captured


class TestStatusCodes:
    @pytest.mark.parametrize(
        ("kind", "status"),
        [
            ("ValidationError", 400),
            ("NotFoundError", 404),
            ("UnsupportedChangeError", 409),
            ("DuplicateModelError", 409),
            ("InternalError", 500),
            ("SomethingElse", 500),
        ],
    )
    def test_status_for(self, kind: str, status: int) -> None:
        assert status_for(kind) == status

    def test_envelope_response(self) -> None:
        response = envelope_response("NotFoundError", "Recipe with id 3 does not exist")

        assert response.status_code == 404
        assert json.loads(response.body) == {
            "error": {"kind": "NotFoundError", "message": "Recipe with id 3 does not exist"}
        }


class TestHandlers:
    def test_registered(self, handlers: dict[type, Any]) -> None:
        assert set(handlers) == {TableRpcError, RequestValidationError, Exception}

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        ("error", "status"),
        [
            (ValidationError("bad input"), 400),
            (NotFoundError("gone"), 404),
            (UnsupportedChangeError("narrowing", table="recipes"), 409),
            (DuplicateModelError("Recipe"), 409),
        ],
    )
    async def test_tablerpc_errors(
        self, handlers: dict[type, Any], error: TableRpcError, status: int
    ) -> None:
        response = await handlers[TableRpcError](MagicMock(), error)

        assert response.status_code == status
        body = json.loads(response.body)
        assert body["error"] == {"kind": error.kind, "message": str(error)}

    @pytest.mark.asyncio
    async def test_safe_message_used(self, handlers: dict[type, Any]) -> None:
        error = ValidationError("column secret_token is invalid", safe_message="Invalid input")

        response = await handlers[TableRpcError](MagicMock(), error)

        assert json.loads(response.body)["error"]["message"] == "Invalid input"

    @pytest.mark.asyncio
    async def test_request_validation(self, handlers: dict[type, Any]) -> None:
        error = RequestValidationError(
            [{"loc": ("path", "endpoint"), "msg": "field required", "type": "missing"}]
        )

        response = await handlers[RequestValidationError](MagicMock(), error)

        assert response.status_code == 400
        body = json.loads(response.body)
        assert body["error"]["kind"] == "ValidationError"
        assert "path.endpoint: field required" in body["error"]["message"]

    @pytest.mark.asyncio
    async def test_unexpected_error_withholds_message(self, handlers: dict[type, Any]) -> None:
        request = MagicMock()
        request.url.path = "/rpc/recipe/generate"

        response = await handlers[Exception](request, KeyError("/etc/passwords"))

        assert response.status_code == 500
        assert json.loads(response.body) == {
            "error": {"kind": "InternalError", "message": "Internal server error"}
        }
