"""
Exception handlers for tablerpc applications.

Every error leaves the server as an error envelope::

    {"error": {"kind": "NotFoundError", "message": "..."}}

Status codes follow the error kind; anything that is not a TableRpcError
is reported as an internal error without its message.
"""

from __future__ import annotations

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from tablerpc.errors import INTERNAL_ERROR_KIND, INTERNAL_ERROR_MESSAGE, TableRpcError
from tablerpc.runtime.logging import get_logger

logger = get_logger("API")

STATUS_CODES: dict[str, int] = {
    "ValidationError": 400,
    "NotFoundError": 404,
    "UnsupportedChangeError": 409,
    "DuplicateModelError": 409,
}


def status_for(kind: str) -> int:
    """HTTP status for an error kind; unknown kinds are server errors."""
    return STATUS_CODES.get(kind, 500)


def envelope_response(kind: str, message: str) -> JSONResponse:
    return JSONResponse(
        status_code=status_for(kind),
        content={"error": {"kind": kind, "message": message}},
    )


def register_exception_handlers(app: FastAPI) -> None:
    """
    Register envelope-producing exception handlers on a FastAPI application.

    Handles:
    - TableRpcError: envelope with the error's kind and safe message
    - RequestValidationError: malformed requests (400)
    - Exception: anything else (500, message withheld)
    """

    @app.exception_handler(TableRpcError)
    async def tablerpc_error_handler(request: Request, exc: TableRpcError) -> JSONResponse:
        return envelope_response(exc.kind, exc.safe_message)

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(
        request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        details = "; ".join(
            f"{'.'.join(str(p) for p in err.get('loc', ()))}: {err.get('msg', '')}"
            for err in exc.errors()
        )
        return envelope_response("ValidationError", f"Invalid request: {details}")

    @app.exception_handler(Exception)
    async def internal_error_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.error(f"Unhandled error on {request.url.path}", exc_info=exc)
        return envelope_response(INTERNAL_ERROR_KIND, INTERNAL_ERROR_MESSAGE)
