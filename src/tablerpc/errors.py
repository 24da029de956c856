"""
Error taxonomy shared by every tablerpc layer.

Each error carries a stable ``kind`` (the class name) and a ``safe_message``
that is allowed to cross the transport boundary. The dispatcher wraps these
into an error envelope; the client maps the envelope back to the class.
"""

from __future__ import annotations


class TableRpcError(Exception):
    """Base class for all tablerpc errors."""

    def __init__(self, message: str, *, safe_message: str | None = None) -> None:
        super().__init__(message)
        self._safe_message = safe_message

    @property
    def kind(self) -> str:
        return type(self).__name__

    @property
    def safe_message(self) -> str:
        return self._safe_message if self._safe_message is not None else str(self)


class ValidationError(TableRpcError):
    """Malformed or missing required input."""


class NotFoundError(TableRpcError):
    """A referenced model, row, method or migration does not exist."""


class DuplicateModelError(TableRpcError):
    def __init__(self, name: str, *, what: str = "model") -> None:
        super().__init__(f"A {what} named '{name}' is already registered")
        self.name = name


class UnsupportedChangeError(TableRpcError):
    """A schema change cannot be expressed as a safe, reversible operation."""

    def __init__(self, message: str, *, table: str | None = None, column: str | None = None):
        super().__init__(message)
        self.table = table
        self.column = column


class TransportError(TableRpcError):
    """A remote call failed to reach the dispatcher or got no usable answer."""


class MigrationStoreError(TableRpcError):
    """The migration store is inconsistent or was asked to overwrite a script."""


class StubMismatchError(TableRpcError):
    """A client stub does not match the dispatcher it was generated for."""


class SessionClosedError(TableRpcError):
    def __init__(self) -> None:
        super().__init__("Session is closed; sessions only live for one call")


# Kinds a client may receive inside an error envelope.
ERROR_KINDS: dict[str, type[TableRpcError]] = {
    cls.__name__: cls
    for cls in (
        ValidationError,
        NotFoundError,
        UnsupportedChangeError,
        TransportError,
        MigrationStoreError,
    )
}

INTERNAL_ERROR_KIND = "InternalError"
INTERNAL_ERROR_MESSAGE = "Internal server error"
