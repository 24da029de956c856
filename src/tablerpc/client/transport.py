"""
Client transports.

A transport delivers one call (endpoint, method, JSON arguments) and
returns the JSON result, or raises the TableRpcError named by the error
envelope it got back.
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

import httpx

from tablerpc.errors import ERROR_KINDS, TableRpcError, TransportError
from tablerpc.runtime.logging import get_logger

if TYPE_CHECKING:
    from tablerpc.runtime.dispatcher import EndpointDispatcher

logger = get_logger("CLIENT")


@runtime_checkable
class Transport(Protocol):
    async def call(self, endpoint: str, method: str, arguments: Mapping[str, Any]) -> Any: ...


def error_from_envelope(error: Mapping[str, Any]) -> TableRpcError:
    """Rebuild the error named by an envelope; unknown kinds become TransportError."""
    kind = str(error.get("kind", ""))
    message = str(error.get("message", ""))
    cls = ERROR_KINDS.get(kind)
    if cls is None:
        return TransportError(f"{kind or 'UnknownError'}: {message}")
    return cls(message)


class HttpTransport:
    """
    Calls a tablerpc server over HTTP.

    Example:
        >>> async with HttpTransport("http://127.0.0.1:8080") as transport:
        ...     client = Client(transport)
        ...     recipe = await client.recipe.generate(ingredients="eggs")
    """

    def __init__(
        self,
        base_url: str,
        client: httpx.AsyncClient | None = None,
        timeout: float = 30.0,
    ):
        self.base_url = base_url.rstrip("/")
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout)

    async def call(self, endpoint: str, method: str, arguments: Mapping[str, Any]) -> Any:
        url = f"{self.base_url}/rpc/{endpoint}/{method}"
        try:
            response = await self._client.post(url, json=dict(arguments))
        except httpx.HTTPError as e:
            logger.warning(f"Call to {endpoint}.{method} failed: {e}")
            raise TransportError(f"Could not reach {url}: {e}") from e

        try:
            body = response.json()
        except ValueError as e:
            raise TransportError(
                f"{endpoint}.{method} returned a non-JSON response (HTTP {response.status_code})"
            ) from e

        if isinstance(body, dict) and isinstance(body.get("error"), dict):
            raise error_from_envelope(body["error"])
        if not isinstance(body, dict) or "result" not in body:
            raise TransportError(
                f"{endpoint}.{method} returned an unexpected response (HTTP {response.status_code})"
            )
        return body["result"]

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self) -> HttpTransport:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()


class LocalTransport:
    """Calls an EndpointDispatcher in-process, with the same envelope handling."""

    def __init__(self, dispatcher: EndpointDispatcher):
        self.dispatcher = dispatcher

    async def call(self, endpoint: str, method: str, arguments: Mapping[str, Any]) -> Any:
        outcome = await self.dispatcher.call(endpoint, method, arguments)
        if outcome.error is not None:
            raise error_from_envelope(outcome.error.model_dump())
        return outcome.result
