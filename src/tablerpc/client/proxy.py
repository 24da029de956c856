"""
Client-side endpoint proxies.

Generated stub modules subclass EndpointProxy and ClientBase; build_client
makes the same classes at runtime for in-process use. Each proxy method
serializes its arguments through its own annotations, sends them over the
transport, and validates the answer into its return annotation.
"""

from __future__ import annotations

import inspect
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from functools import lru_cache
from typing import Any, ClassVar

from pydantic import TypeAdapter

from tablerpc.client.transport import Transport
from tablerpc.runtime.dispatcher import EndpointDispatcher, MethodDescriptor


@dataclass(frozen=True)
class _ProxyMethod:
    name: str
    parameters: tuple[tuple[str, TypeAdapter[Any]], ...]
    result: TypeAdapter[Any]


def _adapter(annotation: Any) -> TypeAdapter[Any]:
    if annotation is inspect.Signature.empty:
        annotation = Any
    return TypeAdapter(type(None) if annotation is None else annotation)


@lru_cache(maxsize=None)
def _proxy_method(function: Callable[..., Any]) -> _ProxyMethod:
    signature = inspect.signature(function, eval_str=True)
    params = list(signature.parameters.values())[1:]  # self
    return _ProxyMethod(
        name=function.__name__,
        parameters=tuple((p.name, _adapter(p.annotation)) for p in params),
        result=_adapter(signature.return_annotation),
    )


class EndpointProxy:
    """Base class of client proxies; one instance per endpoint."""

    endpoint_name: ClassVar[str]

    def __init__(self, transport: Transport):
        self._transport = transport

    async def _invoke(self, method: Any, values: Mapping[str, Any]) -> Any:
        spec = _proxy_method(method.__func__)
        arguments = {
            name: adapter.dump_python(values[name], mode="json")
            for name, adapter in spec.parameters
        }
        payload = await self._transport.call(self.endpoint_name, spec.name, arguments)
        return spec.result.validate_python(payload)

    @classmethod
    def method_names(cls) -> list[str]:
        return [
            name
            for name, value in vars(cls).items()
            if not name.startswith("_") and inspect.iscoroutinefunction(value)
        ]


class ClientBase:
    """A set of endpoint proxies sharing one transport."""

    proxy_classes: ClassVar[dict[str, type[EndpointProxy]]] = {}

    def __init__(self, transport: Transport):
        self.transport = transport
        self._proxies: dict[str, EndpointProxy] = {}
        for name, proxy_class in self.proxy_classes.items():
            proxy = proxy_class(transport)
            self._proxies[name] = proxy
            setattr(self, name, proxy)

    def proxies(self) -> dict[str, EndpointProxy]:
        return dict(self._proxies)

    def __getattr__(self, name: str) -> EndpointProxy:
        # Only reached for names not set in __init__
        raise AttributeError(f"Client has no endpoint '{name}'")


# =============================================================================
# Runtime Proxies
# =============================================================================


def _make_method(descriptor: MethodDescriptor) -> Callable[..., Any]:
    parameters = [inspect.Parameter("self", inspect.Parameter.POSITIONAL_OR_KEYWORD)]
    for p in descriptor.parameters:
        parameters.append(
            inspect.Parameter(
                p.name,
                inspect.Parameter.KEYWORD_ONLY
                if p.keyword_only
                else inspect.Parameter.POSITIONAL_OR_KEYWORD,
                default=inspect.Parameter.empty if p.required else p.default,
                annotation=p.annotation,
            )
        )
    signature = inspect.Signature(parameters, return_annotation=descriptor.return_annotation)

    async def method(self: EndpointProxy, *args: Any, **kwargs: Any) -> Any:
        bound = signature.bind(self, *args, **kwargs)
        bound.apply_defaults()
        return await self._invoke(getattr(self, descriptor.method), bound.arguments)

    method.__name__ = descriptor.method
    method.__qualname__ = f"{descriptor.endpoint}.{descriptor.method}"
    method.__doc__ = descriptor.doc
    method.__signature__ = signature  # type: ignore[attr-defined]
    return method


def proxy_class_name(endpoint: str) -> str:
    return f"{endpoint[:1].upper()}{endpoint[1:]}Proxy"


def build_client(dispatcher: EndpointDispatcher, transport: Transport) -> ClientBase:
    """
    Build proxies for every dispatcher endpoint without generating source.

    The proxies use the server's own annotations, so results come back as
    the server's row models.
    """
    proxy_classes: dict[str, type[EndpointProxy]] = {
        name: type(proxy_class_name(name), (EndpointProxy,), {"endpoint_name": name})
        for name in dispatcher.endpoints()
    }
    for descriptor in dispatcher.methods():
        setattr(proxy_classes[descriptor.endpoint], descriptor.method, _make_method(descriptor))

    client_class = type("Client", (ClientBase,), {"proxy_classes": proxy_classes})
    return client_class(transport)
