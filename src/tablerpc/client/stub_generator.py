"""
Client stub generator.

Renders a self-contained Python module for a registry and a dispatcher:

1. one pydantic class per declared model (table-mapped or not)
2. one EndpointProxy subclass per endpoint, whose async methods mirror
   the endpoint signatures minus ``session``
3. a ``Client`` class exposing every proxy as an attribute

verify_stubs() checks a generated module (or a runtime client) against the
dispatcher it is meant to talk to.
"""

from __future__ import annotations

import importlib.util
import inspect
import re
import sys
import tempfile
import types
from pathlib import Path
from typing import Any

from tablerpc._version import get_version
from tablerpc.client.proxy import ClientBase, EndpointProxy, proxy_class_name
from tablerpc.errors import StubMismatchError, ValidationError
from tablerpc.runtime.annotations import referenced_models, render_annotation
from tablerpc.runtime.dispatcher import EndpointDispatcher, MethodDescriptor, ParameterInfo
from tablerpc.specs.model import IDENTITY_FIELD, FieldSpec, FieldType, ModelDefinition
from tablerpc.specs.registry import SchemaRegistry

# Qualified names keep a field called ``date`` from shadowing the type
_FIELD_SOURCE_TYPES: dict[FieldType, str] = {
    FieldType.STRING: "str",
    FieldType.TEXT: "str",
    FieldType.INT: "int",
    FieldType.DOUBLE: "float",
    FieldType.BOOL: "bool",
    FieldType.TIMESTAMP: "_dt.datetime",
    FieldType.DATE: "_dt.date",
    FieldType.UUID: "_uuid.UUID",
    FieldType.JSON: "Any",
}

_HEADER = '''\
"""
Client stubs for a tablerpc server.

Generated by tablerpc {version}. Do not edit; regenerate with
``tablerpc generate``.
"""

import datetime as _dt
import uuid as _uuid
from datetime import date, datetime
from typing import Any, Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict

from tablerpc.client import ClientBase, EndpointProxy, Transport

'''


def _literal(value: Any, context: str) -> str:
    if value is None or isinstance(value, (bool, int, float, str)):
        return repr(value)
    raise ValidationError(f"Default of {context} cannot be written as a literal: {value!r}")


def _docstring(text: str | None, indent: str) -> list[str]:
    if not text:
        return []
    text = text.replace('"""', "'''")
    lines = text.splitlines()
    if len(lines) == 1:
        return [f'{indent}"""{lines[0]}"""']
    body = [f"{indent}{line}" if line else "" for line in lines[1:]]
    return [f'{indent}"""{lines[0]}', *body, f'{indent}"""']


class StubGenerator:
    """
    Renders client stub source.

    Example:
        >>> source = StubGenerator(registry, dispatcher).render()
        >>> Path("recipes_client.py").write_text(source)
    """

    def __init__(self, registry: SchemaRegistry, dispatcher: EndpointDispatcher):
        self.registry = registry
        self.dispatcher = dispatcher

    def render(self) -> str:
        """
        Render the client module.

        Raises:
            ValidationError: A method references a model that is not in the registry,
                or has a default that cannot be written as source
        """
        self._check_models()
        blocks = [_HEADER.format(version=get_version())]
        for definition in self.registry.models():
            blocks.append(self._render_model(definition))
        methods_by_endpoint: dict[str, list[MethodDescriptor]] = {
            name: [] for name in self.dispatcher.endpoints()
        }
        for descriptor in self.dispatcher.methods():
            methods_by_endpoint[descriptor.endpoint].append(descriptor)
        for endpoint, descriptors in methods_by_endpoint.items():
            blocks.append(self._render_proxy(endpoint, descriptors))
        blocks.append(self._render_client(list(methods_by_endpoint)))
        return "\n\n".join(block.rstrip("\n") for block in blocks) + "\n"

    def _check_models(self) -> None:
        for descriptor in self.dispatcher.methods():
            annotations = [p.annotation for p in descriptor.parameters]
            annotations.append(descriptor.return_annotation)
            for annotation in annotations:
                for model in referenced_models(annotation):
                    if model.__name__ not in self.registry:
                        raise ValidationError(
                            f"{descriptor.qualified_name} uses '{model.__name__}', "
                            "which is not a registered model"
                        )

    # -------------------------------------------------------------------------
    # Models
    # -------------------------------------------------------------------------

    def _render_field(self, field: FieldSpec) -> str:
        source_type = _FIELD_SOURCE_TYPES[field.type]
        if source_type != "Any":
            source_type = f"{source_type} | None"
        default = _literal(field.default, f"{field.name}") if field.default is not None else "None"
        return f"    {field.name}: {source_type} = {default}"

    def _render_model(self, definition: ModelDefinition) -> str:
        lines = [
            f"class {definition.name}(BaseModel):",
            *_docstring(f"Row model for {definition.name}.", "    "),
            "",
            '    model_config = ConfigDict(frozen=True, extra="forbid", validate_default=True)',
            "",
            f"    {IDENTITY_FIELD}: int | None = None",
        ]
        lines.extend(self._render_field(field) for field in definition.fields)
        return "\n".join(lines)

    # -------------------------------------------------------------------------
    # Proxies
    # -------------------------------------------------------------------------

    def _render_parameter(self, descriptor: MethodDescriptor, parameter: ParameterInfo) -> str:
        text = f"{parameter.name}: {render_annotation(parameter.annotation)}"
        if not parameter.required:
            text += f" = {_literal(parameter.default, f'{descriptor.qualified_name}({parameter.name})')}"
        return text

    def _render_method(self, descriptor: MethodDescriptor) -> str:
        params = ["self"]
        keyword_only_started = False
        for parameter in descriptor.parameters:
            if parameter.keyword_only and not keyword_only_started:
                params.append("*")
                keyword_only_started = True
            params.append(self._render_parameter(descriptor, parameter))
        returns = render_annotation(descriptor.return_annotation)
        lines = [f"    async def {descriptor.method}({', '.join(params)}) -> {returns}:"]
        lines.extend(_docstring(descriptor.doc, "        "))
        lines.append(f"        return await self._invoke(self.{descriptor.method}, locals())")
        return "\n".join(lines)

    def _render_proxy(self, endpoint: str, descriptors: list[MethodDescriptor]) -> str:
        lines = [
            f"class {proxy_class_name(endpoint)}(EndpointProxy):",
            *_docstring(f"Proxy for the '{endpoint}' endpoint.", "    "),
            "",
            f"    endpoint_name = {endpoint!r}",
        ]
        for descriptor in descriptors:
            lines.append("")
            lines.append(self._render_method(descriptor))
        return "\n".join(lines)

    def _render_client(self, endpoints: list[str]) -> str:
        lines = [
            "class Client(ClientBase):",
            *_docstring("All endpoints of the server, sharing one transport.", "    "),
            "",
        ]
        for endpoint in endpoints:
            lines.append(f"    {endpoint}: {proxy_class_name(endpoint)}")
        if endpoints:
            lines.append("")
        lines.append("    proxy_classes = {")
        lines.extend(f"        {e!r}: {proxy_class_name(e)}," for e in endpoints)
        lines.append("    }")
        lines.append("")
        lines.append("    def __init__(self, transport: Transport) -> None:")
        lines.append("        super().__init__(transport)")
        return "\n".join(lines)


# =============================================================================
# Loading and Verification
# =============================================================================


_MODULE_NAME = re.compile(r"^[A-Za-z_][A-Za-z0-9_.]*$")


def load_stub_file(path: Path | str, module_name: str | None = None) -> types.ModuleType:
    """Import a generated stub file as a module registered under module_name."""
    path = Path(path)
    module_name = module_name or path.stem
    if not _MODULE_NAME.match(module_name):
        raise ValidationError(f"Invalid module name '{module_name}'")

    spec = importlib.util.spec_from_file_location(module_name, path)
    if spec is None or spec.loader is None:
        raise ValidationError(f"Cannot create module spec for {path}")
    module = importlib.util.module_from_spec(spec)

    # Registered before exec so pydantic can resolve the module's own names
    sys.modules[module_name] = module
    try:
        spec.loader.exec_module(module)
    except Exception as e:
        del sys.modules[module_name]
        raise ValidationError(f"Error loading client stubs {path}: {e}") from e
    return module


def load_generated_module(source: str, name: str = "tablerpc_client_stubs") -> types.ModuleType:
    """Import rendered stub source through a scratch file."""
    if not _MODULE_NAME.match(name):
        raise ValidationError(f"Invalid module name '{name}'")
    with tempfile.TemporaryDirectory(prefix="tablerpc-stubs-") as scratch:
        path = Path(scratch) / "client_stubs.py"
        path.write_text(source, encoding="utf-8")
        return load_stub_file(path, name)


def _proxy_classes(target: Any) -> dict[str, type[EndpointProxy]]:
    if isinstance(target, ClientBase):
        return {name: type(proxy) for name, proxy in target.proxies().items()}
    if isinstance(target, type) and issubclass(target, ClientBase):
        return dict(target.proxy_classes)
    if isinstance(target, types.ModuleType):
        return {
            value.endpoint_name: value
            for value in vars(target).values()
            if isinstance(value, type)
            and issubclass(value, EndpointProxy)
            and value is not EndpointProxy
            and hasattr(value, "endpoint_name")
        }
    raise ValidationError(f"Cannot verify stubs of {type(target).__name__}")


def _compare_models(stub: Any, server: Any, where: str, problems: list[str]) -> None:
    stub_models = referenced_models(stub)
    server_models = referenced_models(server)
    for stub_model, server_model in zip(stub_models, server_models, strict=False):
        stub_fields = {
            name: render_annotation(info.annotation) for name, info in stub_model.model_fields.items()
        }
        server_fields = {
            name: render_annotation(info.annotation)
            for name, info in server_model.model_fields.items()
        }
        if stub_fields != server_fields:
            problems.append(f"{where}: model {stub_model.__name__} fields differ from the server")


def _compare_method(
    descriptor: MethodDescriptor, function: Any, problems: list[str]
) -> None:
    where = descriptor.qualified_name
    signature = inspect.signature(function, eval_str=True)
    params = list(signature.parameters.values())[1:]
    stub_names = [p.name for p in params]
    server_names = [p.name for p in descriptor.parameters]
    if stub_names != server_names:
        problems.append(f"{where}: parameters {stub_names} != {server_names}")
        return

    for stub, server in zip(params, descriptor.parameters, strict=True):
        if (stub.kind == inspect.Parameter.KEYWORD_ONLY) != server.keyword_only:
            problems.append(f"{where}({server.name}): keyword-only mismatch")
        stub_default = inspect.Parameter.empty if stub.default is inspect.Parameter.empty else stub.default
        server_default = inspect.Parameter.empty if server.required else server.default
        if stub_default != server_default:
            problems.append(f"{where}({server.name}): default {stub_default!r} != {server_default!r}")
        stub_annotation = render_annotation(stub.annotation)
        server_annotation = render_annotation(server.annotation)
        if stub_annotation != server_annotation:
            problems.append(
                f"{where}({server.name}): annotation {stub_annotation} != {server_annotation}"
            )
        else:
            _compare_models(stub.annotation, server.annotation, f"{where}({server.name})", problems)

    stub_returns = render_annotation(signature.return_annotation)
    server_returns = render_annotation(descriptor.return_annotation)
    if stub_returns != server_returns:
        problems.append(f"{where}: returns {stub_returns} != {server_returns}")
    else:
        _compare_models(signature.return_annotation, descriptor.return_annotation, where, problems)


def verify_stubs(target: Any, dispatcher: EndpointDispatcher) -> None:
    """
    Check that a stub module or client matches a dispatcher exactly.

    Raises:
        StubMismatchError: Listing every missing, extra or differing endpoint and method
    """
    problems: list[str] = []
    proxies = _proxy_classes(target)
    server_endpoints = set(dispatcher.endpoints())

    for name in sorted(server_endpoints - set(proxies)):
        problems.append(f"missing endpoint '{name}'")
    for name in sorted(set(proxies) - server_endpoints):
        problems.append(f"unknown endpoint '{name}'")

    for endpoint in sorted(server_endpoints & set(proxies)):
        proxy_class = proxies[endpoint]
        stub_methods = set(proxy_class.method_names())
        server_methods = {d.method: d for d in dispatcher.methods() if d.endpoint == endpoint}
        for name in sorted(set(server_methods) - stub_methods):
            problems.append(f"missing method '{endpoint}.{name}'")
        for name in sorted(stub_methods - set(server_methods)):
            problems.append(f"unknown method '{endpoint}.{name}'")
        for name in sorted(stub_methods & set(server_methods)):
            _compare_method(server_methods[name], getattr(proxy_class, name), problems)

    if problems:
        raise StubMismatchError("Client stubs do not match the server:\n  " + "\n  ".join(problems))
