"""
Endpoint dispatcher - routes inbound calls to endpoint methods.

An endpoint is a class of methods shaped ``method(self, session, ...)``.
The dispatcher introspects each method once at registration, validates
arguments into the declared parameter types, opens a fresh Session per
call and serializes the result through the declared return type. Errors
come back as an ErrorEnvelope; the transport never sees a raw exception.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import time
import typing
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from typing import Any, ClassVar, TypeVar

import pydantic
from pydantic import BaseModel, ConfigDict, TypeAdapter, create_model
from starlette.concurrency import run_in_threadpool

from tablerpc.errors import (
    INTERNAL_ERROR_KIND,
    INTERNAL_ERROR_MESSAGE,
    NotFoundError,
    TableRpcError,
    ValidationError,
)
from tablerpc.runtime.annotations import render_annotation
from tablerpc.runtime.logging import get_logger, log_with_context
from tablerpc.runtime.repository import DataAccessLayer, RowSequence
from tablerpc.runtime.session import Session, SessionFactory

logger = get_logger("API")

SESSION_PARAMETER = "session"

R = TypeVar("R")


# =============================================================================
# Endpoints
# =============================================================================


class Endpoint:
    """
    Base class for RPC endpoints.

    Every public method taking ``session`` as its first parameter is exposed.
    The data access layer is injected as ``self.db``.

    Plain methods run in a worker thread. ``async`` methods run on the event
    loop, so their data access (blocking sqlite3 calls) goes through
    ``await self.run_sync(...)``.

    Example:
        class RecipeEndpoint(Endpoint):
            def generate(self, session: Session, ingredients: str) -> Recipe:
                return self.db.Recipe.insert(session, Recipe(ingredients=ingredients, ...))
    """

    name: ClassVar[str | None] = None

    def __init__(self, db: DataAccessLayer):
        self.db = db

    @classmethod
    def endpoint_name(cls) -> str:
        """``name`` if set, else the class name minus ``Endpoint``, lower camel case."""
        if cls.name:
            return cls.name
        base = cls.__name__
        if base.endswith("Endpoint") and base != "Endpoint":
            base = base[: -len("Endpoint")]
        return base[:1].lower() + base[1:]

    async def run_sync(self, func: Callable[..., R], *args: Any, **kwargs: Any) -> R:
        """Run blocking work (data access included) in a worker thread."""
        return await run_in_threadpool(func, *args, **kwargs)

    @classmethod
    def method_functions(cls) -> list[tuple[str, Callable[..., Any]]]:
        """Exposed methods in declaration order, subclasses last."""
        found: dict[str, Callable[..., Any]] = {}
        for klass in reversed(cls.__mro__):
            if klass is object or klass is Endpoint or not issubclass(klass, Endpoint):
                continue
            for attr, value in vars(klass).items():
                if attr.startswith("_") or not inspect.isfunction(value):
                    continue
                params = list(inspect.signature(value).parameters)
                if len(params) >= 2 and params[1] == SESSION_PARAMETER:
                    found[attr] = value
        return list(found.items())


# =============================================================================
# Method Descriptors
# =============================================================================


class _Required:
    def __repr__(self) -> str:
        return "REQUIRED"


REQUIRED: Any = _Required()


@dataclass
class ParameterInfo:
    """One wire parameter of an endpoint method."""

    name: str
    annotation: Any
    default: Any = REQUIRED
    keyword_only: bool = False

    @property
    def required(self) -> bool:
        return self.default is REQUIRED


@dataclass
class MethodDescriptor:
    """
    Introspected signature of one endpoint method.

    Attributes:
        endpoint: Endpoint name
        method: Method name
        parameters: Wire parameters (``session`` excluded)
        return_annotation: Declared return type
        handler: Bound method
    """

    endpoint: str
    method: str
    parameters: list[ParameterInfo]
    return_annotation: Any
    handler: Callable[..., Any]
    doc: str | None = None
    argument_model: type[BaseModel] = field(init=False)
    result_adapter: TypeAdapter[Any] = field(init=False)

    def __post_init__(self) -> None:
        fields: dict[str, Any] = {
            p.name: (p.annotation, ... if p.required else p.default) for p in self.parameters
        }
        model_name = f"{self.endpoint[:1].upper()}{self.endpoint[1:]}{self.method.title()}Arguments"
        try:
            self.argument_model = create_model(
                model_name,
                __config__=ConfigDict(extra="forbid", arbitrary_types_allowed=False),
                **fields,
            )
            self.result_adapter = TypeAdapter(
                type(None) if self.return_annotation is None else self.return_annotation
            )
        except (pydantic.PydanticSchemaGenerationError, pydantic.PydanticUserError, TypeError) as e:
            raise ValidationError(
                f"Method {self.qualified_name} has annotations that cannot be serialized: {e}"
            ) from e

    @property
    def qualified_name(self) -> str:
        return f"{self.endpoint}.{self.method}"

    @property
    def is_async(self) -> bool:
        return inspect.iscoroutinefunction(self.handler)

    @classmethod
    def from_function(cls, endpoint: str, name: str, bound: Callable[..., Any]) -> MethodDescriptor:
        """
        Build a descriptor from a bound endpoint method.

        Raises:
            ValidationError: Missing annotations, variadic parameters or no session parameter
        """
        qualified = f"{endpoint}.{name}"
        try:
            hints = typing.get_type_hints(bound)
        except NameError as e:
            raise ValidationError(f"Cannot resolve annotations of {qualified}: {e}") from e

        signature = inspect.signature(bound)
        params = list(signature.parameters.values())
        if not params or params[0].name != SESSION_PARAMETER:
            raise ValidationError(f"{qualified} must take '{SESSION_PARAMETER}' as first parameter")

        parameters: list[ParameterInfo] = []
        for param in params[1:]:
            if param.kind in (inspect.Parameter.VAR_POSITIONAL, inspect.Parameter.VAR_KEYWORD):
                raise ValidationError(f"{qualified} cannot take *args or **kwargs")
            if param.kind == inspect.Parameter.POSITIONAL_ONLY:
                raise ValidationError(f"{qualified} cannot take positional-only parameters")
            if param.name not in hints:
                raise ValidationError(f"Parameter '{param.name}' of {qualified} needs an annotation")
            parameters.append(
                ParameterInfo(
                    name=param.name,
                    annotation=hints[param.name],
                    default=REQUIRED if param.default is inspect.Parameter.empty else param.default,
                    keyword_only=param.kind == inspect.Parameter.KEYWORD_ONLY,
                )
            )

        if "return" not in hints:
            raise ValidationError(f"{qualified} needs a return annotation")

        return cls(
            endpoint=endpoint,
            method=name,
            parameters=parameters,
            return_annotation=hints["return"],
            handler=bound,
            doc=inspect.getdoc(bound),
        )

    def bind(self, arguments: Mapping[str, Any]) -> dict[str, Any]:
        """
        Validate wire arguments into typed keyword arguments.

        Raises:
            ValidationError: Missing, extra or mistyped arguments
        """
        try:
            validated = self.argument_model.model_validate(dict(arguments))
        except pydantic.ValidationError as e:
            details = "; ".join(
                f"{'.'.join(str(p) for p in err['loc']) or 'arguments'}: {err['msg']}"
                for err in e.errors()
            )
            raise ValidationError(f"Invalid arguments for {self.qualified_name}: {details}") from e
        return {p.name: getattr(validated, p.name) for p in self.parameters}

    def serialize(self, result: Any) -> Any:
        if isinstance(result, RowSequence):
            result = result.all()
        return self.result_adapter.dump_python(result, mode="json")

    def describe(self) -> dict[str, Any]:
        return {
            "endpoint": self.endpoint,
            "method": self.method,
            "parameters": [
                {
                    "name": p.name,
                    "annotation": render_annotation(p.annotation),
                    "required": p.required,
                    "default": None if p.required else repr(p.default),
                    "keyword_only": p.keyword_only,
                }
                for p in self.parameters
            ],
            "returns": render_annotation(self.return_annotation),
            "doc": self.doc,
        }


# =============================================================================
# Call Results
# =============================================================================


class ErrorEnvelope(BaseModel):
    """Error returned in place of a result."""

    kind: str
    message: str

    model_config = ConfigDict(frozen=True)


class CallResult(BaseModel):
    """Outcome of one dispatched call: a JSON-ready result or an error."""

    result: Any = None
    error: ErrorEnvelope | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def to_response(self) -> dict[str, Any]:
        if self.error is not None:
            return {"error": self.error.model_dump()}
        return {"result": self.result}


# =============================================================================
# Dispatcher
# =============================================================================


class EndpointDispatcher:
    """
    Registry of endpoint methods and the per-call execution pipeline.

    Example:
        dispatcher = EndpointDispatcher(SessionFactory(database))
        dispatcher.register(RecipeEndpoint(dal))
        outcome = await dispatcher.call("recipe", "generate", {"ingredients": "eggs"})
    """

    def __init__(self, session_factory: SessionFactory):
        self.session_factory = session_factory
        self._endpoints: dict[str, Endpoint] = {}
        self._methods: dict[tuple[str, str], MethodDescriptor] = {}

    def register(self, endpoint: Endpoint) -> list[MethodDescriptor]:
        """
        Register every exposed method of an endpoint instance.

        Raises:
            ValidationError: Duplicate endpoint name or an unusable method signature
        """
        name = endpoint.endpoint_name()
        if name in self._endpoints:
            raise ValidationError(f"Endpoint '{name}' is already registered")

        descriptors = [
            MethodDescriptor.from_function(name, method, getattr(endpoint, method))
            for method, _ in type(endpoint).method_functions()
        ]
        self._endpoints[name] = endpoint
        for descriptor in descriptors:
            self._methods[(name, descriptor.method)] = descriptor

        logger.debug(f"Registered endpoint '{name}' ({len(descriptors)} method(s))")
        return descriptors

    def endpoints(self) -> dict[str, Endpoint]:
        return dict(self._endpoints)

    def methods(self) -> list[MethodDescriptor]:
        return list(self._methods.values())

    def get_method(self, endpoint: str, method: str) -> MethodDescriptor:
        try:
            return self._methods[(endpoint, method)]
        except KeyError:
            if endpoint not in self._endpoints:
                raise NotFoundError(f"Unknown endpoint '{endpoint}'") from None
            raise NotFoundError(f"Unknown method '{endpoint}.{method}'") from None

    def describe(self) -> list[dict[str, Any]]:
        return [descriptor.describe() for descriptor in self._methods.values()]

    async def call(
        self, endpoint: str, method: str, arguments: Mapping[str, Any] | None = None
    ) -> CallResult:
        """
        Dispatch one call. Never raises for handler or validation failures.

        The handler runs shielded from cancellation of the caller: a
        disconnecting client does not interrupt it mid-transaction, and its
        session is still released when it finishes.
        """
        started = time.perf_counter()
        try:
            descriptor = self.get_method(endpoint, method)
            if arguments is None:
                arguments = {}
            if not isinstance(arguments, Mapping):
                raise ValidationError("Arguments must be a JSON object")
            kwargs = descriptor.bind(arguments)
            result = await asyncio.shield(self._invoke(descriptor, kwargs))
            outcome = CallResult(result=result)
        except TableRpcError as e:
            outcome = CallResult(error=ErrorEnvelope(kind=e.kind, message=e.safe_message))
        except Exception:
            logger.exception(f"Unhandled error in {endpoint}.{method}")
            outcome = CallResult(
                error=ErrorEnvelope(kind=INTERNAL_ERROR_KIND, message=INTERNAL_ERROR_MESSAGE)
            )

        duration_ms = round((time.perf_counter() - started) * 1000, 2)
        log_with_context(
            logger,
            logging.INFO if outcome.ok else logging.WARNING,
            f"{endpoint}.{method} {'ok' if outcome.ok else outcome.error.kind}",  # type: ignore[union-attr]
            endpoint=endpoint,
            method=method,
            duration_ms=duration_ms,
            outcome="ok" if outcome.ok else outcome.error.kind,  # type: ignore[union-attr]
        )
        return outcome

    async def _invoke(self, descriptor: MethodDescriptor, kwargs: dict[str, Any]) -> Any:
        with self.session_factory.session(descriptor.endpoint, descriptor.method) as session:
            if descriptor.is_async:
                result = await descriptor.handler(session, **kwargs)
                # A lazy RowSequence result queries the database while serializing
                return await run_in_threadpool(descriptor.serialize, result)
            return await run_in_threadpool(_run_sync, descriptor, session, kwargs)


def _run_sync(descriptor: MethodDescriptor, session: Session, kwargs: dict[str, Any]) -> Any:
    return descriptor.serialize(descriptor.handler(session, **kwargs))
