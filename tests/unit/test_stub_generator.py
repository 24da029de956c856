"""
Tests for client stub generation and verification.

Generated modules are executed with load_generated_module and then driven
through LocalTransport against the same dispatcher they describe.
"""

import inspect
import types
from datetime import datetime
from pathlib import Path

import pytest
from recipes_app import RECIPE, SUGGESTION, RecipeEndpoint

from tablerpc.client import LocalTransport, StubGenerator, load_generated_module, load_stub_file
from tablerpc.client.stub_generator import verify_stubs
from tablerpc.errors import NotFoundError, StubMismatchError, TransportError, ValidationError
from tablerpc.runtime.dispatcher import EndpointDispatcher
from tablerpc.runtime.repository import DataAccessLayer
from tablerpc.runtime.session import SessionFactory
from tablerpc.specs import FieldSpec, FieldType, ModelDefinition, SchemaRegistry


@pytest.fixture
def source(registry: SchemaRegistry, dispatcher: EndpointDispatcher) -> str:
    return StubGenerator(registry, dispatcher).render()


@pytest.fixture
def stubs(source: str) -> types.ModuleType:
    return load_generated_module(source, "recipes_client")


# =============================================================================
# Rendering
# =============================================================================


class TestRender:
    def test_models(self, source: str) -> None:
        assert "class Recipe(BaseModel):" in source
        assert "class Suggestion(BaseModel):" in source
        assert "    date: _dt.datetime | None = None" in source
        assert "    score: float | None = None" in source

    def test_proxies(self, source: str) -> None:
        assert "class RecipeProxy(EndpointProxy):" in source
        assert "    endpoint_name = 'recipe'" in source
        assert (
            "    async def generate(self, ingredients: str, *, at: datetime | None = None) "
            "-> Recipe:" in source
        )
        assert "    async def history(self, limit: int = 10) -> list[Recipe]:" in source
        assert "    async def get(self, id: int) -> Recipe | None:" in source
        assert '        """Most recent recipes first."""' in source
        assert "_helper" not in source

    def test_client_class(self, source: str) -> None:
        assert "class Client(ClientBase):" in source
        assert "    recipe: RecipeProxy" in source
        assert "        'status': StatusProxy," in source

    def test_deterministic(self, registry: SchemaRegistry, dispatcher: EndpointDispatcher) -> None:
        generator = StubGenerator(registry, dispatcher)

        assert generator.render() == generator.render()

    def test_unregistered_model_rejected(self, dispatcher: EndpointDispatcher) -> None:
        generator = StubGenerator(SchemaRegistry([RECIPE]), dispatcher)

        with pytest.raises(ValidationError, match="Suggestion"):
            generator.render()

    def test_compiles(self, source: str) -> None:
        compile(source, "recipes_client.py", "exec")


# =============================================================================
# Generated Client
# =============================================================================


class TestGeneratedClient:
    @pytest.mark.asyncio
    async def test_round_trip(self, stubs: types.ModuleType, dispatcher: EndpointDispatcher) -> None:
        client = stubs.Client(LocalTransport(dispatcher))

        recipe = await client.recipe.generate("eggs")

        assert isinstance(recipe, stubs.Recipe)
        assert recipe.id == 1
        assert recipe.author == "Gemini"
        assert await client.recipe.get(recipe.id) == recipe
        assert await client.recipe.get(id=99) is None

    @pytest.mark.asyncio
    async def test_models_as_arguments(
        self, stubs: types.ModuleType, dispatcher: EndpointDispatcher
    ) -> None:
        client = stubs.Client(LocalTransport(dispatcher))
        recipe = await client.recipe.generate("eggs")

        rewritten = await client.recipe.rewrite(recipe.model_copy(update={"text": "Fry."}))

        assert rewritten.text == "Fry."
        assert [r.text for r in await client.recipe.history()] == ["Fry."]

    @pytest.mark.asyncio
    async def test_lists_and_async_methods(
        self, stubs: types.ModuleType, dispatcher: EndpointDispatcher
    ) -> None:
        client = stubs.Client(LocalTransport(dispatcher))

        suggestions = await client.recipe.suggest(["leek"])

        assert suggestions == [stubs.Suggestion(title="leek soup")]
        assert await client.recipe.count() == 0
        assert await client.status.ping() == "pong"

    @pytest.mark.asyncio
    async def test_errors_raised_by_kind(
        self, stubs: types.ModuleType, dispatcher: EndpointDispatcher
    ) -> None:
        client = stubs.Client(LocalTransport(dispatcher))

        with pytest.raises(NotFoundError, match="does not exist"):
            await client.recipe.remove(4)
        with pytest.raises(TransportError, match="Internal server error"):
            await client.recipe.crash()

    def test_unknown_endpoint_attribute(
        self, stubs: types.ModuleType, dispatcher: EndpointDispatcher
    ) -> None:
        client = stubs.Client(LocalTransport(dispatcher))

        with pytest.raises(AttributeError, match="menu"):
            client.menu

    def test_load_from_file(self, source: str, tmp_path: Path, dispatcher: EndpointDispatcher) -> None:
        path = tmp_path / "recipes_client_file.py"
        path.write_text(source)

        module = load_stub_file(path)

        assert module.__name__ == "recipes_client_file"
        verify_stubs(module, dispatcher)

    def test_annotations_are_types(self, stubs: types.ModuleType) -> None:
        signature = inspect.signature(stubs.RecipeProxy.generate)

        assert signature.parameters["ingredients"].annotation is str
        assert signature.parameters["at"].annotation == (datetime | None)
        assert signature.return_annotation is stubs.Recipe

    def test_timestamp_default_is_typed(self, dispatcher: EndpointDispatcher) -> None:
        stamp = ModelDefinition(
            name="Stamp",
            fields=[
                FieldSpec(name="at", type=FieldType.TIMESTAMP, default=datetime(2024, 1, 1)),
            ],
        )
        registry = SchemaRegistry([RECIPE, SUGGESTION, stamp])

        module = load_generated_module(StubGenerator(registry, dispatcher).render(), "stamped_client")

        assert module.Stamp().at == datetime(2024, 1, 1)

    def test_invalid_module_name(self, source: str) -> None:
        with pytest.raises(ValidationError):
            load_generated_module(source, "recipes-client")


# =============================================================================
# Verification
# =============================================================================


class TestVerifyStubs:
    def test_matching_stubs(self, stubs: types.ModuleType, dispatcher: EndpointDispatcher) -> None:
        verify_stubs(stubs, dispatcher)
        verify_stubs(stubs.Client, dispatcher)

    def test_extra_endpoint(
        self,
        stubs: types.ModuleType,
        session_factory: SessionFactory,
        dal: DataAccessLayer,
    ) -> None:
        recipe_only = EndpointDispatcher(session_factory)
        recipe_only.register(RecipeEndpoint(dal))

        with pytest.raises(StubMismatchError, match="unknown endpoint 'status'"):
            verify_stubs(stubs, recipe_only)

    @pytest.mark.parametrize(
        ("old", "new", "problem"),
        [
            ("limit: int = 10", "limit: int = 20", "default"),
            ("limit: int = 10", "count: int = 10", "parameters"),
            ("*, at: datetime | None", "at: datetime | None", "keyword-only"),
            ("async def get(self, id: int)", "async def get(self, id: str)", "annotation"),
            ("-> list[Recipe]:", "-> list[Suggestion]:", "returns"),
            ("    score: float | None = None", "    score: int | None = None", "Suggestion"),
            ("    async def secret(", "    async def reveal(", "missing method 'recipe.secret'"),
        ],
    )
    def test_mismatches(
        self, source: str, dispatcher: EndpointDispatcher, old: str, new: str, problem: str
    ) -> None:
        assert old in source
        module = load_generated_module(source.replace(old, new, 1), "recipes_client_edited")

        with pytest.raises(StubMismatchError, match=problem):
            verify_stubs(module, dispatcher)

    def test_reports_every_problem(self, source: str, dispatcher: EndpointDispatcher) -> None:
        edited = source.replace("limit: int = 10", "limit: int = 20").replace(
            "    async def secret(", "    async def reveal("
        )
        module = load_generated_module(edited, "recipes_client_edited")

        with pytest.raises(StubMismatchError) as excinfo:
            verify_stubs(module, dispatcher)

        message = str(excinfo.value)
        assert "recipe.history(limit): default 20 != 10" in message
        assert "missing method 'recipe.secret'" in message
        assert "unknown method 'recipe.reveal'" in message

    def test_unverifiable_target(self, dispatcher: EndpointDispatcher) -> None:
        with pytest.raises(ValidationError):
            verify_stubs(object(), dispatcher)
