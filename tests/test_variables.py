"""Tests for variable resolution and substitution."""

import pytest

from recipe_engine.errors import RecipeValidationError
from recipe_engine.models import Recipe
from recipe_engine.variables import resolve_variables
from recipe_engine.variables import substitute_recursive
from recipe_engine.variables import substitute_variables


def recipe_with(variables: dict) -> Recipe:
    return Recipe.from_dict({"name": "r", "variables": variables, "steps": [{"name": "s", "command": "true"}]})


class TestResolveVariables:
    """Tests for resolve_variables."""

    def test_defaults_and_provided(self):
        """Provided values win over defaults; extra names pass through."""
        recipe = recipe_with({"framework": "fastapi", "port": {"type": "number", "default": 8000}})
        resolved = resolve_variables(recipe, {"port": 9000, "extra": "x"})
        assert resolved == {"framework": "fastapi", "port": 9000, "extra": "x"}

    def test_missing_required(self):
        """All missing required variables are named together."""
        recipe = recipe_with({"a": {"required": True}, "b": {"required": True}, "c": "ok"})
        with pytest.raises(RecipeValidationError) as exc_info:
            resolve_variables(recipe, {})
        assert str(exc_info.value) == "Missing required variables: a, b"
        assert exc_info.value.codes == ["MISSING_VARIABLE"]

    def test_invalid_value(self):
        """Values violating their declaration are rejected."""
        recipe = recipe_with({"db": {"type": "enum", "values": ["postgres", "sqlite"]}})
        with pytest.raises(RecipeValidationError, match="'mongo' is not one of postgres, sqlite"):
            resolve_variables(recipe, {"db": "mongo"})


class TestSubstitution:
    """Tests for {{variable}} substitution."""

    def test_nested_reference(self):
        """Dotted references walk nested mappings."""
        assert substitute_variables("{{ project.name }}-api", {"project": {"name": "shop"}}) == "shop-api"

    def test_structures_serialize_as_json(self):
        """Dicts and lists substitute as JSON."""
        assert substitute_variables("{{items}}", {"items": ["a", 1]}) == '["a", 1]'

    def test_undefined_variable(self):
        """Undefined references raise with the available keys."""
        with pytest.raises(ValueError, match="Undefined variable: \\{\\{missing\\}\\}"):
            substitute_variables("{{missing}}", {"present": 1})

    def test_recursive(self):
        """Nested structures are substituted throughout."""
        value = {"name": "{{n}}", "tags": ["{{n}}-1", 2]}
        assert substitute_recursive(value, {"n": "x"}) == {"name": "x", "tags": ["x-1", 2]}
