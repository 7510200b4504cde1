"""Tests for sandboxed condition evaluation."""

import pytest

from recipe_engine.errors import ExpressionError
from recipe_engine.expression_evaluator import evaluate_condition
from recipe_engine.expression_evaluator import evaluate_expression
from recipe_engine.expression_evaluator import normalize_expression


class TestNormalize:
    """Tests for JavaScript-style operator rewriting."""

    def test_operators_rewritten(self):
        """&&, ||, ! and strict equality become Python."""
        assert normalize_expression("a && !b || c === 1") == "a  and   not b  or  c == 1"

    def test_string_literals_untouched(self):
        """Operators inside string literals are preserved."""
        assert normalize_expression("name == 'a && b'") == "name == 'a && b'"

    def test_template_references(self):
        """{{var}} references become bare names."""
        assert normalize_expression("{{ useAuth }} == true") == "useAuth == True"


class TestEvaluateCondition:
    """Tests for evaluate_condition."""

    @pytest.mark.parametrize(
        "expression,expected",
        [
            ("useAuth", True),
            ("!useAuth", False),
            ("framework == 'fastapi'", True),
            ("framework === 'django' || port > 8000", True),
            ("useAuth && port < 1000", False),
            ("'postgres' in databases", True),
            ("config.db.host == 'localhost'", True),
            ("databases.length == 2", True),
            ("databases[0] == 'postgres'", True),
            ("missing == null", True),
            ("missing", False),
        ],
    )
    def test_expressions(self, expression, expected):
        """Common condition shapes evaluate as expected."""
        variables = {
            "useAuth": True,
            "framework": "fastapi",
            "port": 8080,
            "databases": ["postgres", "redis"],
            "config": {"db": {"host": "localhost"}},
        }
        assert evaluate_condition(expression, variables) is expected

    def test_helpers(self):
        """Supplied helper functions may be called."""
        assert evaluate_condition("exists('x')", {}, {"exists": lambda p: p == "x"}) is True

    def test_unknown_function_rejected(self):
        """Calls to anything but helpers are rejected."""
        with pytest.raises(ExpressionError, match="Function 'open' is not available"):
            evaluate_condition("open('/etc/passwd')", {})

    def test_dunder_access_is_harmless(self):
        """Attribute access never reaches Python object internals."""
        assert evaluate_expression("name.__class__", {"name": "x"}) is None

    def test_disallowed_syntax(self):
        """Comprehensions and other constructs are not evaluated."""
        with pytest.raises(ExpressionError, match="Unsupported expression element: ListComp"):
            evaluate_condition("[x for x in items]", {"items": [1]})

    def test_syntax_error(self):
        """Malformed expressions raise ExpressionError."""
        with pytest.raises(ExpressionError, match="Invalid expression"):
            evaluate_condition("a ==", {})

    def test_empty_expression(self):
        """Empty conditions are an error."""
        with pytest.raises(ExpressionError, match="empty"):
            evaluate_condition("  ", {})

    @pytest.mark.parametrize(
        "expression",
        [
            "len(items) > 0",
            "-name",
            "config[tags] == 1",
        ],
    )
    def test_runtime_errors_wrapped(self, expression):
        """Type errors inside helpers, operators and lookups surface as ExpressionError."""
        variables = {"name": "x", "config": {"a": 1}, "tags": ["a"]}
        with pytest.raises(ExpressionError):
            evaluate_condition(expression, variables, {"len": len})

    def test_helper_error_names_the_helper(self):
        with pytest.raises(ExpressionError, match=r"len\(\) failed"):
            evaluate_condition("len(items)", {}, {"len": len})
