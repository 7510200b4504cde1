"""Sandboxed evaluation of step ``when`` conditions.

Expressions are parsed with :mod:`ast` and walked against a small whitelist:
boolean operators, comparisons, ``not``, names, property access over mappings,
subscripts, literals and calls to explicitly supplied helper functions. No
code is ever compiled or executed.

JavaScript-flavoured operators used by existing recipes (``&&``, ``||``,
``!``, ``===``, ``!==``, ``true``/``false``/``null``) are accepted and
rewritten outside of string literals.
"""

import ast
import operator
import re
from collections.abc import Callable
from collections.abc import Mapping
from typing import Any

from .errors import ExpressionError

_STRING_LITERAL = re.compile(r"(\"(?:\\.|[^\"\\])*\"|'(?:\\.|[^'\\])*')")

_REWRITES: list[tuple[re.Pattern, str]] = [
    (re.compile(r"\{\{\s*([\w.]+)\s*\}\}"), r"\1"),
    (re.compile(r"==="), "=="),
    (re.compile(r"!=="), "!="),
    (re.compile(r"&&"), " and "),
    (re.compile(r"\|\|"), " or "),
    (re.compile(r"!(?!=)"), " not "),
    (re.compile(r"\btrue\b"), "True"),
    (re.compile(r"\bfalse\b"), "False"),
    (re.compile(r"\b(?:null|undefined)\b"), "None"),
]

_COMPARISONS: dict[type, Callable[[Any, Any], bool]] = {
    ast.Eq: operator.eq,
    ast.NotEq: operator.ne,
    ast.Lt: operator.lt,
    ast.LtE: operator.le,
    ast.Gt: operator.gt,
    ast.GtE: operator.ge,
    ast.In: lambda a, b: a in b,
    ast.NotIn: lambda a, b: a not in b,
    ast.Is: operator.is_,
    ast.IsNot: operator.is_not,
}


def normalize_expression(expression: str) -> str:
    """Rewrite JavaScript-style operators to Python, leaving string literals alone."""
    parts = _STRING_LITERAL.split(expression)
    for i in range(0, len(parts), 2):
        segment = parts[i]
        for pattern, replacement in _REWRITES:
            segment = pattern.sub(replacement, segment)
        parts[i] = segment
    return "".join(parts).strip()


class _Evaluator:
    def __init__(self, variables: Mapping[str, Any], helpers: Mapping[str, Callable[..., Any]]):
        self.variables = variables
        self.helpers = helpers

    def eval(self, node: ast.AST) -> Any:
        method = getattr(self, f"_eval_{type(node).__name__}", None)
        if method is None:
            raise ExpressionError(f"Unsupported expression element: {type(node).__name__}")
        return method(node)

    def _eval_Expression(self, node: ast.Expression) -> Any:
        return self.eval(node.body)

    def _eval_BoolOp(self, node: ast.BoolOp) -> Any:
        if isinstance(node.op, ast.And):
            result: Any = True
            for value in node.values:
                result = self.eval(value)
                if not result:
                    return result
            return result
        result = False
        for value in node.values:
            result = self.eval(value)
            if result:
                return result
        return result

    def _eval_UnaryOp(self, node: ast.UnaryOp) -> Any:
        operand = self.eval(node.operand)
        if isinstance(node.op, ast.Not):
            return not operand
        try:
            if isinstance(node.op, ast.USub):
                return -operand
            if isinstance(node.op, ast.UAdd):
                return +operand
        except TypeError as e:
            raise ExpressionError(f"Bad operand for {type(node.op).__name__}: {operand!r}") from e
        raise ExpressionError(f"Unsupported operator: {type(node.op).__name__}")

    def _eval_Compare(self, node: ast.Compare) -> bool:
        left = self.eval(node.left)
        for op, comparator in zip(node.ops, node.comparators):
            right = self.eval(comparator)
            compare = _COMPARISONS.get(type(op))
            if compare is None:
                raise ExpressionError(f"Unsupported comparison: {type(op).__name__}")
            try:
                if not compare(left, right):
                    return False
            except TypeError as e:
                raise ExpressionError(f"Cannot compare {left!r} and {right!r}: {e}") from e
            left = right
        return True

    def _eval_Name(self, node: ast.Name) -> Any:
        # Undefined names are falsy rather than errors, so optional variables
        # can be tested directly.
        return self.variables.get(node.id)

    def _eval_Constant(self, node: ast.Constant) -> Any:
        return node.value

    def _eval_List(self, node: ast.List) -> list[Any]:
        return [self.eval(elt) for elt in node.elts]

    def _eval_Tuple(self, node: ast.Tuple) -> tuple[Any, ...]:
        return tuple(self.eval(elt) for elt in node.elts)

    def _eval_Attribute(self, node: ast.Attribute) -> Any:
        value = self.eval(node.value)
        if isinstance(value, Mapping):
            return value.get(node.attr)
        if node.attr == "length" and isinstance(value, (str, list, tuple)):
            return len(value)
        return None

    def _eval_Subscript(self, node: ast.Subscript) -> Any:
        value = self.eval(node.value)
        key = self.eval(node.slice)
        if isinstance(value, Mapping):
            try:
                return value.get(key)
            except TypeError as e:
                raise ExpressionError(f"Invalid key {key!r}: {e}") from e
        if isinstance(value, (list, tuple, str)) and isinstance(key, int):
            return value[key] if -len(value) <= key < len(value) else None
        return None

    def _eval_Call(self, node: ast.Call) -> Any:
        if not isinstance(node.func, ast.Name) or node.func.id not in self.helpers:
            name = node.func.id if isinstance(node.func, ast.Name) else type(node.func).__name__
            raise ExpressionError(f"Function '{name}' is not available in conditions")
        if node.keywords:
            raise ExpressionError("Keyword arguments are not supported in conditions")
        args = [self.eval(arg) for arg in node.args]
        try:
            return self.helpers[node.func.id](*args)
        except (TypeError, ValueError, KeyError, OSError) as e:
            raise ExpressionError(f"{node.func.id}() failed: {e}") from e


def evaluate_expression(
    expression: str,
    variables: Mapping[str, Any],
    helpers: Mapping[str, Callable[..., Any]] | None = None,
) -> Any:
    """Evaluate an expression and return its value (not coerced to bool)."""
    if not isinstance(expression, str) or not expression.strip():
        raise ExpressionError("Condition expression is empty")

    source = normalize_expression(expression)
    try:
        tree = ast.parse(source, mode="eval")
    except SyntaxError as e:
        raise ExpressionError(f"Invalid expression '{expression}': {e.msg}") from e

    return _Evaluator(variables, helpers or {}).eval(tree)


def evaluate_condition(
    expression: str,
    variables: Mapping[str, Any],
    helpers: Mapping[str, Callable[..., Any]] | None = None,
) -> bool:
    """
    Evaluate a boolean condition against a variable context.

    Args:
        expression: Condition text, e.g. ``"useAuth && framework == 'fastapi'"``
        variables: Names visible to the expression
        helpers: Callables the expression may invoke, e.g. ``fileExists``

    Returns:
        Truthiness of the evaluated expression

    Raises:
        ExpressionError: If the expression is malformed or uses a disallowed construct
    """
    return bool(evaluate_expression(expression, variables, helpers))
