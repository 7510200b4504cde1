"""Variable resolution and ``{{variable}}`` substitution."""

import json
import re
from typing import Any

from .errors import RecipeValidationError
from .errors import ValidationIssue
from .models import Recipe

# Multi-level access: {{a.b.c.d}}, optional inner whitespace
VARIABLE_PATTERN = re.compile(r"\{\{\s*(\w+(?:\.\w+)*)\s*\}\}")


def resolve_variables(recipe: Recipe, provided: dict[str, Any] | None = None) -> dict[str, Any]:
    """
    Merge declared defaults with caller-provided values.

    Provided values win over defaults; provided names the recipe does not
    declare pass through unchanged.

    Args:
        recipe: Recipe whose variable declarations apply
        provided: Values supplied by the caller

    Returns:
        Resolved variable mapping

    Raises:
        RecipeValidationError: If required variables are missing or values
            violate their declarations. All problems are reported together.
    """
    provided = provided or {}
    resolved: dict[str, Any] = {}
    issues: list[ValidationIssue] = []
    missing: list[str] = []

    for name, definition in recipe.variables.items():
        if name in provided and provided[name] is not None:
            value = provided[name]
            for error in definition.check_value(name, value):
                issues.append(ValidationIssue("INVALID_VARIABLE", error))
            resolved[name] = value
        elif definition.default is not None:
            resolved[name] = definition.default
        elif definition.required:
            missing.append(name)

    for name, value in provided.items():
        if name not in resolved:
            resolved[name] = value

    if missing:
        message = f"Missing required variables: {', '.join(missing)}"
        issues.insert(0, ValidationIssue("MISSING_VARIABLE", message))
        raise RecipeValidationError(issues, message=message)
    if issues:
        raise RecipeValidationError(issues)

    return resolved


def lookup(context: dict[str, Any], var_ref: str) -> Any:
    """Resolve a dotted reference, raising ValueError with a helpful message."""
    parts = var_ref.split(".")
    value: Any = context
    path_so_far: list[str] = []
    for part in parts:
        path_so_far.append(part)
        if isinstance(value, dict) and part in value:
            value = value[part]
        elif isinstance(value, dict):
            where = ".".join(path_so_far[:-1]) or "root"
            raise ValueError(
                f"Undefined variable: {{{{{var_ref}}}}}. "
                f"Key '{part}' not found. "
                f"Available keys at '{where}': {', '.join(sorted(str(k) for k in value.keys()))}"
            )
        else:
            parent_path = ".".join(path_so_far[:-1])
            raise ValueError(
                f"Cannot access '{part}' on {{{{{parent_path}}}}} - "
                f"it's a {type(value).__name__}, not a mapping"
            )
    return value


def substitute_variables(template: str, context: dict[str, Any]) -> str:
    """
    Replace {{variable}} references with context values.

    Args:
        template: String with {{variable}} placeholders
        context: Dict with variable values

    Returns:
        String with variables substituted

    Raises:
        ValueError if variable undefined
    """

    def replace(match: re.Match) -> str:
        value = lookup(context, match.group(1))
        # json.dumps for dict/list so the text is valid JSON, not Python repr
        if isinstance(value, (dict, list)):
            return json.dumps(value)
        return str(value)

    return VARIABLE_PATTERN.sub(replace, template)


def substitute_recursive(value: Any, context: dict[str, Any]) -> Any:
    """
    Recursively substitute {{variable}} references in nested structures.

    Strings are substituted, dicts and lists are walked, everything else
    passes through unchanged.
    """
    if isinstance(value, str):
        return substitute_variables(value, context)
    if isinstance(value, dict):
        return {k: substitute_recursive(v, context) for k, v in value.items()}
    if isinstance(value, list):
        return [substitute_recursive(item, context) for item in value]
    return value
