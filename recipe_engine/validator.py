"""Whole-recipe validation without executing anything."""

import logging
from dataclasses import dataclass
from dataclasses import field

from .errors import ToolNotFoundError
from .errors import ValidationIssue
from .graph import build
from .models import ConditionalStep
from .models import Recipe
from .models import Step
from .tools.base import StepContext

logger = logging.getLogger(__name__)

INVALID_RECIPE = "INVALID_RECIPE"
TOOL_VALIDATION = "TOOL_VALIDATION"


@dataclass
class ValidationResult:
    """Every problem found in a recipe, errors and warnings separately."""

    is_valid: bool = True
    errors: list[ValidationIssue] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def messages(self) -> list[str]:
        return [str(issue) for issue in self.errors]


def _collect_structure(steps: list[Step], issues: list[ValidationIssue]) -> None:
    """Graph issues for ``steps`` and, recursively, every nested block."""
    _, graph_issues = build(steps)
    issues.extend(graph_issues)
    for step in steps:
        children = step.children()
        if children:
            if isinstance(step, ConditionalStep):
                # then/else are separate scopes; names may repeat across branches
                _collect_structure(list(step.then_steps), issues)
                _collect_structure(list(step.else_steps), issues)
            else:
                _collect_structure(children, issues)


def _walk(steps: list[Step]):
    for step in steps:
        yield step
        yield from _walk(step.children())


async def validate_recipe(recipe: Recipe, registry=None, context: StepContext | None = None) -> ValidationResult:
    """
    Validate a recipe exhaustively.

    Recipe-level fields, the dependency graph of every step list, and (when
    a registry and context are given) each tool's own checks are all run;
    every issue found is reported. The result depends only on the recipe
    and the filesystem, so repeated calls agree.

    Args:
        recipe: Recipe to validate
        registry: Optional ToolRegistry; every step kind must be registered in it
        context: Step context for per-tool checks (skipped when None)

    Returns:
        ValidationResult
    """
    result = ValidationResult()
    issues: list[ValidationIssue] = []

    for message in recipe.validate():
        code = "INVALID_VARIABLE" if message.startswith("Variable ") else INVALID_RECIPE
        issues.append(ValidationIssue(code, message))

    _collect_structure(recipe.steps, issues)

    if registry is not None:
        for step in _walk(recipe.steps):
            if not step.name or step.kind is None:
                continue  # already reported by the graph
            try:
                tool = registry.get(step.tool)
            except ToolNotFoundError as e:
                issues.append(ValidationIssue(ToolNotFoundError.code, str(e), step=step.name))
                continue
            if context is None:
                continue
            validation = await tool.validate(step, context)
            for error in validation.errors:
                issues.append(ValidationIssue(TOOL_VALIDATION, error, step=step.name))
            result.warnings.extend(validation.warnings)

    result.errors = issues
    result.is_valid = not issues
    if issues:
        logger.debug(f"Recipe '{recipe.name}' has {len(issues)} validation issue(s)")
    return result
