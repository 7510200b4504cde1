"""Recipe composition: run another recipe as a step."""

import logging
from collections.abc import Callable
from dataclasses import replace
from pathlib import Path
from types import MappingProxyType

from ..executor import RecursionState
from ..graph import build
from ..models import Recipe
from ..models import RecipeStep
from ..models import ToolKind
from ..variables import resolve_variables
from ..variables import substitute_recursive
from ..variables import substitute_variables
from .base import StepContext
from .base import Tool
from .base import ToolResult
from .base import ToolValidation
from .control import nested_result

logger = logging.getLogger(__name__)


class RecipeTool(Tool):
    """Loads a sub-recipe and runs its steps with the parent's executor."""

    kind = ToolKind.RECIPE
    step_type = RecipeStep
    backoff = False

    def __init__(self, loader: Callable[[Path], Recipe] | None = None):
        self._load = loader or Recipe.from_yaml

    def locate(self, step: RecipeStep, context: StepContext) -> Path:
        """
        Resolve the sub-recipe path.

        Relative paths resolve against the parent recipe's directory first
        so recipes can reference siblings, then against the project root.

        Raises:
            FileNotFoundError: If neither location has the file
        """
        path_str = substitute_variables(step.recipe, {**context.variables, **step.variables})
        candidate = Path(path_str)
        if candidate.is_absolute():
            if candidate.exists():
                return candidate
            raise FileNotFoundError(f"Sub-recipe not found: {candidate}")

        for base_dir in (context.recipe_dir, context.project_root):
            if (base_dir / candidate).exists():
                return base_dir / candidate
        raise FileNotFoundError(f"Sub-recipe not found: {context.recipe_dir / candidate}")

    async def validate(self, step: RecipeStep, context: StepContext) -> ToolValidation:
        result = await super().validate(step, context)
        if result.is_valid and "{{" not in step.recipe:
            try:
                self.locate(step, context)
            except FileNotFoundError as e:
                result.errors.append(f"Step '{step.name}': {e}")
        return result

    async def execute(self, step: RecipeStep, context: StepContext) -> ToolResult:
        if context.executor is None:
            raise ValueError(f"Step '{step.name}': recipe steps need an executor in the step context")

        path = self.locate(step, context)
        sub_recipe = self._load(path)

        errors = sub_recipe.validate()
        _, issues = build(sub_recipe.steps)
        errors.extend(str(issue) for issue in issues)
        if errors:
            raise ValueError(f"Sub-recipe '{sub_recipe.name or path}' is invalid: {'; '.join(errors)}")

        recursion = context.recursion
        if recursion is None:
            parent_name = context.recipe.name if context.recipe else ""
            recursion = RecursionState.from_config(context.config.recursion, parent_name)
        child_state = recursion.enter_recipe(sub_recipe.name)

        parent_vars = {**context.variables, **step.variables}
        provided = dict(parent_vars) if step.inherit_variables else {}
        provided.update(substitute_recursive(step.variable_overrides, parent_vars))
        variables = resolve_variables(sub_recipe, provided)

        logger.info(f"Entering sub-recipe '{sub_recipe.name}' (depth {child_state.current_depth})")
        sub_context = replace(
            context,
            variables=variables,
            step_results=MappingProxyType({}),
            recipe=sub_recipe,
            recursion=child_state,
        )
        try:
            outcome = await context.executor.execute_steps(sub_recipe.steps, sub_context)
        finally:
            # Propagate total steps back to parent state
            recursion.total_steps = child_state.total_steps

        result = nested_result(outcome, {"recipe": sub_recipe.name, "path": str(path)})
        if sub_recipe.provides:
            provided_names = [name for name in sub_recipe.provides if name in outcome.variables]
            result.variables = {name: outcome.variables[name] for name in provided_names}
        return result
