"""Prompt steps: obtain a variable value from the operator."""

import inspect
import logging
from collections.abc import Callable
from typing import Any

from ..models import PromptStep
from ..models import ToolKind
from ..variables import substitute_variables
from .base import StepContext
from .base import Tool
from .base import ToolResult

logger = logging.getLogger(__name__)

# Receives the step and the rendered message; may be sync or async.
Prompter = Callable[[PromptStep, str], Any]


class PromptTool(Tool):
    """Sets ``step.variable`` from a supplied value, a prompter, or the default.

    A value already present in the run's variables wins. Non-interactive runs,
    dry runs and runs without a prompter fall back to the step default.
    """

    kind = ToolKind.PROMPT
    step_type = PromptStep
    backoff = False

    def __init__(self, prompter: Prompter | None = None):
        self.prompter = prompter

    def default_for(self, step: PromptStep) -> Any:
        if step.default is not None:
            return step.default
        if step.prompt_type == "confirm":
            return False
        if step.prompt_type == "multiselect":
            return []
        return None

    def check_answer(self, step: PromptStep, value: Any) -> None:
        if step.prompt_type == "select" and value not in step.options:
            raise ValueError(f"Step '{step.name}': '{value}' is not one of the options")
        if step.prompt_type == "multiselect":
            invalid = [v for v in value if v not in step.options]
            if invalid:
                raise ValueError(f"Step '{step.name}': invalid selections: {', '.join(map(str, invalid))}")

    async def execute(self, step: PromptStep, context: StepContext) -> ToolResult:
        source = "provided"
        if context.variables.get(step.variable) is not None:
            value = context.variables[step.variable]
        elif context.dry_run or context.config.non_interactive or self.prompter is None:
            value = self.default_for(step)
            source = "default"
        else:
            message = substitute_variables(step.message or step.variable, context.variables)
            value = self.prompter(step, message)
            if inspect.isawaitable(value):
                value = await value
            source = "prompt"

        if value is None:
            logger.warning(f"Step '{step.name}': no value for '{step.variable}' and no default")
        else:
            self.check_answer(step, value)

        return ToolResult(
            output={"variable": step.variable, "value": value, "source": source},
            variables={step.variable: value},
        )
