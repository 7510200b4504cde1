"""Control-flow steps: sequence, parallel and conditional blocks."""

import logging
from typing import TYPE_CHECKING

from ..models import ConditionalStep
from ..models import ParallelStep
from ..models import SequenceStep
from ..models import Step
from ..models import ToolKind
from .base import StepContext
from .base import Tool
from .base import ToolResult

if TYPE_CHECKING:
    from ..executor import StepsOutcome

logger = logging.getLogger(__name__)


def nested_result(outcome: "StepsOutcome", extra: dict | None = None) -> ToolResult:
    """Fold a nested block's outcome into a single tool result."""
    output = {"steps": {name: result.to_dict() for name, result in outcome.results.items()}}
    if extra:
        output.update(extra)
    result = ToolResult(
        success=outcome.success,
        output=output,
        variables=dict(outcome.exported),
        error="; ".join(outcome.errors) if not outcome.success else None,
    )
    for step_result in outcome.results.values():
        result.merge_files(step_result)
    return result


def _require_executor(step: Step, context: StepContext):
    if context.executor is None:
        raise ValueError(f"Step '{step.name}': nested steps need an executor in the step context")
    return context.executor


class SequenceTool(Tool):
    """Runs nested steps through the same scheduler as a recipe."""

    kind = ToolKind.SEQUENCE
    step_type = SequenceStep
    backoff = False

    async def execute(self, step: SequenceStep, context: StepContext) -> ToolResult:
        executor = _require_executor(step, context)
        outcome = await executor.execute_steps(step.steps, context)
        return nested_result(outcome)


class ParallelTool(Tool):
    """Runs nested steps as if every one of them were parallel-hinted."""

    kind = ToolKind.PARALLEL
    step_type = ParallelStep
    backoff = False

    async def execute(self, step: ParallelStep, context: StepContext) -> ToolResult:
        executor = _require_executor(step, context)
        outcome = await executor.execute_steps(step.steps, context, force_parallel=True)
        return nested_result(outcome)


class ConditionalTool(Tool):
    """Evaluates ``condition`` and runs the ``then`` or ``else`` branch."""

    kind = ToolKind.CONDITIONAL
    step_type = ConditionalStep
    backoff = False

    async def execute(self, step: ConditionalStep, context: StepContext) -> ToolResult:
        executor = _require_executor(step, context)
        taken = context.evaluate_condition(step.condition)
        branch = step.then_steps if taken else step.else_steps
        logger.debug(f"Step '{step.name}': condition '{step.condition}' is {taken}")
        if not branch:
            return ToolResult(output={"condition": taken, "branch": None, "steps": {}})

        outcome = await executor.execute_steps(branch, context)
        return nested_result(outcome, {"condition": taken, "branch": "then" if taken else "else"})
