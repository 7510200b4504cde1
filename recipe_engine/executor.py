"""Batch execution of step lists."""

import asyncio
import logging
from dataclasses import dataclass
from dataclasses import field
from dataclasses import replace
from types import MappingProxyType
from typing import Any

from .config import EngineConfig
from .config import RecursionConfig
from .errors import RecipeValidationError
from .errors import RecursionLimitError
from .graph import build
from .models import Step
from .models import StepResult
from .models import StepStatus
from .runner import StepRunner
from .scheduler import plan
from .scheduler import split_batch
from .tools.base import StepContext

logger = logging.getLogger(__name__)


@dataclass
class RecursionState:
    """Track recursion across nested recipe executions."""

    current_depth: int = 0
    total_steps: int = 0
    max_depth: int = 5
    max_total_steps: int = 100
    recipe_stack: list[str] = field(default_factory=list)

    @classmethod
    def from_config(cls, config: RecursionConfig, recipe_name: str) -> "RecursionState":
        return cls(
            max_depth=config.max_depth,
            max_total_steps=config.max_total_steps,
            recipe_stack=[recipe_name],
        )

    def check_depth(self, recipe_name: str) -> None:
        """Raise if entering ``recipe_name`` would exceed the depth limit."""
        if self.current_depth >= self.max_depth:
            raise RecursionLimitError(
                f"Recipe recursion depth {self.current_depth} exceeds limit {self.max_depth}. "
                f"Stack: {' -> '.join([*self.recipe_stack, recipe_name])}"
            )

    def check_total_steps(self) -> None:
        """Raise if total steps limit exceeded."""
        if self.total_steps > self.max_total_steps:
            raise RecursionLimitError(f"Total steps {self.total_steps} exceeds limit {self.max_total_steps}")

    def increment_steps(self) -> None:
        """Increment total steps counter and check limit."""
        self.total_steps += 1
        self.check_total_steps()

    def enter_recipe(self, recipe_name: str) -> "RecursionState":
        """
        Create child state for sub-recipe.

        Args:
            recipe_name: Name of recipe being entered
        """
        self.check_depth(recipe_name)
        return RecursionState(
            current_depth=self.current_depth + 1,
            total_steps=self.total_steps,
            max_depth=self.max_depth,
            max_total_steps=self.max_total_steps,
            recipe_stack=[*self.recipe_stack, recipe_name],
        )


@dataclass
class ExecutionMetrics:
    """Timing and concurrency observed while running one step list."""

    total_steps: int = 0
    batches: int = 0
    parallel_groups: int = 0  # groups that ran more than one step at once
    max_concurrent_steps: int = 0
    step_durations_ms: dict[str, float] = field(default_factory=dict)
    total_retries: int = 0
    recovered_after_retries: list[str] = field(default_factory=list)
    finished_steps: int = 0
    running: int = field(default=0, repr=False)
    group_concurrency: list[int] = field(default_factory=list, repr=False)

    @property
    def average_concurrent_steps(self) -> float:
        if not self.group_concurrency:
            return 0.0
        return sum(self.group_concurrency) / len(self.group_concurrency)

    @property
    def progress_percentage(self) -> int:
        if not self.total_steps:
            return 100
        return round(self.finished_steps / self.total_steps * 100)

    def step_started(self) -> None:
        self.running += 1
        self.max_concurrent_steps = max(self.max_concurrent_steps, self.running)

    def step_finished(self, result: StepResult) -> None:
        self.finished_steps += 1
        duration = result.duration_ms
        if duration is not None:
            self.step_durations_ms[result.step_name] = duration
        self.total_retries += result.retry_count
        if result.retry_count and result.status == StepStatus.COMPLETED:
            self.recovered_after_retries.append(result.step_name)

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_steps": self.total_steps,
            "batches": self.batches,
            "parallel_groups": self.parallel_groups,
            "max_concurrent_steps": self.max_concurrent_steps,
            "average_concurrent_steps": round(self.average_concurrent_steps, 2),
            "step_durations_ms": dict(self.step_durations_ms),
            "total_retries": self.total_retries,
            "recovered_after_retries": list(self.recovered_after_retries),
            "progress_percentage": self.progress_percentage,
        }


@dataclass
class StepsOutcome:
    """Results of running one list of steps (a recipe or a nested block)."""

    results: dict[str, StepResult] = field(default_factory=dict)
    variables: dict[str, Any] = field(default_factory=dict)
    exported: dict[str, Any] = field(default_factory=dict)  # values steps published
    errors: list[str] = field(default_factory=list)
    aborted: bool = False
    metrics: ExecutionMetrics = field(default_factory=ExecutionMetrics)

    @property
    def success(self) -> bool:
        return not self.aborted

    def count(self, status: StepStatus) -> int:
        return sum(1 for r in self.results.values() if r.status == status)

    def files(self, attribute: str) -> list[str]:
        """De-duplicated files from every result, in execution order."""
        seen: dict[str, None] = {}
        for result in self.results.values():
            for path in getattr(result, attribute):
                seen[path] = None
        return list(seen)


class StepExecutor:
    """Runs step lists batch by batch.

    Batches run strictly in order. Within a batch, consecutive
    parallel-hinted steps run concurrently (at most ``max_parallel_steps``
    at a time); every other step runs alone, in declaration order.
    A failure without continue-on-error lets the current group finish,
    then stops: later groups and batches never start.
    """

    def __init__(self, runner: StepRunner, config: EngineConfig | None = None, display: Any = None):
        """
        Initialize executor.

        Args:
            runner: Executes individual steps
            config: Engine configuration (concurrency, error policy)
            display: Optional object with ``show_message(message, level, source)``
        """
        self.runner = runner
        self.config = config or EngineConfig()
        self.display = display

    def _show_progress(self, message: str, level: str = "info") -> None:
        """
        Show progress message to user via display system.

        Args:
            message: Progress message to display
            level: Message level (info, warning, error)
        """
        getattr(logger, level if level in ("info", "warning", "error") else "info")(message)
        if self.display is not None:
            self.display.show_message(message=message, level=level, source="recipe")

    def continues_on_error(self, step: Step) -> bool:
        if step.continue_on_error is not None:
            return step.continue_on_error
        return self.config.continue_on_error

    async def execute_steps(
        self,
        steps: list[Step],
        context: StepContext,
        *,
        force_parallel: bool = False,
    ) -> StepsOutcome:
        """
        Validate, plan and run a list of steps.

        Args:
            steps: Steps in declaration order
            context: Variables, prior results and services for the run
            force_parallel: Treat every step as parallel-hinted

        Returns:
            StepsOutcome with one result per step (unstarted steps stay pending)

        Raises:
            RecipeValidationError: If the steps do not form a valid graph
        """
        graph, issues = build(steps)
        if issues:
            raise RecipeValidationError(issues)
        execution_plan = plan(graph)

        outcome = StepsOutcome(variables=dict(context.variables))
        metrics = outcome.metrics
        metrics.total_steps = len(steps)
        visible: dict[str, StepResult] = dict(context.step_results)
        semaphore = asyncio.Semaphore(self.config.max_parallel_steps)

        for batch_index, batch in enumerate(execution_plan):
            batch_steps = [graph.step(name) for name in batch]
            if outcome.aborted:
                for step in batch_steps:
                    outcome.results[step.name] = StepResult(step_name=step.name, tool=_kind_name(step))
                continue

            metrics.batches += 1
            logger.info(
                f"Batch {batch_index + 1}/{len(execution_plan)} "
                f"({metrics.progress_percentage}% done): {', '.join(batch)}"
            )
            for group in split_batch(batch_steps, force_parallel=force_parallel):
                if outcome.aborted:
                    for step in group:
                        outcome.results[step.name] = StepResult(step_name=step.name, tool=_kind_name(step))
                    continue

                snapshot = replace(
                    context,
                    variables=dict(outcome.variables),
                    step_results=MappingProxyType(dict(visible)),
                )
                metrics.group_concurrency.append(min(len(group), self.config.max_parallel_steps))
                if len(group) == 1:
                    group_results = [await self._run_one(group[0], snapshot, metrics)]
                else:
                    metrics.parallel_groups += 1
                    group_results = await asyncio.gather(
                        *(self._run_bounded(semaphore, step, snapshot, metrics) for step in group)
                    )

                for step, result in zip(group, group_results):
                    outcome.results[step.name] = result
                    visible[step.name] = result
                    if result.status == StepStatus.COMPLETED:
                        outcome.variables.update(result.variables)
                        outcome.exported.update(result.variables)
                    elif result.status == StepStatus.FAILED:
                        outcome.errors.append(f"Step '{step.name}': {result.error}")
                        if self.continues_on_error(step):
                            self._show_progress(f"Step '{step.name}' failed, continuing: {result.error}", "warning")
                        else:
                            self._show_progress(f"Step '{step.name}' failed: {result.error}", "error")
                            outcome.aborted = True

        return outcome

    async def _run_bounded(
        self,
        semaphore: asyncio.Semaphore,
        step: Step,
        context: StepContext,
        metrics: ExecutionMetrics,
    ) -> StepResult:
        async with semaphore:
            return await self._run_one(step, context, metrics)

    async def _run_one(self, step: Step, context: StepContext, metrics: ExecutionMetrics) -> StepResult:
        if context.recursion is not None:
            try:
                context.recursion.increment_steps()
            except RecursionLimitError as e:
                result = StepResult(step_name=step.name, tool=_kind_name(step), status=StepStatus.FAILED, error=str(e))
                metrics.step_finished(result)
                return result

        self._show_progress(f"  {step.name} ({_kind_name(step)})")
        metrics.step_started()
        try:
            result = await self.runner.run(step, context.with_variables({**context.variables, **step.variables}))
        finally:
            metrics.running -= 1
        metrics.step_finished(result)
        return result


def _kind_name(step: Step) -> str | None:
    kind = step.kind
    if kind is not None:
        return kind.value
    return str(step.tool) if step.tool else None
