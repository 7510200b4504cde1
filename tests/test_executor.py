"""Tests for batch execution, concurrency and error policy."""

import asyncio
from unittest.mock import MagicMock

import pytest

from recipe_engine.config import EngineConfig
from recipe_engine.errors import RecipeValidationError
from recipe_engine.executor import RecursionState
from recipe_engine.executor import StepExecutor
from recipe_engine.models import ActionStep
from recipe_engine.models import ConditionalStep
from recipe_engine.models import ParallelStep
from recipe_engine.models import SequenceStep
from recipe_engine.models import StepStatus
from recipe_engine.models import ToolKind
from recipe_engine.runner import StepRunner
from recipe_engine.tools.base import Tool
from recipe_engine.tools.base import ToolResult
from recipe_engine.tools.control import ConditionalTool
from recipe_engine.tools.control import ParallelTool
from recipe_engine.tools.control import SequenceTool
from recipe_engine.tools.registry import ToolRegistry


class ScriptedTool(Tool):
    """Records execution order and concurrency; fails or exports per step name."""

    kind = ToolKind.ACTION
    step_type = ActionStep

    def __init__(self):
        self.order: list[str] = []
        self.failures: set[str] = set()
        self.delays: dict[str, float] = {}
        self.exports: dict[str, dict] = {}
        self.running = 0
        self.max_running = 0

    async def execute(self, step, context):
        self.order.append(step.name)
        self.running += 1
        self.max_running = max(self.max_running, self.running)
        try:
            await asyncio.sleep(self.delays.get(step.name, 0))
        finally:
            self.running -= 1
        if step.name in self.failures:
            raise RuntimeError(f"{step.name} failed")
        return ToolResult(output=dict(context.variables), variables=self.exports.get(step.name, {}))


def act(name: str, **kwargs) -> ActionStep:
    return ActionStep(name=name, tool=ToolKind.ACTION, action="run", **kwargs)


@pytest.fixture
def tool():
    return ScriptedTool()


@pytest.fixture
def make_executor(tool):
    def _make(config: EngineConfig | None = None, display=None) -> StepExecutor:
        config = config or EngineConfig()
        registry = ToolRegistry([tool, SequenceTool(), ParallelTool(), ConditionalTool()])
        return StepExecutor(StepRunner(registry, config), config, display=display)

    return _make


@pytest.fixture
def run_steps(make_executor, make_context):
    async def _run(steps, variables=None, config=None, **context_kwargs):
        executor = make_executor(config)
        context = make_context(variables, executor=executor, **context_kwargs)
        return await executor.execute_steps(steps, context)

    return _run


class TestOrdering:
    """Tests for batch order and concurrency within a batch."""

    @pytest.mark.asyncio
    async def test_unhinted_steps_run_sequentially_in_order(self, run_steps, tool):
        """Same-batch steps without the parallel hint run one at a time."""
        tool.delays = {"a": 0.02, "b": 0.01}
        outcome = await run_steps([act("a"), act("b"), act("c")])

        assert outcome.success
        assert tool.order == ["a", "b", "c"]
        assert tool.max_running == 1

    @pytest.mark.asyncio
    async def test_hinted_steps_run_concurrently(self, run_steps, tool):
        """Parallel-hinted steps in the same batch overlap."""
        tool.delays = {"a": 0.05, "b": 0.05}
        outcome = await run_steps([act("a", parallel=True), act("b", parallel=True)])

        assert outcome.count(StepStatus.COMPLETED) == 2
        assert tool.max_running == 2

    @pytest.mark.asyncio
    async def test_metrics_record_concurrency_and_durations(self, run_steps, tool):
        """Outcome metrics reflect what actually ran at once and for how long."""
        tool.delays = {"a": 0.05, "b": 0.05}
        steps = [act("a", parallel=True), act("b", parallel=True), act("c", depends_on=["a"])]

        metrics = (await run_steps(steps)).metrics

        assert metrics.total_steps == 3
        assert metrics.batches == 2
        assert metrics.parallel_groups == 1
        assert metrics.max_concurrent_steps == 2
        assert metrics.average_concurrent_steps == 1.5
        assert set(metrics.step_durations_ms) == {"a", "b", "c"}
        assert metrics.step_durations_ms["a"] >= 40
        assert metrics.progress_percentage == 100
        assert metrics.to_dict()["max_concurrent_steps"] == 2

    @pytest.mark.asyncio
    async def test_max_parallel_steps_bounds_concurrency(self, run_steps, tool):
        """At most max_parallel_steps hinted steps run at once."""
        tool.delays = {"a": 0.02, "b": 0.02, "c": 0.02}
        steps = [act(n, parallel=True) for n in ("a", "b", "c")]
        await run_steps(steps, config=EngineConfig(max_parallel_steps=1))

        assert tool.max_running == 1
        assert sorted(tool.order) == ["a", "b", "c"]

    @pytest.mark.asyncio
    async def test_dependencies_finish_first(self, run_steps, tool):
        """A dependent step starts only after its dependency finished."""
        tool.delays = {"slow": 0.05}
        await run_steps([act("fast_dependent", depends_on=["slow"]), act("slow", parallel=True)])

        assert tool.order == ["slow", "fast_dependent"]

    @pytest.mark.asyncio
    async def test_exported_variables_flow_to_later_steps(self, run_steps, tool):
        """Variables exported by a step are visible to later batches."""
        tool.exports = {"a": {"db_url": "sqlite://"}}
        outcome = await run_steps([act("a"), act("b", depends_on=["a"])], variables={"name": "shop"})

        assert outcome.results["b"].output == {"name": "shop", "db_url": "sqlite://"}
        assert outcome.variables["db_url"] == "sqlite://"
        assert outcome.exported == {"db_url": "sqlite://"}

    @pytest.mark.asyncio
    async def test_invalid_graph_raises_before_running(self, run_steps, tool):
        """Structural problems raise and nothing runs."""
        with pytest.raises(RecipeValidationError) as exc_info:
            await run_steps([act("a"), act("a"), act("b", depends_on=["ghost"])])

        assert exc_info.value.codes == ["DUPLICATE_STEP_NAME", "UNKNOWN_DEPENDENCY"]
        assert tool.order == []


class TestErrorPolicy:
    """Tests for continue-on-error and abort semantics."""

    @pytest.mark.asyncio
    async def test_continue_on_error_runs_dependents(self, run_steps, tool):
        """A failed continue-on-error step still satisfies its dependents."""
        tool.failures = {"a"}
        outcome = await run_steps([act("a", continue_on_error=True), act("b", depends_on=["a"])])

        assert outcome.success
        assert outcome.results["a"].status == StepStatus.FAILED
        assert outcome.results["b"].status == StepStatus.COMPLETED
        assert outcome.errors == ["Step 'a': a failed"]

    @pytest.mark.asyncio
    async def test_config_continue_on_error(self, run_steps, tool):
        """The engine default applies when the step does not say."""
        tool.failures = {"a"}
        outcome = await run_steps([act("a"), act("b")], config=EngineConfig(continue_on_error=True))

        assert outcome.success
        assert tool.order == ["a", "b"]

    @pytest.mark.asyncio
    async def test_step_setting_overrides_config(self, run_steps, tool):
        """continue_on_error: false on the step wins over the engine default."""
        tool.failures = {"a"}
        outcome = await run_steps(
            [act("a", continue_on_error=False), act("b")],
            config=EngineConfig(continue_on_error=True),
        )

        assert not outcome.success
        assert outcome.results["b"].status == StepStatus.PENDING

    @pytest.mark.asyncio
    async def test_failure_aborts_remaining_steps(self, run_steps, tool):
        """Without continue-on-error, later groups and batches never start."""
        tool.failures = {"a"}
        outcome = await run_steps([act("a"), act("b"), act("c", depends_on=["a"])])

        assert outcome.aborted
        assert not outcome.success
        assert tool.order == ["a"]
        assert outcome.results["b"].status == StepStatus.PENDING
        assert outcome.results["c"].status == StepStatus.PENDING

    @pytest.mark.asyncio
    async def test_running_siblings_finish_after_failure(self, run_steps, tool):
        """Hinted siblings already running complete even when one fails."""
        tool.failures = {"a"}
        tool.delays = {"b": 0.05}
        outcome = await run_steps([act("a", parallel=True), act("b", parallel=True), act("c")])

        assert outcome.results["a"].status == StepStatus.FAILED
        assert outcome.results["b"].status == StepStatus.COMPLETED
        assert outcome.results["c"].status == StepStatus.PENDING

    @pytest.mark.asyncio
    async def test_skipped_step_dependents_still_run(self, run_steps, tool):
        """A skipped step does not block the steps that depend on it."""
        outcome = await run_steps([act("a", when="enabled"), act("b", depends_on=["a"])], variables={"enabled": False})

        assert outcome.results["a"].status == StepStatus.SKIPPED
        assert outcome.results["b"].status == StepStatus.COMPLETED
        assert outcome.count(StepStatus.SKIPPED) == 1

    @pytest.mark.asyncio
    async def test_total_step_limit(self, run_steps, tool):
        """Exceeding the total step budget fails the step that crossed it."""
        state = RecursionState(max_total_steps=2)
        outcome = await run_steps([act("a"), act("b"), act("c")], recursion=state)

        assert outcome.results["c"].status == StepStatus.FAILED
        assert outcome.results["c"].error == "Total steps 3 exceeds limit 2"
        assert tool.order == ["a", "b"]

    @pytest.mark.asyncio
    async def test_progress_is_displayed(self, make_executor, make_context, tool):
        """Progress lines go to the display with source 'recipe'."""
        display = MagicMock()
        tool.failures = {"a"}
        executor = make_executor(display=display)

        await executor.execute_steps([act("a")], make_context(executor=executor))

        levels = [c.kwargs["level"] for c in display.show_message.call_args_list]
        assert "error" in levels
        assert all(c.kwargs["source"] == "recipe" for c in display.show_message.call_args_list)


class TestControlFlow:
    """Tests for sequence, parallel and conditional blocks."""

    @pytest.mark.asyncio
    async def test_sequence(self, run_steps, tool):
        """Nested steps run through the scheduler and export their variables."""
        tool.exports = {"x": {"from_x": 1}}
        seq = SequenceStep(
            name="seq",
            tool=ToolKind.SEQUENCE,
            steps=[act("y", depends_on=["x"]), act("x")],
        )
        outcome = await run_steps([seq, act("after", depends_on=["seq"])])

        assert tool.order == ["x", "y", "after"]
        assert set(outcome.results["seq"].output["steps"]) == {"x", "y"}
        assert outcome.results["after"].output["from_x"] == 1

    @pytest.mark.asyncio
    async def test_parallel_block(self, run_steps, tool):
        """Every child of a parallel block is treated as hinted."""
        tool.delays = {"p1": 0.05, "p2": 0.05}
        block = ParallelStep(name="par", tool=ToolKind.PARALLEL, steps=[act("p1"), act("p2")])
        outcome = await run_steps([block])

        assert outcome.success
        assert tool.max_running == 2

    @pytest.mark.asyncio
    async def test_nested_failure_fails_parent(self, run_steps, tool):
        """A failing child without continue-on-error fails the block."""
        tool.failures = {"inner"}
        seq = SequenceStep(name="seq", tool=ToolKind.SEQUENCE, steps=[act("inner")])
        outcome = await run_steps([seq])

        assert outcome.results["seq"].status == StepStatus.FAILED
        assert "inner failed" in outcome.results["seq"].error

    @pytest.mark.asyncio
    async def test_conditional_branches(self, run_steps, tool):
        """Only the branch selected by the condition runs."""
        step = ConditionalStep(
            name="db",
            tool=ToolKind.CONDITIONAL,
            condition="useDb",
            then_steps=[act("with_db")],
            else_steps=[act("without_db")],
        )
        outcome = await run_steps([step], variables={"useDb": False})

        assert tool.order == ["without_db"]
        assert outcome.results["db"].output["branch"] == "else"
        assert outcome.results["db"].output["condition"] is False

    @pytest.mark.asyncio
    async def test_conditional_without_matching_branch(self, run_steps, tool):
        """A condition with no branch to run completes without running anything."""
        step = ConditionalStep(name="db", tool=ToolKind.CONDITIONAL, condition="useDb", then_steps=[act("with_db")])
        outcome = await run_steps([step], variables={"useDb": False})

        assert outcome.results["db"].status == StepStatus.COMPLETED
        assert tool.order == []
