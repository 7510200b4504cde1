"""Single-step execution: condition guard, timeout, retry with backoff."""

import asyncio
import datetime
import logging
import random
from collections.abc import Awaitable
from collections.abc import Callable
from typing import TYPE_CHECKING

from .config import EngineConfig
from .errors import ExpressionError
from .errors import InvalidStepError
from .errors import MissingAnswersError
from .errors import StepExecutionError
from .errors import StepTimeoutError
from .errors import ToolNotFoundError
from .models import Step
from .models import StepResult
from .models import StepStatus
from .tools.base import StepContext
from .tools.base import Tool
from .tools.base import ToolResult

if TYPE_CHECKING:
    from .tools.registry import ToolRegistry

logger = logging.getLogger(__name__)

Sleep = Callable[[float], Awaitable[None]]


def _now() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


class StepRunner:
    """Runs one step through its tool and produces its ``StepResult``.

    State per step: pending -> running -> completed | failed, or skipped
    when ``when`` is false. A step with ``retries: n`` gets at most n + 1
    attempts; a timed-out attempt counts as a failed one.
    """

    def __init__(
        self,
        registry: "ToolRegistry",
        config: EngineConfig | None = None,
        *,
        sleep: Sleep = asyncio.sleep,
        rng: Callable[[], float] = random.random,
    ):
        """
        Initialize runner.

        Args:
            registry: Tools to dispatch to
            config: Engine defaults for retries, timeouts and backoff
            sleep: Awaitable used between attempts (injectable for tests)
            rng: Source of jitter in [0, 1)
        """
        self.registry = registry
        self.config = config or EngineConfig()
        self._sleep = sleep
        self._rng = rng

    def backoff_ms(self, tool: Tool | None, attempt: int) -> float:
        """Delay before the retry following ``attempt`` (0-based)."""
        if tool is not None and not tool.backoff:
            return 0.0
        retry = self.config.retry
        base = retry.delay_ms(attempt)
        jitter = base * retry.jitter * (2 * self._rng() - 1)
        return max(base + jitter, 0.0)

    async def run(self, step: Step, context: StepContext) -> StepResult:
        """
        Execute ``step`` and return its final result.

        Tool failures never raise out of here; they are recorded on the
        result. Only cancellation propagates.

        Args:
            step: Step to execute
            context: Snapshot of variables and prior results

        Returns:
            Finalized StepResult
        """
        kind = step.kind
        result = StepResult(
            step_name=step.name,
            tool=kind.value if kind is not None else (str(step.tool) if step.tool else None),
            status=StepStatus.RUNNING,
            start_time=_now(),
        )

        if step.when:
            try:
                should_run = context.evaluate_condition(step.when, {**context.variables, **step.variables})
            except ExpressionError as e:
                return self._fail(result, f"Step '{step.name}': condition error: {e}")
            result.condition_result = should_run
            if not should_run:
                logger.debug(f"Step '{step.name}' skipped: condition '{step.when}' is false")
                result.status = StepStatus.SKIPPED
                result.end_time = _now()
                return result

        retries = step.retries if step.retries is not None else self.config.default_retries
        timeout_ms = step.timeout or self.config.default_timeout_ms
        tool: Tool | None = None
        last_error: Exception | None = None

        for attempt in range(retries + 1):
            result.retry_count = attempt
            try:
                tool = self.registry.get(step.tool)
                tool_result = await self._attempt(tool, step, context, timeout_ms)
            except (ToolNotFoundError, InvalidStepError, MissingAnswersError) as e:
                return self._fail(result, str(e))
            except asyncio.CancelledError:
                raise
            except Exception as e:
                last_error = e
                if attempt < retries:
                    delay = self.backoff_ms(tool, attempt)
                    logger.debug(
                        f"Step '{step.name}' attempt {attempt + 1}/{retries + 1} failed: {e}. "
                        f"Retrying in {delay:.0f}ms"
                    )
                    await self._sleep(delay / 1000)
                continue

            result.status = StepStatus.COMPLETED
            result.output = tool_result.output
            result.variables = dict(tool_result.variables)
            self._record_files(result, tool_result)
            result.end_time = _now()
            return result

        partial = getattr(last_error, "result", None)
        if isinstance(partial, ToolResult):
            result.output = partial.output
            self._record_files(result, partial)
        message = str(last_error) or type(last_error).__name__
        if retries:
            message = f"{message} (after {retries + 1} attempts)"
        return self._fail(result, message)

    async def _attempt(
        self,
        tool: Tool,
        step: Step,
        context: StepContext,
        timeout_ms: int | None,
    ) -> ToolResult:
        validation = await tool.validate(step, context)
        for warning in validation.warnings:
            logger.warning(warning)
        if not validation.is_valid:
            raise InvalidStepError(step.name, "; ".join(validation.errors))

        if timeout_ms:
            try:
                tool_result = await asyncio.wait_for(tool.execute(step, context), timeout=timeout_ms / 1000)
            except asyncio.TimeoutError:
                raise StepTimeoutError(step.name, timeout_ms) from None
        else:
            tool_result = await tool.execute(step, context)

        if not tool_result.success:
            raise StepExecutionError(step.name, tool_result.error or f"Step '{step.name}' failed", result=tool_result)
        return tool_result

    @staticmethod
    def _record_files(result: StepResult, tool_result: ToolResult) -> None:
        result.files_created = list(tool_result.files_created)
        result.files_modified = list(tool_result.files_modified)
        result.files_deleted = list(tool_result.files_deleted)

    @staticmethod
    def _fail(result: StepResult, message: str) -> StepResult:
        logger.debug(f"Step '{result.step_name}' failed: {message}")
        result.status = StepStatus.FAILED
        result.error = message
        result.end_time = _now()
        return result
