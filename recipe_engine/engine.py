"""Recipe engine facade: load, validate, plan, run and aggregate."""

import json
import logging
import time
from collections.abc import Mapping
from dataclasses import dataclass
from dataclasses import field
from pathlib import Path
from typing import Any
from typing import TextIO

import httpx

from .ai.answers import load_answers
from .ai.assembler import PromptAssembler
from .ai.collector import AiCoordinator
from .ai.context import ContextCollector
from .ai.guardrails import check_answers
from .ai.guardrails import feedback_prompt
from .ai.transports import Deferred
from .ai.transports import Resolved
from .ai.transports import Transport
from .ai.transports import TransportResult
from .ai.transports import resolve_transport
from .cache import RecipeCache
from .config import EngineConfig
from .errors import MissingAnswersError
from .errors import RecipeValidationError
from .executor import RecursionState
from .executor import StepExecutor
from .executor import StepsOutcome
from .models import Recipe
from .models import StepResult
from .models import StepStatus
from .runner import StepRunner
from .tools.base import StepContext
from .tools.registry import ToolRegistry
from .tools.registry import default_registry
from .validator import ValidationResult
from .validator import validate_recipe
from .variables import resolve_variables

logger = logging.getLogger(__name__)

# Maximum size for values in result summaries (10KB)
MAX_OUTPUT_SIZE_BYTES = 10 * 1024

RecipeSource = Recipe | Mapping[str, Any] | str | Path


def truncate_value(value: Any, max_bytes: int = MAX_OUTPUT_SIZE_BYTES) -> Any:
    """
    Truncate large values so summaries stay readable.

    Strings are cut with a message; dicts and lists that serialize past the
    limit are replaced by a marker with a preview.

    Args:
        value: Value to potentially truncate
        max_bytes: Maximum size in bytes

    Returns:
        Original value if small enough, truncated version otherwise
    """
    if isinstance(value, str):
        if len(value) > max_bytes:
            return value[:max_bytes] + "\n\n[... truncated]"
        return value

    if isinstance(value, (dict, list)):
        try:
            serialized = json.dumps(value, default=str)
        except (TypeError, ValueError):
            return value  # Can't serialize, return as-is
        if len(serialized) > max_bytes:
            preview = serialized[:500] + "..." if len(serialized) > 500 else serialized
            return {
                "_truncated": True,
                "_type": type(value).__name__,
                "_full_size_bytes": len(serialized),
                "_preview": preview,
            }
    return value


@dataclass
class RecipeExecutionResult:
    """Aggregate outcome of one recipe run."""

    success: bool
    status: str  # completed | failed | deferred
    recipe: str = ""
    step_results: dict[str, StepResult] = field(default_factory=dict)
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    files_created: list[str] = field(default_factory=list)
    files_modified: list[str] = field(default_factory=list)
    files_deleted: list[str] = field(default_factory=list)
    completed_steps: int = 0
    failed_steps: int = 0
    skipped_steps: int = 0
    exit_code: int = 0
    prompt: str | None = None  # consolidated AI prompt when deferred
    variables: dict[str, Any] = field(default_factory=dict)
    provided_values: dict[str, Any] = field(default_factory=dict)
    duration_ms: float = 0.0
    metrics: dict[str, Any] = field(default_factory=dict)  # ExecutionMetrics.to_dict() of the real pass

    @property
    def deferred(self) -> bool:
        return self.status == "deferred"

    def summary(self) -> dict[str, Any]:
        """Compact, size-bounded view of the run for display or logging."""
        return {
            "recipe": self.recipe,
            "status": self.status,
            "exit_code": self.exit_code,
            "steps": {
                "completed": self.completed_steps,
                "failed": self.failed_steps,
                "skipped": self.skipped_steps,
            },
            "files_created": self.files_created,
            "files_modified": self.files_modified,
            "files_deleted": self.files_deleted,
            "errors": self.errors,
            "provided_values": {k: truncate_value(v) for k, v in self.provided_values.items()},
            "duration_ms": round(self.duration_ms, 1),
            "metrics": self.metrics,
        }


class RecipeEngine:
    """Runs recipes end to end, including the two-pass AI protocol.

    Without answers, a run with AI collection enabled first executes as a
    dry collect pass. If that pass registered AI requests, they are
    assembled into one prompt and handed to the transport: a ``Resolved``
    transport lets the engine run the real pass immediately; a ``Deferred``
    one ends the run with exit code 2 and the prompt, to be re-run later
    with ``answers``. Runs that collect nothing proceed straight to the
    real pass.

    Answers are checked against the keys a dry collect pass reaches before
    the real pass starts, so an incomplete answer map writes nothing.
    """

    def __init__(
        self,
        config: EngineConfig | None = None,
        registry: ToolRegistry | None = None,
        *,
        transport: Transport | None = None,
        stream: TextIO | None = None,
        http_transport: httpx.AsyncBaseTransport | None = None,
        display: Any = None,
    ):
        """
        Initialize engine.

        Args:
            config: Engine configuration
            registry: Tools to dispatch to (default: every built-in tool)
            transport: AI transport override (default: chosen from config.ai)
            stream: Where the stdout transport writes the prompt
            http_transport: httpx transport for the API transport (tests)
            display: Optional progress display with ``show_message``
        """
        self.config = config or EngineConfig()
        errors = self.config.validate()
        if errors:
            raise ValueError(f"Invalid engine configuration: {'; '.join(errors)}")

        self.cache = RecipeCache(self.config.cache)
        self.registry = registry or default_registry(recipe_loader=self.cache.load)
        self.runner = StepRunner(self.registry, self.config)
        self.executor = StepExecutor(self.runner, self.config, display=display)
        self.context_collector = ContextCollector()
        self.transport = transport
        self.stream = stream
        self.http_transport = http_transport

    def load(self, source: RecipeSource) -> Recipe:
        """Load a recipe from a path (through the cache), a mapping, or pass one through."""
        if isinstance(source, Recipe):
            return source
        if isinstance(source, Mapping):
            return Recipe.from_dict(dict(source))
        return self.cache.load(Path(source))

    def _project_root(self, working_dir: str | Path | None) -> Path:
        root = working_dir or self.config.working_dir or Path.cwd()
        return Path(root).resolve()

    def _context(self, recipe: Recipe, variables: dict[str, Any], project_root: Path, **kwargs) -> StepContext:
        return StepContext(
            variables=variables,
            project_root=project_root,
            config=self.config,
            recipe=recipe,
            context_collector=self.context_collector,
            executor=self.executor,
            **kwargs,
        )

    async def validate(self, source: RecipeSource, *, working_dir: str | Path | None = None) -> ValidationResult:
        """Validate a recipe, including every tool's own checks, without running it."""
        recipe = self.load(source)
        context = self._context(recipe, {}, self._project_root(working_dir), dry_run=True)
        return await validate_recipe(recipe, self.registry, context)

    async def execute(
        self,
        source: RecipeSource,
        variables: dict[str, Any] | None = None,
        *,
        answers: str | Path | Mapping[str, Any] | None = None,
        dry_run: bool | None = None,
        working_dir: str | Path | None = None,
    ) -> RecipeExecutionResult:
        """
        Execute a recipe.

        Args:
            source: Recipe, parsed mapping, or path to a recipe YAML file
            variables: Caller-provided variable values
            answers: Pass-2 answers (mapping or path to a JSON file)
            dry_run: Override config.dry_run
            working_dir: Project root (default: config.working_dir, then cwd)

        Returns:
            RecipeExecutionResult

        Raises:
            RecipeValidationError: If the recipe is structurally invalid or
                required variables are missing (nothing has run)
            AnswersFileError: If the answers payload cannot be loaded
            MissingAnswersError: If answers do not cover every AI request
            AiTransportError: If the AI transport fails
        """
        started = time.monotonic()
        recipe = self.load(source)
        project_root = self._project_root(working_dir)
        dry_run = self.config.dry_run if dry_run is None else dry_run

        validation = await validate_recipe(recipe, self.registry)
        if not validation.is_valid:
            raise RecipeValidationError(validation.errors)
        resolved = resolve_variables(recipe, variables)

        logger.info(f"Starting recipe: {recipe.name} ({len(recipe.steps)} steps)")

        if answers is not None:
            answer_map = load_answers(answers)
            collector, _ = await self._collect(recipe, resolved, project_root)
            _require_coverage(collector, answer_map)
            coordinator = AiCoordinator.applying(answer_map)
        elif self.config.ai.collect:
            collector, collected = await self._collect(recipe, resolved, project_root)
            if not collector.has_entries():
                if dry_run:
                    return self._aggregate(recipe, collected, started, validation.warnings)
                coordinator = AiCoordinator()
            else:
                resolution = await self._resolve(collector, project_root)
                if isinstance(resolution, Deferred):
                    logger.info(f"Recipe '{recipe.name}' needs {len(collector.keys)} AI answer(s); deferring")
                    return RecipeExecutionResult(
                        success=False,
                        status="deferred",
                        recipe=recipe.name,
                        exit_code=resolution.exit_code,
                        prompt=resolution.prompt,
                        variables=dict(resolved),
                        duration_ms=(time.monotonic() - started) * 1000,
                    )
                _require_coverage(collector, resolution.answers)
                coordinator = AiCoordinator.applying(resolution.answers)
        else:
            coordinator = AiCoordinator()

        outcome = await self._run(recipe, resolved, project_root, coordinator, dry_run)
        result = self._aggregate(recipe, outcome, started, validation.warnings)
        missing = coordinator.missing_keys()
        if missing:
            # unanswered asks failed their steps before anything was written
            raise MissingAnswersError(missing, result=result)
        return result

    async def _collect(
        self,
        recipe: Recipe,
        variables: dict[str, Any],
        project_root: Path,
    ) -> tuple[AiCoordinator, StepsOutcome]:
        """Side-effect-free dry run that registers every AI request it reaches."""
        collector = AiCoordinator.collecting()
        outcome = await self._run(recipe, variables, project_root, collector, dry_run=True)
        if not outcome.success:
            logger.debug(f"Collect pass for '{recipe.name}' failed: {'; '.join(outcome.errors)}")
        return collector, outcome

    async def _resolve(self, coordinator: AiCoordinator, project_root: Path) -> TransportResult:
        """
        Hand the consolidated prompt to the transport.

        Resolved answers that fail their guardrails are sent back with
        correction notes, up to ``ai.guardrail_retries`` times. Answers that
        still fail are kept; their steps fail in the real pass.
        """
        ai = self.config.ai
        prompt = PromptAssembler(ai.prompt_template).assemble(coordinator, ai.original_command, ai.answers_path)
        transport = self.transport or resolve_transport(
            ai,
            stream=self.stream,
            http_transport=self.http_transport,
            cwd=project_root,
        )
        resolution = await transport.resolve(coordinator, prompt)

        for attempt in range(ai.guardrail_retries):
            if isinstance(resolution, Deferred):
                break
            failures = check_answers(coordinator, resolution.answers)
            if not failures:
                break
            logger.warning(
                f"AI answers failed validation for {', '.join(failures)}; "
                f"requesting corrections ({attempt + 1}/{ai.guardrail_retries})"
            )
            retry = await transport.resolve(coordinator, feedback_prompt(prompt, failures))
            if isinstance(retry, Deferred):
                break
            corrected = {key: retry.answers[key] for key in failures if key in retry.answers}
            resolution = Resolved(answers={**resolution.answers, **corrected})
        return resolution

    async def _run(
        self,
        recipe: Recipe,
        variables: dict[str, Any],
        project_root: Path,
        coordinator: AiCoordinator,
        dry_run: bool,
    ) -> StepsOutcome:
        context = self._context(
            recipe,
            dict(variables),
            project_root,
            dry_run=dry_run,
            ai=coordinator,
            recursion=RecursionState.from_config(self.config.recursion, recipe.name),
        )
        return await self.executor.execute_steps(recipe.steps, context)

    def _aggregate(
        self,
        recipe: Recipe,
        outcome: StepsOutcome,
        started: float,
        warnings: list[str],
    ) -> RecipeExecutionResult:
        provided = {name: outcome.variables[name] for name in recipe.provides if name in outcome.variables}
        result = RecipeExecutionResult(
            success=outcome.success,
            status="completed" if outcome.success else "failed",
            recipe=recipe.name,
            step_results=dict(outcome.results),
            errors=list(outcome.errors),
            warnings=list(warnings),
            files_created=outcome.files("files_created"),
            files_modified=outcome.files("files_modified"),
            files_deleted=outcome.files("files_deleted"),
            completed_steps=outcome.count(StepStatus.COMPLETED),
            failed_steps=outcome.count(StepStatus.FAILED),
            skipped_steps=outcome.count(StepStatus.SKIPPED),
            exit_code=0 if outcome.success else 1,
            variables=dict(outcome.variables),
            provided_values=provided,
            metrics=outcome.metrics.to_dict(),
            duration_ms=(time.monotonic() - started) * 1000,
        )
        if result.success:
            logger.info(f"Recipe completed: {recipe.name} ({result.completed_steps} steps)")
        else:
            logger.error(f"Recipe failed: {recipe.name}: {'; '.join(result.errors)}")
        return result

    def close(self) -> None:
        """Release the cache and its sweep thread."""
        self.cache.destroy()


def _require_coverage(collector: AiCoordinator, answers: Mapping[str, Any]) -> None:
    """Raise before any side effects if ``answers`` miss a collected key."""
    missing = [key for key in collector.keys if key not in answers]
    if missing:
        raise MissingAnswersError(missing)
