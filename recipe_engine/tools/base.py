"""Tool contract shared by every step kind."""

from abc import ABC
from abc import abstractmethod
from collections.abc import Mapping
from dataclasses import dataclass
from dataclasses import field
from dataclasses import replace
from pathlib import Path
from typing import TYPE_CHECKING
from typing import Any

from ..config import EngineConfig
from ..expression_evaluator import evaluate_condition
from ..models import Recipe
from ..models import Step
from ..models import StepResult
from ..models import ToolKind

if TYPE_CHECKING:
    from ..ai.collector import AiCoordinator
    from ..ai.context import ContextCollector
    from ..executor import RecursionState
    from ..executor import StepExecutor


@dataclass
class ToolValidation:
    """Outcome of ``Tool.validate``."""

    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return not self.errors


@dataclass
class ToolResult:
    """What a tool hands back to the step runner."""

    success: bool = True
    output: Any = None
    error: str | None = None
    variables: dict[str, Any] = field(default_factory=dict)  # exported to later steps
    files_created: list[str] = field(default_factory=list)
    files_modified: list[str] = field(default_factory=list)
    files_deleted: list[str] = field(default_factory=list)

    def merge_files(self, other: "ToolResult | StepResult") -> None:
        """Append another result's file lists to this one."""
        self.files_created.extend(other.files_created)
        self.files_modified.extend(other.files_modified)
        self.files_deleted.extend(other.files_deleted)


@dataclass
class StepContext:
    """Everything a tool may read while executing one step.

    Variables and step results are snapshots: tools never write to them.
    Values a tool wants to publish go into ``ToolResult.variables``.
    """

    variables: dict[str, Any]
    project_root: Path
    config: EngineConfig = field(default_factory=EngineConfig)
    step_results: Mapping[str, StepResult] = field(default_factory=dict)
    recipe: Recipe | None = None
    dry_run: bool = False
    ai: "AiCoordinator | None" = None
    context_collector: "ContextCollector | None" = None
    executor: "StepExecutor | None" = None
    recursion: "RecursionState | None" = None

    @property
    def recipe_dir(self) -> Path:
        """Directory relative references in the recipe resolve against."""
        if self.recipe is not None and self.recipe.base_dir is not None:
            return self.recipe.base_dir
        return self.project_root

    def resolve_path(self, path: str | Path) -> Path:
        """Resolve a path against the project root."""
        candidate = Path(path)
        return candidate if candidate.is_absolute() else self.project_root / candidate

    def relative(self, path: Path) -> str:
        """Path as reported in results: relative to the project root when possible."""
        try:
            return str(path.relative_to(self.project_root))
        except ValueError:
            return str(path)

    def condition_helpers(self) -> dict[str, Any]:
        def file_exists(path: str) -> bool:
            return self.resolve_path(path).is_file()

        def dir_exists(path: str) -> bool:
            return self.resolve_path(path).is_dir()

        return {
            "fileExists": file_exists,
            "file_exists": file_exists,
            "dirExists": dir_exists,
            "dir_exists": dir_exists,
            "len": len,
        }

    def evaluate_condition(self, expression: str, variables: Mapping[str, Any] | None = None) -> bool:
        """Evaluate ``expression`` against the step's variables (or an override)."""
        scope = self.variables if variables is None else variables
        return evaluate_condition(expression, scope, self.condition_helpers())

    def with_variables(self, variables: dict[str, Any]) -> "StepContext":
        """Copy of this context seeing a different variable mapping."""
        return replace(self, variables=variables)


class Tool(ABC):
    """One implementation per ``ToolKind``.

    Subclasses set ``kind`` and ``step_type`` and implement ``execute``.
    ``validate`` runs the step's own structural checks; override it to add
    checks that need the filesystem or other context.
    """

    kind: ToolKind
    step_type: type[Step] = Step
    # Local file tools retry immediately; network/process tools back off.
    backoff: bool = True

    async def validate(self, step: Step, context: StepContext) -> ToolValidation:
        """Check that ``step`` can run in ``context``."""
        if not isinstance(step, self.step_type):
            return ToolValidation(
                errors=[f"Step '{step.name}': expected a {self.kind.value} step, got {type(step).__name__}"]
            )
        return ToolValidation(errors=step.validate())

    @abstractmethod
    async def execute(self, step: Step, context: StepContext) -> ToolResult:
        """Run the step. Raise or return ``ToolResult(success=False)`` on failure."""
