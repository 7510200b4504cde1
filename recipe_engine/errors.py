"""Exception hierarchy for recipe execution."""

from dataclasses import dataclass
from typing import Any


@dataclass(frozen=True)
class ValidationIssue:
    """A single structural problem found while validating a recipe."""

    code: str
    message: str
    step: str | None = None

    def __str__(self) -> str:
        return f"[{self.code}] {self.message}"


class RecipeError(Exception):
    """Base class for all recipe engine errors."""


class RecipeValidationError(RecipeError):
    """Raised when a recipe fails validation.

    Carries every issue found, not just the first one, so callers can report
    all problems at once.
    """

    def __init__(self, issues: list[ValidationIssue], message: str | None = None):
        self.issues = list(issues)
        if message is None:
            details = "; ".join(str(issue) for issue in self.issues)
            message = f"Recipe validation failed: {details}"
        super().__init__(message)

    @property
    def codes(self) -> list[str]:
        return [issue.code for issue in self.issues]


class StepExecutionError(RecipeError):
    """Raised when a step's tool fails."""

    def __init__(self, step_name: str, message: str, result: Any = None):
        self.step_name = step_name
        self.result = result  # partial ToolResult, when the tool returned one
        super().__init__(message)


class InvalidStepError(StepExecutionError):
    """Raised when a tool rejects a step during validation. Never retried."""


class StepTimeoutError(StepExecutionError):
    """Raised when a step attempt exceeds its timeout."""

    def __init__(self, step_name: str, timeout_ms: int):
        self.timeout_ms = timeout_ms
        super().__init__(step_name, f"Step '{step_name}' timed out after {timeout_ms}ms")


class ToolNotFoundError(RecipeError):
    """Raised when no tool is registered for a step's kind."""

    code = "UNKNOWN_TOOL"

    def __init__(self, kind: str):
        self.kind = kind
        super().__init__(f"No tool registered for kind '{kind}'")


class ExpressionError(RecipeError):
    """Raised when a condition expression cannot be parsed or evaluated."""


class RecursionLimitError(RecipeError):
    """Raised when sub-recipe nesting exceeds configured limits."""


class AiTransportError(RecipeError):
    """Raised when an AI transport cannot deliver or parse a request."""


class AnswersFileError(RecipeError):
    """Raised when a pass-2 answers payload cannot be loaded."""


class MissingAnswersError(RecipeError):
    """Raised when pass-2 answers do not cover every collected key.

    When raised after a run has started, ``result`` holds the aggregate
    RecipeExecutionResult of what did run.
    """

    def __init__(self, missing: list[str], prefix: str = "AI answers", result: Any = None):
        self.missing = list(missing)
        self.result = result
        super().__init__(f"{prefix} missing expected keys: {', '.join(self.missing)}")


class ContextBudgetExceededError(RecipeError):
    """Raised when AI context exceeds its token budget with overflow='error'."""

    def __init__(self, estimated: int, budget: int, path: str):
        self.estimated = estimated
        self.budget = budget
        self.path = path
        super().__init__(f"Context exceeds token budget ({estimated} > {budget}). File: {path}")
