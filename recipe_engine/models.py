"""Recipe data models and YAML parsing."""

import dataclasses
import datetime
import re
from dataclasses import dataclass
from dataclasses import field
from enum import Enum
from pathlib import Path
from typing import Any

import yaml


class ToolKind(str, Enum):
    """Closed set of step kinds the engine knows how to dispatch."""

    TEMPLATE = "template"
    ACTION = "action"
    CODEMOD = "codemod"
    RECIPE = "recipe"
    SHELL = "shell"
    INSTALL = "install"
    QUERY = "query"
    PATCH = "patch"
    ENSURE_DIRS = "ensure-dirs"
    PROMPT = "prompt"
    AI = "ai"
    SEQUENCE = "sequence"
    PARALLEL = "parallel"
    CONDITIONAL = "conditional"

    @classmethod
    def parse(cls, value: Any) -> "ToolKind | None":
        """Return the matching kind, or None if ``value`` is not a known kind."""
        if isinstance(value, ToolKind):
            return value
        try:
            return cls(value)
        except ValueError:
            return None


class StepStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"

    @property
    def is_terminal(self) -> bool:
        return self in (StepStatus.COMPLETED, StepStatus.FAILED, StepStatus.SKIPPED)


VARIABLE_TYPES = ("string", "number", "boolean", "enum", "array", "object", "file", "directory")


@dataclass
class VariableDefinition:
    """Declared recipe variable."""

    type: str = "string"
    required: bool = False
    default: Any = None
    description: str = ""
    values: list[Any] = field(default_factory=list)  # enum choices
    validation: dict[str, Any] = field(default_factory=dict)  # pattern / min / max

    def validate(self, name: str) -> list[str]:
        """Validate the declaration itself (not a supplied value)."""
        errors = []
        if self.type not in VARIABLE_TYPES:
            errors.append(f"Variable '{name}': type must be one of {', '.join(VARIABLE_TYPES)}, got '{self.type}'")
            return errors
        if self.type == "enum" and not self.values:
            errors.append(f"Variable '{name}': enum variables require 'values'")
        pattern = self.validation.get("pattern")
        if pattern is not None:
            try:
                re.compile(pattern)
            except re.error as e:
                errors.append(f"Variable '{name}': invalid validation pattern: {e}")
                return errors
        if self.default is not None:
            errors.extend(self.check_value(name, self.default))
        return errors

    def check_value(self, name: str, value: Any) -> list[str]:
        """Check a value against this declaration's type and constraints."""
        errors = []
        expected = {
            "string": str,
            "file": str,
            "directory": str,
            "boolean": bool,
            "array": list,
            "object": dict,
        }
        if self.type == "number":
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                return [f"Variable '{name}': expected number, got {type(value).__name__}"]
        elif self.type == "enum":
            if value not in self.values:
                choices = ", ".join(str(v) for v in self.values)
                return [f"Variable '{name}': '{value}' is not one of {choices}"]
        elif self.type in expected and not isinstance(value, expected[self.type]):
            return [f"Variable '{name}': expected {self.type}, got {type(value).__name__}"]

        pattern = self.validation.get("pattern")
        if pattern is not None and isinstance(value, str) and not re.fullmatch(pattern, value):
            errors.append(f"Variable '{name}': '{value}' does not match pattern '{pattern}'")

        size = len(value) if isinstance(value, (str, list)) else value
        if isinstance(size, (int, float)) and not isinstance(size, bool):
            minimum = self.validation.get("min")
            maximum = self.validation.get("max")
            if minimum is not None and size < minimum:
                errors.append(f"Variable '{name}': must be >= {minimum}")
            if maximum is not None and size > maximum:
                errors.append(f"Variable '{name}': must be <= {maximum}")
        return errors


@dataclass
class RecipeDependency:
    """External recipe or package this recipe requires."""

    name: str
    version: str | None = None
    type: str = "recipe"
    optional: bool = False


@dataclass
class Step:
    """Fields common to every step kind.

    ``tool`` holds a ``ToolKind`` for recognised kinds. Anything else is kept
    verbatim so validation can report it instead of the parser.
    """

    name: str = ""
    tool: ToolKind | str | None = None
    description: str = ""
    depends_on: list[str] = field(default_factory=list)
    when: str | None = None
    parallel: bool = False
    retries: int | None = None
    timeout: int | None = None  # milliseconds
    continue_on_error: bool | None = None
    variables: dict[str, Any] = field(default_factory=dict)
    env: dict[str, str] = field(default_factory=dict)
    extra: dict[str, Any] = field(default_factory=dict)

    @property
    def kind(self) -> ToolKind | None:
        return ToolKind.parse(self.tool)

    def validate(self) -> list[str]:
        """Validate fields shared by all step kinds."""
        errors = []
        if self.retries is not None and (not isinstance(self.retries, int) or self.retries < 0):
            errors.append(f"Step '{self.name}': retries must be a non-negative integer")
        if self.timeout is not None and (not isinstance(self.timeout, int) or self.timeout <= 0):
            errors.append(f"Step '{self.name}': timeout must be a positive number of milliseconds")
        return errors

    def children(self) -> list["Step"]:
        """Nested steps for control-flow kinds."""
        return []


@dataclass
class TemplateStep(Step):
    template: str = ""
    to: str | None = None
    output_dir: str | None = None
    overwrite: bool = False
    exclude: list[str] = field(default_factory=list)

    def validate(self) -> list[str]:
        errors = super().validate()
        if not self.template:
            errors.append(f"Step '{self.name}': template steps require 'template' field")
        return errors


@dataclass
class ActionStep(Step):
    action: str = ""
    parameters: dict[str, Any] = field(default_factory=dict)

    def validate(self) -> list[str]:
        errors = super().validate()
        if not self.action:
            errors.append(f"Step '{self.name}': action steps require 'action' field")
        return errors


@dataclass
class CodemodStep(Step):
    codemod: str = ""
    files: list[str] = field(default_factory=list)
    parameters: dict[str, Any] = field(default_factory=dict)
    backup: bool = False

    def validate(self) -> list[str]:
        errors = super().validate()
        if not self.codemod:
            errors.append(f"Step '{self.name}': codemod steps require 'codemod' field")
        if not self.files:
            errors.append(f"Step '{self.name}': codemod steps require at least one entry in 'files'")
        return errors


@dataclass
class RecipeStep(Step):
    recipe: str = ""
    inherit_variables: bool = True
    variable_overrides: dict[str, Any] = field(default_factory=dict)

    def validate(self) -> list[str]:
        errors = super().validate()
        if not self.recipe:
            errors.append(f"Step '{self.name}': recipe steps require 'recipe' field")
        return errors


@dataclass
class ShellStep(Step):
    command: str = ""
    cwd: str | None = None

    def validate(self) -> list[str]:
        errors = super().validate()
        if not self.command:
            errors.append(f"Step '{self.name}': shell steps require 'command' field")
        elif not self.command.strip():
            errors.append(f"Step '{self.name}': shell command cannot be empty or whitespace")
        return errors


@dataclass
class InstallStep(Step):
    packages: list[str] = field(default_factory=list)
    dev: bool = False

    def validate(self) -> list[str]:
        errors = super().validate()
        if not self.packages:
            errors.append(f"Step '{self.name}': install steps require at least one package")
        elif not all(isinstance(p, str) and p.strip() for p in self.packages):
            errors.append(f"Step '{self.name}': packages must be non-empty strings")
        return errors


QUERY_FORMATS = ("json", "yaml", "toml", "env")


@dataclass
class QueryStep(Step):
    file: str = ""
    format: str | None = None  # detected from the extension when omitted
    checks: list[dict[str, Any]] = field(default_factory=list)
    expression: str | None = None
    output: str | None = None  # variable receiving the expression value

    def validate(self) -> list[str]:
        errors = super().validate()
        if not self.file:
            errors.append(f"Step '{self.name}': query steps require 'file' field")
        if not self.checks and not self.expression:
            errors.append(f"Step '{self.name}': query steps require 'checks' or 'expression'")
        if self.format is not None and self.format not in QUERY_FORMATS:
            errors.append(f"Step '{self.name}': format must be one of {', '.join(QUERY_FORMATS)}")
        for check in self.checks:
            if not isinstance(check, dict) or not check.get("path"):
                errors.append(f"Step '{self.name}': each check requires a 'path'")
        return errors


@dataclass
class PatchStep(Step):
    file: str = ""
    merge: dict[str, Any] = field(default_factory=dict)
    format: str | None = None
    create_if_missing: bool = True

    def validate(self) -> list[str]:
        errors = super().validate()
        if not self.file:
            errors.append(f"Step '{self.name}': patch steps require 'file' field")
        if not isinstance(self.merge, dict) or not self.merge:
            errors.append(f"Step '{self.name}': patch steps require a non-empty 'merge' mapping")
        if self.format is not None and self.format not in ("json", "yaml"):
            errors.append(f"Step '{self.name}': patch format must be 'json' or 'yaml'")
        return errors


@dataclass
class EnsureDirsStep(Step):
    paths: list[str] = field(default_factory=list)

    def validate(self) -> list[str]:
        errors = super().validate()
        if not isinstance(self.paths, list) or not self.paths:
            errors.append(f"Step '{self.name}': ensure-dirs steps require a non-empty 'paths' list")
        elif not all(isinstance(p, str) and p for p in self.paths):
            errors.append(f"Step '{self.name}': every entry in 'paths' must be a non-empty string")
        return errors


PROMPT_TYPES = ("input", "confirm", "select", "multiselect", "password")


@dataclass
class PromptStep(Step):
    variable: str = ""
    prompt_type: str = "input"
    message: str = ""
    options: list[Any] = field(default_factory=list)
    default: Any = None

    def validate(self) -> list[str]:
        errors = super().validate()
        if not self.variable:
            errors.append(f"Step '{self.name}': prompt steps require 'variable' field")
        if self.prompt_type not in PROMPT_TYPES:
            errors.append(f"Step '{self.name}': prompt_type must be one of {', '.join(PROMPT_TYPES)}")
        if self.prompt_type in ("select", "multiselect") and not self.options:
            errors.append(f"Step '{self.name}': {self.prompt_type} prompts require 'options'")
        return errors


AI_OUTPUT_TYPES = ("variable", "file", "inject", "stdout")


@dataclass
class AiOutput:
    """Where an AI step writes its answer."""

    type: str = "variable"
    variable: str | None = None
    to: str | None = None
    inject_into: str | None = None
    after: str | None = None
    before: str | None = None
    at: str | None = None  # "start" or "end"

    def validate(self, step_name: str) -> list[str]:
        errors = []
        if self.type not in AI_OUTPUT_TYPES:
            errors.append(f"Step '{step_name}': output.type must be one of {', '.join(AI_OUTPUT_TYPES)}")
        elif self.type == "variable" and not self.variable:
            errors.append(f"Step '{step_name}': output.variable is required for variable output")
        elif self.type == "file" and not self.to:
            errors.append(f"Step '{step_name}': output.to is required for file output")
        elif self.type == "inject" and not self.inject_into:
            errors.append(f"Step '{step_name}': output.inject_into is required for inject output")
        return errors


OVERFLOW_POLICIES = ("truncate", "error", "skip")


@dataclass
class ContextConfig:
    """What material to gather alongside an AI request."""

    include: list[str] = field(default_factory=list)
    files: list[str] = field(default_factory=list)  # glob patterns
    project_config: bool | list[str] = False
    from_steps: list[str] = field(default_factory=list)
    max_context_tokens: int = 8000
    overflow: str = "truncate"

    def validate(self, step_name: str) -> list[str]:
        errors = []
        if self.max_context_tokens <= 0:
            errors.append(f"Step '{step_name}': context.max_context_tokens must be positive")
        if self.overflow not in OVERFLOW_POLICIES:
            errors.append(f"Step '{step_name}': context.overflow must be one of {', '.join(OVERFLOW_POLICIES)}")
        return errors


GUARDRAIL_SYNTAXES = ("json", "yaml", "python")


@dataclass
class OutputGuardrails:
    """Checks an AI answer must pass before it is used."""

    syntax: str | None = None
    max_length: int | None = None
    pattern: str | None = None  # regex the answer must contain a match for
    allowed_imports: list[str] | None = None
    blocked_imports: list[str] = field(default_factory=list)

    def validate(self, step_name: str) -> list[str]:
        errors = []
        if self.syntax is not None and self.syntax not in GUARDRAIL_SYNTAXES:
            errors.append(f"Step '{step_name}': guardrails.syntax must be one of {', '.join(GUARDRAIL_SYNTAXES)}")
        if self.max_length is not None and self.max_length <= 0:
            errors.append(f"Step '{step_name}': guardrails.max_length must be positive")
        if self.pattern is not None:
            try:
                re.compile(self.pattern)
            except re.error as e:
                errors.append(f"Step '{step_name}': guardrails.pattern is not a valid regex: {e}")
        return errors


@dataclass
class AiStep(Step):
    prompt: str = ""
    key: str | None = None  # defaults to the step name
    output: AiOutput = field(default_factory=AiOutput)
    context: ContextConfig | None = None
    guardrails: OutputGuardrails | None = None
    output_description: str = ""
    examples: list[str] = field(default_factory=list)
    temperature: float | None = None
    max_tokens: int | None = None
    model: str | None = None

    @property
    def ask_key(self) -> str:
        return self.key or self.name

    def validate(self) -> list[str]:
        errors = super().validate()
        if not self.prompt:
            errors.append(f"Step '{self.name}': ai steps require 'prompt' field")
        errors.extend(self.output.validate(self.name))
        if self.context is not None:
            errors.extend(self.context.validate(self.name))
        if self.guardrails is not None:
            errors.extend(self.guardrails.validate(self.name))
        if self.temperature is not None and not 0 <= self.temperature <= 2:
            errors.append(f"Step '{self.name}': temperature must be between 0 and 2")
        if self.max_tokens is not None and self.max_tokens <= 0:
            errors.append(f"Step '{self.name}': max_tokens must be positive")
        return errors


@dataclass
class SequenceStep(Step):
    steps: list[Step] = field(default_factory=list)

    def validate(self) -> list[str]:
        errors = super().validate()
        if not self.steps:
            kind = self.kind.value if self.kind else "sequence"
            errors.append(f"Step '{self.name}': {kind} steps require a non-empty 'steps' list")
        return errors

    def children(self) -> list[Step]:
        return list(self.steps)


@dataclass
class ParallelStep(SequenceStep):
    pass


@dataclass
class ConditionalStep(Step):
    condition: str = ""
    then_steps: list[Step] = field(default_factory=list)
    else_steps: list[Step] = field(default_factory=list)

    def validate(self) -> list[str]:
        errors = super().validate()
        if not self.condition:
            errors.append(f"Step '{self.name}': conditional steps require 'condition' field")
        if not self.then_steps and not self.else_steps:
            errors.append(f"Step '{self.name}': conditional steps require 'then' or 'else' steps")
        return errors

    def children(self) -> list[Step]:
        return [*self.then_steps, *self.else_steps]


STEP_TYPES: dict[ToolKind, type[Step]] = {
    ToolKind.TEMPLATE: TemplateStep,
    ToolKind.ACTION: ActionStep,
    ToolKind.CODEMOD: CodemodStep,
    ToolKind.RECIPE: RecipeStep,
    ToolKind.SHELL: ShellStep,
    ToolKind.INSTALL: InstallStep,
    ToolKind.QUERY: QueryStep,
    ToolKind.PATCH: PatchStep,
    ToolKind.ENSURE_DIRS: EnsureDirsStep,
    ToolKind.PROMPT: PromptStep,
    ToolKind.AI: AiStep,
    ToolKind.SEQUENCE: SequenceStep,
    ToolKind.PARALLEL: ParallelStep,
    ToolKind.CONDITIONAL: ConditionalStep,
}

# Checked in order; first match wins when 'tool' is omitted.
SHORTHAND_FIELDS: list[tuple[str, ToolKind]] = [
    ("command", ToolKind.SHELL),
    ("recipe", ToolKind.RECIPE),
    ("template", ToolKind.TEMPLATE),
    ("action", ToolKind.ACTION),
    ("codemod", ToolKind.CODEMOD),
    ("prompt_type", ToolKind.PROMPT),
    ("paths", ToolKind.ENSURE_DIRS),
    ("merge", ToolKind.PATCH),
    ("packages", ToolKind.INSTALL),
    ("then_steps", ToolKind.CONDITIONAL),
    ("steps", ToolKind.SEQUENCE),
]

KEY_ALIASES = {"then": "then_steps", "else": "else_steps"}


def _snake_case(key: str) -> str:
    key = KEY_ALIASES.get(key, key)
    return re.sub(r"(?<!^)(?=[A-Z])", "_", key).lower()


def parse_step(step_data: dict[str, Any]) -> Step:
    """Parse one step mapping into its typed variant."""
    if not isinstance(step_data, dict):
        raise ValueError(f"Step must be a mapping, got {type(step_data).__name__}")

    data = {_snake_case(k): v for k, v in step_data.items()}

    if data.get("tool") is None:
        for shorthand, kind in SHORTHAND_FIELDS:
            if shorthand in data:
                data["tool"] = kind
                break

    kind = ToolKind.parse(data.get("tool"))
    if kind is not None:
        data["tool"] = kind
    step_cls = STEP_TYPES.get(kind, Step) if kind is not None else Step

    for nested in ("steps", "then_steps", "else_steps"):
        if nested in data and isinstance(data[nested], list):
            data[nested] = [parse_step(s) for s in data[nested]]

    if step_cls is AiStep:
        output = data.get("output")
        if isinstance(output, dict):
            data["output"] = AiOutput(**{_snake_case(k): v for k, v in output.items()})
        elif isinstance(output, str):
            data["output"] = AiOutput(type="variable", variable=output)
        context = data.get("context")
        if isinstance(context, dict):
            data["context"] = ContextConfig(**{_snake_case(k): v for k, v in context.items()})
        guardrails = data.get("guardrails")
        if isinstance(guardrails, dict):
            data["guardrails"] = OutputGuardrails(**{_snake_case(k): v for k, v in guardrails.items()})

    if isinstance(data.get("depends_on"), str):
        data["depends_on"] = [data["depends_on"]]

    known = {f.name for f in dataclasses.fields(step_cls)}
    kwargs = {k: v for k, v in data.items() if k in known and k != "extra"}
    extra = {k: v for k, v in data.items() if k not in known}
    if kwargs.get("name") is None:
        kwargs["name"] = ""
    return step_cls(**kwargs, extra=extra)


@dataclass
class StepResult:
    """Outcome of one step in one run."""

    step_name: str
    tool: str | None = None
    status: StepStatus = StepStatus.PENDING
    start_time: datetime.datetime | None = None
    end_time: datetime.datetime | None = None
    retry_count: int = 0
    condition_result: bool | None = None
    output: Any = None
    variables: dict[str, Any] = field(default_factory=dict)
    files_created: list[str] = field(default_factory=list)
    files_modified: list[str] = field(default_factory=list)
    files_deleted: list[str] = field(default_factory=list)
    error: str | None = None

    @property
    def duration_ms(self) -> float | None:
        if self.start_time is None or self.end_time is None:
            return None
        return (self.end_time - self.start_time).total_seconds() * 1000

    @property
    def succeeded(self) -> bool:
        return self.status == StepStatus.COMPLETED

    def to_dict(self) -> dict[str, Any]:
        return {
            "step_name": self.step_name,
            "tool": self.tool,
            "status": self.status.value,
            "retry_count": self.retry_count,
            "duration_ms": self.duration_ms,
            "output": self.output,
            "files_created": self.files_created,
            "files_modified": self.files_modified,
            "files_deleted": self.files_deleted,
            "error": self.error,
        }


@dataclass
class Recipe:
    """A named, versioned set of generation steps plus declared variables."""

    name: str
    description: str = ""
    version: str = ""
    variables: dict[str, VariableDefinition] = field(default_factory=dict)
    steps: list[Step] = field(default_factory=list)
    dependencies: list[RecipeDependency] = field(default_factory=list)
    provides: list[str] = field(default_factory=list)
    path: Path | None = None  # source file, used to resolve relative references

    @property
    def base_dir(self) -> Path | None:
        return self.path.parent if self.path is not None else None

    @classmethod
    def from_yaml(cls, path: Path) -> "Recipe":
        """Load recipe from YAML file."""
        if not path.exists():
            raise FileNotFoundError(f"Recipe file not found: {path}")

        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f)

        if not isinstance(data, dict):
            raise ValueError("Recipe YAML must be a dictionary")

        return cls.from_dict(data, path=path)

    @classmethod
    def from_dict(cls, data: dict[str, Any], path: Path | None = None) -> "Recipe":
        """Build a recipe from an already-parsed mapping."""
        steps_data = data.get("steps") or []
        if not isinstance(steps_data, list):
            raise ValueError("'steps' must be a list")

        variables_data = data.get("variables") or {}
        if not isinstance(variables_data, dict):
            raise ValueError("'variables' must be a mapping")

        variables = {}
        for var_name, definition in variables_data.items():
            if isinstance(definition, dict):
                variables[var_name] = VariableDefinition(**definition)
            else:
                # Bare value is shorthand for an optional variable with that default
                variables[var_name] = VariableDefinition(default=definition)

        dependencies = []
        for dep in data.get("dependencies") or []:
            if isinstance(dep, str):
                dependencies.append(RecipeDependency(name=dep))
            else:
                dependencies.append(RecipeDependency(**dep))

        provides = []
        for item in data.get("provides") or []:
            provides.append(item["name"] if isinstance(item, dict) else item)

        return cls(
            name=data.get("name", ""),
            description=data.get("description", ""),
            version=str(data.get("version", "")),
            variables=variables,
            steps=[parse_step(sd) for sd in steps_data],
            dependencies=dependencies,
            provides=provides,
            path=path,
        )

    def validate(self) -> list[str]:
        """Validate recipe-level fields (graph checks live in graph.build)."""
        errors = []
        if not self.name:
            errors.append("Recipe missing required field: name")
        if not self.steps:
            errors.append("Recipe must have at least one step")
        for var_name, definition in self.variables.items():
            errors.extend(definition.validate(var_name))
        return errors

    def get_step(self, step_name: str) -> Step | None:
        """Find a top-level step by name."""
        for step in self.steps:
            if step.name == step_name:
                return step
        return None
