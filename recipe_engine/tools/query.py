"""Query steps: read structured project files and export values."""

import json
import logging
import tomllib
from pathlib import Path
from typing import Any

import yaml

from ..expression_evaluator import evaluate_expression
from ..models import QueryStep
from ..models import Step
from ..models import ToolKind
from .base import StepContext
from .base import Tool
from .base import ToolResult
from .base import ToolValidation

logger = logging.getLogger(__name__)

_MISSING = object()


def detect_format(path: str) -> str | None:
    """Guess a file format from its name."""
    name = Path(path).name
    suffix = Path(path).suffix.lower()
    if suffix == ".json":
        return "json"
    if suffix in (".yaml", ".yml"):
        return "yaml"
    if suffix == ".toml":
        return "toml"
    if name == ".env" or name.startswith(".env.") or suffix == ".env":
        return "env"
    return None


def parse_env(content: str) -> dict[str, str]:
    """Parse ``KEY=VALUE`` lines, ignoring comments and blank lines."""
    result = {}
    for line in content.splitlines():
        line = line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, value = line.split("=", 1)
        key = key.strip().removeprefix("export ").strip()
        value = value.strip()
        if len(value) >= 2 and value[0] == value[-1] and value[0] in ("'", '"'):
            value = value[1:-1]
        result[key] = value
    return result


def parse_content(content: str, fmt: str) -> Any:
    if fmt == "json":
        return json.loads(content)
    if fmt == "yaml":
        return yaml.safe_load(content)
    if fmt == "toml":
        return tomllib.loads(content)
    if fmt == "env":
        return parse_env(content)
    raise ValueError(f"Unsupported format: {fmt}")


def resolve_dot_path(data: Any, dot_path: str) -> Any:
    """Walk ``a.b.c`` through nested mappings; ``_MISSING`` if any segment is absent."""
    current = data
    for segment in dot_path.split("."):
        if not isinstance(current, dict) or segment not in current:
            return _MISSING
        current = current[segment]
    return current


class QueryTool(Tool):
    """Reads json/yaml/toml/env files and exports values as variables.

    Each check is ``{path, export?, export_exists?}``; ``expression`` is
    evaluated with the parsed file bound to ``data``.
    """

    kind = ToolKind.QUERY
    step_type = QueryStep
    backoff = False

    async def validate(self, step: Step, context: StepContext) -> ToolValidation:
        result = await super().validate(step, context)
        if not result.is_valid:
            return result
        if step.format is None and detect_format(step.file) is None:
            result.errors.append(f"Step '{step.name}': cannot detect format for '{step.file}', set 'format'")
        for index, check in enumerate(step.checks):
            if not any(check.get(k) for k in ("export", "export_exists", "exportExists")):
                result.warnings.append(f"Step '{step.name}': check {index} exports nothing, result is discarded")
        return result

    async def execute(self, step: QueryStep, context: StepContext) -> ToolResult:
        path = context.resolve_path(step.file)
        fmt = step.format or detect_format(step.file)
        if fmt is None:
            raise ValueError(f"Cannot detect format for '{step.file}'. Specify 'format' explicitly.")
        if not path.is_file():
            raise FileNotFoundError(f"File not found: {step.file}")

        data = parse_content(path.read_text(encoding="utf-8"), fmt)
        variables: dict[str, Any] = {}
        checks = []

        for check in step.checks:
            value = resolve_dot_path(data, check["path"])
            exists = value is not _MISSING
            value = None if value is _MISSING else value
            checks.append({"path": check["path"], "exists": exists, "value": value})
            if check.get("export"):
                variables[check["export"]] = value
            export_exists = check.get("export_exists") or check.get("exportExists")
            if export_exists:
                variables[export_exists] = exists and value is not None and value is not False

        output: dict[str, Any] = {"file": step.file, "format": fmt, "checks": checks}
        if step.expression:
            output["expression"] = step.expression
            output["value"] = evaluate_expression(step.expression, {**context.variables, "data": data})
            if step.output:
                variables[step.output] = output["value"]

        logger.debug(f"Step '{step.name}': exported {', '.join(variables) or 'nothing'}")
        return ToolResult(output=output, variables=variables)
