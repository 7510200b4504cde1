"""Patch steps: deep-merge values into json/yaml files."""

import json
import logging
from typing import Any

import yaml

from ..models import PatchStep
from ..models import Step
from ..models import ToolKind
from ..variables import substitute_recursive
from .base import StepContext
from .base import Tool
from .base import ToolResult
from .base import ToolValidation
from .query import detect_format

logger = logging.getLogger(__name__)


def deep_merge(target: dict[str, Any], source: dict[str, Any]) -> dict[str, Any]:
    """Recursively merge ``source`` into a copy of ``target``. Lists are replaced."""
    merged = dict(target)
    for key, value in source.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def dump(data: Any, fmt: str) -> str:
    if fmt == "json":
        return json.dumps(data, indent=2) + "\n"
    return yaml.safe_dump(data, sort_keys=False)


class PatchTool(Tool):
    kind = ToolKind.PATCH
    step_type = PatchStep
    backoff = False

    async def validate(self, step: Step, context: StepContext) -> ToolValidation:
        result = await super().validate(step, context)
        if result.is_valid:
            fmt = step.format or detect_format(step.file)
            if fmt not in ("json", "yaml"):
                result.errors.append(f"Step '{step.name}': can only patch json or yaml files, got '{step.file}'")
        return result

    async def execute(self, step: PatchStep, context: StepContext) -> ToolResult:
        fmt = step.format or detect_format(step.file)
        if fmt not in ("json", "yaml"):
            raise ValueError(f"Step '{step.name}': can only patch json or yaml files")

        path = context.resolve_path(step.file)
        existed = path.exists()
        if not existed and not step.create_if_missing:
            raise FileNotFoundError(f"File not found: {step.file}")

        current: Any = {}
        if existed:
            text = path.read_text(encoding="utf-8")
            current = (json.loads(text) if fmt == "json" else yaml.safe_load(text)) or {}
            if not isinstance(current, dict):
                raise ValueError(f"Step '{step.name}': {step.file} does not contain a mapping")

        merge = substitute_recursive(step.merge, {**context.variables, **step.variables})
        patched = deep_merge(current, merge)
        if existed and patched == current:
            return ToolResult(output={"file": step.file, "changed": False})

        if not context.dry_run:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(dump(patched, fmt), encoding="utf-8")

        rel = context.relative(path)
        return ToolResult(
            output={"file": step.file, "changed": True},
            files_modified=[rel] if existed else [],
            files_created=[] if existed else [rel],
        )
