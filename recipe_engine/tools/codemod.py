"""Codemod steps: text-level transformations of existing files."""

import logging
import re
import shutil
from collections.abc import Callable
from pathlib import Path
from typing import Any

from ..models import CodemodStep
from ..models import Step
from ..models import ToolKind
from ..variables import substitute_recursive
from .base import StepContext
from .base import Tool
from .base import ToolResult
from .base import ToolValidation

logger = logging.getLogger(__name__)

Transform = Callable[[str, dict[str, Any]], str]

IMPORT_LINE = re.compile(r"^(?:import\s|from\s\S+\s+import\s)", re.MULTILINE)


def add_import(source: str, params: dict[str, Any]) -> str:
    """Insert ``params['import']`` after the last import line, unless present."""
    line = params["import"].rstrip("\n")
    if line in source.splitlines():
        return source
    matches = list(IMPORT_LINE.finditer(source))
    if not matches:
        return f"{line}\n{source}"
    end = source.find("\n", matches[-1].start())
    if end == -1:
        return f"{source}\n{line}\n"
    return f"{source[: end + 1]}{line}\n{source[end + 1 :]}"


def add_export(source: str, params: dict[str, Any]) -> str:
    """Append ``params['export']`` unless already present."""
    line = params["export"].rstrip("\n")
    if line in source.splitlines():
        return source
    separator = "" if not source or source.endswith("\n") else "\n"
    return f"{source}{separator}{line}\n"


def replace_text(source: str, params: dict[str, Any]) -> str:
    """Replace ``find`` with ``replace``; regex when ``regex`` is true."""
    find = params["find"]
    replacement = params.get("replace", "")
    count = params.get("count", 0)
    if params.get("regex"):
        return re.sub(find, replacement, source, count=count)
    return source.replace(find, replacement, count if count else -1)


BUILTIN_TRANSFORMS: dict[str, tuple[Transform, tuple[str, ...]]] = {
    "add-import": (add_import, ("import",)),
    "add-export": (add_export, ("export",)),
    "replace-text": (replace_text, ("find",)),
}


class CodemodTool(Tool):
    """Applies a built-in or custom transform to every matched file."""

    kind = ToolKind.CODEMOD
    step_type = CodemodStep
    backoff = False

    def __init__(self, custom_transforms: dict[str, Transform] | None = None):
        self.custom_transforms = dict(custom_transforms or {})

    def register(self, name: str, transform: Transform) -> None:
        """Make ``transform`` available to ``codemod: custom`` steps as ``name``."""
        self.custom_transforms[name] = transform

    def resolve_transform(self, step: CodemodStep) -> Transform:
        if step.codemod == "custom":
            name = step.parameters.get("transform", "")
            if name not in self.custom_transforms:
                raise ValueError(f"Step '{step.name}': unknown custom transform '{name}'")
            return self.custom_transforms[name]
        return BUILTIN_TRANSFORMS[step.codemod][0]

    async def validate(self, step: Step, context: StepContext) -> ToolValidation:
        result = await super().validate(step, context)
        if not result.is_valid:
            return result
        if step.codemod == "custom":
            if step.parameters.get("transform") not in self.custom_transforms:
                result.errors.append(
                    f"Step '{step.name}': custom codemod requires a registered 'transform' parameter"
                )
        elif step.codemod not in BUILTIN_TRANSFORMS:
            known = ", ".join([*BUILTIN_TRANSFORMS, "custom"])
            result.errors.append(f"Step '{step.name}': unknown codemod '{step.codemod}'. Known: {known}")
        else:
            for required in BUILTIN_TRANSFORMS[step.codemod][1]:
                if required not in step.parameters:
                    result.errors.append(f"Step '{step.name}': codemod '{step.codemod}' requires '{required}'")
        return result

    def match_files(self, patterns: list[str], context: StepContext) -> list[Path]:
        matched: dict[Path, None] = {}
        for pattern in patterns:
            if Path(pattern).is_absolute():
                candidates = [Path(pattern)] if Path(pattern).exists() else []
            else:
                candidates = sorted(context.project_root.glob(pattern))
            for path in candidates:
                if path.is_file():
                    matched[path] = None
        return list(matched)

    async def execute(self, step: CodemodStep, context: StepContext) -> ToolResult:
        transform = self.resolve_transform(step)
        params = substitute_recursive(step.parameters, {**context.variables, **step.variables})
        patterns = substitute_recursive(step.files, context.variables)
        files = self.match_files(patterns, context)
        if not files:
            logger.warning(f"Step '{step.name}': no files matched {', '.join(patterns)}")

        result = ToolResult()
        unchanged = []
        for path in files:
            original = path.read_text(encoding="utf-8")
            updated = transform(original, params)
            rel = context.relative(path)
            if updated == original:
                unchanged.append(rel)
                continue
            if not context.dry_run:
                if step.backup:
                    backup = path.with_name(path.name + ".bak")
                    shutil.copy2(path, backup)
                    result.files_created.append(context.relative(backup))
                path.write_text(updated, encoding="utf-8")
            result.files_modified.append(rel)

        result.output = {
            "codemod": step.codemod,
            "files_processed": [context.relative(p) for p in files],
            "files_changed": list(result.files_modified),
            "unchanged": unchanged,
        }
        return result
