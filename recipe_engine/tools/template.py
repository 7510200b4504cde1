"""Template rendering steps (Jinja2)."""

import fnmatch
import logging
from pathlib import Path
from typing import Any

import jinja2

from ..models import Step
from ..models import TemplateStep
from ..models import ToolKind
from .base import StepContext
from .base import Tool
from .base import ToolResult
from .base import ToolValidation

logger = logging.getLogger(__name__)

TEMPLATE_SUFFIX = ".jinja"


def make_environment(context: StepContext, source: str) -> jinja2.Environment:
    """
    Jinja environment bound to the run's AI coordinator.

    ``ai(key, prompt, output=, examples=, context=)`` asks for a generated value;
    ``context`` is a string or list of strings sent with that request only.
    ``ai_context(text)`` adds context shared by every request and renders
    as nothing.
    """
    env = jinja2.Environment(
        autoescape=False,
        keep_trailing_newline=True,
        undefined=jinja2.StrictUndefined,
    )

    coordinator = context.ai
    if coordinator is not None:

        def ai(
            key: str,
            prompt: str,
            output: str = "",
            examples: list[str] | None = None,
            context: str | list[str] | None = None,
        ) -> str:
            contexts = [context] if isinstance(context, str) else list(context or [])
            return coordinator.ask(
                key,
                prompt,
                contexts=[str(text) for text in contexts],
                output_description=output,
                examples=examples,
                source=source,
            )

        def ai_context(text: str) -> str:
            coordinator.add_global_context(str(text).strip())
            return ""

        env.globals["ai"] = ai
        env.globals["ai_context"] = ai_context
    return env


def render_string(text: str, variables: dict[str, Any], context: StepContext, source: str = "<string>") -> str:
    """Render a template string, wrapping Jinja errors in ValueError."""
    try:
        return make_environment(context, source).from_string(text).render(**variables)
    except jinja2.TemplateError as e:
        raise ValueError(f"Template rendering error in {source}: {e}") from e


class TemplateTool(Tool):
    """Renders a template file, or a directory of ``*.jinja`` files, to disk."""

    kind = ToolKind.TEMPLATE
    step_type = TemplateStep
    backoff = False

    def locate(self, step: TemplateStep, context: StepContext) -> Path | None:
        for base in (context.recipe_dir, context.project_root):
            candidate = Path(step.template)
            if not candidate.is_absolute():
                candidate = base / candidate
            if candidate.exists():
                return candidate
        return None

    async def validate(self, step: Step, context: StepContext) -> ToolValidation:
        result = await super().validate(step, context)
        if result.is_valid and self.locate(step, context) is None:
            result.errors.append(f"Step '{step.name}': template not found: {step.template}")
        return result

    def plan_outputs(self, step: TemplateStep, source: Path, context: StepContext) -> list[tuple[Path, str]]:
        """Pairs of (template file, destination path template)."""
        if source.is_file():
            if step.to:
                destination = step.to
            else:
                destination = str(Path(step.output_dir or ".") / source.name.removesuffix(TEMPLATE_SUFFIX))
            return [(source, destination)]

        pairs = []
        for path in sorted(p for p in source.rglob("*") if p.is_file()):
            relative = path.relative_to(source).as_posix()
            if any(fnmatch.fnmatch(relative, pattern) for pattern in step.exclude):
                continue
            destination = Path(step.output_dir or ".") / relative.removesuffix(TEMPLATE_SUFFIX)
            pairs.append((path, str(destination)))
        return pairs

    async def execute(self, step: TemplateStep, context: StepContext) -> ToolResult:
        source = self.locate(step, context)
        if source is None:
            raise FileNotFoundError(f"Template not found: {step.template}")

        variables = {**context.variables, **step.variables}
        result = ToolResult()
        rendered_files = []
        skipped = []

        for template_path, destination_template in self.plan_outputs(step, source, context):
            label = str(template_path)
            destination = context.resolve_path(render_string(destination_template, variables, context, label))
            content = render_string(template_path.read_text(encoding="utf-8"), variables, context, label)

            existed = destination.exists()
            if existed and not (step.overwrite or context.config.force):
                skipped.append(context.relative(destination))
                continue

            if not context.dry_run:
                destination.parent.mkdir(parents=True, exist_ok=True)
                destination.write_text(content, encoding="utf-8")

            rel = context.relative(destination)
            rendered_files.append(rel)
            (result.files_modified if existed else result.files_created).append(rel)

        if skipped:
            logger.info(f"Step '{step.name}': skipped existing files: {', '.join(skipped)}")

        result.output = {"template": str(source), "files": rendered_files, "skipped": skipped}
        return result
