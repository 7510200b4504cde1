"""AI steps: ask the run's coordinator and route the answer."""

import logging
import sys

from ..ai.collector import placeholder
from ..ai.guardrails import validate_output
from ..models import AiStep
from ..models import Step
from ..models import ToolKind
from ..variables import substitute_variables
from .base import StepContext
from .base import Tool
from .base import ToolResult
from .base import ToolValidation

logger = logging.getLogger(__name__)


def inject(content: str, answer: str, after: str | None, before: str | None, at: str | None) -> str:
    """Insert ``answer`` into ``content`` relative to a marker line, or at start/end."""
    if after is not None:
        index = content.find(after)
        if index == -1:
            raise ValueError(f"Injection marker not found: {after!r}")
        line_end = content.find("\n", index)
        if line_end == -1:
            return f"{content}\n{answer}"
        return f"{content[: line_end + 1]}{answer}\n{content[line_end + 1 :]}"
    if before is not None:
        index = content.find(before)
        if index == -1:
            raise ValueError(f"Injection marker not found: {before!r}")
        line_start = content.rfind("\n", 0, index) + 1
        return f"{content[:line_start]}{answer}\n{content[line_start:]}"
    if at == "start":
        return f"{answer}\n{content}"
    separator = "" if not content or content.endswith("\n") else "\n"
    return f"{content}{separator}{answer}\n"


class AiTool(Tool):
    """Registers an AI request (pass 1) or applies its answer (pass 2)."""

    kind = ToolKind.AI
    step_type = AiStep

    async def validate(self, step: Step, context: StepContext) -> ToolValidation:
        result = await super().validate(step, context)
        if result.is_valid and step.output.type == "inject" and not context.dry_run:
            target = context.resolve_path(step.output.inject_into)
            if "{{" not in step.output.inject_into and not target.is_file():
                result.warnings.append(f"Step '{step.name}': inject target does not exist yet: {target}")
        return result

    async def execute(self, step: AiStep, context: StepContext) -> ToolResult:
        coordinator = context.ai
        if coordinator is None:
            raise ValueError(f"Step '{step.name}': ai steps need an AI coordinator in the step context")

        variables = {**context.variables, **step.variables}
        contexts: list[str] = []
        truncated = False
        if step.context is not None and context.context_collector is not None:
            bundle = context.context_collector.collect(step.context, context.project_root, context.step_results)
            contexts = bundle.render()
            truncated = bundle.truncated

        key = step.ask_key
        answer = coordinator.ask(
            key,
            substitute_variables(step.prompt, variables),
            contexts=contexts,
            output_description=step.output_description,
            examples=step.examples,
            source=f"step '{step.name}'",
            guardrails=step.guardrails,
        )

        output = {"key": key, "context_truncated": truncated}
        if coordinator.collect_mode:
            output["pending"] = True
            exported = {step.output.variable: placeholder(key)} if step.output.type == "variable" else {}
            return ToolResult(output=output, variables=exported)

        validation = validate_output(answer, step.guardrails)
        for warning in validation.warnings:
            logger.warning(f"Step '{step.name}': {warning}")
        if not validation.passed:
            raise ValueError(f"Step '{step.name}': AI output failed validation: {'; '.join(validation.errors)}")

        output["answer"] = answer
        target = step.output
        if target.type == "variable":
            return ToolResult(output=output, variables={target.variable: answer})

        if target.type == "stdout":
            sys.stdout.write(answer if answer.endswith("\n") else f"{answer}\n")
            return ToolResult(output=output)

        if target.type == "file":
            path = context.resolve_path(substitute_variables(target.to, variables))
            existed = path.exists()
            if not context.dry_run:
                path.parent.mkdir(parents=True, exist_ok=True)
                path.write_text(answer if answer.endswith("\n") else f"{answer}\n", encoding="utf-8")
            rel = context.relative(path)
            return ToolResult(
                output=output,
                files_modified=[rel] if existed else [],
                files_created=[] if existed else [rel],
            )

        path = context.resolve_path(substitute_variables(target.inject_into, variables))
        if not path.is_file():
            raise FileNotFoundError(f"Step '{step.name}': inject target not found: {path}")
        updated = inject(path.read_text(encoding="utf-8"), answer, target.after, target.before, target.at)
        if not context.dry_run:
            path.write_text(updated, encoding="utf-8")
        return ToolResult(output=output, files_modified=[context.relative(path)])
