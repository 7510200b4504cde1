"""Assemble collected AI entries into one consolidated prompt."""

import json
from pathlib import Path

import jinja2

from ..errors import AiTransportError
from .collector import AiCoordinator
from .collector import AiEntry

DEFAULT_ANSWERS_PATH = "./ai-answers.json"


def response_skeleton(entries: list[AiEntry]) -> str:
    """JSON object showing every expected key."""
    skeleton = {
        entry.key: "<see format above>" if entry.output_description else "<your answer>" for entry in entries
    }
    return json.dumps(skeleton, indent=2)


class PromptAssembler:
    """Renders the consolidated markdown request.

    A custom Jinja2 template can replace the built-in layout. It receives
    ``entries``, ``global_contexts``, ``response_format``, ``original_command``
    and ``answers_path``.
    """

    def __init__(self, prompt_template: str | Path | None = None):
        self.prompt_template = Path(prompt_template) if prompt_template else None

    def assemble(
        self,
        coordinator: AiCoordinator,
        original_command: str = "recipe-engine run",
        answers_path: str = DEFAULT_ANSWERS_PATH,
    ) -> str:
        entries = coordinator.get_entries()
        if self.prompt_template is not None:
            return self._render_custom(coordinator, entries, original_command, answers_path)

        lines = [
            "# AI Generation Request",
            "",
            f"The command `{original_command}` needs {len(entries)} generated value(s). "
            "Answer every prompt below.",
            "",
        ]

        per_key = [entry for entry in entries if entry.contexts]
        if coordinator.global_contexts or per_key:
            lines += ["## Context", ""]
            if coordinator.global_contexts:
                lines += ["### Global Context", ""]
                for text in coordinator.global_contexts:
                    lines += [text, ""]
            for entry in per_key:
                lines += [f"### Context for `{entry.key}`", ""]
                for text in entry.contexts:
                    lines += [text, ""]

        lines += ["## Prompts", ""]
        for entry in entries:
            lines += [f"### `{entry.key}`", ""]
            if entry.source:
                lines += [f"_Requested by: {entry.source}_", ""]
            lines += [entry.prompt.strip(), ""]
            if entry.output_description:
                lines += [f"**Expected output format:** {entry.output_description}", ""]
            if entry.type_hint:
                lines += [f"**Type:** {entry.type_hint}", ""]
            if entry.examples:
                lines += ["**Examples:**", ""]
                for example in entry.examples:
                    lines += ["```", example, "```", ""]

        lines += [
            "## Response Format",
            "",
            "Respond with a single JSON object whose keys are exactly the prompt keys above "
            "and whose values are strings:",
            "",
            "```json",
            response_skeleton(entries),
            "```",
            "",
            "## Instructions",
            "",
            f"Save the JSON object to `{answers_path}`, then run:",
            "",
            "```",
            f"{original_command} --answers {answers_path}",
            "```",
            "",
        ]
        return "\n".join(lines)

    def _render_custom(
        self,
        coordinator: AiCoordinator,
        entries: list[AiEntry],
        original_command: str,
        answers_path: str,
    ) -> str:
        if not self.prompt_template.is_file():
            raise AiTransportError(f"Custom prompt template not found: {self.prompt_template}")
        try:
            template = jinja2.Environment(autoescape=False).from_string(
                self.prompt_template.read_text(encoding="utf-8")
            )
            return template.render(
                entries=entries,
                global_contexts=coordinator.global_contexts,
                response_format=response_skeleton(entries),
                original_command=original_command,
                answers_path=answers_path,
            )
        except jinja2.TemplateError as e:
            raise AiTransportError(f"Custom prompt template error: {e}") from e
