"""Validation of AI answers against per-request guardrails.

A failed check is fed back to resolving transports as a follow-up request;
answers that still fail make the asking step fail before anything is written.
"""

import ast
import json
import logging
import re
import sys
from collections.abc import Mapping
from dataclasses import dataclass
from dataclasses import field

import yaml

from ..models import OutputGuardrails
from .collector import AiCoordinator

logger = logging.getLogger(__name__)

_IMPORT_LINE = re.compile(r"^\s*(?:from\s+([\w.]+)\s+import\b|import\s+([\w.]+(?:\s*,\s*[\w.]+)*))", re.MULTILINE)

SHORT_OUTPUT_CHARS = 10


@dataclass
class OutputValidation:
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def passed(self) -> bool:
        return not self.errors


def imported_packages(source: str) -> list[str]:
    """Top-level, non-stdlib packages imported by Python ``source``, in first-seen order."""
    seen: dict[str, None] = {}
    for match in _IMPORT_LINE.finditer(source):
        names = [match.group(1)] if match.group(1) else [n.strip() for n in match.group(2).split(",")]
        for name in names:
            package = name.split(".")[0]
            if package and package not in sys.stdlib_module_names:
                seen[package] = None
    return list(seen)


def _check_syntax(output: str, syntax: str) -> str | None:
    try:
        if syntax == "json":
            json.loads(output)
        elif syntax == "yaml":
            yaml.safe_load(output)
        elif syntax == "python":
            ast.parse(output)
    except json.JSONDecodeError as e:
        return f"JSON syntax error: {e}"
    except yaml.YAMLError as e:
        return f"YAML syntax error: {e}"
    except SyntaxError as e:
        return f"python syntax error at line {e.lineno}: {e.msg}"
    return None


def validate_output(output: str, guardrails: OutputGuardrails | None) -> OutputValidation:
    """
    Check an answer against its guardrails.

    Args:
        output: Answer text
        guardrails: Checks to apply; None accepts anything

    Returns:
        OutputValidation with every error and warning found
    """
    result = OutputValidation()
    if guardrails is None:
        return result

    if guardrails.syntax:
        error = _check_syntax(output, guardrails.syntax)
        if error:
            result.errors.append(error)

    if guardrails.allowed_imports is not None or guardrails.blocked_imports:
        for package in imported_packages(output):
            if package in guardrails.blocked_imports:
                result.errors.append(f'Blocked import: "{package}" is not allowed')
            elif guardrails.allowed_imports is not None and package not in guardrails.allowed_imports:
                allowed = ", ".join(guardrails.allowed_imports)
                result.errors.append(f'Import "{package}" is not in the allowed list: {allowed}')

    if guardrails.max_length and len(output) > guardrails.max_length:
        result.errors.append(f"Output length ({len(output)}) exceeds maximum ({guardrails.max_length})")

    if guardrails.pattern and not re.search(guardrails.pattern, output):
        result.errors.append(f"Output does not match pattern: {guardrails.pattern}")

    stripped = output.strip()
    if not stripped:
        result.errors.append("AI returned empty output")
    elif len(stripped) < SHORT_OUTPUT_CHARS:
        result.warnings.append("AI output is suspiciously short")

    logger.debug(
        f"Output validation {'passed' if result.passed else 'failed'}: "
        f"{len(result.errors)} errors, {len(result.warnings)} warnings"
    )
    return result


def build_feedback(key: str, validation: OutputValidation) -> str:
    """Follow-up instructions asking for a corrected answer to ``key``."""
    lines = [f"### `{key}`", "", "Your previous output had the following errors:"]
    lines.extend(f"- {error}" for error in validation.errors)
    lines.append("")
    lines.append("Fix these errors and regenerate. Do NOT include any explanation, only the corrected output.")
    return "\n".join(lines)


def check_answers(coordinator: AiCoordinator, answers: Mapping[str, str]) -> dict[str, OutputValidation]:
    """Failed validations for every answered entry that carries guardrails."""
    failures = {}
    for entry in coordinator.get_entries():
        if entry.guardrails is None or entry.key not in answers:
            continue
        validation = validate_output(str(answers[entry.key]), entry.guardrails)
        if not validation.passed:
            failures[entry.key] = validation
    return failures


def feedback_prompt(prompt: str, failures: Mapping[str, OutputValidation]) -> str:
    """The original request followed by a correction section per failed key."""
    sections = [build_feedback(key, validation) for key, validation in failures.items()]
    return "\n\n".join([prompt, "## Corrections Required", *sections])
