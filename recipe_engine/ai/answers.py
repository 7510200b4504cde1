"""Parsing of AI answers: pass-2 answer files and provider responses."""

import json
import re
from collections.abc import Mapping
from pathlib import Path
from typing import Any

from ..errors import AiTransportError
from ..errors import AnswersFileError
from ..errors import MissingAnswersError

FENCE_PATTERN = re.compile(r"^```(?:json)?\s*(.*?)\s*```$", re.DOTALL)


def load_answers(source: str | Path | Mapping[str, Any]) -> dict[str, Any]:
    """
    Load pass-2 answers from a mapping or a JSON file.

    Raises:
        AnswersFileError: If the file cannot be read, is not valid JSON (the
            decoder message is included verbatim), or is not a JSON object
    """
    if isinstance(source, Mapping):
        return dict(source)

    path = Path(source)
    try:
        content = path.read_text(encoding="utf-8")
    except OSError as e:
        raise AnswersFileError(f"Failed to load answers file: {e}") from e

    try:
        data = json.loads(content)
    except json.JSONDecodeError as e:
        raise AnswersFileError(f"Failed to parse answers file {path}: {e}") from e

    if not isinstance(data, dict):
        raise AnswersFileError(f"Answers file {path} must contain a JSON object, got {type(data).__name__}")
    return data


def strip_code_fences(text: str) -> str:
    stripped = text.strip()
    match = FENCE_PATTERN.match(stripped)
    return match.group(1) if match else stripped


def coerce_answers(data: dict[str, Any]) -> dict[str, str]:
    """Serialize non-string values so every answer is text."""
    return {key: value if isinstance(value, str) else json.dumps(value) for key, value in data.items()}


def parse_json_response(text: str, expected_keys: list[str]) -> dict[str, str]:
    """
    Parse a provider's JSON reply and check it covers every expected key.

    Args:
        text: Raw response text, optionally wrapped in a ```json fence
        expected_keys: Keys that must be present

    Returns:
        Mapping of key to answer text (extra keys are kept)

    Raises:
        AiTransportError: If the text is not a JSON object
        MissingAnswersError: If expected keys are absent
    """
    body = strip_code_fences(text)
    try:
        data = json.loads(body)
    except json.JSONDecodeError as e:
        raise AiTransportError(
            f"Failed to parse JSON response from AI provider. Response starts with: {text[:200]}"
        ) from e

    if not isinstance(data, dict):
        raise AiTransportError(f"AI provider response must be a JSON object, got {type(data).__name__}")

    missing = [key for key in expected_keys if key not in data]
    if missing:
        raise MissingAnswersError(missing, prefix="AI response")

    return coerce_answers(data)


def extract_json_object(text: str) -> str:
    """Slice from the first ``{`` to the last ``}`` (command output often has chatter)."""
    start = text.find("{")
    end = text.rfind("}")
    if start == -1 or end < start:
        return text
    return text[start : end + 1]
