"""Delivery of the consolidated AI prompt.

Every transport answers with one of two states: ``Resolved`` (answers are
available now, so the engine can run pass 2 in-process) or ``Deferred``
(the prompt was handed to the operator; re-run later with an answers file).
"""

import asyncio
import logging
import os
import shlex
import sys
from abc import ABC
from abc import abstractmethod
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import TextIO

import httpx

from ..config import AiConfig
from ..errors import AiTransportError
from ..tools.shell import run_command
from .answers import extract_json_object
from .answers import parse_json_response
from .collector import AiCoordinator
from .collector import AiEntry

logger = logging.getLogger(__name__)

DEFERRED_EXIT_CODE = 2

API_KEY_ENV = {
    "anthropic": "ANTHROPIC_API_KEY",
    "openai": "OPENAI_API_KEY",
}
DEFAULT_BASE_URLS = {
    "anthropic": "https://api.anthropic.com",
    "openai": "https://api.openai.com",
}
DEFAULT_MODELS = {
    "anthropic": "claude-3-5-sonnet-latest",
    "openai": "gpt-4o-mini",
}
ANTHROPIC_VERSION = "2023-06-01"


@dataclass
class Resolved:
    answers: dict[str, str]


@dataclass
class Deferred:
    prompt: str
    exit_code: int = DEFERRED_EXIT_CODE


TransportResult = Resolved | Deferred


def system_prompt(keys: list[str]) -> str:
    """Instructions sent with every consolidated request."""
    return (
        "You generate source code fragments for a code generator. "
        "Answer every prompt in the request. Respond with ONLY a JSON object, no prose, "
        f"with exactly these keys: {', '.join(keys)}. Every value must be a string."
    )


class Transport(ABC):
    name: str

    @abstractmethod
    async def resolve(self, coordinator: AiCoordinator, prompt: str) -> TransportResult:
        """Deliver ``prompt`` for the coordinator's entries."""


class StdoutTransport(Transport):
    """Prints the prompt and defers to whoever invoked the engine."""

    name = "stdout"

    def __init__(self, stream: TextIO | None = None):
        self.stream = stream

    async def resolve(self, coordinator: AiCoordinator, prompt: str) -> Deferred:
        stream = self.stream or sys.stdout
        stream.write(prompt)
        if not prompt.endswith("\n"):
            stream.write("\n")
        stream.flush()
        return Deferred(prompt=prompt)


class ApiTransport(Transport):
    """Calls a model provider over HTTP and parses its JSON reply."""

    name = "api"

    def __init__(
        self,
        config: AiConfig,
        api_key: str,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        if config.provider not in API_KEY_ENV:
            raise AiTransportError(f"Unsupported AI provider: {config.provider}")
        self.config = config
        self.api_key = api_key
        self._transport = transport

    @property
    def base_url(self) -> str:
        return (self.config.base_url or DEFAULT_BASE_URLS[self.config.provider]).rstrip("/")

    @property
    def model(self) -> str:
        return self.config.model or DEFAULT_MODELS[self.config.provider]

    def _request(self, system: str, prompt: str) -> tuple[str, dict[str, str], dict[str, object]]:
        if self.config.provider == "anthropic":
            headers = {"x-api-key": self.api_key, "anthropic-version": ANTHROPIC_VERSION}
            body: dict[str, object] = {
                "model": self.model,
                "max_tokens": self.config.max_tokens,
                "temperature": self.config.temperature,
                "system": system,
                "messages": [{"role": "user", "content": prompt}],
            }
            return f"{self.base_url}/v1/messages", headers, body

        headers = {"Authorization": f"Bearer {self.api_key}"}
        body = {
            "model": self.model,
            "max_tokens": self.config.max_tokens,
            "temperature": self.config.temperature,
            "messages": [
                {"role": "system", "content": system},
                {"role": "user", "content": prompt},
            ],
        }
        return f"{self.base_url}/v1/chat/completions", headers, body

    @staticmethod
    def _response_text(provider: str, payload: object) -> str:
        if not isinstance(payload, dict):
            raise AiTransportError("AI provider response is not an object")
        if provider == "anthropic":
            blocks = payload.get("content")
            if not isinstance(blocks, list):
                raise AiTransportError("AI provider response missing content")
            return "".join(b.get("text", "") for b in blocks if isinstance(b, dict) and b.get("type") == "text")
        choices = payload.get("choices")
        if not isinstance(choices, list) or not choices or not isinstance(choices[0], dict):
            raise AiTransportError("AI provider response missing choices")
        message = choices[0].get("message") or {}
        content = message.get("content") if isinstance(message, dict) else None
        if not isinstance(content, str):
            raise AiTransportError("AI provider response message missing content")
        return content

    async def complete(self, system: str, prompt: str) -> str:
        url, headers, body = self._request(system, prompt)
        try:
            async with httpx.AsyncClient(timeout=self.config.timeout_s, transport=self._transport) as client:
                response = await client.post(url, json=body, headers=headers)
                response.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise AiTransportError(
                f"AI provider returned HTTP {e.response.status_code}: {e.response.text[:200]}"
            ) from e
        except httpx.HTTPError as e:
            raise AiTransportError(f"AI provider request failed: {e}") from e
        return self._response_text(self.config.provider, response.json())

    async def resolve(self, coordinator: AiCoordinator, prompt: str) -> Resolved:
        keys = coordinator.keys
        logger.info(f"Requesting {len(keys)} AI answer(s) from {self.config.provider} ({self.model})")
        text = await self.complete(system_prompt(keys), prompt)
        return Resolved(answers=parse_json_response(text, keys))


class CommandTransport(Transport):
    """Pipes prompts through an external command.

    If the command contains ``{prompt}``, the shell-quoted prompt is
    substituted in; otherwise the prompt is written to the command's stdin.
    In ``batched`` mode one call answers every key; in ``per-block`` mode
    the command is run once per entry and its stdout is the answer.
    """

    name = "command"

    def __init__(self, config: AiConfig, cwd: Path | None = None):
        if not config.command:
            raise AiTransportError("AI mode 'command' requires a command")
        self.config = config
        self.cwd = cwd or Path.cwd()

    async def run(self, prompt: str) -> str:
        command = self.config.command
        stdin: str | None = prompt
        if "{prompt}" in command:
            command = command.replace("{prompt}", shlex.quote(prompt))
            stdin = None

        try:
            result = await run_command(command, self.cwd, stdin=stdin, timeout=self.config.timeout_s)
        except asyncio.TimeoutError as e:
            raise AiTransportError(f"Command timed out after {self.config.timeout_s}s") from e
        except OSError as e:
            raise AiTransportError(f"Command could not be started: {e}") from e

        if result.exit_code != 0:
            raise AiTransportError(f"Command failed (exit {result.exit_code}): {result.stderr.strip()}")
        return result.stdout

    @staticmethod
    def entry_prompt(entry: AiEntry) -> str:
        parts = [*entry.contexts, entry.prompt]
        if entry.output_description:
            parts.append(f"Expected output format: {entry.output_description}")
        parts.append("Respond with only the requested output, no commentary.")
        return "\n\n".join(parts)

    async def resolve(self, coordinator: AiCoordinator, prompt: str) -> Resolved:
        if self.config.command_mode == "per-block":
            answers = {}
            for entry in coordinator.get_entries():
                answers[entry.key] = (await self.run(self.entry_prompt(entry))).strip()
            return Resolved(answers=answers)

        keys = coordinator.keys
        output = await self.run(f"{system_prompt(keys)}\n\n{prompt}")
        return Resolved(answers=parse_json_response(extract_json_object(output), keys))


def resolve_api_key(config: AiConfig, env: Mapping[str, str] | None = None) -> str | None:
    """Find the API key: explicit value, ``$VAR`` reference, or provider env var."""
    env = os.environ if env is None else env
    if config.api_key:
        if config.api_key.startswith("$"):
            return env.get(config.api_key[1:]) or None
        return config.api_key
    if config.provider in API_KEY_ENV:
        return env.get(API_KEY_ENV[config.provider]) or None
    return None


def resolve_transport(
    config: AiConfig,
    *,
    env: Mapping[str, str] | None = None,
    stream: TextIO | None = None,
    http_transport: httpx.AsyncBaseTransport | None = None,
    cwd: Path | None = None,
) -> Transport:
    """
    Pick the transport for ``config.mode``.

    ``auto`` prefers the API when a provider and key are available, then a
    configured command, then stdout. ``off`` behaves like ``stdout``.

    Raises:
        AiTransportError: If an explicit mode lacks what it needs
    """
    mode = config.mode
    if mode in ("stdout", "off"):
        return StdoutTransport(stream)

    if mode == "api":
        if not config.provider:
            raise AiTransportError("AI mode 'api' requires a provider")
        api_key = resolve_api_key(config, env)
        if not api_key:
            env_name = config.api_key or API_KEY_ENV.get(config.provider, "an API key")
            raise AiTransportError(f"AI mode 'api' requires an API key (set {env_name})")
        return ApiTransport(config, api_key, transport=http_transport)

    if mode == "command":
        return CommandTransport(config, cwd=cwd)

    if mode == "auto":
        if config.provider:
            api_key = resolve_api_key(config, env)
            if api_key:
                return ApiTransport(config, api_key, transport=http_transport)
            logger.warning(f"AI provider '{config.provider}' configured but no API key found")
        if config.command:
            return CommandTransport(config, cwd=cwd)
        return StdoutTransport(stream)

    raise AiTransportError(f"Unknown AI mode: {mode}")
