"""Run-scoped collection of AI requests for the two-pass protocol.

Pass 1 (collect mode): every ``ask`` registers an entry and returns a
deterministic placeholder. Pass 2 (apply mode): ``ask`` returns the supplied
answer for its key; a key without an answer is recorded as missing and the
ask raises, so the asking step fails before it writes anything.

One coordinator is created per engine run and handed to tools through the
step context. Nothing here is process-wide.
"""

import logging
import threading
from dataclasses import dataclass
from dataclasses import field
from typing import Any

from ..errors import MissingAnswersError
from ..models import OutputGuardrails

logger = logging.getLogger(__name__)


@dataclass
class AiEntry:
    """One pending request for the AI."""

    key: str
    prompt: str
    contexts: list[str] = field(default_factory=list)
    output_description: str = ""
    type_hint: str | None = None
    examples: list[str] = field(default_factory=list)
    source: str | None = None  # step or template that asked
    guardrails: OutputGuardrails | None = None


def placeholder(key: str) -> str:
    """Stand-in text rendered in place of an unresolved answer."""
    return f"__ai_{key}__"


class AiCoordinator:
    """Collects AI entries and hands out answers for one run.

    The entries map is the one piece of state shared by concurrently running
    steps, so every mutation happens under a lock.
    """

    def __init__(self, collect_mode: bool = False, answers: dict[str, Any] | None = None):
        self.collect_mode = collect_mode
        self.answers: dict[str, Any] = dict(answers or {})
        self.global_contexts: list[str] = []
        self._entries: dict[str, AiEntry] = {}
        self._missing: list[str] = []
        self._lock = threading.Lock()

    @classmethod
    def collecting(cls) -> "AiCoordinator":
        return cls(collect_mode=True)

    @classmethod
    def applying(cls, answers: dict[str, Any]) -> "AiCoordinator":
        return cls(collect_mode=False, answers=answers)

    def add_global_context(self, text: str) -> None:
        """Context shared by every request; repeats of the same text are kept once."""
        with self._lock:
            if text not in self.global_contexts:
                self.global_contexts.append(text)

    def add_entry(self, entry: AiEntry) -> None:
        with self._lock:
            if entry.key in self._entries:
                previous = self._entries[entry.key].source
                logger.warning(f"Duplicate AI key '{entry.key}', replacing entry from {previous}")
            self._entries[entry.key] = entry

    def ask(
        self,
        key: str,
        prompt: str,
        *,
        contexts: list[str] | None = None,
        output_description: str = "",
        type_hint: str | None = None,
        examples: list[str] | None = None,
        source: str | None = None,
        guardrails: OutputGuardrails | None = None,
    ) -> str:
        """
        Register a request and return either its answer or a placeholder.

        Args:
            key: Stable identifier, unique within the run
            prompt: Natural-language instruction
            contexts: Context snippets to send alongside the prompt
            output_description: Shape of the expected answer
            type_hint: Optional language or format hint
            examples: Worked examples of good answers
            source: Provenance, e.g. the step name or template path
            guardrails: Checks the answer must pass

        Returns:
            The answer text in apply mode, otherwise ``placeholder(key)``

        Raises:
            MissingAnswersError: In apply mode, when ``key`` has no answer
        """
        self.add_entry(
            AiEntry(
                key=key,
                prompt=prompt,
                contexts=list(contexts or []),
                output_description=output_description,
                type_hint=type_hint,
                examples=list(examples or []),
                source=source,
                guardrails=guardrails,
            )
        )
        if self.collect_mode:
            return placeholder(key)

        if key in self.answers:
            return str(self.answers[key])

        with self._lock:
            if key not in self._missing:
                self._missing.append(key)
        raise MissingAnswersError([key])

    def has_entries(self) -> bool:
        with self._lock:
            return bool(self._entries)

    def get_entries(self) -> list[AiEntry]:
        with self._lock:
            return list(self._entries.values())

    @property
    def keys(self) -> list[str]:
        with self._lock:
            return list(self._entries)

    def missing_keys(self) -> list[str]:
        with self._lock:
            return list(self._missing)

    def require_answers(self) -> None:
        """Raise if any key asked during apply mode had no answer."""
        missing = self.missing_keys()
        if missing:
            raise MissingAnswersError(missing)

    def clear(self) -> None:
        """Drop all entries and answers and leave collect mode."""
        with self._lock:
            self._entries.clear()
            self._missing.clear()
            self.global_contexts.clear()
            self.answers.clear()
            self.collect_mode = False
