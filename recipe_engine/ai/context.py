"""Budget-limited gathering of context for AI requests."""

import json
import logging
import math
from collections.abc import Mapping
from dataclasses import dataclass
from dataclasses import field
from pathlib import Path

from ..errors import ContextBudgetExceededError
from ..models import ContextConfig
from ..models import StepResult

logger = logging.getLogger(__name__)

TRUNCATION_MARKER = "\n... [truncated]"
# Below this many remaining tokens a truncated excerpt is not worth including
MIN_TRUNCATED_TOKENS = 100

PROJECT_CONFIG_FILES: dict[str, list[str]] = {
    "pyproject": ["pyproject.toml"],
    "setup.cfg": ["setup.cfg"],
    "package.json": ["package.json"],
    "tsconfig": ["tsconfig.json", "tsconfig.build.json"],
    "editorconfig": [".editorconfig"],
}


def estimate_tokens(text: str) -> int:
    """Rough token count: one token per four characters."""
    return math.ceil(len(text) / 4)


@dataclass
class ContextBundle:
    files: dict[str, str] = field(default_factory=dict)
    configs: dict[str, str] = field(default_factory=dict)
    step_outputs: dict[str, str] = field(default_factory=dict)
    estimated_tokens: int = 0
    truncated: bool = False

    def is_empty(self) -> bool:
        return not (self.files or self.configs or self.step_outputs)

    def render(self) -> list[str]:
        """One text snippet per gathered item, suitable for ``AiEntry.contexts``."""
        snippets = []
        for name, content in self.configs.items():
            snippets.append(f"Project config `{name}`:\n```\n{content}\n```")
        for name, content in self.step_outputs.items():
            snippets.append(f"Output of step `{name}`:\n```json\n{content}\n```")
        for name, content in self.files.items():
            snippets.append(f"File `{name}`:\n```\n{content}\n```")
        return snippets


class ContextCollector:
    """Gathers project files, configs and prior step outputs within a token budget."""

    def collect(
        self,
        config: ContextConfig,
        project_root: Path,
        step_results: Mapping[str, StepResult] | None = None,
    ) -> ContextBundle:
        """
        Build a context bundle.

        Order: project configs, prior step outputs, explicit includes, globs.
        Missing include files are skipped silently.

        Args:
            config: What to gather and the overflow policy
            project_root: Directory relative paths resolve against
            step_results: Results of steps that already ran

        Returns:
            The gathered bundle

        Raises:
            ContextBudgetExceededError: When a file overflows with ``overflow='error'``
        """
        bundle = ContextBundle()
        budget = config.max_context_tokens
        step_results = step_results or {}

        for candidates in self._config_candidates(config.project_config):
            for candidate in candidates:
                path = project_root / candidate
                if not path.is_file():
                    continue
                content = path.read_text(encoding="utf-8", errors="replace")
                tokens = estimate_tokens(content)
                if bundle.estimated_tokens + tokens > budget:
                    bundle.truncated = True
                else:
                    bundle.configs[candidate] = content
                    bundle.estimated_tokens += tokens
                break

        for step_name in config.from_steps:
            result = step_results.get(step_name)
            if result is None:
                logger.debug(f"Context step '{step_name}' has no result yet, skipping")
                continue
            content = json.dumps(result.output, indent=2, default=str)
            tokens = estimate_tokens(content)
            if bundle.estimated_tokens + tokens > budget:
                bundle.truncated = True
                continue
            bundle.step_outputs[step_name] = content
            bundle.estimated_tokens += tokens

        for include in config.include:
            path = Path(include) if Path(include).is_absolute() else project_root / include
            if not path.is_file():
                logger.debug(f"Context include not found, skipping: {include}")
                continue
            self._add_file(bundle, include, path.read_text(encoding="utf-8", errors="replace"), config)

        for pattern in config.files:
            for path in sorted(project_root.glob(pattern)):
                if not path.is_file():
                    continue
                rel = path.relative_to(project_root).as_posix()
                if rel in bundle.files:
                    continue
                self._add_file(bundle, rel, path.read_text(encoding="utf-8", errors="replace"), config)

        return bundle

    def _config_candidates(self, project_config: bool | list[str]) -> list[list[str]]:
        if project_config is True:
            return list(PROJECT_CONFIG_FILES.values())
        if not project_config:
            return []
        return [PROJECT_CONFIG_FILES.get(name, [name]) for name in project_config]

    def _add_file(self, bundle: ContextBundle, name: str, content: str, config: ContextConfig) -> None:
        budget = config.max_context_tokens
        tokens = estimate_tokens(content)
        remaining = budget - bundle.estimated_tokens

        if tokens <= remaining:
            bundle.files[name] = content
            bundle.estimated_tokens += tokens
            return

        if config.overflow == "error":
            raise ContextBudgetExceededError(bundle.estimated_tokens + tokens, budget, name)

        if config.overflow == "truncate" and remaining > MIN_TRUNCATED_TOKENS:
            bundle.files[name] = content[: remaining * 4] + TRUNCATION_MARKER
            bundle.estimated_tokens += remaining
        bundle.truncated = True
