"""Engine configuration dataclasses."""

from dataclasses import dataclass
from dataclasses import field
from pathlib import Path
from typing import Any

import yaml

AI_MODES = ("auto", "api", "command", "stdout", "off")
AI_PROVIDERS = ("anthropic", "openai")
COMMAND_MODES = ("batched", "per-block")


@dataclass
class RecursionConfig:
    """Recursion protection for sub-recipe composition."""

    max_depth: int = 5  # configurable 1-20
    max_total_steps: int = 100  # configurable 1-1000

    def validate(self) -> list[str]:
        """Validate recursion config."""
        errors = []
        if not 1 <= self.max_depth <= 20:
            errors.append(f"recursion.max_depth must be 1-20, got {self.max_depth}")
        if not 1 <= self.max_total_steps <= 1000:
            errors.append(f"recursion.max_total_steps must be 1-1000, got {self.max_total_steps}")
        return errors


@dataclass
class RetryConfig:
    """Backoff between retry attempts of network-bound steps."""

    initial_delay_ms: int = 1000
    max_delay_ms: int = 30000
    multiplier: float = 2.0
    jitter: float = 0.25  # +/- fraction applied to each delay

    def validate(self) -> list[str]:
        """Validate backoff configuration."""
        errors = []
        if self.initial_delay_ms < 0:
            errors.append(f"retry.initial_delay_ms must be >= 0, got {self.initial_delay_ms}")
        if self.max_delay_ms < self.initial_delay_ms:
            errors.append(
                f"retry.max_delay_ms must be >= initial_delay_ms, "
                f"got {self.max_delay_ms} < {self.initial_delay_ms}"
            )
        if self.multiplier < 1.0:
            errors.append(f"retry.multiplier must be >= 1.0, got {self.multiplier}")
        if not 0.0 <= self.jitter < 1.0:
            errors.append(f"retry.jitter must be in [0, 1), got {self.jitter}")
        return errors

    def delay_ms(self, attempt: int) -> float:
        """Un-jittered delay before the retry that follows ``attempt``."""
        return min(self.initial_delay_ms * (self.multiplier**attempt), self.max_delay_ms)


@dataclass
class CacheConfig:
    """Recipe cache settings."""

    enabled: bool = True
    ttl_ms: int = 300_000
    cleanup_interval_ms: int | None = None  # None disables the background sweep

    def validate(self) -> list[str]:
        errors = []
        if self.ttl_ms <= 0:
            errors.append(f"cache.ttl_ms must be positive, got {self.ttl_ms}")
        if self.cleanup_interval_ms is not None and self.cleanup_interval_ms <= 0:
            errors.append(f"cache.cleanup_interval_ms must be positive, got {self.cleanup_interval_ms}")
        return errors


@dataclass
class AiConfig:
    """AI transport and two-pass settings."""

    mode: str = "auto"
    provider: str | None = None
    model: str | None = None
    api_key: str | None = None  # literal key or "$ENV_VAR" reference
    base_url: str | None = None
    command: str | None = None
    command_mode: str = "batched"
    temperature: float = 0.2
    max_tokens: int = 4096
    timeout_s: float = 300.0
    prompt_template: str | None = None
    answers_path: str = "./ai-answers.json"
    original_command: str = "recipe-engine run"
    collect: bool = True  # run a dry collect pass before the real one
    guardrail_retries: int = 1  # follow-up requests when answers fail their guardrails

    def validate(self) -> list[str]:
        """Validate AI configuration."""
        errors = []
        if self.mode not in AI_MODES:
            errors.append(f"ai.mode must be one of {', '.join(AI_MODES)}, got '{self.mode}'")
        if self.provider is not None and self.provider not in AI_PROVIDERS:
            errors.append(f"ai.provider must be one of {', '.join(AI_PROVIDERS)}, got '{self.provider}'")
        if self.command_mode not in COMMAND_MODES:
            errors.append(f"ai.command_mode must be one of {', '.join(COMMAND_MODES)}, got '{self.command_mode}'")
        if not 0 <= self.temperature <= 2:
            errors.append(f"ai.temperature must be between 0 and 2, got {self.temperature}")
        if self.max_tokens <= 0:
            errors.append(f"ai.max_tokens must be positive, got {self.max_tokens}")
        if self.timeout_s <= 0:
            errors.append(f"ai.timeout_s must be positive, got {self.timeout_s}")
        if self.guardrail_retries < 0:
            errors.append(f"ai.guardrail_retries must be >= 0, got {self.guardrail_retries}")
        return errors


@dataclass
class EngineConfig:
    """Top-level engine configuration."""

    max_parallel_steps: int = 10
    default_timeout_ms: int | None = None
    default_retries: int = 0
    continue_on_error: bool = False
    dry_run: bool = False
    force: bool = False
    non_interactive: bool = True
    working_dir: Path | None = None
    install_command: str = "{python} -m pip install {packages}"
    cache: CacheConfig = field(default_factory=CacheConfig)
    ai: AiConfig = field(default_factory=AiConfig)
    retry: RetryConfig = field(default_factory=RetryConfig)
    recursion: RecursionConfig = field(default_factory=RecursionConfig)

    def validate(self) -> list[str]:
        """Validate engine configuration, including nested sections."""
        errors = []
        if self.max_parallel_steps < 1:
            errors.append(f"max_parallel_steps must be >= 1, got {self.max_parallel_steps}")
        if self.default_timeout_ms is not None and self.default_timeout_ms <= 0:
            errors.append(f"default_timeout_ms must be positive, got {self.default_timeout_ms}")
        if self.default_retries < 0:
            errors.append(f"default_retries must be >= 0, got {self.default_retries}")
        errors.extend(self.cache.validate())
        errors.extend(self.ai.validate())
        errors.extend(self.retry.validate())
        errors.extend(self.recursion.validate())
        return errors

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "EngineConfig":
        """Build config from a plain mapping (e.g. parsed YAML)."""
        data = dict(data)
        nested = {
            "cache": CacheConfig,
            "ai": AiConfig,
            "retry": RetryConfig,
            "recursion": RecursionConfig,
        }
        for key, config_cls in nested.items():
            if key in data and isinstance(data[key], dict):
                data[key] = config_cls(**data[key])
        if data.get("working_dir") is not None:
            data["working_dir"] = Path(data["working_dir"])
        return cls(**data)

    @classmethod
    def from_yaml(cls, path: Path) -> "EngineConfig":
        """Load engine config from a YAML file."""
        if not path.exists():
            raise FileNotFoundError(f"Config file not found: {path}")

        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}

        if not isinstance(data, dict):
            raise ValueError("Config YAML must be a dictionary")

        return cls.from_dict(data)
