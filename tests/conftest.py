"""Shared fixtures for recipe engine tests."""

from pathlib import Path

import pytest

from recipe_engine.config import EngineConfig
from recipe_engine.engine import RecipeEngine
from recipe_engine.tools.base import StepContext


@pytest.fixture
def temp_dir(tmp_path: Path) -> Path:
    """Project root for a test."""
    return tmp_path


@pytest.fixture
def write_recipe(temp_dir: Path):
    """Write recipe YAML into the temp dir and return its path."""

    def _write(name: str, yaml_content: str) -> Path:
        recipe_path = temp_dir / f"{name}.yaml"
        recipe_path.write_text(yaml_content)
        return recipe_path

    return _write


@pytest.fixture
def make_context(temp_dir: Path):
    """Build a StepContext rooted at the temp dir."""

    def _make(variables: dict | None = None, **kwargs) -> StepContext:
        kwargs.setdefault("config", EngineConfig())
        return StepContext(variables=dict(variables or {}), project_root=temp_dir, **kwargs)

    return _make


@pytest.fixture
def make_engine():
    """Build RecipeEngines and close them after the test."""
    engines = []

    def _make(config: EngineConfig | None = None, **kwargs) -> RecipeEngine:
        engine = RecipeEngine(config, **kwargs)
        engines.append(engine)
        return engine

    yield _make
    for engine in engines:
        engine.close()
