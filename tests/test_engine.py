"""End-to-end tests for RecipeEngine."""

import pytest

from recipe_engine.config import EngineConfig
from recipe_engine.config import RecursionConfig
from recipe_engine.engine import RecipeExecutionResult
from recipe_engine.engine import truncate_value
from recipe_engine.errors import RecipeValidationError
from recipe_engine.models import Recipe
from recipe_engine.models import StepStatus

SERVICE_RECIPE = """
name: service
version: 1.0.0
variables:
  name:
    type: string
    required: true
steps:
  - name: dirs
    paths: ["src/{{name}}"]
  - name: model
    template: templates/model.py.jinja
    to: "src/{{ name }}/model.py"
    depends_on: [dirs]
  - name: check
    command: "test -f src/{{name}}/model.py"
    depends_on: [model]
"""


@pytest.fixture
def service_recipe(temp_dir, write_recipe):
    (temp_dir / "templates").mkdir()
    (temp_dir / "templates" / "model.py.jinja").write_text("class {{ name | capitalize }}:\n    pass\n")
    return write_recipe("service", SERVICE_RECIPE)


class TestExecute:
    """Tests for RecipeEngine.execute."""

    @pytest.mark.asyncio
    async def test_full_run(self, make_engine, service_recipe, temp_dir):
        """Steps run in dependency order and their files are aggregated."""
        result = await make_engine().execute(service_recipe, {"name": "shop"}, working_dir=temp_dir)

        assert result.success
        assert result.status == "completed"
        assert result.exit_code == 0
        assert result.completed_steps == 3
        assert result.files_created == ["src/shop/model.py"]
        assert (temp_dir / "src" / "shop" / "model.py").read_text() == "class Shop:\n    pass\n"
        assert result.step_results["check"].status == StepStatus.COMPLETED
        assert result.metrics["total_steps"] == 3
        assert result.metrics["batches"] == 3
        assert result.metrics["max_concurrent_steps"] == 1
        assert set(result.metrics["step_durations_ms"]) == {"dirs", "model", "check"}
        assert result.summary()["metrics"] == result.metrics

    @pytest.mark.asyncio
    async def test_dry_run_writes_nothing(self, make_engine, service_recipe, temp_dir):
        result = await make_engine().execute(service_recipe, {"name": "shop"}, dry_run=True, working_dir=temp_dir)

        assert result.success
        assert not (temp_dir / "src").exists()

    @pytest.mark.asyncio
    async def test_missing_required_variable(self, make_engine, service_recipe, temp_dir):
        """Nothing runs when required variables are missing."""
        with pytest.raises(RecipeValidationError, match="Missing required variables: name"):
            await make_engine().execute(service_recipe, working_dir=temp_dir)

        assert not (temp_dir / "src").exists()

    @pytest.mark.asyncio
    async def test_invalid_recipe_is_rejected_before_running(self, make_engine, temp_dir):
        """Every structural problem is reported and no step starts."""
        recipe = {
            "name": "broken",
            "steps": [
                {"name": "a", "command": "touch a.txt"},
                {"name": "a", "command": "touch b.txt"},
                {"name": "c", "tool": "teleport", "depends_on": ["ghost"]},
            ],
        }

        with pytest.raises(RecipeValidationError) as exc_info:
            await make_engine().execute(recipe, working_dir=temp_dir)

        assert exc_info.value.codes == ["DUPLICATE_STEP_NAME", "INVALID_TOOL", "UNKNOWN_DEPENDENCY"]
        assert not (temp_dir / "a.txt").exists()

    @pytest.mark.asyncio
    async def test_failure_stops_the_run(self, make_engine, temp_dir):
        recipe = {
            "name": "failing",
            "steps": [
                {"name": "boom", "command": "exit 7"},
                {"name": "after", "command": "touch after.txt"},
            ],
        }

        result = await make_engine().execute(recipe, working_dir=temp_dir)

        assert not result.success
        assert result.status == "failed"
        assert result.exit_code == 1
        assert result.failed_steps == 1
        assert result.step_results["after"].status == StepStatus.PENDING
        assert "command failed with exit code 7" in result.errors[0]
        assert not (temp_dir / "after.txt").exists()

    @pytest.mark.asyncio
    async def test_broken_guard_fails_only_its_step(self, make_engine, temp_dir):
        """A guard that errors at runtime fails its step and obeys continue_on_error."""
        recipe = {
            "name": "guarded",
            "steps": [
                {"name": "a", "command": "touch a.txt", "when": "len(items) > 0", "continue_on_error": True},
                {"name": "b", "command": "touch b.txt"},
            ],
        }

        result = await make_engine().execute(recipe, working_dir=temp_dir)

        assert result.success
        assert result.step_results["a"].status == StepStatus.FAILED
        assert "condition error: len() failed" in result.step_results["a"].error
        assert result.step_results["b"].status == StepStatus.COMPLETED
        assert not (temp_dir / "a.txt").exists()
        assert (temp_dir / "b.txt").exists()

    @pytest.mark.asyncio
    async def test_provides(self, make_engine, temp_dir):
        """Only declared provided values are reported."""
        recipe = {
            "name": "slug",
            "provides": [{"name": "slug"}],
            "steps": [
                {"name": "ask", "prompt_type": "input", "variable": "slug", "default": "my-shop"},
                {"name": "other", "prompt_type": "input", "variable": "internal", "default": "x"},
            ],
        }

        result = await make_engine().execute(recipe, working_dir=temp_dir)

        assert result.provided_values == {"slug": "my-shop"}
        assert result.variables["internal"] == "x"

    @pytest.mark.asyncio
    async def test_control_flow(self, make_engine, write_recipe, temp_dir):
        path = write_recipe(
            "control",
            """
name: control
variables:
  use_db:
    type: boolean
    default: false
steps:
  - name: storage
    condition: use_db
    then:
      - name: db
        paths: [db]
    else:
      - name: files
        paths: [storage]
  - name: layout
    tool: parallel
    steps:
      - name: a
        paths: [a]
      - name: b
        paths: [b]
""",
        )

        result = await make_engine().execute(path, working_dir=temp_dir)

        assert result.success
        assert (temp_dir / "storage").is_dir()
        assert not (temp_dir / "db").exists()
        assert (temp_dir / "a").is_dir() and (temp_dir / "b").is_dir()
        assert result.step_results["storage"].output["branch"] == "else"

    @pytest.mark.asyncio
    async def test_sub_recipe(self, make_engine, temp_dir):
        """A sub-recipe resolves next to its parent and exports only what it provides."""
        recipes = temp_dir / "recipes"
        recipes.mkdir()
        (recipes / "child.yaml").write_text(
            """
name: child
variables:
  name:
    type: string
    required: true
provides: [greeting]
steps:
  - name: dirs
    paths: ["{{name}}/lib"]
  - name: ask
    prompt_type: input
    variable: greeting
    default: hello
  - name: secret
    prompt_type: input
    variable: internal
    default: hidden
"""
        )
        (recipes / "parent.yaml").write_text(
            """
name: parent
variables:
  project:
    default: shop
steps:
  - name: child
    recipe: child.yaml
    variable_overrides:
      name: "{{project}}"
  - name: use
    command: "echo {{greeting}} > greeting.txt"
    depends_on: [child]
"""
        )

        result = await make_engine().execute(recipes / "parent.yaml", working_dir=temp_dir)

        assert result.success, result.errors
        assert (temp_dir / "shop" / "lib").is_dir()
        assert (temp_dir / "greeting.txt").read_text() == "hello\n"
        assert result.step_results["child"].variables == {"greeting": "hello"}
        assert "internal" not in result.variables
        assert result.step_results["child"].output["recipe"] == "child"

    @pytest.mark.asyncio
    async def test_recursion_depth_limit(self, make_engine, write_recipe, temp_dir):
        """A recipe that includes itself stops at the configured depth."""
        path = write_recipe("loop", "name: loop\nsteps:\n  - name: again\n    recipe: loop.yaml\n")
        engine = make_engine(EngineConfig(recursion=RecursionConfig(max_depth=2)))

        result = await engine.execute(path, working_dir=temp_dir)

        assert not result.success
        assert "Recipe recursion depth 2 exceeds limit 2. Stack: loop -> loop -> loop -> loop" in result.errors[0]

    @pytest.mark.asyncio
    async def test_accepts_recipe_objects(self, make_engine, temp_dir):
        recipe = Recipe.from_dict({"name": "r", "steps": [{"name": "d", "paths": ["out"]}]})

        result = await make_engine().execute(recipe, working_dir=temp_dir)

        assert result.success
        assert (temp_dir / "out").is_dir()

    def test_invalid_config(self, make_engine):
        with pytest.raises(ValueError, match="Invalid engine configuration: max_parallel_steps must be >= 1"):
            make_engine(EngineConfig(max_parallel_steps=0))


class TestValidate:
    """Tests for RecipeEngine.validate."""

    @pytest.mark.asyncio
    async def test_valid_recipe(self, make_engine, service_recipe, temp_dir):
        result = await make_engine().validate(service_recipe, working_dir=temp_dir)

        assert result.is_valid
        assert result.errors == []

    @pytest.mark.asyncio
    async def test_tool_checks_are_included(self, make_engine, temp_dir):
        """Per-tool validation (here a missing template) is reported with the graph checks."""
        recipe = {
            "name": "r",
            "steps": [
                {"name": "t", "template": "missing.jinja"},
                {"name": "u", "command": "true", "depends_on": ["nope"]},
            ],
        }

        result = await make_engine().validate(recipe, working_dir=temp_dir)

        assert not result.is_valid
        assert [issue.code for issue in result.errors] == ["UNKNOWN_DEPENDENCY", "TOOL_VALIDATION"]
        assert result.errors[1].step == "t"

    @pytest.mark.asyncio
    async def test_is_repeatable(self, make_engine, temp_dir):
        recipe = {"name": "", "steps": []}
        engine = make_engine()

        first = await engine.validate(recipe, working_dir=temp_dir)
        second = await engine.validate(recipe, working_dir=temp_dir)

        assert first.messages == second.messages
        assert first.messages == [
            "[INVALID_RECIPE] Recipe missing required field: name",
            "[INVALID_RECIPE] Recipe must have at least one step",
        ]


class TestResultSummary:
    """Tests for result summaries and value truncation."""

    def test_summary(self):
        result = RecipeExecutionResult(
            success=True,
            status="completed",
            recipe="r",
            completed_steps=2,
            provided_values={"big": "x" * 20_000, "small": "ok"},
        )

        summary = result.summary()

        assert summary["steps"] == {"completed": 2, "failed": 0, "skipped": 0}
        assert summary["provided_values"]["small"] == "ok"
        assert summary["provided_values"]["big"].endswith("[... truncated]")
        assert not result.deferred

    def test_truncate_value(self):
        big = {"items": ["x" * 100] * 200}
        truncated = truncate_value(big)

        assert truncated["_truncated"] is True
        assert truncated["_type"] == "dict"
        assert len(truncated["_preview"]) == 503
        assert truncate_value({"a": 1}) == {"a": 1}
        assert truncate_value(42) == 42
