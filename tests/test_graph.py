"""Tests for dependency graph construction and structural validation."""

from recipe_engine.graph import CIRCULAR_DEPENDENCY
from recipe_engine.graph import DUPLICATE_STEP_NAME
from recipe_engine.graph import INVALID_TOOL
from recipe_engine.graph import MISSING_NAME
from recipe_engine.graph import MISSING_TOOL
from recipe_engine.graph import UNKNOWN_DEPENDENCY
from recipe_engine.graph import build
from recipe_engine.models import parse_step


def steps(*raw: dict):
    return [parse_step(data) for data in raw]


class TestBuild:
    """Tests for graph.build."""

    def test_valid_graph(self):
        """Edges are recorded in both directions."""
        graph, issues = build(
            steps(
                {"name": "a", "command": "true"},
                {"name": "b", "command": "true", "depends_on": ["a"]},
                {"name": "c", "command": "true", "depends_on": ["a", "b"]},
            )
        )
        assert issues == []
        assert graph.names == ["a", "b", "c"]
        assert graph.dependencies_of("c") == ["a", "b"]
        assert graph.dependents_of("a") == ["b", "c"]
        assert "b" in graph
        assert len(graph) == 3

    def test_duplicate_step_name(self):
        """Two steps sharing a name yield DUPLICATE_STEP_NAME."""
        _, issues = build(steps({"name": "build", "command": "true"}, {"name": "build", "command": "true"}))
        assert [i.code for i in issues] == [DUPLICATE_STEP_NAME]
        assert issues[0].message == "Duplicate step name: 'build'"

    def test_missing_name(self):
        """Nameless steps are reported by index."""
        _, issues = build(steps({"command": "true"}))
        assert issues[0].code == MISSING_NAME
        assert issues[0].message == "Step at index 0 is missing a name"

    def test_missing_and_invalid_tool(self):
        """Steps without a tool, or with an unknown one, are reported."""
        _, issues = build(steps({"name": "a"}, {"name": "b", "tool": "teleport"}))
        assert [i.code for i in issues] == [MISSING_TOOL, INVALID_TOOL]
        assert "unknown tool 'teleport'" in issues[1].message

    def test_unknown_dependency(self):
        """Dependencies on nonexistent steps are reported."""
        _, issues = build(steps({"name": "a", "command": "true", "depends_on": ["ghost"]}))
        assert issues[0].code == UNKNOWN_DEPENDENCY
        assert issues[0].message == "Step 'a' depends on unknown step 'ghost'"

    def test_cycle_is_named(self):
        """A two-step cycle is reported with its path."""
        _, issues = build(
            steps(
                {"name": "step1", "command": "true", "depends_on": ["step2"]},
                {"name": "step2", "command": "true", "depends_on": ["step1"]},
            )
        )
        assert [i.code for i in issues] == [CIRCULAR_DEPENDENCY]
        assert issues[0].message == "Circular dependency detected: step1 -> step2 -> step1"

    def test_self_dependency_is_cycle(self):
        """A step depending on itself is a cycle."""
        graph, issues = build(steps({"name": "loop", "command": "true", "depends_on": ["loop"]}))
        assert graph.cycles == [["loop", "loop"]]
        assert issues[0].code == CIRCULAR_DEPENDENCY

    def test_validation_is_exhaustive(self):
        """All problems across all steps are reported together."""
        _, issues = build(
            steps(
                {"name": "a", "command": "true"},
                {"name": "a", "command": "true"},
                {"name": "b", "tool": "nope"},
                {"name": "c", "command": "true", "depends_on": ["missing"]},
                {"name": "d", "command": "true", "depends_on": ["e"]},
                {"name": "e", "command": "true", "depends_on": ["d"]},
            )
        )
        codes = {i.code for i in issues}
        assert codes == {DUPLICATE_STEP_NAME, INVALID_TOOL, UNKNOWN_DEPENDENCY, CIRCULAR_DEPENDENCY}
