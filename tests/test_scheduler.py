"""Tests for batch planning."""

import pytest

from recipe_engine.errors import RecipeValidationError
from recipe_engine.graph import build
from recipe_engine.models import parse_step
from recipe_engine.scheduler import plan
from recipe_engine.scheduler import split_batch


def graph_of(*raw: dict):
    graph, _ = build([parse_step(data) for data in raw])
    return graph


class TestPlan:
    """Tests for the frontier variant of Kahn's algorithm."""

    def test_diamond(self):
        """A diamond yields three batches with the middle steps together."""
        execution_plan = plan(
            graph_of(
                {"name": "A", "command": "true"},
                {"name": "B", "command": "true", "depends_on": ["A"]},
                {"name": "C", "command": "true", "depends_on": ["A"]},
                {"name": "D", "command": "true", "depends_on": ["B", "C"]},
            )
        )
        assert execution_plan.batches == [["A"], ["B", "C"], ["D"]]
        assert execution_plan.batch_index("D") == 2
        assert execution_plan.step_names == ["A", "B", "C", "D"]

    def test_dependencies_always_in_earlier_batches(self):
        """Every step sits in a strictly later batch than each of its dependencies."""
        graph = graph_of(
            {"name": "e", "command": "true", "depends_on": ["d"]},
            {"name": "a", "command": "true"},
            {"name": "d", "command": "true", "depends_on": ["b", "c"]},
            {"name": "b", "command": "true", "depends_on": ["a"]},
            {"name": "c", "command": "true"},
        )
        execution_plan = plan(graph)
        for name in graph.names:
            for dep in graph.dependencies_of(name):
                assert execution_plan.batch_index(dep) < execution_plan.batch_index(name)

    def test_independent_steps_share_first_batch(self):
        """Steps without dependencies land in batch 0 in declaration order, hinted or not."""
        execution_plan = plan(
            graph_of(
                {"name": "z", "command": "true"},
                {"name": "y", "command": "true", "parallel": True},
                {"name": "x", "command": "true"},
            )
        )
        assert execution_plan.batches == [["z", "y", "x"]]

    def test_deterministic(self):
        """The same graph always yields the same plan."""
        raw = [
            {"name": "a", "command": "true"},
            {"name": "b", "command": "true", "depends_on": ["a"]},
            {"name": "c", "command": "true"},
        ]
        plans = {tuple(map(tuple, plan(graph_of(*raw)).batches)) for _ in range(5)}
        assert len(plans) == 1

    def test_cycle_rejected(self):
        """Planning a cyclic graph raises with the cycle named."""
        graph = graph_of(
            {"name": "a", "command": "true", "depends_on": ["b"]},
            {"name": "b", "command": "true", "depends_on": ["a"]},
        )
        with pytest.raises(RecipeValidationError, match="Circular dependency detected: a -> b -> a"):
            plan(graph)


class TestSplitBatch:
    """Tests for grouping a batch into concurrent runs."""

    def test_hinted_steps_group_together(self):
        """Consecutive hinted steps share a group; others stand alone."""
        batch = [
            parse_step({"name": "a", "command": "true", "parallel": True}),
            parse_step({"name": "b", "command": "true", "parallel": True}),
            parse_step({"name": "c", "command": "true"}),
            parse_step({"name": "d", "command": "true", "parallel": True}),
        ]
        groups = split_batch(batch)
        assert [[s.name for s in g] for g in groups] == [["a", "b"], ["c"], ["d"]]

    def test_force_parallel(self):
        """force_parallel puts the whole batch in one group."""
        batch = [parse_step({"name": n, "command": "true"}) for n in ("a", "b", "c")]
        assert [[s.name for s in g] for g in split_batch(batch, force_parallel=True)] == [["a", "b", "c"]]
