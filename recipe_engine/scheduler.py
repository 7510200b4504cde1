"""Turn a validated dependency graph into ordered execution batches."""

import logging
from collections.abc import Iterator
from dataclasses import dataclass
from dataclasses import field

from .errors import RecipeValidationError
from .errors import ValidationIssue
from .graph import CIRCULAR_DEPENDENCY
from .graph import DependencyGraph
from .models import Step

logger = logging.getLogger(__name__)


@dataclass
class ExecutionPlan:
    """Ordered batches of step names. Derived per run, never persisted."""

    batches: list[list[str]] = field(default_factory=list)

    def __iter__(self) -> Iterator[list[str]]:
        return iter(self.batches)

    def __len__(self) -> int:
        return len(self.batches)

    def batch_index(self, step_name: str) -> int:
        for index, batch in enumerate(self.batches):
            if step_name in batch:
                return index
        raise KeyError(step_name)

    @property
    def step_names(self) -> list[str]:
        return [name for batch in self.batches for name in batch]


def plan(graph: DependencyGraph) -> ExecutionPlan:
    """
    Batch steps with a frontier variant of Kahn's algorithm.

    Each round takes every step whose dependencies are all scheduled,
    in declaration order, so the same graph always yields the same plan.

    Raises:
        RecipeValidationError: If the graph contains a cycle
    """
    if graph.cycles:
        issues = [
            ValidationIssue(CIRCULAR_DEPENDENCY, f"Circular dependency detected: {' -> '.join(cycle)}", cycle[0])
            for cycle in graph.cycles
        ]
        raise RecipeValidationError(issues)

    indegree = {name: len(node.dependencies) for name, node in graph.nodes.items()}
    remaining = list(graph.nodes)
    batches: list[list[str]] = []

    while remaining:
        frontier = [name for name in remaining if indegree[name] == 0]
        if not frontier:
            # Unreachable once cycles are rejected above
            raise RecipeValidationError(
                [ValidationIssue(CIRCULAR_DEPENDENCY, f"Unresolvable dependencies: {', '.join(remaining)}")]
            )
        batches.append(frontier)
        scheduled = set(frontier)
        remaining = [name for name in remaining if name not in scheduled]
        for name in frontier:
            for dependent in graph.nodes[name].dependents:
                indegree[dependent] -= 1

    logger.debug(f"Planned {len(graph)} steps into {len(batches)} batches")
    return ExecutionPlan(batches=batches)


def split_batch(steps: list[Step], force_parallel: bool = False) -> list[list[Step]]:
    """
    Split one batch into groups that run one after another.

    Consecutive parallel-hinted steps share a group and run concurrently.
    Every other step forms a group of its own, so non-hinted steps keep
    their declaration order and act as concurrency boundaries.

    Args:
        steps: Steps of one batch, in declaration order
        force_parallel: Treat every step as hinted (``parallel`` tool)
    """
    groups: list[list[Step]] = []
    current: list[Step] = []
    for step in steps:
        if force_parallel or step.parallel:
            current.append(step)
            continue
        if current:
            groups.append(current)
            current = []
        groups.append([step])
    if current:
        groups.append(current)
    return groups
