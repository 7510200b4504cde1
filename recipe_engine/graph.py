"""Dependency graph construction and structural validation."""

import logging
from dataclasses import dataclass
from dataclasses import field

from .errors import ValidationIssue
from .models import Step
from .models import ToolKind

logger = logging.getLogger(__name__)

MISSING_NAME = "MISSING_NAME"
DUPLICATE_STEP_NAME = "DUPLICATE_STEP_NAME"
MISSING_TOOL = "MISSING_TOOL"
INVALID_TOOL = "INVALID_TOOL"
UNKNOWN_DEPENDENCY = "UNKNOWN_DEPENDENCY"
CIRCULAR_DEPENDENCY = "CIRCULAR_DEPENDENCY"


@dataclass
class GraphNode:
    """One step plus its resolved edges."""

    step: Step
    index: int
    dependencies: list[str] = field(default_factory=list)
    dependents: list[str] = field(default_factory=list)

    @property
    def name(self) -> str:
        return self.step.name

    @property
    def parallel(self) -> bool:
        return bool(self.step.parallel)


@dataclass
class DependencyGraph:
    """Steps keyed by name, in declaration order."""

    nodes: dict[str, GraphNode] = field(default_factory=dict)
    cycles: list[list[str]] = field(default_factory=list)

    def __contains__(self, name: str) -> bool:
        return name in self.nodes

    def __len__(self) -> int:
        return len(self.nodes)

    @property
    def names(self) -> list[str]:
        return list(self.nodes)

    def step(self, name: str) -> Step:
        return self.nodes[name].step

    def dependencies_of(self, name: str) -> list[str]:
        return list(self.nodes[name].dependencies)

    def dependents_of(self, name: str) -> list[str]:
        return list(self.nodes[name].dependents)


def build(steps: list[Step]) -> tuple[DependencyGraph, list[ValidationIssue]]:
    """
    Build a dependency graph and collect every structural problem.

    Validation is exhaustive: all issues across all steps are returned
    together rather than stopping at the first.

    Args:
        steps: Steps in declaration order

    Returns:
        Tuple of (graph, issues). The graph only contains steps with a usable
        name and only edges to steps that exist.
    """
    graph = DependencyGraph()
    issues: list[ValidationIssue] = []

    for index, step in enumerate(steps):
        if not step.name or not str(step.name).strip():
            issues.append(ValidationIssue(MISSING_NAME, f"Step at index {index} is missing a name"))
        elif step.name in graph.nodes:
            issues.append(
                ValidationIssue(DUPLICATE_STEP_NAME, f"Duplicate step name: '{step.name}'", step=step.name)
            )
        else:
            graph.nodes[step.name] = GraphNode(step=step, index=index)

        label = step.name or f"#{index}"
        if step.tool is None or step.tool == "":
            issues.append(ValidationIssue(MISSING_TOOL, f"Step '{label}' is missing a tool", step=step.name or None))
        elif ToolKind.parse(step.tool) is None:
            issues.append(
                ValidationIssue(INVALID_TOOL, f"Step '{label}' has unknown tool '{step.tool}'", step=step.name or None)
            )

    for index, step in enumerate(steps):
        node = graph.nodes.get(step.name)
        owns_node = node is not None and node.index == index
        for dep in step.depends_on:
            if dep not in graph.nodes:
                issues.append(
                    ValidationIssue(
                        UNKNOWN_DEPENDENCY,
                        f"Step '{step.name or f'#{index}'}' depends on unknown step '{dep}'",
                        step=step.name or None,
                    )
                )
            elif owns_node and dep not in node.dependencies:
                node.dependencies.append(dep)
                graph.nodes[dep].dependents.append(step.name)

    graph.cycles = _find_cycles(graph)
    for cycle in graph.cycles:
        issues.append(
            ValidationIssue(
                CIRCULAR_DEPENDENCY,
                f"Circular dependency detected: {' -> '.join(cycle)}",
                step=cycle[0],
            )
        )

    if issues:
        logger.debug(f"Dependency graph has {len(issues)} issue(s)")
    return graph, issues


def _find_cycles(graph: DependencyGraph) -> list[list[str]]:
    """Depth-first walk reporting each back-edge as a named cycle."""
    visited: set[str] = set()
    visiting: set[str] = set()
    path: list[str] = []
    cycles: list[list[str]] = []
    seen: set[frozenset[str]] = set()

    def visit(name: str) -> None:
        visiting.add(name)
        path.append(name)
        for dep in graph.nodes[name].dependencies:
            if dep in visiting:
                cycle = [*path[path.index(dep) :], dep]
                members = frozenset(cycle)
                if members not in seen:
                    seen.add(members)
                    cycles.append(cycle)
            elif dep not in visited:
                visit(dep)
        path.pop()
        visiting.discard(name)
        visited.add(name)

    for name in graph.nodes:
        if name not in visited:
            visit(name)
    return cycles
