"""Action steps: call a registered Python function."""

import inspect
import logging
from collections.abc import Callable
from typing import Any

from ..models import ActionStep
from ..models import Step
from ..models import ToolKind
from ..variables import substitute_recursive
from .base import StepContext
from .base import Tool
from .base import ToolResult
from .base import ToolValidation

logger = logging.getLogger(__name__)

ActionFunc = Callable[[dict[str, Any], StepContext], Any]


class ActionRegistry:
    """Maps action names to callables taking ``(parameters, context)``."""

    def __init__(self) -> None:
        self._actions: dict[str, ActionFunc] = {}

    def register(self, name: str | None = None) -> Callable[[ActionFunc], ActionFunc]:
        """Decorator registering a function under ``name`` (default: its own name)."""

        def decorator(func: ActionFunc) -> ActionFunc:
            action_name = name or func.__name__.replace("_", "-")
            if action_name in self._actions:
                logger.warning(f"Action '{action_name}' re-registered, replacing previous definition")
            self._actions[action_name] = func
            return func

        return decorator

    def get(self, name: str) -> ActionFunc | None:
        return self._actions.get(name)

    def names(self) -> list[str]:
        return sorted(self._actions)

    def __contains__(self, name: str) -> bool:
        return name in self._actions


ACTIONS = ActionRegistry()


def action(name: str | None = None) -> Callable[[ActionFunc], ActionFunc]:
    """Register a function in the process-wide action registry."""
    return ACTIONS.register(name)


def _to_tool_result(value: Any) -> ToolResult:
    if isinstance(value, ToolResult):
        return value
    if isinstance(value, dict):
        return ToolResult(
            output=value,
            variables=dict(value.get("variables", {})),
            files_created=list(value.get("files_created", [])),
            files_modified=list(value.get("files_modified", [])),
            files_deleted=list(value.get("files_deleted", [])),
        )
    return ToolResult(output=value)


class ActionTool(Tool):
    """Dispatches to functions registered with :func:`action`."""

    kind = ToolKind.ACTION
    step_type = ActionStep

    def __init__(self, registry: ActionRegistry | None = None):
        self.registry = registry or ACTIONS

    async def validate(self, step: Step, context: StepContext) -> ToolValidation:
        result = await super().validate(step, context)
        if result.is_valid and step.action not in self.registry:
            available = ", ".join(self.registry.names()) or "none"
            result.errors.append(f"Step '{step.name}': unknown action '{step.action}'. Available: {available}")
        return result

    async def execute(self, step: ActionStep, context: StepContext) -> ToolResult:
        func = self.registry.get(step.action)
        if func is None:
            raise ValueError(f"Step '{step.name}': unknown action '{step.action}'")

        parameters = substitute_recursive(step.parameters, {**context.variables, **step.variables})
        value = func(parameters, context)
        if inspect.isawaitable(value):
            value = await value
        return _to_tool_result(value)
