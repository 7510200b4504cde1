"""Tool lookup by step kind."""

import logging
from collections.abc import Callable
from pathlib import Path

from ..errors import ToolNotFoundError
from ..models import Recipe
from ..models import ToolKind
from .action import ActionRegistry
from .action import ActionTool
from .ai import AiTool
from .base import Tool
from .codemod import CodemodTool
from .control import ConditionalTool
from .control import ParallelTool
from .control import SequenceTool
from .ensure_dirs import EnsureDirsTool
from .install import InstallTool
from .patch import PatchTool
from .prompt import Prompter
from .prompt import PromptTool
from .query import QueryTool
from .recipe import RecipeTool
from .shell import ShellTool
from .template import TemplateTool

logger = logging.getLogger(__name__)


class ToolRegistry:
    """Maps each ``ToolKind`` to the tool that implements it."""

    def __init__(self, tools: list[Tool] | None = None):
        self._tools: dict[ToolKind, Tool] = {}
        for tool in tools or []:
            self.register(tool)

    def register(self, tool: Tool) -> None:
        if tool.kind in self._tools:
            logger.debug(f"Replacing tool for kind '{tool.kind.value}'")
        self._tools[tool.kind] = tool

    def get(self, kind: ToolKind | str | None) -> Tool:
        """
        Return the tool for ``kind``.

        Raises:
            ToolNotFoundError: If no tool is registered for the kind (code UNKNOWN_TOOL)
        """
        parsed = ToolKind.parse(kind)
        if parsed is None or parsed not in self._tools:
            raise ToolNotFoundError(str(kind.value if isinstance(kind, ToolKind) else kind))
        return self._tools[parsed]

    def __contains__(self, kind: ToolKind | str) -> bool:
        parsed = ToolKind.parse(kind)
        return parsed is not None and parsed in self._tools

    @property
    def kinds(self) -> list[ToolKind]:
        return list(self._tools)


def default_registry(
    *,
    actions: ActionRegistry | None = None,
    prompter: Prompter | None = None,
    recipe_loader: Callable[[Path], Recipe] | None = None,
) -> ToolRegistry:
    """Registry with every built-in tool."""
    return ToolRegistry(
        [
            TemplateTool(),
            ActionTool(actions),
            CodemodTool(),
            RecipeTool(recipe_loader),
            ShellTool(),
            InstallTool(),
            QueryTool(),
            PatchTool(),
            EnsureDirsTool(),
            PromptTool(prompter),
            AiTool(),
            SequenceTool(),
            ParallelTool(),
            ConditionalTool(),
        ]
    )
