"""Dependency installation steps."""

import logging
import os
import shlex
import sys

from ..models import InstallStep
from ..models import ToolKind
from ..variables import substitute_variables
from .base import StepContext
from .base import Tool
from .base import ToolResult
from .shell import run_command

logger = logging.getLogger(__name__)


class InstallTool(Tool):
    """Installs packages by running the configured install command.

    The command template comes from ``EngineConfig.install_command`` and may
    use ``{python}``, ``{packages}`` and ``{dev}`` placeholders.
    """

    kind = ToolKind.INSTALL
    step_type = InstallStep

    def build_command(self, step: InstallStep, context: StepContext) -> str:
        packages = [substitute_variables(p, context.variables) for p in step.packages]
        return context.config.install_command.format(
            python=shlex.quote(sys.executable),
            packages=" ".join(shlex.quote(p) for p in packages),
            dev="--dev" if step.dev else "",
        ).strip()

    async def execute(self, step: InstallStep, context: StepContext) -> ToolResult:
        command = self.build_command(step, context)

        if context.dry_run:
            logger.info(f"[dry run] Would install: {command}")
            return ToolResult(output={"command": command, "packages": step.packages, "dry_run": True})

        env = os.environ.copy()
        env.update({k: str(v) for k, v in step.env.items()})

        logger.info(f"Step '{step.name}': installing {', '.join(step.packages)}")
        result = await run_command(command, context.project_root, env=env)
        output = {"command": command, "packages": step.packages, "stdout": result.stdout, "exit_code": result.exit_code}
        if result.exit_code != 0:
            return ToolResult(
                success=False,
                output=output,
                error=f"Step '{step.name}': install failed with exit code {result.exit_code}\n{result.stderr.strip()}",
            )
        return ToolResult(output=output)
