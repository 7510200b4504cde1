"""Shell command steps."""

import asyncio
import logging
import os
from dataclasses import dataclass
from pathlib import Path

from ..models import ShellStep
from ..models import Step
from ..models import ToolKind
from ..variables import substitute_variables
from .base import StepContext
from .base import Tool
from .base import ToolResult
from .base import ToolValidation

logger = logging.getLogger(__name__)


@dataclass
class CommandResult:
    """Result of a shell command execution."""

    stdout: str
    stderr: str
    exit_code: int


async def run_command(
    command: str,
    cwd: Path,
    env: dict[str, str] | None = None,
    stdin: str | None = None,
    timeout: float | None = None,
) -> CommandResult:
    """
    Run ``command`` through the shell and capture its output.

    The child process is killed if the timeout expires or the awaiting task
    is cancelled, so no orphaned processes outlive the step.

    Raises:
        asyncio.TimeoutError: If ``timeout`` seconds pass first
        OSError: If the shell cannot be started
    """
    process = await asyncio.create_subprocess_shell(
        command,
        stdin=asyncio.subprocess.PIPE if stdin is not None else asyncio.subprocess.DEVNULL,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
        cwd=str(cwd),
        env=env,
    )
    try:
        stdout_bytes, stderr_bytes = await asyncio.wait_for(
            process.communicate(stdin.encode("utf-8") if stdin is not None else None),
            timeout=timeout,
        )
    except (asyncio.TimeoutError, asyncio.CancelledError):
        if process.returncode is None:
            process.kill()
            await process.wait()
        raise

    return CommandResult(
        stdout=stdout_bytes.decode("utf-8", errors="replace"),
        stderr=stderr_bytes.decode("utf-8", errors="replace"),
        exit_code=process.returncode or 0,
    )


class ShellTool(Tool):
    """Runs a shell command in the project (or a step-specific) directory."""

    kind = ToolKind.SHELL
    step_type = ShellStep

    async def validate(self, step: Step, context: StepContext) -> ToolValidation:
        result = await super().validate(step, context)
        if result.is_valid and step.cwd and "{{" not in step.cwd:
            cwd = context.resolve_path(step.cwd)
            if not cwd.is_dir() and not context.dry_run:
                result.errors.append(f"Step '{step.name}': cwd does not exist: {cwd}")
        return result

    async def execute(self, step: ShellStep, context: StepContext) -> ToolResult:
        command = substitute_variables(step.command, context.variables)
        cwd = context.project_root
        if step.cwd:
            cwd = context.resolve_path(substitute_variables(step.cwd, context.variables))

        if context.dry_run:
            logger.info(f"[dry run] Would run in {cwd}: {command}")
            return ToolResult(output={"command": command, "cwd": str(cwd), "dry_run": True})

        env = os.environ.copy()
        for key, value in step.env.items():
            env[key] = substitute_variables(str(value), context.variables)

        logger.debug(f"Step '{step.name}': running {command!r} in {cwd}")
        try:
            result = await run_command(command, cwd, env=env)
        except OSError as e:
            raise ValueError(f"Step '{step.name}': failed to execute command: {e}") from e

        output = {"command": command, "stdout": result.stdout, "stderr": result.stderr, "exit_code": result.exit_code}
        if result.exit_code != 0:
            error_msg = f"Step '{step.name}': command failed with exit code {result.exit_code}"
            if result.stderr.strip():
                error_msg += f"\nstderr: {result.stderr.strip()}"
            return ToolResult(success=False, output=output, error=error_msg)

        return ToolResult(output=output)
