"""Directory creation steps."""

import logging

from ..models import EnsureDirsStep
from ..models import ToolKind
from ..variables import substitute_variables
from .base import StepContext
from .base import Tool
from .base import ToolResult

logger = logging.getLogger(__name__)


class EnsureDirsTool(Tool):
    kind = ToolKind.ENSURE_DIRS
    step_type = EnsureDirsStep
    backoff = False

    async def execute(self, step: EnsureDirsStep, context: StepContext) -> ToolResult:
        created = []
        existing = []
        for raw in step.paths:
            path = context.resolve_path(substitute_variables(raw, context.variables))
            rel = context.relative(path)
            if path.is_dir():
                existing.append(rel)
                continue
            if path.exists():
                raise ValueError(f"Step '{step.name}': {rel} exists and is not a directory")
            if not context.dry_run:
                path.mkdir(parents=True, exist_ok=True)
            created.append(rel)

        if created:
            logger.debug(f"Step '{step.name}': created {', '.join(created)}")
        return ToolResult(output={"created": created, "already_existed": existing})
