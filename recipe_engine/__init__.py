"""Recipe engine - Execute declarative code-generation recipes."""

from .ai.collector import AiCoordinator
from .ai.transports import Deferred
from .ai.transports import Resolved
from .config import AiConfig
from .config import CacheConfig
from .config import EngineConfig
from .config import RecursionConfig
from .config import RetryConfig
from .engine import RecipeEngine
from .engine import RecipeExecutionResult
from .errors import RecipeError
from .errors import RecipeValidationError
from .errors import StepExecutionError
from .models import Recipe
from .models import StepResult
from .models import StepStatus
from .models import ToolKind
from .tools.action import action
from .tools.registry import ToolRegistry
from .tools.registry import default_registry

__version__ = "0.1.0"

__all__ = [
    "AiConfig",
    "AiCoordinator",
    "CacheConfig",
    "Deferred",
    "EngineConfig",
    "Recipe",
    "RecipeEngine",
    "RecipeError",
    "RecipeExecutionResult",
    "RecipeValidationError",
    "RecursionConfig",
    "Resolved",
    "RetryConfig",
    "StepExecutionError",
    "StepResult",
    "StepStatus",
    "ToolKind",
    "ToolRegistry",
    "action",
    "default_registry",
]
