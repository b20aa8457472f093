"""contentflow: workflow orchestration for a multi-tenant content platform."""

from .actions import ActionContext, ActionRegistry, build_action_registry
from .config import ContentflowConfig, load_config
from .contracts import DefinitionStatus, StepType, TriggerType, WorkflowDefinition
from .dispatch import TriggerContext, TriggerDispatcher
from .engine import WorkflowEngine
from .events import WorkflowEvent, WorkflowEventType
from .execute import StepExecutor, StepOutcome
from .graph import find_join, parse_definition, validate_definition
from .persistence import InstanceStatus, StepStatus, WorkflowInstance, get_repository
from .scheduling import get_scheduler
from .service import WorkflowService, build_service

__version__ = "0.1.0"
__all__ = [
    "ActionContext",
    "ActionRegistry",
    "ContentflowConfig",
    "DefinitionStatus",
    "InstanceStatus",
    "StepExecutor",
    "StepOutcome",
    "StepStatus",
    "StepType",
    "TriggerContext",
    "TriggerDispatcher",
    "TriggerType",
    "WorkflowDefinition",
    "WorkflowEngine",
    "WorkflowEvent",
    "WorkflowEventType",
    "WorkflowInstance",
    "WorkflowService",
    "build_action_registry",
    "build_service",
    "find_join",
    "get_repository",
    "get_scheduler",
    "load_config",
    "parse_definition",
    "validate_definition",
]
