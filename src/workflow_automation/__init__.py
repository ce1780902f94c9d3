"""
Doula CRM Workflow Automation - 记录驱动的工作流自动化引擎
"""

__version__ = "0.1.0"

from .config import EngineSettings, PracticeProfile
from .core.engine import ExecutionEngine
from .core.dispatcher import TriggerDispatcher
from .core.scheduler import ResumptionScheduler
from .core.parser import WorkflowParser
from .core.validator import GraphValidator
from .models.workflow import WorkflowDefinition, WorkflowStep
from .models.run import WorkflowRun, RunStatus
from .models.events import RecordEvent
from .runtime import WorkflowRuntime

__all__ = [
    "EngineSettings",
    "PracticeProfile",
    "ExecutionEngine",
    "TriggerDispatcher",
    "ResumptionScheduler",
    "WorkflowParser",
    "GraphValidator",
    "WorkflowDefinition",
    "WorkflowStep",
    "WorkflowRun",
    "RunStatus",
    "RecordEvent",
    "WorkflowRuntime",
]
