"""
核心模块
"""
from .criteria import CriteriaEvaluator
from .validator import GraphValidator
from .variables import VariableResolver
from .error_handler import ErrorHandler, ErrorStrategy, RetryPolicy, RetryStrategy
from .locks import RunLockManager
from .executors import StepExecutor, StepContext, StepResult, ResultKind, default_executors
from .engine import ExecutionEngine, RUN_EVENTS_TOPIC
from .dispatcher import TriggerDispatcher
from .scheduler import ResumptionScheduler, SweepResult
from .parser import WorkflowParser
from .manager import WorkflowManager
from .analytics import WorkflowAnalytics, StepFunnel

__all__ = [
    "CriteriaEvaluator",
    "GraphValidator",
    "VariableResolver",
    "ErrorHandler",
    "ErrorStrategy",
    "RetryPolicy",
    "RetryStrategy",
    "RunLockManager",
    "StepExecutor",
    "StepContext",
    "StepResult",
    "ResultKind",
    "default_executors",
    "ExecutionEngine",
    "RUN_EVENTS_TOPIC",
    "TriggerDispatcher",
    "ResumptionScheduler",
    "SweepResult",
    "WorkflowParser",
    "WorkflowManager",
    "WorkflowAnalytics",
    "StepFunnel",
]
