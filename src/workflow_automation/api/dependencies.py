"""
FastAPI 依赖注入
"""
from fastapi import HTTPException, Request, status
import logging

from ..runtime import WorkflowRuntime
from ..core import ExecutionEngine, TriggerDispatcher, ResumptionScheduler, WorkflowManager


logger = logging.getLogger(__name__)


def get_runtime(request: Request) -> WorkflowRuntime:
    """获取运行时实例"""
    runtime = getattr(request.app.state, "runtime", None)

    if not runtime:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={
                "error": "service_unavailable",
                "message": "Workflow runtime not initialized"
            }
        )

    return runtime


def get_engine(request: Request) -> ExecutionEngine:
    return get_runtime(request).engine


def get_dispatcher(request: Request) -> TriggerDispatcher:
    return get_runtime(request).dispatcher


def get_scheduler(request: Request) -> ResumptionScheduler:
    return get_runtime(request).scheduler


def get_manager(request: Request) -> WorkflowManager:
    return get_runtime(request).manager
