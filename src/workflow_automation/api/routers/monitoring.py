"""
监控 API 路由
"""
from fastapi import APIRouter, Depends
from typing import Dict, Any
import logging

from ..models import HealthCheckResponse
from ..dependencies import get_runtime, get_scheduler
from ...core import ResumptionScheduler
from ...models.workflow import utcnow
from ...runtime import WorkflowRuntime
from ... import __version__


logger = logging.getLogger(__name__)
router = APIRouter()


@router.get("/health", response_model=HealthCheckResponse)
async def health_check(
    runtime: WorkflowRuntime = Depends(get_runtime)
) -> HealthCheckResponse:
    """健康检查"""
    checks: Dict[str, Any] = {}

    try:
        await runtime.workflow_repository.list(limit=1)
        checks["database"] = True
    except Exception as e:
        logger.error(f"Database health check failed: {e}")
        checks["database"] = False

    checks["scheduler"] = runtime.scheduler.is_running
    checks["event_bus"] = bool(runtime.event_bus.subscribers)

    return HealthCheckResponse(
        status="healthy" if checks["database"] else "unhealthy",
        version=__version__,
        timestamp=utcnow(),
        checks=checks
    )


@router.get("/scheduler")
async def scheduler_stats(
    scheduler: ResumptionScheduler = Depends(get_scheduler)
) -> Dict[str, Any]:
    """恢复调度器统计"""
    return scheduler.get_scheduler_stats()


@router.post("/scheduler/sweep")
async def run_sweep(
    scheduler: ResumptionScheduler = Depends(get_scheduler)
) -> Dict[str, Any]:
    """立即执行一次恢复扫描"""
    result = await scheduler.sweep()
    return result.to_dict()
