"""
运行查询与取消 API 路由
"""
from fastapi import APIRouter, Depends, HTTPException, Query, status
from typing import List, Optional
import logging

from ..models import RunResponse, RunDetailResponse
from ..dependencies import get_runtime, get_engine
from ...core import ExecutionEngine
from ...exceptions import RunNotFoundError
from ...models.run import RunStatus
from ...runtime import WorkflowRuntime


logger = logging.getLogger(__name__)
router = APIRouter()


@router.get("/", response_model=List[RunResponse])
async def list_runs(
    workflow_id: Optional[str] = Query(None, description="工作流ID"),
    record_id: Optional[str] = Query(None, description="记录ID（需同时给出 workflow_id）"),
    run_status: Optional[RunStatus] = Query(None, alias="status", description="运行状态"),
    offset: int = Query(0, ge=0),
    limit: int = Query(100, ge=1, le=500),
    runtime: WorkflowRuntime = Depends(get_runtime)
) -> List[RunResponse]:
    """列出运行"""
    repository = runtime.run_repository
    if workflow_id and record_id:
        runs = await repository.list_for_record(workflow_id, record_id)
        if run_status:
            runs = [r for r in runs if r.status == run_status]
        runs = runs[offset:offset + limit]
    elif workflow_id:
        runs = await repository.list_by_workflow(workflow_id, run_status, offset, limit)
    elif run_status:
        runs = await repository.list_by_status(run_status, offset, limit)
    else:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={
                "error": "missing_filter",
                "message": "Provide workflow_id or status"
            }
        )
    return [RunResponse.from_run(r) for r in runs]


@router.get("/{run_id}", response_model=RunDetailResponse)
async def get_run(
    run_id: str,
    engine: ExecutionEngine = Depends(get_engine)
) -> RunDetailResponse:
    """获取运行详情（含历史）"""
    run = await engine.get_run(run_id)
    if run is None:
        raise RunNotFoundError(f"Run not found: {run_id}")
    return RunDetailResponse.from_run(run)


@router.post("/{run_id}/cancel", response_model=RunDetailResponse)
async def cancel_run(
    run_id: str,
    engine: ExecutionEngine = Depends(get_engine)
) -> RunDetailResponse:
    """取消运行（不回滚已产生的副作用）"""
    return RunDetailResponse.from_run(await engine.cancel_run(run_id))
