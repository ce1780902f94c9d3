"""
工作流管理 API 路由
"""
from fastapi import APIRouter, Depends, Query, status
from typing import List, Optional
from datetime import timedelta
import logging

from ..models import (
    WorkflowCreateRequest, WorkflowResponse, WorkflowDetailResponse,
    ValidationResponse, ManualTriggerRequest, TriggerResponse, RunDetailResponse,
    SuccessResponse, WorkflowAnalyticsResponse
)
from ..dependencies import get_manager, get_dispatcher
from ...core import WorkflowManager, TriggerDispatcher
from ...models.workflow import ObjectType, utcnow


logger = logging.getLogger(__name__)
router = APIRouter()


@router.post("/", response_model=WorkflowDetailResponse, status_code=status.HTTP_201_CREATED)
async def create_workflow(
    workflow: WorkflowCreateRequest,
    manager: WorkflowManager = Depends(get_manager)
) -> WorkflowDetailResponse:
    """创建新的工作流（初始为停用状态）"""
    created = await manager.create(workflow.to_definition())
    return WorkflowDetailResponse.from_workflow(created)


@router.get("/", response_model=List[WorkflowResponse])
async def list_workflows(
    object_type: Optional[ObjectType] = Query(None, description="对象类型"),
    is_active: Optional[bool] = Query(None, description="是否激活"),
    offset: int = Query(0, ge=0),
    limit: int = Query(100, ge=1, le=500),
    manager: WorkflowManager = Depends(get_manager)
) -> List[WorkflowResponse]:
    """列出工作流"""
    filters = {}
    if object_type is not None:
        filters["object_type"] = object_type.value
    if is_active is not None:
        filters["is_active"] = is_active

    workflows = await manager.list(offset, limit, filters)
    return [WorkflowResponse.from_workflow(w) for w in workflows]


@router.get("/{workflow_id}", response_model=WorkflowDetailResponse)
async def get_workflow(
    workflow_id: str,
    manager: WorkflowManager = Depends(get_manager)
) -> WorkflowDetailResponse:
    """获取工作流详情"""
    return WorkflowDetailResponse.from_workflow(await manager.get(workflow_id))


@router.put("/{workflow_id}", response_model=WorkflowDetailResponse)
async def update_workflow(
    workflow_id: str,
    workflow: WorkflowCreateRequest,
    manager: WorkflowManager = Depends(get_manager)
) -> WorkflowDetailResponse:
    """替换工作流定义（激活中的工作流需通过校验）"""
    updated = await manager.update(workflow_id, workflow.to_definition())
    return WorkflowDetailResponse.from_workflow(updated)


@router.delete("/{workflow_id}", response_model=SuccessResponse)
async def delete_workflow(
    workflow_id: str,
    manager: WorkflowManager = Depends(get_manager)
) -> SuccessResponse:
    """删除工作流定义"""
    await manager.delete(workflow_id)
    return SuccessResponse(message=f"Workflow {workflow_id} deleted")


@router.post("/{workflow_id}/activate", response_model=WorkflowResponse)
async def activate_workflow(
    workflow_id: str,
    manager: WorkflowManager = Depends(get_manager)
) -> WorkflowResponse:
    """校验并激活工作流"""
    return WorkflowResponse.from_workflow(await manager.activate(workflow_id))


@router.post("/{workflow_id}/deactivate", response_model=WorkflowResponse)
async def deactivate_workflow(
    workflow_id: str,
    manager: WorkflowManager = Depends(get_manager)
) -> WorkflowResponse:
    """停用工作流"""
    return WorkflowResponse.from_workflow(await manager.deactivate(workflow_id))


@router.post("/{workflow_id}/validate", response_model=ValidationResponse)
async def validate_workflow(
    workflow_id: str,
    manager: WorkflowManager = Depends(get_manager)
) -> ValidationResponse:
    """校验工作流，返回第一个问题"""
    message = await manager.validate(workflow_id)
    return ValidationResponse(valid=message is None, message=message)


@router.post("/{workflow_id}/trigger", response_model=TriggerResponse)
async def trigger_workflow(
    workflow_id: str,
    request: ManualTriggerRequest,
    dispatcher: TriggerDispatcher = Depends(get_dispatcher)
) -> TriggerResponse:
    """手动触发（跳过进入条件，仍应用重入策略）"""
    run = await dispatcher.trigger_manually(workflow_id, request.record_id)
    if run is None:
        return TriggerResponse(
            started=False,
            message="Record is not allowed to re-enter this workflow"
        )
    return TriggerResponse(started=True, run=RunDetailResponse.from_run(run))


@router.post(
    "/{workflow_id}/duplicate",
    response_model=WorkflowDetailResponse,
    status_code=status.HTTP_201_CREATED
)
async def duplicate_workflow(
    workflow_id: str,
    manager: WorkflowManager = Depends(get_manager)
) -> WorkflowDetailResponse:
    """复制工作流（副本为停用状态）"""
    return WorkflowDetailResponse.from_workflow(await manager.duplicate(workflow_id))


@router.get("/{workflow_id}/analytics", response_model=WorkflowAnalyticsResponse)
async def workflow_analytics(
    workflow_id: str,
    days: Optional[int] = Query(None, ge=1, le=365, description="只统计最近 N 天进入的运行"),
    manager: WorkflowManager = Depends(get_manager)
) -> WorkflowAnalyticsResponse:
    """工作流运行统计：状态分布、成功率、步骤漏斗、失败原因"""
    since = utcnow() - timedelta(days=days) if days else None
    analytics = await manager.analytics(workflow_id, since=since)
    return WorkflowAnalyticsResponse(**analytics.to_dict())
