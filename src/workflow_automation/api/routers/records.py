"""
记录变更 API 路由（发布生命周期事件）
"""
from fastapi import APIRouter, Depends, HTTPException, status
from typing import Dict, Any
import logging

from ..models import RecordCreateRequest, RecordUpdateRequest
from ..dependencies import get_runtime
from ...models.workflow import ObjectType
from ...runtime import WorkflowRuntime


logger = logging.getLogger(__name__)
router = APIRouter()


@router.post("/{object_type}", status_code=status.HTTP_201_CREATED)
async def create_record(
    object_type: ObjectType,
    request: RecordCreateRequest,
    runtime: WorkflowRuntime = Depends(get_runtime)
) -> Dict[str, Any]:
    """创建记录并发布 record.created"""
    return await runtime.create_record(object_type, request.data)


@router.get("/{object_type}/{record_id}")
async def get_record(
    object_type: ObjectType,
    record_id: str,
    runtime: WorkflowRuntime = Depends(get_runtime)
) -> Dict[str, Any]:
    """获取记录"""
    record = await runtime.collaborators.records.get_record(object_type, record_id)
    if record is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={
                "error": "not_found",
                "message": f"{object_type.value} record not found: {record_id}"
            }
        )
    return record


@router.patch("/{object_type}/{record_id}")
async def update_record(
    object_type: ObjectType,
    record_id: str,
    request: RecordUpdateRequest,
    runtime: WorkflowRuntime = Depends(get_runtime)
) -> Dict[str, Any]:
    """更新记录字段并发布 record.updated"""
    record = await runtime.update_record(object_type, record_id, request.changes)
    if record is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={
                "error": "not_found",
                "message": f"{object_type.value} record not found: {record_id}"
            }
        )
    return record
