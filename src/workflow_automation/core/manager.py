"""
工作流定义管理
"""
import copy
import logging
from uuid import uuid4
from datetime import datetime
from typing import Dict, Any, List, Optional, Union
from pathlib import Path

from ..models.workflow import WorkflowDefinition, utcnow
from ..exceptions import WorkflowNotFoundError
from ..storage.repository import WorkflowRepository, RunRepository
from .analytics import WorkflowAnalytics
from .parser import WorkflowParser
from .validator import GraphValidator


logger = logging.getLogger(__name__)


class WorkflowManager:
    """工作流定义的创建、更新、激活与停用"""

    def __init__(
        self,
        workflow_repository: WorkflowRepository,
        parser: WorkflowParser = None,
        validator: GraphValidator = None,
        run_repository: RunRepository = None
    ):
        self.workflow_repository = workflow_repository
        self.run_repository = run_repository
        self.parser = parser or WorkflowParser()
        self.validator = validator or GraphValidator()

    async def create(self, source: Union[str, Path, Dict[str, Any]]) -> WorkflowDefinition:
        """解析并保存新工作流（初始为停用状态）"""
        workflow = self.parser.parse(source)
        workflow.is_active = False
        workflow.execution_count = 0
        workflow.last_executed_at = None
        await self.workflow_repository.save(workflow)
        logger.info(f"Workflow created: {workflow.id} ({workflow.name})")
        return workflow

    async def update(
        self,
        workflow_id: str,
        source: Union[str, Path, Dict[str, Any]]
    ) -> WorkflowDefinition:
        """
        用新定义替换工作流内容

        ID、激活状态和执行统计保留；激活中的工作流先校验，非法时抛出 ValidationError。
        """
        current = await self.get(workflow_id)
        workflow = self.parser.parse(source)
        workflow.id = current.id
        workflow.is_active = current.is_active
        workflow.execution_count = current.execution_count
        workflow.last_executed_at = current.last_executed_at
        workflow.created_at = current.created_at

        if workflow.is_active:
            self.validator.validate(workflow)

        await self.workflow_repository.update(workflow)
        logger.info(f"Workflow updated: {workflow_id}")
        return workflow

    async def get(self, workflow_id: str) -> WorkflowDefinition:
        workflow = await self.workflow_repository.get(workflow_id)
        if workflow is None:
            raise WorkflowNotFoundError(f"Workflow not found: {workflow_id}")
        return workflow

    async def list(
        self,
        offset: int = 0,
        limit: int = 100,
        filters: Dict[str, Any] = None
    ) -> List[WorkflowDefinition]:
        return await self.workflow_repository.list(offset, limit, filters)

    async def delete(self, workflow_id: str):
        if not await self.workflow_repository.delete(workflow_id):
            raise WorkflowNotFoundError(f"Workflow not found: {workflow_id}")
        logger.info(f"Workflow deleted: {workflow_id}")

    async def activate(self, workflow_id: str) -> WorkflowDefinition:
        """校验通过后激活"""
        workflow = await self.get(workflow_id)
        self.validator.validate(workflow)
        workflow.is_active = True
        workflow.updated_at = utcnow()
        await self.workflow_repository.update(workflow)
        logger.info(f"Workflow activated: {workflow_id}")
        return workflow

    async def deactivate(self, workflow_id: str) -> WorkflowDefinition:
        """停用（已有运行继续推进）"""
        workflow = await self.get(workflow_id)
        workflow.is_active = False
        await self.workflow_repository.update(workflow)
        logger.info(f"Workflow deactivated: {workflow_id}")
        return workflow

    async def validate(self, workflow_id: str) -> Optional[str]:
        """返回第一个校验问题，合法时返回 None"""
        workflow = await self.get(workflow_id)
        return self.validator.first_violation(workflow)

    async def duplicate(self, workflow_id: str) -> WorkflowDefinition:
        """复制工作流：新 ID、名称加 (Copy)、停用、统计清零"""
        source = await self.get(workflow_id)
        workflow = copy.deepcopy(source)
        workflow.id = str(uuid4())
        workflow.name = f"{source.name} (Copy)"
        workflow.is_active = False
        workflow.execution_count = 0
        workflow.last_executed_at = None
        workflow.created_at = workflow.updated_at = utcnow()
        await self.workflow_repository.save(workflow)
        logger.info(f"Workflow duplicated: {workflow_id} -> {workflow.id}")
        return workflow

    async def analytics(
        self,
        workflow_id: str,
        since: datetime = None,
        page_size: int = 500
    ) -> WorkflowAnalytics:
        """汇总工作流的运行情况（可只统计 since 之后进入的运行）"""
        if self.run_repository is None:
            raise RuntimeError("WorkflowManager has no run repository")
        workflow = await self.get(workflow_id)

        runs = []
        offset = 0
        while True:
            page = await self.run_repository.list_by_workflow(
                workflow_id, offset=offset, limit=page_size
            )
            runs.extend(page)
            if len(page) < page_size:
                break
            offset += page_size

        return WorkflowAnalytics.summarize(workflow, runs, since)
