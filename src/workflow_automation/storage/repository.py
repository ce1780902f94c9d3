"""
存储仓库接口定义
"""
import copy
from abc import ABC, abstractmethod
from typing import Optional, List, Dict, Any
from datetime import datetime

from ..models.workflow import WorkflowDefinition, ObjectType, utcnow
from ..models.run import WorkflowRun, RunStatus
from ..exceptions import ValidationError


def ensure_unique_step_keys(workflow: WorkflowDefinition):
    """同一工作流内 step_key 必须唯一"""
    seen = set()
    for step in workflow.steps:
        if step.step_key in seen:
            raise ValidationError(f"Duplicate step_key '{step.step_key}'", step.step_key)
        seen.add(step.step_key)


class WorkflowRepository(ABC):
    """工作流定义存储仓库接口"""

    @abstractmethod
    async def save(self, workflow: WorkflowDefinition) -> str:
        """保存工作流（step_key 重复时抛出 ValidationError）"""
        pass

    @abstractmethod
    async def get(self, workflow_id: str) -> Optional[WorkflowDefinition]:
        """获取工作流"""
        pass

    @abstractmethod
    async def list(
        self,
        offset: int = 0,
        limit: int = 100,
        filters: Dict[str, Any] = None
    ) -> List[WorkflowDefinition]:
        """列出工作流，filters 支持 object_type / is_active"""
        pass

    @abstractmethod
    async def list_active(self, object_type: ObjectType) -> List[WorkflowDefinition]:
        """某对象类型上所有激活的工作流，按 evaluation_order 排序"""
        pass

    @abstractmethod
    async def update(self, workflow: WorkflowDefinition) -> bool:
        """更新工作流"""
        pass

    @abstractmethod
    async def delete(self, workflow_id: str) -> bool:
        """删除工作流定义（已有运行记录保留）"""
        pass

    @abstractmethod
    async def record_execution(self, workflow_id: str, at: datetime) -> bool:
        """execution_count + 1，并设置 last_executed_at"""
        pass


class RunRepository(ABC):
    """运行实例存储仓库接口（历史只追加，运行不删除）"""

    @abstractmethod
    async def save(self, run: WorkflowRun) -> str:
        """保存新运行"""
        pass

    @abstractmethod
    async def get(self, run_id: str) -> Optional[WorkflowRun]:
        """获取运行"""
        pass

    @abstractmethod
    async def update(self, run: WorkflowRun) -> bool:
        """一次写入状态、当前步骤、wait_until 和新增历史"""
        pass

    @abstractmethod
    async def list_for_record(self, workflow_id: str, record_id: str) -> List[WorkflowRun]:
        """某记录在某工作流上的所有运行，按 entered_at 升序"""
        pass

    @abstractmethod
    async def list_due(self, now: datetime, limit: int = 100) -> List[WorkflowRun]:
        """status=waiting 且 wait_until <= now 的运行，按 wait_until 升序"""
        pass

    @abstractmethod
    async def claim_waiting(self, run_id: str, now: datetime) -> bool:
        """原子地把到期的等待运行标记为 active；已被其他进程领取时返回 False"""
        pass

    @abstractmethod
    async def list_by_workflow(
        self,
        workflow_id: str,
        status: RunStatus = None,
        offset: int = 0,
        limit: int = 100
    ) -> List[WorkflowRun]:
        """根据工作流ID列出运行"""
        pass

    @abstractmethod
    async def list_by_status(
        self,
        status: RunStatus,
        offset: int = 0,
        limit: int = 100
    ) -> List[WorkflowRun]:
        """根据状态列出运行"""
        pass


# 内存实现（用于测试和本地运行）
class InMemoryWorkflowRepository(WorkflowRepository):
    """内存工作流仓库实现"""

    def __init__(self):
        self.workflows: Dict[str, WorkflowDefinition] = {}

    async def save(self, workflow: WorkflowDefinition) -> str:
        ensure_unique_step_keys(workflow)
        self.workflows[workflow.id] = copy.deepcopy(workflow)
        return workflow.id

    async def get(self, workflow_id: str) -> Optional[WorkflowDefinition]:
        workflow = self.workflows.get(workflow_id)
        return copy.deepcopy(workflow) if workflow else None

    async def list(
        self,
        offset: int = 0,
        limit: int = 100,
        filters: Dict[str, Any] = None
    ) -> List[WorkflowDefinition]:
        filters = filters or {}
        results = []
        for workflow in sorted(self.workflows.values(), key=lambda w: w.created_at):
            if "object_type" in filters and workflow.object_type != ObjectType(filters["object_type"]):
                continue
            if "is_active" in filters and workflow.is_active != filters["is_active"]:
                continue
            results.append(workflow)
        return [copy.deepcopy(w) for w in results[offset:offset + limit]]

    async def list_active(self, object_type: ObjectType) -> List[WorkflowDefinition]:
        workflows = [
            w for w in self.workflows.values()
            if w.is_active and w.object_type == object_type
        ]
        workflows.sort(key=lambda w: (w.evaluation_order, w.created_at))
        return [copy.deepcopy(w) for w in workflows]

    async def update(self, workflow: WorkflowDefinition) -> bool:
        if workflow.id not in self.workflows:
            return False
        ensure_unique_step_keys(workflow)
        workflow.updated_at = utcnow()
        self.workflows[workflow.id] = copy.deepcopy(workflow)
        return True

    async def delete(self, workflow_id: str) -> bool:
        if workflow_id in self.workflows:
            del self.workflows[workflow_id]
            return True
        return False

    async def record_execution(self, workflow_id: str, at: datetime) -> bool:
        workflow = self.workflows.get(workflow_id)
        if workflow is None:
            return False
        workflow.execution_count += 1
        workflow.last_executed_at = at
        return True


class InMemoryRunRepository(RunRepository):
    """内存运行仓库实现"""

    def __init__(self):
        self.runs: Dict[str, WorkflowRun] = {}

    async def save(self, run: WorkflowRun) -> str:
        self.runs[run.id] = copy.deepcopy(run)
        return run.id

    async def get(self, run_id: str) -> Optional[WorkflowRun]:
        run = self.runs.get(run_id)
        return copy.deepcopy(run) if run else None

    async def update(self, run: WorkflowRun) -> bool:
        if run.id not in self.runs:
            return False
        self.runs[run.id] = copy.deepcopy(run)
        return True

    async def list_for_record(self, workflow_id: str, record_id: str) -> List[WorkflowRun]:
        runs = [
            r for r in self.runs.values()
            if r.workflow_id == workflow_id and r.target_record_id == record_id
        ]
        runs.sort(key=lambda r: r.entered_at)
        return [copy.deepcopy(r) for r in runs]

    async def list_due(self, now: datetime, limit: int = 100) -> List[WorkflowRun]:
        due = [
            r for r in self.runs.values()
            if r.status == RunStatus.WAITING and r.wait_until is not None and r.wait_until <= now
        ]
        due.sort(key=lambda r: r.wait_until)
        return [copy.deepcopy(r) for r in due[:limit]]

    async def claim_waiting(self, run_id: str, now: datetime) -> bool:
        run = self.runs.get(run_id)
        if run is None or run.status != RunStatus.WAITING:
            return False
        if run.wait_until is None or run.wait_until > now:
            return False
        run.status = RunStatus.ACTIVE
        run.wait_until = None
        run.last_transitioned_at = now
        return True

    async def list_by_workflow(
        self,
        workflow_id: str,
        status: RunStatus = None,
        offset: int = 0,
        limit: int = 100
    ) -> List[WorkflowRun]:
        results = []
        for run in sorted(self.runs.values(), key=lambda r: r.entered_at):
            if run.workflow_id != workflow_id:
                continue
            if status and run.status != status:
                continue
            results.append(run)
        return [copy.deepcopy(r) for r in results[offset:offset + limit]]

    async def list_by_status(
        self,
        status: RunStatus,
        offset: int = 0,
        limit: int = 100
    ) -> List[WorkflowRun]:
        results = [
            r for r in sorted(self.runs.values(), key=lambda r: r.entered_at)
            if r.status == status
        ]
        return [copy.deepcopy(r) for r in results[offset:offset + limit]]
