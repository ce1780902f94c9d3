"""
API 请求和响应模型
"""
from pydantic import BaseModel, Field, ConfigDict
from typing import Optional, List, Dict, Any
from datetime import datetime

from ..models.workflow import (
    WorkflowDefinition, ObjectType, StepType, TriggerType, ReentryMode,
    MatchType, ConditionOperator
)
from ..models.run import WorkflowRun, RunStatus


# 工作流相关模型

class EntryConditionModel(BaseModel):
    """进入条件"""
    field: str = Field(..., description="字段名")
    operator: ConditionOperator = Field(ConditionOperator.EQUALS, description="运算符")
    value: Optional[Any] = Field(None, description="比较值")


class EntryCriteriaModel(BaseModel):
    """进入条件集合"""
    conditions: List[EntryConditionModel] = Field(default_factory=list)
    match_type: MatchType = Field(MatchType.ALL)


class BranchModel(BaseModel):
    """分支"""
    condition: str = Field(..., description="true / false")
    next_step_key: str


class StepModel(BaseModel):
    """步骤定义"""
    step_key: str = Field(..., description="步骤键")
    step_type: StepType = Field(..., description="步骤类型")
    step_config: Dict[str, Any] = Field(default_factory=dict, description="步骤配置")
    next_step_key: Optional[str] = None
    branches: Optional[List[BranchModel]] = None
    step_order: Optional[int] = None
    retry_policy: Optional[Dict[str, Any]] = Field(None, description="重试策略")


class WorkflowCreateRequest(BaseModel):
    """创建/更新工作流请求"""
    name: str = Field(..., description="工作流名称")
    description: Optional[str] = None
    object_type: ObjectType = Field(..., description="对象类型")
    trigger_type: TriggerType = Field(TriggerType.RECORD_CHANGE)
    trigger_config: Dict[str, Any] = Field(default_factory=dict)
    entry_criteria: EntryCriteriaModel = Field(default_factory=EntryCriteriaModel)
    reentry_mode: ReentryMode = Field(ReentryMode.ALWAYS_REENTRY)
    reentry_wait_days: Optional[int] = None
    evaluation_order: int = 0
    steps: List[StepModel] = Field(default_factory=list)

    def to_definition(self) -> Dict[str, Any]:
        data = self.model_dump(mode="json", exclude_none=True)
        for step in data["steps"]:
            step.setdefault("branches", None)
        return data


class WorkflowResponse(BaseModel):
    """工作流响应"""
    id: str
    name: str
    description: Optional[str] = None
    object_type: ObjectType
    trigger_type: TriggerType
    is_active: bool
    step_count: int
    execution_count: int = 0
    last_executed_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)

    @classmethod
    def from_workflow(cls, workflow: WorkflowDefinition) -> "WorkflowResponse":
        return cls(
            id=workflow.id,
            name=workflow.name,
            description=workflow.description,
            object_type=workflow.object_type,
            trigger_type=workflow.trigger_type,
            is_active=workflow.is_active,
            step_count=len(workflow.steps),
            execution_count=workflow.execution_count,
            last_executed_at=workflow.last_executed_at,
            created_at=workflow.created_at,
            updated_at=workflow.updated_at
        )


class WorkflowDetailResponse(WorkflowResponse):
    """工作流详情响应"""
    trigger_config: Dict[str, Any] = Field(default_factory=dict)
    entry_criteria: Dict[str, Any] = Field(default_factory=dict)
    reentry_mode: ReentryMode
    reentry_wait_days: Optional[int] = None
    evaluation_order: int = 0
    steps: List[Dict[str, Any]] = Field(default_factory=list)

    @classmethod
    def from_workflow(cls, workflow: WorkflowDefinition) -> "WorkflowDetailResponse":
        base = WorkflowResponse.from_workflow(workflow).model_dump()
        return cls(
            **base,
            trigger_config=workflow.trigger_config,
            entry_criteria=workflow.entry_criteria.to_dict(),
            reentry_mode=workflow.reentry_mode,
            reentry_wait_days=workflow.reentry_wait_days,
            evaluation_order=workflow.evaluation_order,
            steps=[s.to_dict() for s in workflow.steps]
        )


class ValidationResponse(BaseModel):
    """校验结果"""
    valid: bool
    message: Optional[str] = None


class ManualTriggerRequest(BaseModel):
    """手动触发请求"""
    record_id: str = Field(..., description="目标记录ID")


class StepFunnelModel(BaseModel):
    """步骤漏斗"""
    step_key: str
    step_type: str
    reached: int = Field(0, description="到达该步骤的运行数")
    completed: int = 0
    failed: int = 0
    waiting: int = 0
    cancelled: int = 0
    retries: int = Field(0, description="重试次数")


class WorkflowAnalyticsResponse(BaseModel):
    """工作流运行统计"""
    workflow_id: str
    since: Optional[datetime] = Field(None, description="统计起点")
    total_runs: int = Field(..., description="运行总数")
    status_counts: Dict[str, int] = Field(default_factory=dict, description="各状态运行数")
    success_rate: Optional[float] = Field(None, description="成功率（百分比）")
    average_duration_seconds: Optional[float] = Field(None, description="平均完成耗时（秒）")
    step_funnel: List[StepFunnelModel] = Field(default_factory=list, description="步骤漏斗")
    error_breakdown: Dict[str, int] = Field(default_factory=dict, description="失败原因分布")
    runs_by_day: Dict[str, int] = Field(default_factory=dict, description="每日进入的运行数")


# 运行相关模型

class HistoryEntryModel(BaseModel):
    """运行历史条目"""
    step_key: str
    step_type: Optional[str] = None
    outcome: str
    started_at: datetime
    finished_at: Optional[datetime] = None
    attempt: int = 1
    error: Optional[Dict[str, Any]] = None
    output: Dict[str, Any] = Field(default_factory=dict)


class RunResponse(BaseModel):
    """运行响应"""
    id: str
    workflow_id: str
    object_type: ObjectType
    target_record_id: str
    status: RunStatus
    current_step_key: Optional[str] = None
    wait_until: Optional[datetime] = None
    entered_at: datetime
    last_transitioned_at: datetime
    completed_at: Optional[datetime] = None
    error_message: Optional[str] = None

    @classmethod
    def from_run(cls, run: WorkflowRun) -> "RunResponse":
        return cls(
            id=run.id,
            workflow_id=run.workflow_id,
            object_type=run.object_type,
            target_record_id=run.target_record_id,
            status=run.status,
            current_step_key=run.current_step_key,
            wait_until=run.wait_until,
            entered_at=run.entered_at,
            last_transitioned_at=run.last_transitioned_at,
            completed_at=run.completed_at,
            error_message=run.error_message
        )


class RunDetailResponse(RunResponse):
    """运行详情（含历史）"""
    history: List[HistoryEntryModel] = Field(default_factory=list)

    @classmethod
    def from_run(cls, run: WorkflowRun) -> "RunDetailResponse":
        base = RunResponse.from_run(run).model_dump()
        return cls(**base, history=[HistoryEntryModel(**h.to_dict()) for h in run.history])


class TriggerResponse(BaseModel):
    """手动触发结果"""
    started: bool
    run: Optional[RunDetailResponse] = None
    message: Optional[str] = None


# 记录相关模型

class RecordCreateRequest(BaseModel):
    """创建记录请求"""
    data: Dict[str, Any] = Field(default_factory=dict)


class RecordUpdateRequest(BaseModel):
    """更新记录请求"""
    changes: Dict[str, Any] = Field(..., description="字段变更")


# 通用响应模型

class SuccessResponse(BaseModel):
    """成功响应"""
    success: bool = True
    message: str
    data: Optional[Dict[str, Any]] = None


class ErrorResponse(BaseModel):
    """错误响应"""
    error: str
    message: str
    details: Optional[Dict[str, Any]] = None


class HealthCheckResponse(BaseModel):
    """健康检查响应"""
    status: str
    version: str
    timestamp: datetime
    checks: Dict[str, Any]
