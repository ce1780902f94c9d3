"""
工作流定义模型
"""
from dataclasses import dataclass, field, fields, asdict
from typing import List, Dict, Any, Optional, Type
from enum import Enum
from uuid import uuid4
from datetime import datetime, timezone


def utcnow() -> datetime:
    """当前 UTC 时间（带时区）"""
    return datetime.now(timezone.utc)


class ObjectType(Enum):
    """工作流挂载的 CRM 对象类型"""
    LEAD = "lead"
    MEETING = "meeting"
    PAYMENT = "payment"
    INVOICE = "invoice"
    SERVICE = "service"
    DOCUMENT = "document"
    CONTRACT = "contract"
    INTAKE_FORM = "intake_form"


class StepType(Enum):
    """步骤类型"""
    TRIGGER = "trigger"
    SEND_EMAIL = "send_email"
    SEND_SMS = "send_sms"
    SEND_MESSAGE = "send_message"
    CREATE_TASK = "create_task"
    UPDATE_FIELD = "update_field"
    CREATE_RECORD = "create_record"
    WAIT = "wait"
    DECISION = "decision"
    WEBHOOK = "webhook"
    END = "end"

    @property
    def is_pass_through(self) -> bool:
        """同步执行、立即给出后继的步骤"""
        return self in PASS_THROUGH_STEP_TYPES


PASS_THROUGH_STEP_TYPES = frozenset({
    StepType.TRIGGER,
    StepType.UPDATE_FIELD,
    StepType.DECISION,
    StepType.END,
})


class TriggerType(Enum):
    """触发类型"""
    RECORD_CHANGE = "record_change"  # 创建或更新
    RECORD_CREATE = "record_create"
    RECORD_UPDATE = "record_update"
    FIELD_CHANGE = "field_change"
    MANUAL = "manual"


class ReentryMode(Enum):
    """重复进入策略"""
    NO_REENTRY = "no_reentry"
    ALWAYS_REENTRY = "always_reentry"
    REENTRY_AFTER_DAYS = "reentry_after_days"
    REENTRY_AFTER_EXIT = "reentry_after_exit"


class MatchType(Enum):
    """条件组合方式"""
    ALL = "all"
    ANY = "any"


class ConditionOperator(Enum):
    """条件运算符"""
    EQUALS = "equals"
    NOT_EQUALS = "not_equals"
    CONTAINS = "contains"
    GREATER_THAN = "greater_than"
    LESS_THAN = "less_than"
    IS_NULL = "is_null"
    IS_NOT_NULL = "is_not_null"
    THIS_WEEK = "this_week"
    THIS_MONTH = "this_month"
    THIS_QUARTER = "this_quarter"

    @property
    def requires_value(self) -> bool:
        return self not in VALUELESS_OPERATORS


VALUELESS_OPERATORS = frozenset({
    ConditionOperator.IS_NULL,
    ConditionOperator.IS_NOT_NULL,
    ConditionOperator.THIS_WEEK,
    ConditionOperator.THIS_MONTH,
    ConditionOperator.THIS_QUARTER,
})

RECIPIENT_TYPES = ("client", "admin", "custom")
TASK_ASSIGNEES = ("owner", "admin")
WEBHOOK_METHODS = ("GET", "POST", "PUT")


@dataclass
class EntryCondition:
    """进入条件"""
    field: str
    operator: ConditionOperator = ConditionOperator.EQUALS
    value: Optional[Any] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "EntryCondition":
        return cls(
            field=data.get("field", ""),
            operator=ConditionOperator(data.get("operator", "equals")),
            value=data.get("value")
        )

    def to_dict(self) -> Dict[str, Any]:
        data = {"field": self.field, "operator": self.operator.value}
        if self.value is not None:
            data["value"] = self.value
        return data


@dataclass
class EntryCriteria:
    """进入条件集合"""
    conditions: List[EntryCondition] = field(default_factory=list)
    match_type: MatchType = MatchType.ALL

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "EntryCriteria":
        data = data or {}
        return cls(
            conditions=[EntryCondition.from_dict(c) for c in data.get("conditions") or []],
            match_type=MatchType(data.get("match_type", "all"))
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "conditions": [c.to_dict() for c in self.conditions],
            "match_type": self.match_type.value
        }


# 步骤配置：每种步骤类型一个 dataclass

@dataclass
class StepConfig:
    """步骤配置基类"""

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "StepConfig":
        data = data or {}
        names = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in names})

    def to_dict(self) -> Dict[str, Any]:
        return {k: v for k, v in asdict(self).items() if v is not None}

    def problems(self) -> List[str]:
        """返回缺失或非法的配置项描述"""
        return []


@dataclass
class TriggerStepConfig(StepConfig):
    """触发节点配置"""
    pass


@dataclass
class EndStepConfig(StepConfig):
    """结束节点配置"""
    pass


@dataclass
class SendEmailConfig(StepConfig):
    """发送邮件配置"""
    template_id: Optional[str] = None
    template_name: Optional[str] = None
    subject: Optional[str] = None
    body: Optional[str] = None
    content: Optional[str] = None  # body 的别名
    to_type: str = "client"
    to_field: Optional[str] = None
    to_email: Optional[str] = None
    cta_text: Optional[str] = None
    cta_url: Optional[str] = None

    @property
    def message_body(self) -> Optional[str]:
        return self.body or self.content

    def problems(self) -> List[str]:
        errors = []
        if not (self.template_name or self.template_id or self.message_body):
            errors.append("template_name or body is required")
        if self.to_type not in RECIPIENT_TYPES:
            errors.append(f"to_type must be one of {', '.join(RECIPIENT_TYPES)}")
        elif self.to_type == "custom" and not self.to_email:
            errors.append("to_email is required when to_type is 'custom'")
        return errors


@dataclass
class SendSmsConfig(StepConfig):
    """发送短信配置"""
    body: Optional[str] = None
    content: Optional[str] = None
    to_type: str = "client"
    to_field: Optional[str] = None
    to_phone: Optional[str] = None

    @property
    def message_body(self) -> Optional[str]:
        return self.body or self.content

    def problems(self) -> List[str]:
        errors = []
        if not self.message_body:
            errors.append("body is required")
        if self.to_type not in RECIPIENT_TYPES:
            errors.append(f"to_type must be one of {', '.join(RECIPIENT_TYPES)}")
        elif self.to_type == "custom" and not self.to_phone:
            errors.append("to_phone is required when to_type is 'custom'")
        return errors


@dataclass
class SendMessageConfig(StepConfig):
    """客户门户站内信配置"""
    subject: Optional[str] = None
    body: Optional[str] = None
    content: Optional[str] = None

    @property
    def message_body(self) -> Optional[str]:
        return self.body or self.content

    def problems(self) -> List[str]:
        if not self.message_body:
            return ["body is required"]
        return []


@dataclass
class WebhookConfig(StepConfig):
    """Webhook 配置"""
    webhook_url: Optional[str] = None
    webhook_method: str = "POST"
    webhook_headers: Dict[str, str] = field(default_factory=dict)
    webhook_body: Dict[str, Any] = field(default_factory=dict)

    def problems(self) -> List[str]:
        errors = []
        if not self.webhook_url:
            errors.append("webhook_url is required")
        if str(self.webhook_method).upper() not in WEBHOOK_METHODS:
            errors.append(f"webhook_method must be one of {', '.join(WEBHOOK_METHODS)}")
        return errors


@dataclass
class CreateTaskConfig(StepConfig):
    """创建任务配置"""
    title: Optional[str] = None
    action_type: str = "custom"
    assigned_to: str = "owner"
    priority: Optional[int] = None
    due_days: Optional[int] = None

    def problems(self) -> List[str]:
        errors = []
        if not self.title:
            errors.append("title is required")
        if not self.action_type:
            errors.append("action_type is required")
        if self.assigned_to not in TASK_ASSIGNEES:
            errors.append(f"assigned_to must be one of {', '.join(TASK_ASSIGNEES)}")
        return errors


@dataclass
class UpdateFieldConfig(StepConfig):
    """更新字段配置"""
    field: Optional[str] = None
    value: Optional[Any] = None

    def problems(self) -> List[str]:
        errors = []
        if not self.field:
            errors.append("field is required")
        if self.value is None:
            errors.append("value is required")
        return errors


@dataclass
class CreateRecordConfig(StepConfig):
    """创建关联记录配置"""
    record_type: Optional[str] = None
    record_data: Dict[str, Any] = field(default_factory=dict)

    def problems(self) -> List[str]:
        if not self.record_type:
            return ["record_type is required"]
        if self.record_type not in {t.value for t in ObjectType}:
            return [f"record_type '{self.record_type}' is not a known object type"]
        return []


@dataclass
class WaitConfig(StepConfig):
    """等待配置"""
    wait_days: Optional[float] = None
    wait_hours: Optional[float] = None
    wait_until_field: Optional[str] = None

    def problems(self) -> List[str]:
        if self.wait_days is None and self.wait_hours is None and not self.wait_until_field:
            return ["at least one of wait_days, wait_hours or wait_until_field is required"]
        errors = []
        for name in ("wait_days", "wait_hours"):
            value = getattr(self, name)
            if value is None:
                continue
            try:
                if float(value) < 0:
                    errors.append(f"{name} must not be negative")
            except (TypeError, ValueError):
                errors.append(f"{name} must be a number")
        return errors


@dataclass
class DecisionConfig(StepConfig):
    """条件分支配置"""
    condition_field: Optional[str] = None
    condition_operator: str = "equals"
    condition_value: Optional[Any] = None

    @property
    def operator(self) -> ConditionOperator:
        return ConditionOperator(self.condition_operator)

    def problems(self) -> List[str]:
        errors = []
        if not self.condition_field:
            errors.append("condition_field is required")
        try:
            operator = self.operator
        except ValueError:
            errors.append(f"unknown condition_operator '{self.condition_operator}'")
            return errors
        if operator.requires_value and self.condition_value is None:
            errors.append(f"condition_value is required for operator '{operator.value}'")
        return errors


STEP_CONFIG_TYPES: Dict[StepType, Type[StepConfig]] = {
    StepType.TRIGGER: TriggerStepConfig,
    StepType.SEND_EMAIL: SendEmailConfig,
    StepType.SEND_SMS: SendSmsConfig,
    StepType.SEND_MESSAGE: SendMessageConfig,
    StepType.CREATE_TASK: CreateTaskConfig,
    StepType.UPDATE_FIELD: UpdateFieldConfig,
    StepType.CREATE_RECORD: CreateRecordConfig,
    StepType.WAIT: WaitConfig,
    StepType.DECISION: DecisionConfig,
    StepType.WEBHOOK: WebhookConfig,
    StepType.END: EndStepConfig,
}


@dataclass
class StepBranch:
    """分支边"""
    condition: str  # "true" / "false"
    next_step_key: str

    def to_dict(self) -> Dict[str, Any]:
        return {"condition": self.condition, "next_step_key": self.next_step_key}


@dataclass
class WorkflowStep:
    """工作流步骤"""
    step_key: str
    step_type: StepType
    config: StepConfig = None
    next_step_key: Optional[str] = None
    branches: Optional[List[StepBranch]] = None
    step_order: int = 0
    retry_policy: Optional[Dict[str, Any]] = None  # 覆盖默认重试策略

    def __post_init__(self):
        if self.config is None:
            self.config = STEP_CONFIG_TYPES[self.step_type]()

    def branch_target(self, outcome: bool) -> Optional[str]:
        """根据条件结果返回分支后继"""
        wanted = "true" if outcome else "false"
        for branch in self.branches or []:
            if branch.condition == wanted:
                return branch.next_step_key
        return None

    def successor_keys(self) -> List[str]:
        """所有出边指向的 step_key"""
        keys = []
        if self.next_step_key:
            keys.append(self.next_step_key)
        for branch in self.branches or []:
            if branch.next_step_key:
                keys.append(branch.next_step_key)
        return keys

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "step_key": self.step_key,
            "step_type": self.step_type.value,
            "step_order": self.step_order,
            "step_config": self.config.to_dict(),
            "next_step_key": self.next_step_key,
            "branches": [b.to_dict() for b in self.branches] if self.branches is not None else None,
        }
        if self.retry_policy:
            data["retry_policy"] = self.retry_policy
        return data


@dataclass
class WorkflowDefinition:
    """工作流定义"""
    id: str = field(default_factory=lambda: str(uuid4()))
    name: str = ""
    object_type: ObjectType = ObjectType.LEAD
    description: Optional[str] = None
    trigger_type: TriggerType = TriggerType.RECORD_CHANGE
    trigger_config: Dict[str, Any] = field(default_factory=dict)
    entry_criteria: EntryCriteria = field(default_factory=EntryCriteria)
    reentry_mode: ReentryMode = ReentryMode.ALWAYS_REENTRY
    reentry_wait_days: Optional[int] = None
    is_active: bool = False
    evaluation_order: int = 0
    steps: List[WorkflowStep] = field(default_factory=list)
    execution_count: int = 0
    last_executed_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def step_map(self) -> Dict[str, WorkflowStep]:
        """step_key -> 步骤 查找表"""
        table = {}
        for step in self.steps:
            table.setdefault(step.step_key, step)
        return table

    def get_step(self, step_key: str) -> Optional[WorkflowStep]:
        """根据 step_key 获取步骤"""
        for step in self.steps:
            if step.step_key == step_key:
                return step
        return None

    def trigger_steps(self) -> List[WorkflowStep]:
        return [s for s in self.steps if s.step_type == StepType.TRIGGER]

    def get_trigger(self) -> Optional[WorkflowStep]:
        """返回唯一的触发节点"""
        triggers = self.trigger_steps()
        return triggers[0] if len(triggers) == 1 else None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "object_type": self.object_type.value,
            "trigger_type": self.trigger_type.value,
            "trigger_config": self.trigger_config,
            "entry_criteria": self.entry_criteria.to_dict(),
            "reentry_mode": self.reentry_mode.value,
            "reentry_wait_days": self.reentry_wait_days,
            "is_active": self.is_active,
            "evaluation_order": self.evaluation_order,
            "execution_count": self.execution_count,
            "last_executed_at": self.last_executed_at.isoformat() if self.last_executed_at else None,
            "steps": [s.to_dict() for s in self.steps],
        }
