"""
步骤执行器
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Dict, Any, Optional

from ..config import PracticeProfile
from ..models.workflow import (
    WorkflowDefinition, WorkflowStep, StepType, ObjectType, EntryCondition
)
from ..models.run import WorkflowRun
from ..integrations.collaborators import Collaborators
from ..exceptions import (
    ConfigurationError, EvaluationError, PermanentDeliveryError
)
from .criteria import CriteriaEvaluator, to_datetime
from .variables import VariableResolver


logger = logging.getLogger(__name__)


class ResultKind(Enum):
    """步骤执行结果类型"""
    ADVANCE = "advance"    # 前进到 next_step_key
    WAIT = "wait"          # 挂起到 wait_until
    COMPLETE = "complete"  # 运行结束


@dataclass
class StepResult:
    """步骤执行结果"""
    kind: ResultKind
    next_step_key: Optional[str] = None
    wait_until: Optional[datetime] = None
    branch: Optional[bool] = None
    output: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def advance(cls, next_step_key: Optional[str], **output) -> "StepResult":
        return cls(ResultKind.ADVANCE, next_step_key=next_step_key, output=output)


@dataclass
class StepContext:
    """步骤执行上下文"""
    workflow: WorkflowDefinition
    run: WorkflowRun
    step: WorkflowStep
    record: Dict[str, Any]
    now: datetime
    collaborators: Collaborators
    resolver: VariableResolver
    evaluator: CriteriaEvaluator
    practice: PracticeProfile

    @property
    def object_type(self) -> ObjectType:
        return self.workflow.object_type

    @property
    def variables(self) -> Dict[str, str]:
        return self.resolver.build_context(self.object_type, self.record)

    def resolve(self, text: Optional[str]) -> Optional[str]:
        return self.resolver.resolve(text, self.variables)


class StepExecutor:
    """步骤执行器基类"""

    async def execute(self, context: StepContext) -> StepResult:
        """执行步骤"""
        raise NotImplementedError

    def require_config(self, context: StepContext):
        """必填配置缺失时抛出 ConfigurationError"""
        problems = context.step.config.problems()
        if problems:
            raise ConfigurationError(context.step.step_key, "; ".join(problems))


class TriggerExecutor(StepExecutor):
    """触发节点：直接进入后继"""

    async def execute(self, context: StepContext) -> StepResult:
        return StepResult.advance(context.step.next_step_key)


class EndExecutor(StepExecutor):
    """结束节点"""

    async def execute(self, context: StepContext) -> StepResult:
        return StepResult(ResultKind.COMPLETE)


def _recipient(
    context: StepContext,
    to_type: str,
    to_field: Optional[str],
    custom_value: Optional[str],
    default_field: str,
    admin_value: Optional[str]
) -> str:
    """按 to_type 解析收件人"""
    step_key = context.step.step_key
    if to_type == "custom":
        if not custom_value:
            raise ConfigurationError(step_key, f"custom recipient requires a {default_field}")
        return context.resolve(custom_value)
    if to_type == "admin":
        if not admin_value:
            raise ConfigurationError(step_key, f"practice admin {default_field} is not configured")
        return admin_value

    field_name = to_field or default_field
    value = context.record.get(field_name)
    if not value:
        raise PermanentDeliveryError(
            f"Record {context.run.target_record_id} has no {field_name} to deliver to"
        )
    return str(value)


class SendEmailExecutor(StepExecutor):
    """发送邮件"""

    async def execute(self, context: StepContext) -> StepResult:
        self.require_config(context)
        config = context.step.config
        to = _recipient(
            context, config.to_type, config.to_field, config.to_email,
            "email", context.practice.admin_email
        )

        variables = context.variables
        resolve = context.resolver.resolve
        template = config.template_name or config.template_id
        subject = resolve(config.subject, variables) or template or ""
        body = resolve(config.message_body, variables) or ""

        await context.collaborators.notifications.send_email(
            to,
            subject,
            body,
            cta_text=resolve(config.cta_text, variables),
            cta_url=resolve(config.cta_url, variables)
        )

        output = {"email_sent_to": to, "subject": subject}
        if template:
            output["template"] = template
        return StepResult.advance(context.step.next_step_key, **output)


class SendSmsExecutor(StepExecutor):
    """发送短信"""

    async def execute(self, context: StepContext) -> StepResult:
        self.require_config(context)
        config = context.step.config
        to = _recipient(
            context, config.to_type, config.to_field, config.to_phone,
            "phone", context.practice.admin_phone
        )
        body = context.resolve(config.message_body)

        await context.collaborators.notifications.send_sms(to, body)

        return StepResult.advance(context.step.next_step_key, sms_sent_to=to)


class SendMessageExecutor(StepExecutor):
    """客户门户站内信"""

    async def execute(self, context: StepContext) -> StepResult:
        self.require_config(context)
        config = context.step.config
        body = context.resolve(config.message_body)

        await context.collaborators.notifications.send_portal_message(
            context.run.target_record_id, body
        )

        output = {"message_sent_to": context.run.target_record_id}
        if config.subject:
            output["subject"] = context.resolve(config.subject)
        return StepResult.advance(context.step.next_step_key, **output)


class WebhookExecutor(StepExecutor):
    """调用 Webhook"""

    async def execute(self, context: StepContext) -> StepResult:
        self.require_config(context)
        config = context.step.config
        variables = context.variables
        resolve_value = context.resolver.resolve_value

        url = resolve_value(config.webhook_url, variables)
        method = str(config.webhook_method).upper()
        response = await context.collaborators.webhooks.call(
            url,
            method,
            body=resolve_value(config.webhook_body, variables) or None,
            headers=resolve_value(config.webhook_headers, variables) or None
        )

        return StepResult.advance(
            context.step.next_step_key,
            webhook_url=url,
            webhook_method=method,
            response=response or {}
        )


class CreateTaskExecutor(StepExecutor):
    """创建待办任务"""

    async def execute(self, context: StepContext) -> StepResult:
        self.require_config(context)
        config = context.step.config
        title = context.resolve(config.title)

        task_id = await context.collaborators.tasks.create_task(
            title,
            config.action_type,
            config.assigned_to,
            record_id=context.run.target_record_id
        )

        output = {"task_id": task_id, "task_title": title, "assigned_to": config.assigned_to}
        if config.due_days is not None:
            output["due_date"] = (context.now + timedelta(days=config.due_days)).date().isoformat()
        if config.priority is not None:
            output["priority"] = config.priority
        return StepResult.advance(context.step.next_step_key, **output)


class CreateRecordExecutor(StepExecutor):
    """创建关联记录"""

    async def execute(self, context: StepContext) -> StepResult:
        self.require_config(context)
        config = context.step.config
        record_type = ObjectType(config.record_type)
        data = context.resolver.resolve_value(dict(config.record_data), context.variables)

        record_id = await context.collaborators.records.create_record(record_type, data)

        return StepResult.advance(
            context.step.next_step_key,
            record_type=record_type.value,
            record_id=record_id
        )


class UpdateFieldExecutor(StepExecutor):
    """更新记录字段"""

    async def execute(self, context: StepContext) -> StepResult:
        self.require_config(context)
        config = context.step.config
        records = context.collaborators.records

        known = await records.known_fields(context.object_type)
        if known is not None and config.field not in known:
            raise ConfigurationError(
                context.step.step_key,
                f"field '{config.field}' is not defined on {context.object_type.value}"
            )

        await records.update_field(
            context.object_type, context.run.target_record_id, config.field, config.value
        )

        return StepResult.advance(
            context.step.next_step_key,
            field_updated=config.field,
            new_value=config.value
        )


class WaitExecutor(StepExecutor):
    """
    等待节点

    wait_until_field 优先；否则 now + wait_days + wait_hours。
    计算出的时间不晚于当前时刻时直接继续，不挂起。
    """

    async def execute(self, context: StepContext) -> StepResult:
        self.require_config(context)
        config = context.step.config

        if config.wait_until_field:
            wait_until = to_datetime(context.record.get(config.wait_until_field))
            if wait_until is None:
                raise ConfigurationError(
                    context.step.step_key,
                    f"wait_until_field '{config.wait_until_field}' is missing or not a date"
                )
        else:
            wait_until = context.now + timedelta(
                days=float(config.wait_days or 0),
                hours=float(config.wait_hours or 0)
            )

        wait_until = wait_until.astimezone(timezone.utc)
        if wait_until <= context.now:
            return StepResult.advance(
                context.step.next_step_key, wait_until=wait_until.isoformat(), elapsed=True
            )

        return StepResult(
            ResultKind.WAIT,
            wait_until=wait_until,
            output={"wait_until": wait_until.isoformat()}
        )


class DecisionExecutor(StepExecutor):
    """
    条件分支

    使用重新获取的记录评估条件；字段不存在时记录日志并走 false 分支。
    """

    async def execute(self, context: StepContext) -> StepResult:
        self.require_config(context)
        config = context.step.config
        condition = EntryCondition(
            field=config.condition_field,
            operator=config.operator,
            value=config.condition_value
        )

        output = {"condition_field": config.condition_field}
        try:
            outcome = context.evaluator.evaluate_condition(
                condition, context.record, context.now, strict=True
            )
        except EvaluationError as e:
            logger.warning(
                f"Decision {context.step.step_key} in run {context.run.id}: {e}; taking false branch",
                extra={"run_id": context.run.id, "step_key": context.step.step_key}
            )
            outcome = False
            output["evaluation_error"] = str(e)

        output["result"] = outcome
        return StepResult(
            ResultKind.ADVANCE,
            next_step_key=context.step.branch_target(outcome),
            branch=outcome,
            output=output
        )


def default_executors() -> Dict[StepType, StepExecutor]:
    """步骤类型 -> 执行器"""
    return {
        StepType.TRIGGER: TriggerExecutor(),
        StepType.SEND_EMAIL: SendEmailExecutor(),
        StepType.SEND_SMS: SendSmsExecutor(),
        StepType.SEND_MESSAGE: SendMessageExecutor(),
        StepType.CREATE_TASK: CreateTaskExecutor(),
        StepType.UPDATE_FIELD: UpdateFieldExecutor(),
        StepType.CREATE_RECORD: CreateRecordExecutor(),
        StepType.WAIT: WaitExecutor(),
        StepType.DECISION: DecisionExecutor(),
        StepType.WEBHOOK: WebhookExecutor(),
        StepType.END: EndExecutor(),
    }
