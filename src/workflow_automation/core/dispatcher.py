"""
触发调度器：记录事件 -> 进入条件 -> 重入策略 -> 创建运行
"""
import logging
from datetime import datetime, timedelta
from typing import Dict, Any, List, Optional, Callable

from ..models.workflow import (
    WorkflowDefinition, TriggerType, ReentryMode, utcnow
)
from ..models.run import WorkflowRun, RunStatus, HistoryEntry, StepOutcome
from ..models.events import RecordEvent, RecordEventType, RECORD_EVENT_TOPICS
from ..exceptions import WorkflowNotFoundError, WorkflowEngineError
from ..storage.repository import WorkflowRepository, RunRepository
from ..integrations.event_bus import Event, EventBus
from .criteria import CriteriaEvaluator, values_equal
from .engine import ExecutionEngine
from .locks import RunLockManager


logger = logging.getLogger(__name__)


class TriggerDispatcher:
    """
    触发调度器

    对每个匹配的激活工作流：评估进入条件（使用事件快照），应用重入策略，
    创建运行并交给执行引擎推进。重入检查和创建在 (工作流, 记录) 锁内完成。
    单个工作流的失败只记录日志，不影响其他工作流。
    """

    def __init__(
        self,
        workflow_repository: WorkflowRepository,
        run_repository: RunRepository,
        engine: ExecutionEngine,
        evaluator: CriteriaEvaluator = None,
        clock: Callable[[], datetime] = utcnow
    ):
        self.workflow_repository = workflow_repository
        self.run_repository = run_repository
        self.engine = engine
        self.evaluator = evaluator or CriteriaEvaluator(clock)
        self.clock = clock
        self._entry_locks = RunLockManager()

    async def attach(self, event_bus: EventBus):
        """订阅记录创建/更新事件"""
        for topic in RECORD_EVENT_TOPICS.values():
            await event_bus.subscribe(topic, self._on_event)

    async def detach(self, event_bus: EventBus):
        for topic in RECORD_EVENT_TOPICS.values():
            await event_bus.unsubscribe(topic, self._on_event)

    async def _on_event(self, event: Event):
        await self.handle_event(event.payload)

    async def handle_event(self, event: RecordEvent) -> List[WorkflowRun]:
        """
        处理记录事件

        Returns:
            List[WorkflowRun]: 本次创建的运行（已推进到第一次挂起或终止）
        """
        workflows = await self.workflow_repository.list_active(event.object_type)
        created = []

        for workflow in workflows:
            if not self._trigger_matches(workflow, event):
                continue
            try:
                if not self.evaluator.evaluate(workflow.entry_criteria, event.record):
                    logger.debug(
                        f"Record {event.record_id} does not meet entry criteria of {workflow.id}"
                    )
                    continue
                run = await self._enter(workflow, event.record_id, event.record, {
                    "type": workflow.trigger_type.value,
                    "event_type": event.event_type.value,
                    "changed_fields": list(event.changed_fields),
                    "occurred_at": event.occurred_at.isoformat(),
                })
            except Exception as e:
                logger.error(
                    f"Workflow {workflow.id} failed to handle {event.topic} "
                    f"for record {event.record_id}: {e}",
                    exc_info=not isinstance(e, WorkflowEngineError),
                    extra={"workflow_id": workflow.id, "record_id": event.record_id}
                )
                continue
            if run is not None:
                created.append(run)

        return created

    async def trigger_manually(self, workflow_id: str, record_id: str) -> Optional[WorkflowRun]:
        """
        手动触发

        跳过进入条件，但仍应用重入策略。被重入策略拒绝时返回 None。
        """
        workflow = await self.workflow_repository.get(workflow_id)
        if workflow is None:
            raise WorkflowNotFoundError(f"Workflow not found: {workflow_id}")
        if not workflow.is_active:
            raise WorkflowEngineError(f"Workflow {workflow_id} is not active")

        record = await self.engine.collaborators.records.get_record(workflow.object_type, record_id)
        if record is None:
            raise WorkflowEngineError(
                f"{workflow.object_type.value} record not found: {record_id}"
            )

        return await self._enter(workflow, record_id, record, {
            "type": TriggerType.MANUAL.value,
            "occurred_at": self.clock().isoformat(),
        })

    def _trigger_matches(self, workflow: WorkflowDefinition, event: RecordEvent) -> bool:
        """触发类型与事件是否匹配"""
        trigger_type = workflow.trigger_type
        if trigger_type == TriggerType.MANUAL:
            return False
        if trigger_type == TriggerType.RECORD_CHANGE:
            return True
        if trigger_type == TriggerType.RECORD_CREATE:
            return event.event_type == RecordEventType.CREATED
        if trigger_type == TriggerType.RECORD_UPDATE:
            return event.event_type == RecordEventType.UPDATED

        # field_change
        config = workflow.trigger_config or {}
        field_name = config.get("field")
        if not field_name or event.event_type != RecordEventType.UPDATED:
            return False
        if not event.field_changed(field_name):
            return False
        if "from_value" in config:
            previous = (event.previous_values or {}).get(field_name)
            if not values_equal(previous, config["from_value"]):
                return False
        if "to_value" in config:
            if not values_equal(event.record.get(field_name), config["to_value"]):
                return False
        return True

    async def _enter(
        self,
        workflow: WorkflowDefinition,
        record_id: str,
        record: Dict[str, Any],
        trigger: Dict[str, Any]
    ) -> Optional[WorkflowRun]:
        """重入检查 + 创建运行（原子），然后推进"""
        trigger_step = workflow.get_trigger()
        if trigger_step is None:
            logger.error(f"Active workflow {workflow.id} has no single trigger step")
            return None

        async with self._entry_locks.hold((workflow.id, record_id)):
            now = self.clock()
            previous = await self.run_repository.list_for_record(workflow.id, record_id)
            if not self._reentry_allowed(workflow, previous, now):
                logger.info(
                    f"Record {record_id} blocked by {workflow.reentry_mode.value} "
                    f"on workflow {workflow.id}"
                )
                return None

            run = WorkflowRun(
                workflow_id=workflow.id,
                object_type=workflow.object_type,
                target_record_id=record_id,
                status=RunStatus.ACTIVE,
                current_step_key=trigger_step.next_step_key,
                entered_at=now,
                last_transitioned_at=now,
                record_snapshot=dict(record),
                trigger=trigger
            )
            run.record(HistoryEntry(
                step_key=trigger_step.step_key,
                outcome=StepOutcome.COMPLETED,
                step_type=trigger_step.step_type,
                started_at=now,
                finished_at=now,
                output=dict(trigger)
            ))
            await self.engine.create_run(run)
            await self.workflow_repository.record_execution(workflow.id, now)

        return await self.engine.process(run.id)

    def _reentry_allowed(
        self,
        workflow: WorkflowDefinition,
        previous: List[WorkflowRun],
        now: datetime
    ) -> bool:
        """重入策略"""
        mode = workflow.reentry_mode
        if mode == ReentryMode.ALWAYS_REENTRY or not previous:
            return True
        if mode == ReentryMode.NO_REENTRY:
            return False
        if mode == ReentryMode.REENTRY_AFTER_EXIT:
            return all(run.is_terminal_state() for run in previous)

        # reentry_after_days
        window = timedelta(days=workflow.reentry_wait_days or 0)
        latest = max(run.entered_at for run in previous)
        return now - latest >= window
