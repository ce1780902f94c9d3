"""
工作流执行引擎
"""
import logging
from typing import Dict, Any, Optional, List, Callable, Tuple
from datetime import datetime

from ..config import EngineSettings
from ..models.workflow import WorkflowDefinition, WorkflowStep, StepType, utcnow
from ..models.run import (
    WorkflowRun, RunStatus, HistoryEntry, StepOutcome, RunEvent, RunEventType,
    error_info
)
from ..exceptions import (
    ConfigurationError, TransientDeliveryError, RetryExhaustedError,
    RunNotFoundError, WorkflowEngineError
)
from ..storage.repository import WorkflowRepository, RunRepository
from ..integrations.collaborators import Collaborators
from ..integrations.event_bus import EventBus
from .criteria import CriteriaEvaluator
from .variables import VariableResolver
from .error_handler import ErrorHandler, ErrorStrategy, RetryPolicy
from .executors import StepExecutor, StepContext, StepResult, ResultKind, default_executors
from .locks import RunLockManager


logger = logging.getLogger(__name__)


RUN_EVENTS_TOPIC = "workflow.run.events"


class ExecutionEngine:
    """
    工作流执行引擎

    每次推进（advance）持有运行锁，执行一串直通步骤加至多一个有副作用的步骤，
    然后一次性写回状态、当前步骤和新增历史。process 重复推进直到运行离开 active。
    """

    def __init__(
        self,
        workflow_repository: WorkflowRepository,
        run_repository: RunRepository,
        collaborators: Collaborators,
        event_bus: EventBus = None,
        settings: EngineSettings = None,
        error_handler: ErrorHandler = None,
        evaluator: CriteriaEvaluator = None,
        resolver: VariableResolver = None,
        executors: Dict[StepType, StepExecutor] = None,
        locks: RunLockManager = None,
        clock: Callable[[], datetime] = utcnow
    ):
        self.settings = settings or EngineSettings()
        self.workflow_repository = workflow_repository
        self.run_repository = run_repository
        self.collaborators = collaborators
        self.event_bus = event_bus or EventBus()
        self.clock = clock
        self.error_handler = error_handler or ErrorHandler(
            RetryPolicy.from_dict(self.settings.retry_policy)
        )
        self.evaluator = evaluator or CriteriaEvaluator(clock)
        self.resolver = resolver or VariableResolver(self.settings.practice, clock)
        self.executors = executors or default_executors()
        self.locks = locks or RunLockManager()

    async def create_run(self, run: WorkflowRun) -> WorkflowRun:
        """保存调度器新建的运行并发布开始事件"""
        await self.run_repository.save(run)
        logger.info(
            f"Run {run.id} started for {run.object_type.value} {run.target_record_id}",
            extra={"run_id": run.id, "workflow_id": run.workflow_id}
        )
        await self._publish(run, RunEventType.RUN_STARTED, run.current_step_key)
        return run

    async def get_run(self, run_id: str) -> Optional[WorkflowRun]:
        """获取运行"""
        return await self.run_repository.get(run_id)

    async def process(self, run_id: str) -> WorkflowRun:
        """推进运行直到挂起或终止"""
        budget = self.settings.max_steps_per_invocation
        while True:
            run, executed = await self.advance(run_id, budget)
            budget -= executed
            if run.status != RunStatus.ACTIVE or executed == 0:
                return run
            if budget <= 0:
                return await self._abort(
                    run_id,
                    f"Run exceeded {self.settings.max_steps_per_invocation} steps in one invocation"
                )

    async def advance(self, run_id: str, budget: int = None) -> Tuple[WorkflowRun, int]:
        """
        执行一个工作单元

        Returns:
            (运行, 本次执行的步骤数)
        """
        budget = budget or self.settings.max_steps_per_invocation
        events: List[Tuple[RunEventType, Optional[str], Dict[str, Any]]] = []

        async with self.locks.hold(run_id):
            run = await self._load_run(run_id)
            if run.status != RunStatus.ACTIVE:
                return run, 0

            workflow = await self.workflow_repository.get(run.workflow_id)
            executed = 0
            if workflow is None:
                self._fail(run, f"Workflow {run.workflow_id} no longer exists", events)
            else:
                while run.status == RunStatus.ACTIVE and executed < budget:
                    step = workflow.get_step(run.current_step_key)
                    if step is None:
                        self._fail(
                            run, f"Step '{run.current_step_key}' not found in workflow", events
                        )
                        break
                    executed += 1
                    await self._run_step(workflow, run, step, events)
                    if not step.step_type.is_pass_through:
                        break

            await self.run_repository.update(run)

        for event_type, step_key, data in events:
            await self._publish(run, event_type, step_key, data)
        return run, executed

    async def resume_run(self, run_id: str, now: datetime = None) -> Optional[WorkflowRun]:
        """
        恢复到期的等待运行并继续推进

        运行不在 waiting 或尚未到期时返回 None，保证每次到期只恢复一次。
        """
        events = []
        async with self.locks.hold(run_id):
            run = await self._load_run(run_id)
            now = now or self.clock()
            if run.status != RunStatus.WAITING or run.wait_until is None or run.wait_until > now:
                return None
            # 进程内锁挡不住其他调度进程，以存储层的条件更新为准
            if not await self.run_repository.claim_waiting(run_id, now):
                logger.info(f"Run {run_id} already resumed elsewhere", extra={"run_id": run_id})
                return None

            workflow = await self.workflow_repository.get(run.workflow_id)
            step = workflow.get_step(run.current_step_key) if workflow else None

            run.record(HistoryEntry(
                step_key=run.current_step_key,
                outcome=StepOutcome.RESUMED,
                step_type=StepType.WAIT,
                started_at=now,
                finished_at=now,
                output={"wait_until": run.wait_until.isoformat()}
            ))
            run.resume(now)
            events.append((RunEventType.RUN_RESUMED, run.current_step_key, {}))

            if step is None:
                self._fail(run, f"Wait step '{run.current_step_key}' no longer exists", events)
            else:
                run.move_to(step.next_step_key, now)

            await self.run_repository.update(run)

        logger.info(f"Run {run_id} resumed", extra={"run_id": run_id})
        for event_type, step_key, data in events:
            await self._publish(run, event_type, step_key, data)
        return await self.process(run_id)

    async def cancel_run(self, run_id: str) -> WorkflowRun:
        """取消运行（不回滚已产生的副作用）"""
        async with self.locks.hold(run_id):
            run = await self._load_run(run_id)
            now = self.clock()
            run.cancel(now)
            run.record(HistoryEntry(
                step_key=run.current_step_key or "",
                outcome=StepOutcome.CANCELLED,
                started_at=now,
                finished_at=now
            ))
            await self.run_repository.update(run)

        logger.info(f"Run {run_id} cancelled", extra={"run_id": run_id})
        await self._publish(run, RunEventType.RUN_CANCELLED, run.current_step_key)
        return run

    async def _run_step(
        self,
        workflow: WorkflowDefinition,
        run: WorkflowRun,
        step: WorkflowStep,
        events: List
    ):
        """执行单个步骤（含重试），结果写入运行和历史"""
        executor = self.executors.get(step.step_type)
        policy = self.error_handler.policy_for(step.retry_policy)
        attempt = 1

        while True:
            started_at = self.clock()
            try:
                if executor is None:
                    raise ConfigurationError(step.step_key, f"no executor for {step.step_type.value}")
                context = StepContext(
                    workflow=workflow,
                    run=run,
                    step=step,
                    record=await self._load_record(run, step),
                    now=started_at,
                    collaborators=self.collaborators,
                    resolver=self.resolver,
                    evaluator=self.evaluator,
                    practice=self.settings.practice
                )
                result = await executor.execute(context)
            except Exception as e:
                strategy = self.error_handler.determine_strategy(e, attempt, policy)
                if strategy == ErrorStrategy.RETRY:
                    logger.warning(
                        f"Step {step.step_key} in run {run.id} failed on attempt {attempt}: {e}",
                        extra={"run_id": run.id, "step_key": step.step_key, "attempt": attempt}
                    )
                    run.record(HistoryEntry(
                        step_key=step.step_key,
                        outcome=StepOutcome.RETRYING,
                        step_type=step.step_type,
                        started_at=started_at,
                        finished_at=self.clock(),
                        attempt=attempt,
                        error=error_info(e)
                    ))
                    events.append((RunEventType.STEP_RETRYING, step.step_key, {"attempt": attempt}))
                    await self.error_handler.wait_before_retry(step.step_key, attempt - 1, policy)
                    attempt += 1
                    continue

                self._record_failure(run, step, e, attempt, started_at, events)
                return
            break

        self._apply_result(run, step, result, attempt, started_at, events)

    def _apply_result(
        self,
        run: WorkflowRun,
        step: WorkflowStep,
        result: StepResult,
        attempt: int,
        started_at: datetime,
        events: List
    ):
        finished_at = self.clock()
        entry = HistoryEntry(
            step_key=step.step_key,
            outcome=StepOutcome.COMPLETED,
            step_type=step.step_type,
            started_at=started_at,
            finished_at=finished_at,
            attempt=attempt,
            output=result.output
        )

        if result.kind == ResultKind.WAIT:
            entry.outcome = StepOutcome.WAITING
            run.record(entry)
            run.wait(result.wait_until, finished_at)
            events.append((RunEventType.RUN_WAITING, step.step_key,
                           {"wait_until": result.wait_until.isoformat()}))
            logger.info(
                f"Run {run.id} waiting at {step.step_key} until {result.wait_until.isoformat()}",
                extra={"run_id": run.id, "step_key": step.step_key}
            )
            return

        if result.kind == ResultKind.COMPLETE:
            run.record(entry)
            run.complete(finished_at)
            events.append((RunEventType.RUN_COMPLETED, step.step_key, {}))
            logger.info(f"Run {run.id} completed", extra={"run_id": run.id})
            return

        if result.branch is not None:
            entry.outcome = StepOutcome.BRANCHED
        if not result.next_step_key:
            error = ConfigurationError(step.step_key, "no successor defined")
            self._record_failure(run, step, error, attempt, started_at, events)
            return

        run.record(entry)
        run.move_to(result.next_step_key, finished_at)
        events.append((RunEventType.STEP_COMPLETED, step.step_key, {"outcome": entry.outcome.value}))

    def _record_failure(
        self,
        run: WorkflowRun,
        step: WorkflowStep,
        error: Exception,
        attempt: int,
        started_at: datetime,
        events: List
    ):
        if isinstance(error, WorkflowEngineError):
            logger.error(
                f"Step {step.step_key} in run {run.id} failed: {error}",
                extra={"run_id": run.id, "step_key": step.step_key, "attempt": attempt}
            )
        else:
            logger.error(
                f"Unexpected error in step {step.step_key} of run {run.id}: {error}",
                exc_info=True,
                extra={"run_id": run.id, "step_key": step.step_key, "attempt": attempt}
            )

        if isinstance(error, TransientDeliveryError) and attempt > 1:
            message = str(RetryExhaustedError(step.step_key, attempt, error))
        else:
            message = str(error)

        run.record(HistoryEntry(
            step_key=step.step_key,
            outcome=StepOutcome.FAILED,
            step_type=step.step_type,
            started_at=started_at,
            finished_at=self.clock(),
            attempt=attempt,
            error=error_info(error)
        ))
        events.append((RunEventType.STEP_FAILED, step.step_key, {"error": str(error)}))
        self._fail(run, message, events)

    def _fail(self, run: WorkflowRun, message: str, events: List):
        run.fail(message, self.clock())
        events.append((RunEventType.RUN_FAILED, run.current_step_key, {"error": message}))
        logger.warning(f"Run {run.id} failed: {message}", extra={"run_id": run.id})

    async def _abort(self, run_id: str, message: str) -> WorkflowRun:
        """步骤数超限时终止运行"""
        events = []
        async with self.locks.hold(run_id):
            run = await self._load_run(run_id)
            if run.status == RunStatus.ACTIVE:
                self._fail(run, message, events)
                await self.run_repository.update(run)
        for event_type, step_key, data in events:
            await self._publish(run, event_type, step_key, data)
        return run

    async def _load_run(self, run_id: str) -> WorkflowRun:
        run = await self.run_repository.get(run_id)
        if run is None:
            raise RunNotFoundError(f"Run not found: {run_id}")
        return run

    async def _load_record(self, run: WorkflowRun, step: WorkflowStep) -> Dict[str, Any]:
        """获取记录当前状态，记录已不存在时使用进入时的快照"""
        if step.step_type in (StepType.TRIGGER, StepType.END):
            return dict(run.record_snapshot)
        record = await self.collaborators.records.get_record(run.object_type, run.target_record_id)
        if record is None:
            logger.debug(f"Record {run.target_record_id} not found, using entry snapshot")
            return dict(run.record_snapshot)
        return record

    async def _publish(
        self,
        run: WorkflowRun,
        event_type: RunEventType,
        step_key: Optional[str] = None,
        data: Dict[str, Any] = None
    ):
        """发布运行事件"""
        event = RunEvent(
            run_id=run.id,
            workflow_id=run.workflow_id,
            step_key=step_key,
            event_type=event_type.value,
            data=data or {}
        )
        await self.event_bus.publish(RUN_EVENTS_TOPIC, event)
