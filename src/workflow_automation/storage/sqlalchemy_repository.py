"""
SQLAlchemy 仓库实现
"""
import json
import logging
from typing import Optional, List, Dict, Any
from datetime import datetime, timezone
from contextlib import asynccontextmanager
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, AsyncEngine
from sqlalchemy.orm import sessionmaker, selectinload
from sqlalchemy import select, update, and_, func

from ..models.workflow import (
    WorkflowDefinition, WorkflowStep, StepBranch, StepType, ObjectType,
    TriggerType, ReentryMode, EntryCriteria, STEP_CONFIG_TYPES
)
from ..models.run import WorkflowRun, RunStatus, HistoryEntry, StepOutcome
from .repository import WorkflowRepository, RunRepository, ensure_unique_step_keys
from .sqlalchemy_models import (
    WorkflowDefinitionRow,
    WorkflowStepRow,
    WorkflowRunRow,
    RunHistoryRow,
    Base
)


logger = logging.getLogger(__name__)


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite 读回的时间不带时区，统一视为 UTC"""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _utc(value: Optional[datetime]) -> Optional[datetime]:
    """写入前统一换算为 UTC，SQLite 只保存墙上时间"""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _json_safe(value: Any) -> Any:
    """保证 JSON 列可序列化（日期等转为字符串）"""
    if value is None:
        return None
    return json.loads(json.dumps(value, default=str))


class DatabaseManager:
    """数据库管理器"""

    def __init__(self, database_url: str):
        self.database_url = database_url
        self.engine: Optional[AsyncEngine] = None
        self.async_session_maker = None

    async def initialize(self):
        """初始化数据库连接并建表"""
        engine_kwargs = {"echo": False}
        if not self.database_url.startswith("sqlite"):
            engine_kwargs.update(pool_size=20, max_overflow=10, pool_pre_ping=True)

        self.engine = create_async_engine(self.database_url, **engine_kwargs)

        self.async_session_maker = sessionmaker(
            self.engine,
            class_=AsyncSession,
            expire_on_commit=False
        )

        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

        logger.info(f"Database initialized: {self.engine.url.render_as_string(hide_password=True)}")

    async def close(self):
        """关闭数据库连接"""
        if self.engine:
            await self.engine.dispose()

    @asynccontextmanager
    async def get_session(self):
        """获取数据库会话"""
        async with self.async_session_maker() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise
            finally:
                await session.close()


class SQLAlchemyWorkflowRepository(WorkflowRepository):
    """SQLAlchemy 工作流仓库实现"""

    def __init__(self, db_manager: DatabaseManager):
        self.db = db_manager

    async def save(self, workflow: WorkflowDefinition) -> str:
        """保存工作流"""
        ensure_unique_step_keys(workflow)
        async with self.db.get_session() as session:
            row = WorkflowDefinitionRow(
                id=workflow.id,
                created_at=_utc(workflow.created_at),
                **self._definition_values(workflow)
            )
            row.steps = self._step_rows(workflow)
            session.add(row)
            await session.flush()
            return workflow.id

    async def get(self, workflow_id: str) -> Optional[WorkflowDefinition]:
        """获取工作流"""
        async with self.db.get_session() as session:
            result = await session.execute(
                select(WorkflowDefinitionRow)
                .options(selectinload(WorkflowDefinitionRow.steps))
                .where(WorkflowDefinitionRow.id == workflow_id)
            )
            row = result.scalar_one_or_none()
            return self._row_to_workflow(row) if row else None

    async def list(
        self,
        offset: int = 0,
        limit: int = 100,
        filters: Dict[str, Any] = None
    ) -> List[WorkflowDefinition]:
        """列出工作流"""
        async with self.db.get_session() as session:
            query = select(WorkflowDefinitionRow).options(selectinload(WorkflowDefinitionRow.steps))

            if filters:
                if 'is_active' in filters:
                    query = query.where(WorkflowDefinitionRow.is_active == filters['is_active'])
                if 'object_type' in filters:
                    query = query.where(
                        WorkflowDefinitionRow.object_type == ObjectType(filters['object_type']).value
                    )

            query = query.order_by(WorkflowDefinitionRow.created_at).offset(offset).limit(limit)

            result = await session.execute(query)
            return [self._row_to_workflow(row) for row in result.scalars().all()]

    async def list_active(self, object_type: ObjectType) -> List[WorkflowDefinition]:
        """某对象类型上激活的工作流"""
        async with self.db.get_session() as session:
            result = await session.execute(
                select(WorkflowDefinitionRow)
                .options(selectinload(WorkflowDefinitionRow.steps))
                .where(
                    and_(
                        WorkflowDefinitionRow.object_type == object_type.value,
                        WorkflowDefinitionRow.is_active.is_(True)
                    )
                )
                .order_by(WorkflowDefinitionRow.evaluation_order, WorkflowDefinitionRow.created_at)
            )
            return [self._row_to_workflow(row) for row in result.scalars().all()]

    async def update(self, workflow: WorkflowDefinition) -> bool:
        """更新工作流（步骤整体替换）"""
        ensure_unique_step_keys(workflow)
        async with self.db.get_session() as session:
            result = await session.execute(
                select(WorkflowDefinitionRow)
                .options(selectinload(WorkflowDefinitionRow.steps))
                .where(WorkflowDefinitionRow.id == workflow.id)
            )
            row = result.scalar_one_or_none()
            if row is None:
                return False

            workflow.updated_at = datetime.now(timezone.utc)
            for key, value in self._definition_values(workflow).items():
                setattr(row, key, value)

            row.steps.clear()
            await session.flush()
            row.steps.extend(self._step_rows(workflow))
            return True

    async def delete(self, workflow_id: str) -> bool:
        """删除工作流"""
        async with self.db.get_session() as session:
            result = await session.execute(
                select(WorkflowDefinitionRow).where(WorkflowDefinitionRow.id == workflow_id)
            )
            row = result.scalar_one_or_none()
            if row is None:
                return False
            await session.delete(row)
            return True

    async def record_execution(self, workflow_id: str, at: datetime) -> bool:
        """更新执行统计"""
        async with self.db.get_session() as session:
            result = await session.execute(
                update(WorkflowDefinitionRow)
                .where(WorkflowDefinitionRow.id == workflow_id)
                .values(
                    execution_count=WorkflowDefinitionRow.execution_count + 1,
                    last_executed_at=_utc(at)
                )
            )
            return result.rowcount > 0

    def _definition_values(self, workflow: WorkflowDefinition) -> Dict[str, Any]:
        return {
            'name': workflow.name,
            'description': workflow.description,
            'object_type': workflow.object_type.value,
            'trigger_type': workflow.trigger_type.value,
            'trigger_config': _json_safe(workflow.trigger_config) or {},
            'entry_criteria': _json_safe(workflow.entry_criteria.to_dict()),
            'reentry_mode': workflow.reentry_mode.value,
            'reentry_wait_days': workflow.reentry_wait_days,
            'is_active': workflow.is_active,
            'evaluation_order': workflow.evaluation_order,
            'execution_count': workflow.execution_count,
            'last_executed_at': _utc(workflow.last_executed_at),
            'updated_at': _utc(workflow.updated_at),
        }

    def _step_rows(self, workflow: WorkflowDefinition) -> List[WorkflowStepRow]:
        return [
            WorkflowStepRow(
                workflow_id=workflow.id,
                step_key=step.step_key,
                step_type=step.step_type.value,
                step_order=step.step_order,
                position=position,
                step_config=_json_safe(step.config.to_dict()),
                next_step_key=step.next_step_key,
                branches=[b.to_dict() for b in step.branches] if step.branches is not None else None,
                retry_policy=_json_safe(step.retry_policy)
            )
            for position, step in enumerate(workflow.steps)
        ]

    def _row_to_workflow(self, row: WorkflowDefinitionRow) -> WorkflowDefinition:
        """数据库行转工作流定义"""
        steps = []
        for step_row in row.steps:
            step_type = StepType(step_row.step_type)
            steps.append(WorkflowStep(
                step_key=step_row.step_key,
                step_type=step_type,
                config=STEP_CONFIG_TYPES[step_type].from_dict(step_row.step_config),
                next_step_key=step_row.next_step_key,
                branches=[
                    StepBranch(b['condition'], b['next_step_key']) for b in step_row.branches
                ] if step_row.branches is not None else None,
                step_order=step_row.step_order or 0,
                retry_policy=step_row.retry_policy
            ))

        return WorkflowDefinition(
            id=row.id,
            name=row.name,
            description=row.description,
            object_type=ObjectType(row.object_type),
            trigger_type=TriggerType(row.trigger_type),
            trigger_config=row.trigger_config or {},
            entry_criteria=EntryCriteria.from_dict(row.entry_criteria),
            reentry_mode=ReentryMode(row.reentry_mode),
            reentry_wait_days=row.reentry_wait_days,
            is_active=bool(row.is_active),
            evaluation_order=row.evaluation_order or 0,
            steps=steps,
            execution_count=row.execution_count or 0,
            last_executed_at=_aware(row.last_executed_at),
            created_at=_aware(row.created_at),
            updated_at=_aware(row.updated_at)
        )


class SQLAlchemyRunRepository(RunRepository):
    """SQLAlchemy 运行仓库实现"""

    def __init__(self, db_manager: DatabaseManager):
        self.db = db_manager

    async def save(self, run: WorkflowRun) -> str:
        """保存新运行"""
        async with self.db.get_session() as session:
            row = WorkflowRunRow(
                id=run.id,
                workflow_id=run.workflow_id,
                object_type=run.object_type.value,
                target_record_id=run.target_record_id,
                entered_at=_utc(run.entered_at),
                record_snapshot=_json_safe(run.record_snapshot) or {},
                trigger=_json_safe(run.trigger) or {},
                **self._state_values(run)
            )
            row.history = [self._history_row(run.id, i, h) for i, h in enumerate(run.history)]
            session.add(row)
            await session.flush()
            return run.id

    async def get(self, run_id: str) -> Optional[WorkflowRun]:
        """获取运行"""
        async with self.db.get_session() as session:
            result = await session.execute(
                select(WorkflowRunRow)
                .options(selectinload(WorkflowRunRow.history))
                .where(WorkflowRunRow.id == run_id)
            )
            row = result.scalar_one_or_none()
            return self._row_to_run(row) if row else None

    async def update(self, run: WorkflowRun) -> bool:
        """更新运行状态，只插入新增的历史条目"""
        async with self.db.get_session() as session:
            result = await session.execute(
                update(WorkflowRunRow)
                .where(WorkflowRunRow.id == run.id)
                .values(**self._state_values(run))
            )
            if result.rowcount == 0:
                return False

            stored = await session.scalar(
                select(func.count()).select_from(RunHistoryRow).where(RunHistoryRow.run_id == run.id)
            )
            for sequence in range(stored or 0, len(run.history)):
                session.add(self._history_row(run.id, sequence, run.history[sequence]))
            return True

    async def list_for_record(self, workflow_id: str, record_id: str) -> List[WorkflowRun]:
        return await self._query(
            and_(
                WorkflowRunRow.workflow_id == workflow_id,
                WorkflowRunRow.target_record_id == record_id
            )
        )

    async def list_due(self, now: datetime, limit: int = 100) -> List[WorkflowRun]:
        return await self._query(
            and_(
                WorkflowRunRow.status == RunStatus.WAITING.value,
                WorkflowRunRow.wait_until <= _utc(now)
            ),
            order_by=WorkflowRunRow.wait_until,
            limit=limit
        )

    async def claim_waiting(self, run_id: str, now: datetime) -> bool:
        """条件更新：只有仍处于 waiting 且已到期的运行才能被领取"""
        async with self.db.get_session() as session:
            result = await session.execute(
                update(WorkflowRunRow)
                .where(and_(
                    WorkflowRunRow.id == run_id,
                    WorkflowRunRow.status == RunStatus.WAITING.value,
                    WorkflowRunRow.wait_until <= _utc(now)
                ))
                .values(
                    status=RunStatus.ACTIVE.value,
                    wait_until=None,
                    last_transitioned_at=_utc(now)
                )
            )
            return result.rowcount == 1

    async def list_by_workflow(
        self,
        workflow_id: str,
        status: RunStatus = None,
        offset: int = 0,
        limit: int = 100
    ) -> List[WorkflowRun]:
        condition = WorkflowRunRow.workflow_id == workflow_id
        if status:
            condition = and_(condition, WorkflowRunRow.status == status.value)
        return await self._query(condition, offset=offset, limit=limit)

    async def list_by_status(
        self,
        status: RunStatus,
        offset: int = 0,
        limit: int = 100
    ) -> List[WorkflowRun]:
        return await self._query(
            WorkflowRunRow.status == status.value, offset=offset, limit=limit
        )

    async def _query(self, condition, order_by=None, offset: int = 0, limit: int = None) -> List[WorkflowRun]:
        async with self.db.get_session() as session:
            query = (
                select(WorkflowRunRow)
                .options(selectinload(WorkflowRunRow.history))
                .where(condition)
                .order_by(order_by if order_by is not None else WorkflowRunRow.entered_at)
                .offset(offset)
            )
            if limit is not None:
                query = query.limit(limit)
            result = await session.execute(query)
            return [self._row_to_run(row) for row in result.scalars().all()]

    def _state_values(self, run: WorkflowRun) -> Dict[str, Any]:
        return {
            'status': run.status.value,
            'current_step_key': run.current_step_key,
            'wait_until': _utc(run.wait_until),
            'last_transitioned_at': _utc(run.last_transitioned_at),
            'completed_at': _utc(run.completed_at),
            'error_message': run.error_message,
        }

    def _history_row(self, run_id: str, sequence: int, entry: HistoryEntry) -> RunHistoryRow:
        return RunHistoryRow(
            run_id=run_id,
            sequence=sequence,
            step_key=entry.step_key,
            step_type=entry.step_type.value if entry.step_type else None,
            outcome=entry.outcome.value,
            attempt=entry.attempt,
            started_at=_utc(entry.started_at),
            finished_at=_utc(entry.finished_at),
            error_info=_json_safe(entry.error),
            output=_json_safe(entry.output) or {}
        )

    def _row_to_run(self, row: WorkflowRunRow) -> WorkflowRun:
        """数据库行转运行实例"""
        history = [
            HistoryEntry(
                step_key=h.step_key,
                outcome=StepOutcome(h.outcome),
                step_type=StepType(h.step_type) if h.step_type else None,
                started_at=_aware(h.started_at),
                finished_at=_aware(h.finished_at),
                attempt=h.attempt or 1,
                error=h.error_info,
                output=h.output or {}
            )
            for h in row.history
        ]

        return WorkflowRun(
            id=row.id,
            workflow_id=row.workflow_id,
            object_type=ObjectType(row.object_type),
            target_record_id=row.target_record_id,
            status=RunStatus(row.status),
            current_step_key=row.current_step_key,
            wait_until=_aware(row.wait_until),
            entered_at=_aware(row.entered_at),
            last_transitioned_at=_aware(row.last_transitioned_at),
            completed_at=_aware(row.completed_at),
            error_message=row.error_message,
            record_snapshot=row.record_snapshot or {},
            trigger=row.trigger or {},
            history=history
        )
