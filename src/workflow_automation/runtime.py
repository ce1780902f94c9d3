"""
组件装配：存储、协作方、事件总线、引擎、调度
"""
import logging
from typing import Dict, Any, Optional, Callable, List
from datetime import datetime

from .config import EngineSettings
from .models.workflow import ObjectType, utcnow
from .models.events import RecordEvent, RecordEventType
from .storage.repository import (
    WorkflowRepository, RunRepository, InMemoryWorkflowRepository, InMemoryRunRepository
)
from .storage.sqlalchemy_repository import (
    DatabaseManager, SQLAlchemyWorkflowRepository, SQLAlchemyRunRepository
)
from .integrations.collaborators import Collaborators
from .integrations.event_bus import EventBus
from .integrations.webhook import HttpWebhookCaller
from .core.engine import ExecutionEngine
from .core.dispatcher import TriggerDispatcher
from .core.scheduler import ResumptionScheduler
from .core.manager import WorkflowManager


logger = logging.getLogger(__name__)


class WorkflowRuntime:
    """引擎运行时：把各组件按配置装配在一起"""

    def __init__(
        self,
        settings: EngineSettings = None,
        collaborators: Collaborators = None,
        workflow_repository: WorkflowRepository = None,
        run_repository: RunRepository = None,
        event_bus: EventBus = None,
        clock: Callable[[], datetime] = utcnow
    ):
        self.settings = settings or EngineSettings()
        self.clock = clock
        self.db_manager: Optional[DatabaseManager] = None

        if workflow_repository is None or run_repository is None:
            if self.settings.database_url:
                self.db_manager = DatabaseManager(self.settings.database_url)
                workflow_repository = workflow_repository or SQLAlchemyWorkflowRepository(self.db_manager)
                run_repository = run_repository or SQLAlchemyRunRepository(self.db_manager)
            else:
                workflow_repository = workflow_repository or InMemoryWorkflowRepository()
                run_repository = run_repository or InMemoryRunRepository()

        if collaborators is None:
            collaborators = Collaborators.in_memory()
            collaborators.webhooks = HttpWebhookCaller()

        self.workflow_repository = workflow_repository
        self.run_repository = run_repository
        self.collaborators = collaborators
        self.event_bus = event_bus or EventBus()

        self.engine = ExecutionEngine(
            workflow_repository=self.workflow_repository,
            run_repository=self.run_repository,
            collaborators=self.collaborators,
            event_bus=self.event_bus,
            settings=self.settings,
            clock=clock
        )
        self.dispatcher = TriggerDispatcher(
            self.workflow_repository, self.run_repository, self.engine, clock=clock
        )
        self.scheduler = ResumptionScheduler(
            self.run_repository, self.engine, self.settings, clock=clock
        )
        self.manager = WorkflowManager(self.workflow_repository, run_repository=self.run_repository)
        self._started = False

    async def start(self, run_scheduler: bool = True):
        """初始化数据库、订阅记录事件，并按需启动恢复调度"""
        if self._started:
            return
        if self.db_manager:
            await self.db_manager.initialize()
        await self.dispatcher.attach(self.event_bus)
        if run_scheduler:
            await self.scheduler.start()
        self._started = True
        logger.info("Workflow runtime started")

    async def stop(self):
        if not self._started:
            return
        await self.scheduler.stop()
        await self.dispatcher.detach(self.event_bus)
        if self.db_manager:
            await self.db_manager.close()
        self._started = False
        logger.info("Workflow runtime stopped")

    async def create_record(self, object_type: ObjectType, data: Dict[str, Any]) -> Dict[str, Any]:
        """创建记录并发布 record.created"""
        records = self.collaborators.records
        record_id = await records.create_record(object_type, data)
        record = await records.get_record(object_type, record_id) or dict(data, id=record_id)
        await self.publish(RecordEvent(
            object_type=object_type,
            record_id=record_id,
            event_type=RecordEventType.CREATED,
            record=record,
            changed_fields=sorted(record.keys()),
            occurred_at=self.clock()
        ))
        return record

    async def update_record(
        self,
        object_type: ObjectType,
        record_id: str,
        changes: Dict[str, Any]
    ) -> Optional[Dict[str, Any]]:
        """更新记录字段并发布 record.updated，记录不存在时返回 None"""
        records = self.collaborators.records
        before = await records.get_record(object_type, record_id)
        if before is None:
            return None

        for field_name, value in changes.items():
            await records.update_field(object_type, record_id, field_name, value)

        after = await records.get_record(object_type, record_id)
        changed: List[str] = [k for k, v in changes.items() if before.get(k) != v]
        await self.publish(RecordEvent(
            object_type=object_type,
            record_id=record_id,
            event_type=RecordEventType.UPDATED,
            record=after,
            previous_values={k: before.get(k) for k in changes},
            changed_fields=changed,
            occurred_at=self.clock()
        ))
        return after

    async def publish(self, event: RecordEvent):
        await self.event_bus.publish(event.topic, event)
