"""
Pytest 配置和公共 fixtures
"""
import pytest
from datetime import datetime, timedelta, timezone
from typing import AsyncGenerator, Dict, Any, List

from workflow_automation.config import EngineSettings, PracticeProfile
from workflow_automation.core import (
    ExecutionEngine, TriggerDispatcher, ResumptionScheduler, WorkflowManager,
    WorkflowParser, GraphValidator, ErrorHandler, RetryPolicy
)
from workflow_automation.models.workflow import ObjectType, WorkflowDefinition
from workflow_automation.models.events import RecordEvent, RecordEventType
from workflow_automation.storage.repository import InMemoryWorkflowRepository, InMemoryRunRepository
from workflow_automation.storage.sqlalchemy_repository import DatabaseManager
from workflow_automation.integrations import Collaborators, EventBus


# 所有测试共用的起始时刻（周一）
T0 = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


class FakeClock:
    """可手动推进的时钟"""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(T0)


@pytest.fixture
def settings() -> EngineSettings:
    """测试配置：无抖动、内存存储"""
    return EngineSettings(
        database_url=None,
        retry_max_attempts=3,
        retry_initial_delay=0.5,
        retry_jitter=False,
        max_steps_per_invocation=50,
        practice=PracticeProfile(
            doula_name="Maya Rivers",
            doula_email="maya@riversdoula.com",
            doula_phone="555-0100",
            portal_url="https://portal.riversdoula.com",
            admin_email="admin@riversdoula.com"
        )
    )


@pytest.fixture
def collaborators() -> Collaborators:
    return Collaborators.in_memory()


@pytest.fixture
def workflow_repository() -> InMemoryWorkflowRepository:
    return InMemoryWorkflowRepository()


@pytest.fixture
def run_repository() -> InMemoryRunRepository:
    return InMemoryRunRepository()


@pytest.fixture
def event_bus() -> EventBus:
    return EventBus()


@pytest.fixture
def sleeps() -> List[float]:
    """记录重试等待，不真正 sleep"""
    return []


@pytest.fixture
def engine(settings, workflow_repository, run_repository, collaborators, event_bus, clock, sleeps):
    async def fake_sleep(delay: float):
        sleeps.append(delay)

    error_handler = ErrorHandler(RetryPolicy.from_dict(settings.retry_policy), sleep=fake_sleep)
    return ExecutionEngine(
        workflow_repository=workflow_repository,
        run_repository=run_repository,
        collaborators=collaborators,
        event_bus=event_bus,
        settings=settings,
        error_handler=error_handler,
        clock=clock
    )


@pytest.fixture
def dispatcher(workflow_repository, run_repository, engine, clock) -> TriggerDispatcher:
    return TriggerDispatcher(workflow_repository, run_repository, engine, clock=clock)


@pytest.fixture
def scheduler(run_repository, engine, settings, clock) -> ResumptionScheduler:
    return ResumptionScheduler(run_repository, engine, settings, clock=clock)


@pytest.fixture
def manager(workflow_repository, run_repository) -> WorkflowManager:
    return WorkflowManager(workflow_repository, run_repository=run_repository)


@pytest.fixture
def install_workflow(workflow_repository):
    """解析、校验并以激活状态保存工作流"""
    parser = WorkflowParser()
    validator = GraphValidator()

    async def install(definition: Dict[str, Any], validate: bool = True) -> WorkflowDefinition:
        workflow = parser.parse_dict(definition)
        if validate:
            validator.validate(workflow)
        workflow.is_active = True
        await workflow_repository.save(workflow)
        return workflow

    return install


@pytest.fixture
def lead_event(collaborators, clock):
    """写入线索记录并构造对应的记录事件"""
    records = collaborators.records

    async def make(
        fields: Dict[str, Any] = None,
        event_type: RecordEventType = RecordEventType.CREATED,
        previous: Dict[str, Any] = None,
        record_id: str = None
    ) -> RecordEvent:
        fields = dict(fields or {})
        if record_id:
            existing = await records.get_record(ObjectType.LEAD, record_id) or {"id": record_id}
            existing.update(fields)
            fields = existing
        stored = records.put(ObjectType.LEAD, fields)
        changed = sorted(previous.keys()) if previous else sorted(stored.keys())
        return RecordEvent(
            object_type=ObjectType.LEAD,
            record_id=stored["id"],
            event_type=event_type,
            record=stored,
            previous_values=previous,
            changed_fields=changed,
            occurred_at=clock()
        )

    return make


@pytest.fixture
def simple_email_workflow() -> Dict[str, Any]:
    """触发 -> 欢迎邮件 -> 结束"""
    return {
        "workflow": {
            "name": "Welcome new leads",
            "object_type": "lead",
            "trigger_type": "record_create",
            "steps": [
                {"step_key": "start", "step_type": "trigger", "next_step_key": "welcome"},
                {
                    "step_key": "welcome",
                    "step_type": "send_email",
                    "step_config": {
                        "template_name": "Welcome",
                        "subject": "Welcome, {{first_name}}",
                        "body": "Hi {{full_name}}, this is {{doula_name}}.",
                        "to_type": "client"
                    },
                    "next_step_key": "done"
                },
                {"step_key": "done", "step_type": "end"}
            ]
        }
    }


@pytest.fixture
def follow_up_workflow() -> Dict[str, Any]:
    """合格线索：欢迎 -> 等待 3 天 -> 按是否成为客户分支"""
    return {
        "workflow": {
            "name": "Qualified lead follow-up",
            "object_type": "lead",
            "trigger_type": "record_change",
            "entry_criteria": {
                "match_type": "all",
                "conditions": [{"field": "status", "operator": "equals", "value": "qualified"}]
            },
            "steps": [
                {"step_key": "start", "step_type": "trigger", "next_step_key": "welcome"},
                {
                    "step_key": "welcome",
                    "step_type": "send_email",
                    "step_config": {"template_name": "Welcome", "body": "Hi {{first_name}}"},
                    "next_step_key": "pause"
                },
                {
                    "step_key": "pause",
                    "step_type": "wait",
                    "step_config": {"wait_days": 3},
                    "next_step_key": "converted"
                },
                {
                    "step_key": "converted",
                    "step_type": "decision",
                    "step_config": {
                        "condition_field": "status",
                        "condition_operator": "equals",
                        "condition_value": "client"
                    },
                    "branches": {"true": "onboard", "false": "nudge"}
                },
                {
                    "step_key": "onboard",
                    "step_type": "create_task",
                    "step_config": {
                        "title": "Schedule consult with {{full_name}}",
                        "action_type": "schedule_meeting",
                        "due_days": 2
                    },
                    "next_step_key": "done"
                },
                {
                    "step_key": "nudge",
                    "step_type": "send_sms",
                    "step_config": {"body": "Hi {{first_name}}, just checking in."},
                    "next_step_key": "done"
                },
                {"step_key": "done", "step_type": "end"}
            ]
        }
    }


@pytest.fixture
async def test_database() -> AsyncGenerator[DatabaseManager, None]:
    """创建测试数据库"""
    # 使用 SQLite 内存数据库进行测试
    db_manager = DatabaseManager("sqlite+aiosqlite:///:memory:")
    await db_manager.initialize()

    yield db_manager

    await db_manager.close()
