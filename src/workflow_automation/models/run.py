"""
工作流运行模型
"""
from dataclasses import dataclass, field
from typing import Dict, Any, Optional, List
from enum import Enum
from datetime import datetime
from uuid import uuid4

from .workflow import ObjectType, StepType, utcnow
from ..exceptions import StateTransitionError


class RunStatus(Enum):
    """运行状态"""
    ACTIVE = "active"
    WAITING = "waiting"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = frozenset({
    RunStatus.COMPLETED,
    RunStatus.FAILED,
    RunStatus.CANCELLED,
})

# 允许的状态转换
ALLOWED_TRANSITIONS: Dict[RunStatus, frozenset] = {
    RunStatus.ACTIVE: frozenset({
        RunStatus.WAITING, RunStatus.COMPLETED, RunStatus.FAILED, RunStatus.CANCELLED
    }),
    RunStatus.WAITING: frozenset({RunStatus.ACTIVE, RunStatus.CANCELLED}),
    RunStatus.COMPLETED: frozenset(),
    RunStatus.FAILED: frozenset(),
    RunStatus.CANCELLED: frozenset(),
}


class StepOutcome(Enum):
    """步骤执行结果"""
    COMPLETED = "completed"
    BRANCHED = "branched"
    WAITING = "waiting"
    RESUMED = "resumed"
    RETRYING = "retrying"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass
class HistoryEntry:
    """运行历史条目（只追加）"""
    step_key: str
    outcome: StepOutcome
    step_type: Optional[StepType] = None
    started_at: datetime = field(default_factory=utcnow)
    finished_at: Optional[datetime] = None
    attempt: int = 1
    error: Optional[Dict[str, Any]] = None
    output: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "step_key": self.step_key,
            "step_type": self.step_type.value if self.step_type else None,
            "outcome": self.outcome.value,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "attempt": self.attempt,
            "error": self.error,
            "output": self.output,
        }


def error_info(error: Exception, at: datetime = None) -> Dict[str, Any]:
    """异常 -> 可持久化的错误信息"""
    return {
        "type": type(error).__name__,
        "message": str(error),
        "timestamp": (at or utcnow()).isoformat()
    }


@dataclass
class WorkflowRun:
    """工作流运行实例"""
    id: str = field(default_factory=lambda: str(uuid4()))
    workflow_id: str = ""
    object_type: ObjectType = ObjectType.LEAD
    target_record_id: str = ""
    status: RunStatus = RunStatus.ACTIVE
    current_step_key: Optional[str] = None
    wait_until: Optional[datetime] = None
    entered_at: datetime = field(default_factory=utcnow)
    last_transitioned_at: datetime = field(default_factory=utcnow)
    completed_at: Optional[datetime] = None
    error_message: Optional[str] = None
    record_snapshot: Dict[str, Any] = field(default_factory=dict)  # 进入时的记录快照
    trigger: Dict[str, Any] = field(default_factory=dict)
    history: List[HistoryEntry] = field(default_factory=list)

    def is_terminal_state(self) -> bool:
        """是否为终止状态"""
        return self.status in TERMINAL_STATUSES

    def _transition(self, target: RunStatus, at: datetime = None):
        if target not in ALLOWED_TRANSITIONS[self.status]:
            raise StateTransitionError(self.status.value, target.value)
        self.status = target
        self.last_transitioned_at = at or utcnow()

    def record(self, entry: HistoryEntry):
        """追加历史记录"""
        self.history.append(entry)

    def move_to(self, step_key: Optional[str], at: datetime = None):
        """推进到下一个步骤"""
        self.current_step_key = step_key
        self.last_transitioned_at = at or utcnow()

    def wait(self, wait_until: datetime, at: datetime = None):
        """挂起直到 wait_until"""
        self._transition(RunStatus.WAITING, at)
        self.wait_until = wait_until

    def resume(self, at: datetime = None):
        """从等待中恢复"""
        self._transition(RunStatus.ACTIVE, at)
        self.wait_until = None

    def complete(self, at: datetime = None):
        """完成"""
        self._transition(RunStatus.COMPLETED, at)
        self.wait_until = None
        self.completed_at = self.last_transitioned_at

    def fail(self, error_message: str, at: datetime = None):
        """失败"""
        self._transition(RunStatus.FAILED, at)
        self.wait_until = None
        self.error_message = error_message
        self.completed_at = self.last_transitioned_at

    def cancel(self, at: datetime = None):
        """取消"""
        self._transition(RunStatus.CANCELLED, at)
        self.wait_until = None
        self.completed_at = self.last_transitioned_at

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "workflow_id": self.workflow_id,
            "object_type": self.object_type.value,
            "target_record_id": self.target_record_id,
            "status": self.status.value,
            "current_step_key": self.current_step_key,
            "wait_until": self.wait_until.isoformat() if self.wait_until else None,
            "entered_at": self.entered_at.isoformat(),
            "last_transitioned_at": self.last_transitioned_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "error_message": self.error_message,
            "history": [h.to_dict() for h in self.history],
        }


class RunEventType(Enum):
    """运行事件类型"""
    RUN_STARTED = "run_started"
    RUN_WAITING = "run_waiting"
    RUN_RESUMED = "run_resumed"
    RUN_COMPLETED = "run_completed"
    RUN_FAILED = "run_failed"
    RUN_CANCELLED = "run_cancelled"
    STEP_COMPLETED = "step_completed"
    STEP_RETRYING = "step_retrying"
    STEP_FAILED = "step_failed"


@dataclass
class RunEvent:
    """运行事件"""
    id: str = field(default_factory=lambda: str(uuid4()))
    run_id: str = ""
    workflow_id: str = ""
    step_key: Optional[str] = None
    event_type: str = ""
    timestamp: datetime = field(default_factory=utcnow)
    data: Dict[str, Any] = field(default_factory=dict)
