"""
SQLAlchemy 数据库模型定义
"""
from sqlalchemy import (
    Column, String, Text, Boolean, Integer, DateTime, ForeignKey,
    UniqueConstraint, CheckConstraint, Index, JSON
)
from sqlalchemy.orm import declarative_base, relationship
import uuid


Base = declarative_base()


def generate_uuid():
    return str(uuid.uuid4())


class WorkflowDefinitionRow(Base):
    """工作流定义表"""
    __tablename__ = 'workflow_definitions'

    id = Column(String(36), primary_key=True, default=generate_uuid)
    name = Column(String(255), nullable=False)
    description = Column(Text)
    object_type = Column(String(50), nullable=False)
    trigger_type = Column(String(50), nullable=False, default='record_change')
    trigger_config = Column(JSON, default=dict)
    entry_criteria = Column(JSON, default=dict)
    reentry_mode = Column(String(50), nullable=False, default='always_reentry')
    reentry_wait_days = Column(Integer)
    is_active = Column(Boolean, default=False)
    evaluation_order = Column(Integer, default=0)
    execution_count = Column(Integer, default=0)
    last_executed_at = Column(DateTime(timezone=True))
    created_at = Column(DateTime(timezone=True), nullable=False)
    updated_at = Column(DateTime(timezone=True), nullable=False)

    # 关系
    steps = relationship(
        "WorkflowStepRow",
        back_populates="workflow",
        cascade="all, delete-orphan",
        order_by="WorkflowStepRow.position"
    )

    # 约束
    __table_args__ = (
        CheckConstraint(
            "reentry_mode IN ('no_reentry', 'always_reentry', 'reentry_after_days', 'reentry_after_exit')",
            name='check_reentry_mode'
        ),
        Index('idx_workflow_definitions_active', 'object_type', 'is_active'),
    )


class WorkflowStepRow(Base):
    """工作流步骤表"""
    __tablename__ = 'workflow_steps'

    id = Column(String(36), primary_key=True, default=generate_uuid)
    workflow_id = Column(String(36), ForeignKey('workflow_definitions.id', ondelete='CASCADE'), nullable=False)
    step_key = Column(String(255), nullable=False)
    step_type = Column(String(50), nullable=False)
    step_order = Column(Integer, default=0)
    position = Column(Integer, default=0)  # 定义中的原始顺序
    step_config = Column(JSON, default=dict)
    next_step_key = Column(String(255))
    branches = Column(JSON)
    retry_policy = Column(JSON)

    # 关系
    workflow = relationship("WorkflowDefinitionRow", back_populates="steps")

    # 约束
    __table_args__ = (
        UniqueConstraint('workflow_id', 'step_key', name='unique_workflow_step_key'),
        Index('idx_workflow_steps_workflow_id', 'workflow_id'),
    )


class WorkflowRunRow(Base):
    """工作流运行表"""
    __tablename__ = 'workflow_runs'

    id = Column(String(36), primary_key=True, default=generate_uuid)
    workflow_id = Column(String(36), nullable=False)
    object_type = Column(String(50), nullable=False)
    target_record_id = Column(String(255), nullable=False)
    status = Column(String(50), nullable=False)
    current_step_key = Column(String(255))
    wait_until = Column(DateTime(timezone=True))
    entered_at = Column(DateTime(timezone=True), nullable=False)
    last_transitioned_at = Column(DateTime(timezone=True), nullable=False)
    completed_at = Column(DateTime(timezone=True))
    error_message = Column(Text)
    record_snapshot = Column(JSON, default=dict)
    trigger = Column(JSON, default=dict)

    # 关系
    history = relationship(
        "RunHistoryRow",
        back_populates="run",
        cascade="all, delete-orphan",
        order_by="RunHistoryRow.sequence"
    )

    # 约束
    __table_args__ = (
        CheckConstraint(
            "status IN ('active', 'waiting', 'completed', 'failed', 'cancelled')",
            name='check_run_status'
        ),
        Index('idx_workflow_runs_record', 'workflow_id', 'target_record_id'),
        Index('idx_workflow_runs_due', 'status', 'wait_until'),
    )


class RunHistoryRow(Base):
    """运行历史表（只追加）"""
    __tablename__ = 'workflow_run_history'

    id = Column(String(36), primary_key=True, default=generate_uuid)
    run_id = Column(String(36), ForeignKey('workflow_runs.id'), nullable=False)
    sequence = Column(Integer, nullable=False)
    step_key = Column(String(255), nullable=False)
    step_type = Column(String(50))
    outcome = Column(String(50), nullable=False)
    attempt = Column(Integer, default=1)
    started_at = Column(DateTime(timezone=True), nullable=False)
    finished_at = Column(DateTime(timezone=True))
    error_info = Column(JSON)
    output = Column(JSON, default=dict)

    # 关系
    run = relationship("WorkflowRunRow", back_populates="history")

    # 约束
    __table_args__ = (
        UniqueConstraint('run_id', 'sequence', name='unique_run_history_sequence'),
        Index('idx_workflow_run_history_run_id', 'run_id'),
    )
