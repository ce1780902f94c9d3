"""Workflow definition, run and record event models"""

from .workflow import (
    WorkflowDefinition, WorkflowStep, StepBranch, StepType, ObjectType,
    TriggerType, ReentryMode, MatchType, ConditionOperator,
    EntryCondition, EntryCriteria, StepConfig, STEP_CONFIG_TYPES,
    TriggerStepConfig, EndStepConfig, SendEmailConfig, SendSmsConfig,
    SendMessageConfig, WebhookConfig, CreateTaskConfig, UpdateFieldConfig,
    CreateRecordConfig, WaitConfig, DecisionConfig, utcnow
)
from .run import (
    WorkflowRun, RunStatus, StepOutcome, HistoryEntry,
    RunEvent, RunEventType, TERMINAL_STATUSES
)
from .events import RecordEvent, RecordEventType

__all__ = [
    "WorkflowDefinition",
    "WorkflowStep",
    "StepBranch",
    "StepType",
    "ObjectType",
    "TriggerType",
    "ReentryMode",
    "MatchType",
    "ConditionOperator",
    "EntryCondition",
    "EntryCriteria",
    "StepConfig",
    "STEP_CONFIG_TYPES",
    "TriggerStepConfig",
    "EndStepConfig",
    "SendEmailConfig",
    "SendSmsConfig",
    "SendMessageConfig",
    "WebhookConfig",
    "CreateTaskConfig",
    "UpdateFieldConfig",
    "CreateRecordConfig",
    "WaitConfig",
    "DecisionConfig",
    "utcnow",
    "WorkflowRun",
    "RunStatus",
    "StepOutcome",
    "HistoryEntry",
    "RunEvent",
    "RunEventType",
    "TERMINAL_STATUSES",
    "RecordEvent",
    "RecordEventType"
]
