"""
工作流运行统计
"""
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Any, List, Optional, Iterable

from ..models.workflow import WorkflowDefinition, StepType
from ..models.run import WorkflowRun, RunStatus, StepOutcome


_OUTCOME_BUCKETS = {
    StepOutcome.COMPLETED: "completed",
    StepOutcome.BRANCHED: "completed",
    StepOutcome.RESUMED: "completed",
    StepOutcome.FAILED: "failed",
    StepOutcome.WAITING: "waiting",
    StepOutcome.CANCELLED: "cancelled",
}


@dataclass
class StepFunnel:
    """单个步骤的到达与结果计数"""
    step_key: str
    step_type: StepType
    reached: int = 0
    completed: int = 0
    failed: int = 0
    waiting: int = 0
    cancelled: int = 0
    retries: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "step_key": self.step_key,
            "step_type": self.step_type.value,
            "reached": self.reached,
            "completed": self.completed,
            "failed": self.failed,
            "waiting": self.waiting,
            "cancelled": self.cancelled,
            "retries": self.retries,
        }


@dataclass
class WorkflowAnalytics:
    """工作流运行汇总"""
    workflow_id: str
    total_runs: int = 0
    status_counts: Dict[str, int] = field(default_factory=dict)
    success_rate: Optional[float] = None
    average_duration_seconds: Optional[float] = None
    step_funnel: List[StepFunnel] = field(default_factory=list)
    error_breakdown: Dict[str, int] = field(default_factory=dict)
    runs_by_day: Dict[str, int] = field(default_factory=dict)
    since: Optional[datetime] = None

    @classmethod
    def summarize(
        cls,
        workflow: WorkflowDefinition,
        runs: Iterable[WorkflowRun],
        since: datetime = None
    ) -> "WorkflowAnalytics":
        """
        汇总一个工作流的运行

        成功率只看已结束的运行：completed / (completed + failed)，没有结束的运行时为 None。
        步骤漏斗按每个运行在该步骤上的最后一条历史归类，触发节点不计入。
        """
        runs = [r for r in runs if since is None or r.entered_at >= since]
        analytics = cls(workflow_id=workflow.id, total_runs=len(runs), since=since)

        statuses = Counter(r.status for r in runs)
        analytics.status_counts = {s.value: statuses.get(s, 0) for s in RunStatus}

        finished = statuses[RunStatus.COMPLETED] + statuses[RunStatus.FAILED]
        if finished:
            analytics.success_rate = round(statuses[RunStatus.COMPLETED] * 100.0 / finished, 1)

        durations = [
            (r.completed_at - r.entered_at).total_seconds()
            for r in runs
            if r.status == RunStatus.COMPLETED and r.completed_at
        ]
        if durations:
            analytics.average_duration_seconds = round(sum(durations) / len(durations), 1)

        analytics.step_funnel = cls._funnel(workflow, runs)

        errors = Counter()
        for run in runs:
            if run.status != RunStatus.FAILED:
                continue
            failures = [h for h in run.history if h.outcome == StepOutcome.FAILED and h.error]
            errors[failures[-1].error.get("type", "Unknown") if failures else "Unknown"] += 1
        analytics.error_breakdown = dict(errors.most_common())

        days = Counter(r.entered_at.date().isoformat() for r in runs)
        analytics.runs_by_day = dict(sorted(days.items()))
        return analytics

    @staticmethod
    def _funnel(workflow: WorkflowDefinition, runs: List[WorkflowRun]) -> List[StepFunnel]:
        funnel = {
            step.step_key: StepFunnel(step.step_key, step.step_type)
            for step in workflow.steps
            if step.step_type != StepType.TRIGGER
        }

        for run in runs:
            last_outcome: Dict[str, StepOutcome] = {}
            for entry in run.history:
                stats = funnel.get(entry.step_key)
                if stats is None:
                    continue
                if entry.outcome == StepOutcome.RETRYING:
                    stats.retries += 1
                    continue
                last_outcome[entry.step_key] = entry.outcome

            for step_key, outcome in last_outcome.items():
                stats = funnel[step_key]
                stats.reached += 1
                bucket = _OUTCOME_BUCKETS.get(outcome)
                if bucket:
                    setattr(stats, bucket, getattr(stats, bucket) + 1)

        return list(funnel.values())

    def to_dict(self) -> Dict[str, Any]:
        return {
            "workflow_id": self.workflow_id,
            "since": self.since.isoformat() if self.since else None,
            "total_runs": self.total_runs,
            "status_counts": self.status_counts,
            "success_rate": self.success_rate,
            "average_duration_seconds": self.average_duration_seconds,
            "step_funnel": [s.to_dict() for s in self.step_funnel],
            "error_breakdown": self.error_breakdown,
            "runs_by_day": self.runs_by_day,
        }
