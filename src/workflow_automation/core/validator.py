"""
工作流图校验器
"""
import logging
from typing import Dict, Optional

from ..models.workflow import (
    WorkflowDefinition, WorkflowStep, StepType, MatchType, ReentryMode
)
from ..exceptions import ValidationError


logger = logging.getLogger(__name__)


class GraphValidator:
    """
    激活前的工作流校验

    按顺序检查，遇到第一个问题即抛出 ValidationError：
    step_key 唯一 -> 唯一触发节点 -> 引用存在 -> 从触发节点 DFS 无孤立节点、无环
    -> 分支完整 -> 线性后继完整 -> 步骤配置必填项 -> 进入条件与重入设置
    """

    def validate(self, workflow: WorkflowDefinition) -> None:
        """校验工作流定义，非法时抛出 ValidationError"""
        self._check_unique_keys(workflow)
        trigger = self._check_single_trigger(workflow)
        steps = workflow.step_map
        self._check_references(workflow, steps)
        self._check_traversal(trigger, steps)
        self._check_branches(workflow)
        self._check_successors(workflow)
        self._check_step_configs(workflow)
        self._check_entry_rules(workflow)

        logger.debug(f"Workflow {workflow.id} passed validation")

    def first_violation(self, workflow: WorkflowDefinition) -> Optional[str]:
        """返回第一个问题的描述，合法时返回 None"""
        try:
            self.validate(workflow)
        except ValidationError as e:
            return str(e)
        return None

    def _check_unique_keys(self, workflow: WorkflowDefinition):
        seen = set()
        for step in workflow.steps:
            if step.step_key in seen:
                raise ValidationError(
                    f"Duplicate step_key '{step.step_key}'", step.step_key
                )
            seen.add(step.step_key)

    def _check_single_trigger(self, workflow: WorkflowDefinition) -> WorkflowStep:
        triggers = workflow.trigger_steps()
        if len(triggers) != 1:
            raise ValidationError(
                f"Workflow must have exactly one trigger node, found {len(triggers)}"
            )
        return triggers[0]

    def _check_references(self, workflow: WorkflowDefinition, steps: Dict[str, WorkflowStep]):
        for step in workflow.steps:
            for target in step.successor_keys():
                if target not in steps:
                    raise ValidationError(
                        f"Step '{step.step_key}' references unknown step '{target}'",
                        step.step_key
                    )

    def _check_traversal(self, trigger: WorkflowStep, steps: Dict[str, WorkflowStep]):
        """显式栈 DFS：检测环并找出孤立节点"""
        visiting, visited = set(), set()
        stack = [(trigger.step_key, iter(trigger.successor_keys()))]
        visiting.add(trigger.step_key)

        while stack:
            step_key, successors = stack[-1]
            next_key = next(successors, None)
            if next_key is None:
                stack.pop()
                visiting.discard(step_key)
                visited.add(step_key)
                continue
            if next_key in visiting:
                raise ValidationError(
                    f"Cycle detected: step '{step_key}' leads back to '{next_key}'",
                    step_key
                )
            if next_key not in visited:
                visiting.add(next_key)
                stack.append((next_key, iter(steps[next_key].successor_keys())))

        orphans = [key for key in steps if key not in visited]
        if orphans:
            raise ValidationError(
                f"Steps not reachable from the trigger: {', '.join(sorted(orphans))}",
                orphans[0]
            )

    def _check_branches(self, workflow: WorkflowDefinition):
        for step in workflow.steps:
            if step.step_type != StepType.DECISION:
                continue
            conditions = [b.condition for b in step.branches or []]
            if sorted(conditions) != ["false", "true"]:
                raise ValidationError(
                    f"Decision step '{step.step_key}' must define exactly one 'true' "
                    f"and one 'false' branch",
                    step.step_key
                )
            if not all(b.next_step_key for b in step.branches):
                raise ValidationError(
                    f"Decision step '{step.step_key}' has a branch without next_step_key",
                    step.step_key
                )

    def _check_successors(self, workflow: WorkflowDefinition):
        for step in workflow.steps:
            if step.step_type == StepType.END:
                if step.next_step_key or step.branches:
                    raise ValidationError(
                        f"End step '{step.step_key}' must not have successors",
                        step.step_key
                    )
            elif step.step_type == StepType.DECISION:
                if step.next_step_key:
                    raise ValidationError(
                        f"Decision step '{step.step_key}' must use branches, not next_step_key",
                        step.step_key
                    )
            else:
                if not step.next_step_key:
                    raise ValidationError(
                        f"Step '{step.step_key}' has no next_step_key",
                        step.step_key
                    )
                if step.branches:
                    raise ValidationError(
                        f"Only decision steps may define branches ('{step.step_key}')",
                        step.step_key
                    )

    def _check_step_configs(self, workflow: WorkflowDefinition):
        for step in workflow.steps:
            problems = step.config.problems()
            if problems:
                raise ValidationError(
                    f"Step '{step.step_key}' ({step.step_type.value}) is misconfigured: "
                    f"{'; '.join(problems)}",
                    step.step_key
                )

    def _check_entry_rules(self, workflow: WorkflowDefinition):
        criteria = workflow.entry_criteria
        if criteria.match_type == MatchType.ANY and not criteria.conditions:
            raise ValidationError("Entry criteria with match_type 'any' must have conditions")

        for condition in criteria.conditions:
            if not condition.field:
                raise ValidationError("Entry condition is missing a field")
            if condition.operator.requires_value and condition.value is None:
                raise ValidationError(
                    f"Entry condition on '{condition.field}' requires a value "
                    f"for operator '{condition.operator.value}'"
                )

        if workflow.reentry_mode == ReentryMode.REENTRY_AFTER_DAYS:
            if not workflow.reentry_wait_days or workflow.reentry_wait_days < 1:
                raise ValidationError(
                    "reentry_wait_days must be at least 1 for reentry_after_days"
                )
