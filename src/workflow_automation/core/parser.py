"""
工作流定义解析器
"""
import yaml
import json
from typing import Dict, Any, List, Optional, Union
from pathlib import Path

from ..models.workflow import (
    WorkflowDefinition, WorkflowStep, StepBranch, StepType, ObjectType,
    TriggerType, ReentryMode, EntryCriteria, STEP_CONFIG_TYPES
)
from ..exceptions import WorkflowParseError


class WorkflowParser:
    """工作流解析器（YAML / JSON / 字典）"""

    def __init__(self):
        self.parsers = {
            'yaml': self._parse_yaml,
            'yml': self._parse_yaml,
            'json': self._parse_json
        }

    def parse(self, source: Union[str, Path, Dict[str, Any]]) -> WorkflowDefinition:
        """
        解析工作流定义

        Args:
            source: 工作流定义来源，可以是文件路径、字符串或字典

        Returns:
            WorkflowDefinition: 解析后的工作流定义（未校验图结构）
        """
        if isinstance(source, dict):
            return self.parse_dict(source)

        if isinstance(source, Path):
            return self.parse_file(source)

        if isinstance(source, str):
            if '\n' not in source and len(source) < 1024:
                path = Path(source)
                if path.suffix.lower().lstrip('.') in self.parsers and path.is_file():
                    return self.parse_file(path)
            return self.parse_string(source)

        raise WorkflowParseError(f"Unsupported source type: {type(source)}")

    def parse_file(self, file_path: Path) -> WorkflowDefinition:
        """解析工作流文件"""
        file_path = Path(file_path)
        suffix = file_path.suffix.lower().lstrip('.')
        if suffix not in self.parsers:
            raise WorkflowParseError(f"Unsupported file format: {suffix}")

        try:
            with open(file_path, 'r', encoding='utf-8') as f:
                content = f.read()
        except OSError as e:
            raise WorkflowParseError(f"Cannot read {file_path}: {e}")

        return self.parse_dict(self.parsers[suffix](content))

    def parse_string(self, content: str) -> WorkflowDefinition:
        """解析工作流字符串（JSON 是 YAML 的子集，统一按 YAML 读取）"""
        return self.parse_dict(self._parse_yaml(content))

    def _parse_yaml(self, content: str) -> Dict[str, Any]:
        """解析YAML格式"""
        try:
            return yaml.safe_load(content)
        except yaml.YAMLError as e:
            raise WorkflowParseError(f"Failed to parse YAML: {e}")

    def _parse_json(self, content: str) -> Dict[str, Any]:
        """解析JSON格式"""
        try:
            return json.loads(content)
        except json.JSONDecodeError as e:
            raise WorkflowParseError(f"Failed to parse JSON: {e}")

    def parse_dict(self, data: Dict[str, Any]) -> WorkflowDefinition:
        """解析字典格式的工作流定义"""
        if not isinstance(data, dict):
            raise WorkflowParseError("Workflow definition must be a mapping")
        if 'workflow' in data and isinstance(data['workflow'], dict):
            data = data['workflow']

        if not data.get('name'):
            raise WorkflowParseError("Workflow definition requires a name")

        workflow = WorkflowDefinition(
            name=data['name'],
            description=data.get('description'),
            object_type=self._enum(ObjectType, data.get('object_type'), 'object_type'),
            trigger_type=self._enum(
                TriggerType, data.get('trigger_type', 'record_change'), 'trigger_type'
            ),
            trigger_config=data.get('trigger_config') or {},
            entry_criteria=self._parse_entry_criteria(data.get('entry_criteria')),
            reentry_mode=self._enum(
                ReentryMode, data.get('reentry_mode', 'always_reentry'), 'reentry_mode'
            ),
            reentry_wait_days=data.get('reentry_wait_days'),
            is_active=bool(data.get('is_active', False)),
            evaluation_order=int(data.get('evaluation_order', 0)),
            steps=[self._parse_step(s, i) for i, s in enumerate(data.get('steps') or [])]
        )
        if data.get('id'):
            workflow.id = str(data['id'])

        return workflow

    def _parse_entry_criteria(self, data: Union[None, List, Dict[str, Any]]) -> EntryCriteria:
        """进入条件：可以是条件列表，或 {conditions, match_type}"""
        if isinstance(data, list):
            data = {'conditions': data}
        try:
            return EntryCriteria.from_dict(data)
        except (ValueError, TypeError, AttributeError) as e:
            raise WorkflowParseError(f"Invalid entry_criteria: {e}")

    def _parse_step(self, data: Dict[str, Any], position: int) -> WorkflowStep:
        """解析步骤"""
        if not isinstance(data, dict):
            raise WorkflowParseError(f"Step #{position} must be a mapping")

        step_key = data.get('step_key', data.get('key'))
        if not step_key:
            raise WorkflowParseError(f"Step #{position} is missing step_key")

        step_type = self._enum(StepType, data.get('step_type', data.get('type')), 'step_type')
        config_data = data.get('step_config', data.get('config')) or {}
        if not isinstance(config_data, dict):
            raise WorkflowParseError(f"step_config of '{step_key}' must be a mapping")

        return WorkflowStep(
            step_key=str(step_key),
            step_type=step_type,
            config=STEP_CONFIG_TYPES[step_type].from_dict(config_data),
            next_step_key=data.get('next_step_key'),
            branches=self._parse_branches(step_key, data.get('branches')),
            step_order=int(data.get('step_order', position)),
            retry_policy=data.get('retry_policy')
        )

    def _parse_branches(self, step_key: str, data: Any) -> Optional[List[StepBranch]]:
        """分支：[{condition, next_step_key}] 或 {"true": key, "false": key}"""
        if data is None:
            return None
        if isinstance(data, dict):
            return [
                StepBranch(self._condition_label(label), str(target))
                for label, target in data.items()
            ]
        if isinstance(data, list):
            branches = []
            for branch in data:
                if not isinstance(branch, dict):
                    raise WorkflowParseError(f"Invalid branch on step '{step_key}'")
                branches.append(StepBranch(
                    self._condition_label(branch.get('condition')),
                    branch.get('next_step_key')
                ))
            return branches
        raise WorkflowParseError(f"Invalid branches on step '{step_key}'")

    def _condition_label(self, value: Any) -> str:
        # YAML 会把 true/false 键读成布尔值
        if isinstance(value, bool):
            return "true" if value else "false"
        return str(value).lower()

    def _enum(self, enum_type, value, name: str):
        try:
            return enum_type(value)
        except ValueError:
            choices = ', '.join(e.value for e in enum_type)
            raise WorkflowParseError(f"Invalid {name} '{value}', expected one of: {choices}")
