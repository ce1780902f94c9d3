"""
CRM 记录生命周期事件
"""
from dataclasses import dataclass, field
from typing import Dict, Any, Optional, List
from enum import Enum
from datetime import datetime

from .workflow import ObjectType, utcnow


class RecordEventType(Enum):
    """记录事件类型"""
    CREATED = "created"
    UPDATED = "updated"


RECORD_EVENT_TOPICS = {
    RecordEventType.CREATED: "record.created",
    RecordEventType.UPDATED: "record.updated",
}


@dataclass
class RecordEvent:
    """记录事件"""
    object_type: ObjectType
    record_id: str
    event_type: RecordEventType
    record: Dict[str, Any] = field(default_factory=dict)  # 触发时的记录快照
    previous_values: Optional[Dict[str, Any]] = None
    changed_fields: List[str] = field(default_factory=list)
    occurred_at: datetime = field(default_factory=utcnow)

    @property
    def topic(self) -> str:
        return RECORD_EVENT_TOPICS[self.event_type]

    def field_changed(self, name: str) -> bool:
        """字段是否在本次事件中变化"""
        if name in self.changed_fields:
            return True
        if self.previous_values is None or name not in self.previous_values:
            return False
        return self.previous_values.get(name) != self.record.get(name)
