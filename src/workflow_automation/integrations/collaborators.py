"""
外部协作方接口定义与内存实现
"""
import copy
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Dict, Any, Optional, List, Set
from uuid import uuid4

from ..models.workflow import ObjectType, utcnow


logger = logging.getLogger(__name__)


# 各对象类型已知字段（update_field 校验使用）
OBJECT_SCHEMAS: Dict[ObjectType, Set[str]] = {
    ObjectType.LEAD: {
        "id", "first_name", "last_name", "email", "phone", "status", "lifecycle_stage",
        "assigned_to_user_id", "client_type", "service_interest", "expected_due_date",
        "gestational_age", "birth_location", "birth_preferences", "source", "notes",
        "created_at", "updated_at",
    },
    ObjectType.MEETING: {
        "id", "client_id", "title", "meeting_type", "status", "scheduled_at", "duration",
        "location", "meeting_link", "assigned_to_user_id", "created_at", "updated_at",
    },
    ObjectType.PAYMENT: {
        "id", "client_id", "amount", "description", "payment_method", "status",
        "paid_at", "created_at", "updated_at",
    },
    ObjectType.INVOICE: {
        "id", "client_id", "invoice_number", "amount", "due_date", "status",
        "payment_status", "sent_at", "created_at", "updated_at",
    },
    ObjectType.SERVICE: {
        "id", "client_id", "name", "description", "price", "status", "service_type",
        "created_at", "updated_at",
    },
    ObjectType.DOCUMENT: {
        "id", "client_id", "title", "document_type", "status", "created_at", "updated_at",
    },
    ObjectType.CONTRACT: {
        "id", "client_id", "title", "status", "sent_at", "signed_at", "created_at", "updated_at",
    },
    ObjectType.INTAKE_FORM: {
        "id", "client_id", "form_name", "status", "submitted_at", "created_at", "updated_at",
    },
}


class RecordStore(ABC):
    """CRM 记录存储接口"""

    @abstractmethod
    async def get_record(self, object_type: ObjectType, record_id: str) -> Optional[Dict[str, Any]]:
        """获取记录当前字段"""
        pass

    @abstractmethod
    async def update_field(self, object_type: ObjectType, record_id: str, field_name: str, value: Any):
        """更新记录字段"""
        pass

    @abstractmethod
    async def create_record(self, object_type: ObjectType, data: Dict[str, Any]) -> str:
        """创建记录，返回新记录ID"""
        pass

    async def known_fields(self, object_type: ObjectType) -> Optional[Set[str]]:
        """对象类型的已知字段，返回 None 表示不校验"""
        return OBJECT_SCHEMAS.get(object_type)


class NotificationSender(ABC):
    """通知发送接口"""

    @abstractmethod
    async def send_email(
        self,
        to: str,
        subject: str,
        body: str,
        cta_text: Optional[str] = None,
        cta_url: Optional[str] = None
    ) -> Dict[str, Any]:
        """发送邮件"""
        pass

    @abstractmethod
    async def send_sms(self, to: str, body: str) -> Dict[str, Any]:
        """发送短信"""
        pass

    @abstractmethod
    async def send_portal_message(self, record_id: str, body: str) -> Dict[str, Any]:
        """发送客户门户站内信"""
        pass


class WebhookCaller(ABC):
    """Webhook 调用接口"""

    @abstractmethod
    async def call(
        self,
        url: str,
        method: str,
        body: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None
    ) -> Dict[str, Any]:
        """发起 HTTP 调用"""
        pass


class TaskCreator(ABC):
    """任务创建接口"""

    @abstractmethod
    async def create_task(
        self,
        title: str,
        action_type: str,
        assigned_to: str,
        record_id: Optional[str] = None
    ) -> str:
        """创建任务，返回任务ID"""
        pass


# 内存实现（用于测试和本地运行）

class InMemoryRecordStore(RecordStore):
    """内存记录存储"""

    def __init__(self, schemas: Dict[ObjectType, Set[str]] = None):
        self.records: Dict[ObjectType, Dict[str, Dict[str, Any]]] = {}
        self.schemas = schemas if schemas is not None else OBJECT_SCHEMAS

    def put(self, object_type: ObjectType, record: Dict[str, Any]) -> Dict[str, Any]:
        """写入整条记录，返回快照"""
        record = dict(record)
        record.setdefault("id", str(uuid4()))
        self.records.setdefault(object_type, {})[record["id"]] = record
        return copy.deepcopy(record)

    async def get_record(self, object_type: ObjectType, record_id: str) -> Optional[Dict[str, Any]]:
        record = self.records.get(object_type, {}).get(record_id)
        return copy.deepcopy(record) if record is not None else None

    async def update_field(self, object_type: ObjectType, record_id: str, field_name: str, value: Any):
        record = self.records.get(object_type, {}).get(record_id)
        if record is None:
            raise KeyError(f"{object_type.value} record not found: {record_id}")
        record[field_name] = value
        record["updated_at"] = utcnow().isoformat()

    async def create_record(self, object_type: ObjectType, data: Dict[str, Any]) -> str:
        return self.put(object_type, data)["id"]

    async def known_fields(self, object_type: ObjectType) -> Optional[Set[str]]:
        return self.schemas.get(object_type)


@dataclass
class SentNotification:
    """已发送的通知"""
    channel: str
    to: str
    body: str
    subject: Optional[str] = None
    cta_text: Optional[str] = None
    cta_url: Optional[str] = None
    sent_at: Any = field(default_factory=utcnow)


class LoggingNotificationSender(NotificationSender):
    """只记录日志并保存发送记录的通知实现"""

    def __init__(self):
        self.sent: List[SentNotification] = []

    async def send_email(self, to, subject, body, cta_text=None, cta_url=None):
        logger.info(f"Email to {to}: {subject}")
        self.sent.append(SentNotification("email", to, body, subject, cta_text, cta_url))
        return {"channel": "email", "to": to}

    async def send_sms(self, to, body):
        logger.info(f"SMS to {to}")
        self.sent.append(SentNotification("sms", to, body))
        return {"channel": "sms", "to": to}

    async def send_portal_message(self, record_id, body):
        logger.info(f"Portal message for record {record_id}")
        self.sent.append(SentNotification("portal", record_id, body))
        return {"channel": "portal", "to": record_id}


class LoggingWebhookCaller(WebhookCaller):
    """只记录调用的 Webhook 实现"""

    def __init__(self):
        self.calls: List[Dict[str, Any]] = []

    async def call(self, url, method, body=None, headers=None):
        logger.info(f"Webhook {method} {url}")
        self.calls.append({"url": url, "method": method, "body": body, "headers": headers or {}})
        return {"status_code": 200}


class InMemoryTaskCreator(TaskCreator):
    """内存任务创建"""

    def __init__(self):
        self.tasks: Dict[str, Dict[str, Any]] = {}

    async def create_task(self, title, action_type, assigned_to, record_id=None):
        task_id = str(uuid4())
        self.tasks[task_id] = {
            "id": task_id,
            "title": title,
            "action_type": action_type,
            "assigned_to": assigned_to,
            "record_id": record_id,
            "status": "pending"
        }
        return task_id


@dataclass
class Collaborators:
    """执行引擎依赖的外部协作方集合"""
    records: RecordStore
    notifications: NotificationSender
    webhooks: WebhookCaller
    tasks: TaskCreator

    @classmethod
    def in_memory(cls) -> "Collaborators":
        return cls(
            records=InMemoryRecordStore(),
            notifications=LoggingNotificationSender(),
            webhooks=LoggingWebhookCaller(),
            tasks=InMemoryTaskCreator()
        )
