"""
外部集成
"""
from .collaborators import (
    OBJECT_SCHEMAS,
    RecordStore,
    NotificationSender,
    WebhookCaller,
    TaskCreator,
    InMemoryRecordStore,
    SentNotification,
    LoggingNotificationSender,
    LoggingWebhookCaller,
    InMemoryTaskCreator,
    Collaborators,
)
from .event_bus import Event, EventBus
from .webhook import HttpWebhookCaller

__all__ = [
    "OBJECT_SCHEMAS",
    "RecordStore",
    "NotificationSender",
    "WebhookCaller",
    "TaskCreator",
    "InMemoryRecordStore",
    "SentNotification",
    "LoggingNotificationSender",
    "LoggingWebhookCaller",
    "InMemoryTaskCreator",
    "Collaborators",
    "Event",
    "EventBus",
    "HttpWebhookCaller",
]
