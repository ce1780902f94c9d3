"""
进程内事件总线
"""
import asyncio
from typing import Dict, Any, List, Callable
from dataclasses import dataclass, field
from datetime import datetime
import logging

from ..models.workflow import utcnow


logger = logging.getLogger(__name__)


@dataclass
class Event:
    """事件对象"""
    topic: str
    payload: Any
    timestamp: datetime = field(default_factory=utcnow)
    headers: Dict[str, str] = field(default_factory=dict)


class EventBus:
    """
    事件总线

    记录变更事件（record.created / record.updated）和运行事件
    （workflow.run.events）都通过这里分发。订阅者异常只记录日志，
    不影响发布方和其他订阅者。
    """

    def __init__(self):
        self.subscribers: Dict[str, List[Callable]] = {}
        self._lock = asyncio.Lock()

    async def publish(self, topic: str, payload: Any, headers: Dict[str, str] = None):
        """发布事件，等待所有订阅者处理完成"""
        event = Event(
            topic=topic,
            payload=payload,
            headers=headers or {}
        )

        async with self._lock:
            subscribers = list(self.subscribers.get(topic, []))

        tasks = [
            asyncio.create_task(self._notify_subscriber(subscriber, event))
            for subscriber in subscribers
        ]
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

        logger.debug(f"Published event to topic '{topic}' with {len(subscribers)} subscribers")

    async def subscribe(self, topic: str, handler: Callable):
        """订阅事件"""
        async with self._lock:
            self.subscribers.setdefault(topic, []).append(handler)

        logger.info(f"Subscribed to topic '{topic}'")

    async def unsubscribe(self, topic: str, handler: Callable):
        """取消订阅"""
        async with self._lock:
            handlers = self.subscribers.get(topic)
            if handlers and handler in handlers:
                handlers.remove(handler)
                if not handlers:
                    del self.subscribers[topic]

        logger.info(f"Unsubscribed from topic '{topic}'")

    async def _notify_subscriber(self, subscriber: Callable, event: Event):
        """通知订阅者"""
        try:
            if asyncio.iscoroutinefunction(subscriber):
                await subscriber(event)
            else:
                subscriber(event)
        except Exception as e:
            logger.error(f"Error notifying subscriber for topic '{event.topic}': {e}", exc_info=True)
