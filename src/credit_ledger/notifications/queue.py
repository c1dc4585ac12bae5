from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, List


logger = logging.getLogger(__name__)


class AsyncNotificationQueue(ABC):
    """
    Abstract async message queue for dispatching account notifications
    (low balance, refunds awaiting manual reconciliation).
    Concrete implementations could use Redis, RabbitMQ, Kafka, etc.
    """

    @abstractmethod
    async def enqueue(self, payload: Dict[str, Any]) -> None:
        ...


class InMemoryNotificationQueue(AsyncNotificationQueue):
    """
    In-memory queue used for tests and as a reference implementation.
    """

    def __init__(self) -> None:
        self.messages: List[Dict[str, Any]] = []

    async def enqueue(self, payload: Dict[str, Any]) -> None:
        logger.debug("Queued %s notification for %s", payload.get("type"), payload.get("account_id"))
        self.messages.append(payload)

    def of_type(self, notification_type: str) -> List[Dict[str, Any]]:
        return [m for m in self.messages if m.get("type") == notification_type]
