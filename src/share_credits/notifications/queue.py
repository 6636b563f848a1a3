from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Dict, List


class AsyncNotificationQueue(ABC):
    """
    Outbound channel for user-facing share-credit notifications (rewards,
    payment and grace-period notices, downgrades). A broker-backed
    implementation (Redis, RabbitMQ, ...) plugs in here; delivery and copy
    are the consumer's concern.
    """

    @abstractmethod
    async def enqueue(self, payload: Dict[str, Any]) -> None:
        ...


class InMemoryNotificationQueue(AsyncNotificationQueue):
    """Keeps messages in a list; for tests and local development."""

    def __init__(self) -> None:
        self.messages: List[Dict[str, Any]] = []

    async def enqueue(self, payload: Dict[str, Any]) -> None:
        self.messages.append(dict(payload))

    def of_type(self, notification_type: str) -> List[Dict[str, Any]]:
        return [m for m in self.messages if m.get("type") == notification_type]

    def for_user(self, user_id: str) -> List[Dict[str, Any]]:
        return [m for m in self.messages if m.get("user_id") == user_id]
