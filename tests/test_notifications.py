from __future__ import annotations

import pytest

from share_credits.db.memory import InMemoryDBManager
from share_credits.models.credits import CreditType
from share_credits.models.reward import CompletionEvent
from share_credits.notifications.queue import AsyncNotificationQueue, InMemoryNotificationQueue
from share_credits.services.engine import build_engine
from share_credits.services.notification_service import NotificationService


class BrokenQueue(AsyncNotificationQueue):
    async def enqueue(self, payload):
        raise ConnectionError("broker unreachable")


@pytest.mark.asyncio
async def test_notification_is_stored_and_enqueued():
    db = InMemoryDBManager()
    queue = InMemoryNotificationQueue()
    service = NotificationService(db=db, queue=queue)

    event = await service.notify_reward_earned("owner", CreditType.EXAM, "c-1")

    assert event.id is not None
    [message] = queue.messages
    assert message["type"] == "reward_earned"
    assert message["payload"]["completion_id"] == "c-1"
    assert len(list(await db.get_notification_events("owner"))) == 1
    assert queue.for_user("owner") == queue.messages


@pytest.mark.asyncio
async def test_dispatch_failure_does_not_raise():
    service = NotificationService(db=InMemoryDBManager(), queue=BrokenQueue())

    assert await service.notify_downgrade("user-1", "grace_period_expired") is None


@pytest.mark.asyncio
async def test_reward_survives_notification_outage(settings, clock):
    engine = build_engine(settings, queue=BrokenQueue(), clock=clock)

    result = await engine.on_completion(
        CompletionEvent(
            completion_id="c-1",
            post_owner_id="owner",
            completing_user_id="student",
            content_type=CreditType.PRACTICE,
        )
    )

    assert result.granted
    assert (await engine.credit_ledger.read("owner")).practice_share_credits == 4
