"""Live event fan-out and notification dispatch."""

import uuid

import pytest
from sqlalchemy import func, select

from discipline.core.events import EventBroadcaster
from discipline.core.models import Notification
from discipline.core.notifications import NotificationDispatcher, Outbox

from conftest import make_guardian


def test_publish_reaches_only_the_tenant_subscribers() -> None:
    events = EventBroadcaster()
    school_a, school_b = uuid.uuid4(), uuid.uuid4()
    queue_a = events.subscribe(school_a)
    queue_b = events.subscribe(school_b)

    delivered = events.publish(school_a, {"type": "queue.drained", "assigned": 2})

    assert delivered == 1
    message = queue_a.get_nowait()
    assert message["type"] == "queue.drained"
    assert "timestamp" in message
    assert queue_b.empty()


def test_full_subscriber_queue_drops_events() -> None:
    events = EventBroadcaster(max_queue_size=1)
    tenant_id = uuid.uuid4()
    queue = events.subscribe(tenant_id)

    assert events.publish(tenant_id, {"type": "session.created"}) == 1
    assert events.publish(tenant_id, {"type": "session.status_changed"}) == 0
    assert queue.qsize() == 1


def test_unsubscribe_removes_queue() -> None:
    events = EventBroadcaster()
    tenant_id = uuid.uuid4()
    queue = events.subscribe(tenant_id)
    events.unsubscribe(tenant_id, queue)

    assert events.subscriber_count(tenant_id) == 0
    assert events.publish(tenant_id, {"type": "assignment.created"}) == 0


def test_outbox_skips_students_without_guardian() -> None:
    outbox = Outbox(uuid.uuid4())
    outbox.notify(None, "detention_assigned", "Detention Assigned", "No guardian on file")
    outbox.broadcast("assignment.created", assignment_id=uuid.UUID(int=1))

    assert outbox.notifications == []
    assert outbox.events == [{"type": "assignment.created", "assignment_id": str(uuid.UUID(int=1))}]


@pytest.mark.asyncio
async def test_dispatch_stores_notifications_and_publishes(db_session, tenant_id) -> None:
    events = EventBroadcaster()
    queue = events.subscribe(tenant_id)
    guardian = await make_guardian(db_session, tenant_id)
    outbox = Outbox(tenant_id)
    outbox.notify(guardian.id, "detention_assigned", "Detention Assigned", "See you Friday")
    outbox.broadcast("assignment.created")

    stored = await NotificationDispatcher(events).dispatch(db_session, outbox)

    assert stored == 1
    assert queue.get_nowait()["type"] == "assignment.created"
    assert outbox.notifications == [] and outbox.events == []


class _BrokenBroadcaster(EventBroadcaster):
    def publish(self, tenant_id, event):
        raise RuntimeError("broadcast down")


@pytest.mark.asyncio
async def test_dispatch_failures_are_swallowed(db_session, tenant_id) -> None:
    outbox = Outbox(tenant_id)
    # title is NOT NULL, so storing fails
    outbox.notify(uuid.uuid4(), "detention_assigned", None, "missing title")
    outbox.broadcast("assignment.created")

    stored = await NotificationDispatcher(_BrokenBroadcaster()).dispatch(db_session, outbox)

    assert stored == 0
    count = await db_session.execute(select(func.count(Notification.id)))
    assert count.scalar_one() == 0
