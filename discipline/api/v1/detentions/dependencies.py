"""Wiring of the detention services. Routers receive them via Depends(get_detention_services)."""

from dataclasses import dataclass
from datetime import date, datetime
from typing import Callable, Optional

from discipline.core.config import settings
from discipline.core.events import EventBroadcaster
from discipline.core.notifications import NotificationDispatcher

from .assignment import AssignmentEngine
from .attendance import AttendanceStateMachine
from .capacity import SessionCapacityTracker
from .qualification import QualificationEvaluator
from .queue import QueueManager


@dataclass
class DetentionServices:
    evaluator: QualificationEvaluator
    capacity: SessionCapacityTracker
    queue: QueueManager
    engine: AssignmentEngine
    attendance: AttendanceStateMachine
    dispatcher: NotificationDispatcher
    clock: Callable[[], date]


def build_detention_services(
    clock: Callable[[], date] = date.today,
    now: Callable[[], datetime] = datetime.utcnow,
    points_threshold: Optional[int] = None,
    events: Optional[EventBroadcaster] = None,
) -> DetentionServices:
    if points_threshold is None:
        points_threshold = settings.detention_points_threshold
    evaluator = QualificationEvaluator(clock=clock, points_threshold=points_threshold)
    capacity = SessionCapacityTracker(clock=clock)
    queue = QueueManager(capacity, clock=clock, now=now)
    engine = AssignmentEngine(capacity, queue, evaluator, clock=clock)
    attendance = AttendanceStateMachine(engine, queue, clock=clock, now=now)
    return DetentionServices(
        evaluator=evaluator,
        capacity=capacity,
        queue=queue,
        engine=engine,
        attendance=attendance,
        dispatcher=NotificationDispatcher(events),
        clock=clock,
    )


_services = build_detention_services()


def get_detention_services() -> DetentionServices:
    return _services
