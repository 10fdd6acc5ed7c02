"""Detention rules, sessions, queue and history: CRUD and views around the scheduling engine."""

import logging
from datetime import date, timedelta
from typing import Dict, List, Optional
from uuid import UUID

from fastapi import status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from discipline.core import demerits
from discipline.core.config import settings
from discipline.core.exceptions import InvalidTransitionError, NotFoundError, ServiceError
from discipline.core.models import (
    DetentionAssignment,
    DetentionQueueEntry,
    DetentionRule,
    DetentionSession,
    Student,
)
from discipline.core.models.detention_assignment import (
    ASSIGNMENT_STATUS_ASSIGNED,
    ASSIGNMENT_STATUS_ATTENDED,
)
from discipline.core.models.detention_queue_entry import QUEUE_STATUS_PENDING
from discipline.core.models.detention_rule import (
    ACTION_INCIDENT_COUNT,
    ACTION_POINTS_THRESHOLD,
    ACTION_SEVERITY_MATCH,
)
from discipline.core.models.detention_session import (
    SESSION_STATUS_CANCELLED,
    SESSION_STATUS_COMPLETED,
    SESSION_STATUS_SCHEDULED,
    SESSION_TRANSITIONS,
)
from discipline.core.notifications import CATEGORY_DETENTION_CANCELLED, Outbox

from .assignment import PlacementResult
from .audit_service import ENTITY_RULE, ENTITY_SESSION, log_audit
from .dependencies import DetentionServices
from .placement import session_label
from .queue import DrainResult
from .schemas import (
    DetentionAssignmentResponse,
    DetentionRuleCreate,
    DetentionRuleResponse,
    DetentionRuleUpdate,
    DetentionSessionCreate,
    DetentionSessionDetail,
    DetentionSessionResponse,
    DetentionSessionUpdate,
    DrainSummary,
    PlacementResponse,
    QualifyingStudentResponse,
    QueueEntryResponse,
    SessionsCreatedResponse,
    SessionStatusChangeResponse,
    SessionUpdatedResponse,
    StudentDetentionHistoryItem,
)

logger = logging.getLogger(__name__)


DEFAULT_RULES = (
    {
        "name": "3+ incidents",
        "action_type": ACTION_INCIDENT_COUNT,
        "min_points": 3,
        "severity": None,
    },
    {
        "name": "10+ points",
        "action_type": ACTION_POINTS_THRESHOLD,
        "min_points": 10,
        "severity": None,
    },
    {
        "name": "High severity incident",
        "action_type": ACTION_SEVERITY_MATCH,
        "min_points": 1,
        "severity": "high",
    },
)


# ----- Response helpers -----
def _assignment_to_response(a: DetentionAssignment, student_name: Optional[str] = None) -> DetentionAssignmentResponse:
    return DetentionAssignmentResponse(
        id=a.id,
        session_id=a.session_id,
        student_id=a.student_id,
        student_name=student_name,
        incident_id=a.incident_id,
        assigned_by=a.assigned_by,
        reason=a.reason,
        status=a.status,
        notes=a.notes,
        attendance_time=a.attendance_time,
        is_auto_reassigned=bool(a.is_auto_reassigned),
        reassigned_from_id=a.reassigned_from_id,
        created_at=a.created_at,
    )


def _queue_entry_to_response(e: DetentionQueueEntry, student_name: Optional[str] = None) -> QueueEntryResponse:
    return QueueEntryResponse(
        id=e.id,
        student_id=e.student_id,
        student_name=student_name,
        points_at_queue=e.points_at_queue,
        reason=e.reason,
        queued_at=e.queued_at,
        status=e.status,
        assigned_to_session_id=e.assigned_to_session_id,
        assigned_at=e.assigned_at,
    )


def _session_to_response(s: DetentionSession, occupancy: int, today: date) -> DetentionSessionResponse:
    is_open = s.status == SESSION_STATUS_SCHEDULED and s.session_date >= today
    return DetentionSessionResponse(
        id=s.id,
        session_date=s.session_date,
        start_time=s.start_time,
        duration=s.duration,
        location=s.location,
        supervisor_id=s.supervisor_id,
        max_capacity=s.max_capacity,
        status=s.status,
        notes=s.notes,
        occupancy=occupancy,
        available_slots=max(0, s.max_capacity - occupancy) if is_open else 0,
        created_at=s.created_at,
    )


def _drain_to_summary(d: DrainResult) -> DrainSummary:
    return DrainSummary(
        session_id=d.session_id,
        available_slots=d.available_slots,
        assigned=d.assigned,
        skipped=d.skipped,
        failed=d.failed,
    )


def placement_to_response(result: PlacementResult) -> PlacementResponse:
    return PlacementResponse(
        outcome=result.outcome,
        session_id=result.session_id,
        reason=result.reason,
        assignment=_assignment_to_response(result.assignment) if result.assignment else None,
        queue_entry=_queue_entry_to_response(result.queue_entry) if result.queue_entry else None,
    )


def assignment_to_response(a: DetentionAssignment) -> DetentionAssignmentResponse:
    return _assignment_to_response(a)


async def _get_session(db: AsyncSession, tenant_id: UUID, session_id: UUID) -> DetentionSession:
    s = await db.get(DetentionSession, session_id)
    if not s or s.tenant_id != tenant_id:
        raise NotFoundError("Detention session not found")
    return s


async def _has_assignments(db: AsyncSession, session_id: UUID) -> bool:
    result = await db.execute(
        select(DetentionAssignment.id).where(DetentionAssignment.session_id == session_id).limit(1)
    )
    return result.scalar_one_or_none() is not None


async def _student_names(db: AsyncSession, student_ids: List[UUID]) -> Dict[UUID, str]:
    if not student_ids:
        return {}
    result = await db.execute(
        select(Student.id, Student.first_name, Student.last_name).where(Student.id.in_(set(student_ids)))
    )
    return {r[0]: f"{r[1]} {r[2]}".strip() for r in result.all()}


# ----- Rules -----
async def list_rules(db: AsyncSession, tenant_id: UUID, active_only: bool = False) -> List[DetentionRuleResponse]:
    """Rules in evaluation order (ascending min_points)."""
    q = select(DetentionRule).where(DetentionRule.tenant_id == tenant_id)
    if active_only:
        q = q.where(DetentionRule.is_active.is_(True))
    q = q.order_by(DetentionRule.min_points, DetentionRule.created_at)
    result = await db.execute(q)
    return [DetentionRuleResponse.model_validate(r) for r in result.scalars().all()]


async def create_rule(
    db: AsyncSession,
    tenant_id: UUID,
    payload: DetentionRuleCreate,
    performed_by: Optional[UUID] = None,
) -> DetentionRuleResponse:
    rule = DetentionRule(
        tenant_id=tenant_id,
        name=payload.name.strip(),
        action_type=payload.action_type.value,
        min_points=payload.min_points,
        max_points=payload.max_points,
        severity=payload.severity.value if payload.severity else None,
        time_period_days=payload.time_period_days,
        detention_duration=payload.detention_duration,
        is_active=payload.is_active,
    )
    db.add(rule)
    await db.flush()
    await log_audit(db, tenant_id, ENTITY_RULE, rule.id, "CREATED", performed_by=performed_by, remarks=rule.name)
    await db.commit()
    await db.refresh(rule)
    return DetentionRuleResponse.model_validate(rule)


async def update_rule(
    db: AsyncSession,
    tenant_id: UUID,
    rule_id: UUID,
    payload: DetentionRuleUpdate,
    performed_by: Optional[UUID] = None,
) -> DetentionRuleResponse:
    rule = await db.get(DetentionRule, rule_id)
    if not rule or rule.tenant_id != tenant_id:
        raise NotFoundError("Detention rule not found")

    data = payload.model_dump(exclude_unset=True)
    for key, value in data.items():
        if hasattr(value, "value"):
            value = value.value
        if key == "name" and value:
            value = value.strip()
        setattr(rule, key, value)

    if rule.max_points is not None and rule.min_points > rule.max_points:
        await db.rollback()
        raise ServiceError("min_points must be less than or equal to max_points", status.HTTP_400_BAD_REQUEST)
    if rule.action_type == ACTION_SEVERITY_MATCH and not rule.severity:
        await db.rollback()
        raise ServiceError("severity is required for severity_match rules", status.HTTP_400_BAD_REQUEST)

    await log_audit(db, tenant_id, ENTITY_RULE, rule.id, "UPDATED", performed_by=performed_by, remarks=rule.name)
    await db.commit()
    await db.refresh(rule)
    return DetentionRuleResponse.model_validate(rule)


async def deactivate_rule(
    db: AsyncSession,
    tenant_id: UUID,
    rule_id: UUID,
    performed_by: Optional[UUID] = None,
) -> DetentionRuleResponse:
    """Rules are never hard-deleted; deactivating removes them from evaluation."""
    rule = await db.get(DetentionRule, rule_id)
    if not rule or rule.tenant_id != tenant_id:
        raise NotFoundError("Detention rule not found")
    rule.is_active = False
    await log_audit(db, tenant_id, ENTITY_RULE, rule.id, "DEACTIVATED", performed_by=performed_by, remarks=rule.name)
    await db.commit()
    await db.refresh(rule)
    return DetentionRuleResponse.model_validate(rule)


async def seed_default_rules(
    db: AsyncSession,
    tenant_id: UUID,
    performed_by: Optional[UUID] = None,
) -> List[DetentionRuleResponse]:
    """Create the standard rules the tenant does not have yet (matched by name)."""
    result = await db.execute(select(DetentionRule.name).where(DetentionRule.tenant_id == tenant_id))
    existing = {name for name in result.scalars().all()}
    for default in DEFAULT_RULES:
        if default["name"] in existing:
            continue
        rule = DetentionRule(
            tenant_id=tenant_id,
            name=default["name"],
            action_type=default["action_type"],
            min_points=default["min_points"],
            max_points=None,
            severity=default["severity"],
            time_period_days=30,
            detention_duration=settings.detention_default_duration,
            is_active=True,
        )
        db.add(rule)
        await db.flush()
        await log_audit(db, tenant_id, ENTITY_RULE, rule.id, "SEEDED", performed_by=performed_by, remarks=rule.name)
    await db.commit()
    return await list_rules(db, tenant_id)


# ----- Sessions -----
async def list_sessions(
    db: AsyncSession,
    tenant_id: UUID,
    services: DetentionServices,
    from_date: Optional[date] = None,
    to_date: Optional[date] = None,
    session_status: Optional[str] = None,
) -> List[DetentionSessionResponse]:
    q = select(DetentionSession).where(DetentionSession.tenant_id == tenant_id)
    if from_date:
        q = q.where(DetentionSession.session_date >= from_date)
    if to_date:
        q = q.where(DetentionSession.session_date <= to_date)
    if session_status:
        q = q.where(DetentionSession.status == session_status)
    q = q.order_by(DetentionSession.session_date, DetentionSession.start_time)
    sessions = (await db.execute(q)).scalars().all()
    occupancy = await services.capacity.occupancy_map(db, [s.id for s in sessions])
    today = services.clock()
    return [_session_to_response(s, occupancy.get(s.id, 0), today) for s in sessions]


async def get_session_detail(
    db: AsyncSession,
    tenant_id: UUID,
    session_id: UUID,
    services: DetentionServices,
) -> DetentionSessionDetail:
    s = await _get_session(db, tenant_id, session_id)
    result = await db.execute(
        select(DetentionAssignment)
        .where(DetentionAssignment.session_id == s.id)
        .order_by(DetentionAssignment.created_at)
    )
    assignments = list(result.scalars().all())
    names = await _student_names(db, [a.student_id for a in assignments])
    occupancy = await services.capacity.occupancy(db, s.id)
    base = _session_to_response(s, occupancy, services.clock())
    return DetentionSessionDetail(
        **base.model_dump(),
        assignments=[_assignment_to_response(a, names.get(a.student_id)) for a in assignments],
    )


async def create_sessions(
    db: AsyncSession,
    tenant_id: UUID,
    payload: DetentionSessionCreate,
    services: DetentionServices,
    outbox: Outbox,
    created_by: Optional[UUID] = None,
) -> SessionsCreatedResponse:
    """Create one session or a recurring batch, then fill each from the queue."""
    occurrences = payload.recurrence.occurrences if payload.recurrence else 1
    interval = payload.recurrence.interval_days if payload.recurrence else 0
    if occurrences > settings.detention_max_recurrences:
        raise ServiceError(
            f"At most {settings.detention_max_recurrences} sessions can be created at once",
            status.HTTP_400_BAD_REQUEST,
        )
    if payload.session_date < services.clock():
        raise ServiceError("Detention sessions cannot be scheduled in the past", status.HTTP_400_BAD_REQUEST)

    created: List[DetentionSession] = []
    for i in range(occurrences):
        s = DetentionSession(
            tenant_id=tenant_id,
            session_date=payload.session_date + timedelta(days=interval * i),
            start_time=payload.start_time,
            duration=payload.duration or settings.detention_default_duration,
            location=payload.location,
            supervisor_id=payload.supervisor_id,
            max_capacity=payload.max_capacity or settings.detention_default_capacity,
            status=SESSION_STATUS_SCHEDULED,
            notes=payload.notes,
            created_by=created_by,
        )
        db.add(s)
        await db.flush()
        await log_audit(
            db, tenant_id, ENTITY_SESSION, s.id, "CREATED",
            to_status=SESSION_STATUS_SCHEDULED, performed_by=created_by,
        )
        created.append(s)
    await db.commit()

    session_ids = [s.id for s in created]
    for s in created:
        outbox.broadcast("session.created", session_id=s.id, session_date=s.session_date.isoformat())
    logger.info("Created %d detention session(s)", len(session_ids))

    drains = [
        _drain_to_summary(await services.queue.drain(db, tenant_id, sid, outbox, performed_by=created_by))
        for sid in session_ids
    ]

    sessions = (
        await db.execute(
            select(DetentionSession)
            .where(DetentionSession.id.in_(session_ids))
            .order_by(DetentionSession.session_date, DetentionSession.start_time)
        )
    ).scalars().all()
    occupancy = await services.capacity.occupancy_map(db, session_ids)
    today = services.clock()
    return SessionsCreatedResponse(
        sessions=[_session_to_response(s, occupancy.get(s.id, 0), today) for s in sessions],
        queue=drains,
    )


async def update_session(
    db: AsyncSession,
    tenant_id: UUID,
    session_id: UUID,
    payload: DetentionSessionUpdate,
    services: DetentionServices,
    outbox: Outbox,
    performed_by: Optional[UUID] = None,
) -> SessionUpdatedResponse:
    """Edit session details. Capacity may not drop below occupancy; raising it drains the queue."""
    s = await services.capacity.lock_session(db, tenant_id, session_id)
    if s is None:
        raise NotFoundError("Detention session not found")
    if s.status in (SESSION_STATUS_COMPLETED, SESSION_STATUS_CANCELLED):
        raise InvalidTransitionError(f"Cannot edit a {s.status} detention session")

    data = payload.model_dump(exclude_unset=True)
    occupancy = await services.capacity.occupancy(db, s.id)
    new_capacity = data.get("max_capacity")
    if new_capacity is not None and new_capacity < occupancy:
        raise ServiceError(
            f"max_capacity cannot be lower than the {occupancy} students already assigned",
            status.HTTP_400_BAD_REQUEST,
        )
    new_date = data.get("session_date")
    if new_date is not None and new_date != s.session_date:
        if new_date < services.clock():
            raise ServiceError("Detention sessions cannot be moved into the past", status.HTTP_400_BAD_REQUEST)
        # Rescheduled students keep a strictly later date and a single upcoming detention
        if await _has_assignments(db, s.id):
            raise ServiceError(
                "Cannot change the date of a detention session that already has students assigned",
                status.HTTP_400_BAD_REQUEST,
            )
    grew = new_capacity is not None and new_capacity > s.max_capacity
    for key, value in data.items():
        if value is None and key in ("session_date", "start_time", "duration", "max_capacity"):
            continue
        setattr(s, key, value)
    await log_audit(db, tenant_id, ENTITY_SESSION, s.id, "UPDATED", performed_by=performed_by)
    await db.commit()

    drain = None
    if grew:
        drain = _drain_to_summary(await services.queue.drain(db, tenant_id, session_id, outbox, performed_by=performed_by))

    s = await _get_session(db, tenant_id, session_id)
    occupancy = await services.capacity.occupancy(db, s.id)
    return SessionUpdatedResponse(session=_session_to_response(s, occupancy, services.clock()), queue=drain)


async def change_session_status(
    db: AsyncSession,
    tenant_id: UUID,
    session_id: UUID,
    new_status: str,
    services: DetentionServices,
    outbox: Outbox,
    performed_by: Optional[UUID] = None,
) -> SessionStatusChangeResponse:
    """
    Forward-only session transition. Completing a session resolves the outstanding incidents
    of every student who attended; cancelling requeues the students still assigned to it.
    """
    s = await services.capacity.lock_session(db, tenant_id, session_id)
    if s is None:
        raise NotFoundError("Detention session not found")
    previous = s.status
    if new_status == previous:
        raise InvalidTransitionError(f"Detention session is already {previous}")
    if new_status not in SESSION_TRANSITIONS.get(previous, set()):
        raise InvalidTransitionError(f"Cannot move detention session from {previous} to {new_status}")

    s.status = new_status
    await log_audit(
        db, tenant_id, ENTITY_SESSION, s.id, "STATUS_CHANGED",
        from_status=previous, to_status=new_status, performed_by=performed_by,
    )
    await db.commit()
    outbox.broadcast("session.status_changed", session_id=session_id, status=new_status, previous=previous)
    logger.info("Detention session %s moved %s -> %s", session_id, previous, new_status)

    response = SessionStatusChangeResponse(
        session=_session_to_response(s, await services.capacity.occupancy(db, s.id), services.clock())
    )
    label = session_label(s)

    if new_status == SESSION_STATUS_COMPLETED:
        response.incidents_resolved = await _sweep_attended(db, tenant_id, session_id)
    elif new_status == SESSION_STATUS_CANCELLED:
        response.students_requeued = await _requeue_cancelled(
            db, tenant_id, session_id, label, services, outbox, performed_by
        )
    return response


async def _sweep_attended(db: AsyncSession, tenant_id: UUID, session_id: UUID) -> int:
    """Resolve incidents for every attended student on the session. Idempotent, best-effort."""
    result = await db.execute(
        select(DetentionAssignment.student_id).where(
            DetentionAssignment.session_id == session_id,
            DetentionAssignment.status == ASSIGNMENT_STATUS_ATTENDED,
        )
    )
    student_ids = list(result.scalars().all())
    resolved = 0
    for student_id in student_ids:
        try:
            count = await demerits.resolve_outstanding_incidents(db, tenant_id, student_id)
            await db.commit()
            resolved += count
        except Exception:
            logger.exception("Failed to resolve incidents for student %s on session close", student_id)
            await db.rollback()
    return resolved


async def _requeue_cancelled(
    db: AsyncSession,
    tenant_id: UUID,
    session_id: UUID,
    label: str,
    services: DetentionServices,
    outbox: Outbox,
    performed_by: Optional[UUID],
) -> int:
    result = await db.execute(
        select(DetentionAssignment.student_id, Student.guardian_user_id, Student.first_name, Student.last_name)
        .join(Student, Student.id == DetentionAssignment.student_id)
        .where(
            DetentionAssignment.session_id == session_id,
            DetentionAssignment.status == ASSIGNMENT_STATUS_ASSIGNED,
        )
    )
    rows = result.all()
    requeued = 0
    for student_id, guardian_id, first_name, last_name in rows:
        try:
            points = await demerits.outstanding_points(db, tenant_id, student_id)
            _entry, created = await services.queue.enqueue(
                db, tenant_id, student_id, points, outbox,
                reason=f"Detention session on {label} was cancelled", performed_by=performed_by,
            )
            if created:
                requeued += 1
        except Exception:
            logger.exception("Failed to requeue student %s from cancelled session %s", student_id, session_id)
            await db.rollback()
            continue
        outbox.notify(
            guardian_id,
            CATEGORY_DETENTION_CANCELLED,
            "Detention Cancelled",
            f"The detention for {first_name} {last_name} on {label} was cancelled. A new date will follow.",
            "detention_session",
            session_id,
        )
    return requeued


# ----- Queue, history, dashboard -----
async def list_queue(
    db: AsyncSession,
    tenant_id: UUID,
    queue_status: Optional[str] = QUEUE_STATUS_PENDING,
) -> List[QueueEntryResponse]:
    """Queue entries oldest first (the order drains use)."""
    q = select(DetentionQueueEntry).where(DetentionQueueEntry.tenant_id == tenant_id)
    if queue_status:
        q = q.where(DetentionQueueEntry.status == queue_status)
    q = q.order_by(DetentionQueueEntry.queued_at, DetentionQueueEntry.id)
    entries = list((await db.execute(q)).scalars().all())
    names = await _student_names(db, [e.student_id for e in entries])
    return [_queue_entry_to_response(e, names.get(e.student_id)) for e in entries]


async def student_history(
    db: AsyncSession,
    tenant_id: UUID,
    student_id: UUID,
) -> List[StudentDetentionHistoryItem]:
    student = await db.get(Student, student_id)
    if not student or student.tenant_id != tenant_id:
        raise NotFoundError("Student not found")
    result = await db.execute(
        select(DetentionAssignment, DetentionSession)
        .join(DetentionSession, DetentionSession.id == DetentionAssignment.session_id)
        .where(
            DetentionAssignment.tenant_id == tenant_id,
            DetentionAssignment.student_id == student_id,
        )
        .order_by(DetentionSession.session_date.desc(), DetentionAssignment.created_at.desc())
    )
    items = []
    for a, s in result.all():
        base = _assignment_to_response(a, student.full_name)
        items.append(
            StudentDetentionHistoryItem(
                **base.model_dump(),
                session_date=s.session_date,
                start_time=s.start_time,
                location=s.location,
                session_status=s.status,
            )
        )
    return items


async def qualifying_students(
    db: AsyncSession,
    tenant_id: UUID,
    services: DetentionServices,
) -> List[QualifyingStudentResponse]:
    """Dashboard view of the global points policy."""
    candidates = await services.evaluator.qualifying_students(db, tenant_id)
    if not candidates:
        return []
    queued = set(
        (
            await db.execute(
                select(DetentionQueueEntry.student_id).where(
                    DetentionQueueEntry.tenant_id == tenant_id,
                    DetentionQueueEntry.status == QUEUE_STATUS_PENDING,
                )
            )
        ).scalars().all()
    )
    items = []
    for c in candidates:
        items.append(
            QualifyingStudentResponse(
                student_id=c.student_id,
                student_name=c.student_name,
                points=c.points,
                has_pending_assignment=await services.engine.has_pending_assignment(db, tenant_id, c.student_id),
                is_queued=c.student_id in queued,
            )
        )
    return items
