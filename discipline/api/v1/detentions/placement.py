"""
Shared placement step: insert the assignment row and stage the guardian notification.
Used by the assignment engine, the queue drain and attendance reassignment.
"""

import logging
from datetime import date
from typing import Optional
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from discipline.core.exceptions import NotFoundError
from discipline.core.models import DetentionAssignment, DetentionSession, Student
from discipline.core.models.detention_assignment import ASSIGNMENT_STATUS_ASSIGNED, PENDING_STATUSES
from discipline.core.models.detention_session import SESSION_STATUS_CANCELLED
from discipline.core.notifications import (
    CATEGORY_DETENTION_ASSIGNED,
    CATEGORY_DETENTION_REASSIGNED,
    Outbox,
)

from .audit_service import ENTITY_ASSIGNMENT, log_audit

logger = logging.getLogger(__name__)


def session_label(session: DetentionSession) -> str:
    when = f"{session.session_date.isoformat()} at {session.start_time.strftime('%H:%M')}"
    if session.location:
        when += f" in {session.location}"
    return when


async def get_student(db: AsyncSession, tenant_id: UUID, student_id: UUID) -> Student:
    student = await db.get(Student, student_id)
    if not student or student.tenant_id != tenant_id:
        raise NotFoundError("Student not found")
    return student


async def pending_assignment_session_id(
    db: AsyncSession,
    tenant_id: UUID,
    student_id: UUID,
    today: date,
) -> Optional[UUID]:
    """Session of the student's pending (assigned/late) assignment dated today or later, if any."""
    result = await db.execute(
        select(DetentionAssignment.session_id)
        .join(DetentionSession, DetentionSession.id == DetentionAssignment.session_id)
        .where(
            DetentionAssignment.tenant_id == tenant_id,
            DetentionAssignment.student_id == student_id,
            DetentionAssignment.status.in_(PENDING_STATUSES),
            DetentionSession.session_date >= today,
            DetentionSession.status != SESSION_STATUS_CANCELLED,
        )
        .order_by(DetentionSession.session_date, DetentionSession.start_time)
        .limit(1)
    )
    return result.scalar_one_or_none()


async def assignment_exists(db: AsyncSession, session_id: UUID, student_id: UUID) -> bool:
    result = await db.execute(
        select(DetentionAssignment.id)
        .where(
            DetentionAssignment.session_id == session_id,
            DetentionAssignment.student_id == student_id,
        )
        .limit(1)
    )
    return result.scalar_one_or_none() is not None


async def create_assignment(
    db: AsyncSession,
    tenant_id: UUID,
    session: DetentionSession,
    student: Student,
    outbox: Outbox,
    *,
    reason: Optional[str] = None,
    incident_id: Optional[UUID] = None,
    assigned_by: Optional[UUID] = None,
    reassigned_from_id: Optional[UUID] = None,
) -> DetentionAssignment:
    """Insert a new `assigned` row and stage notifications. Caller re-checks guards and commits."""
    is_reassignment = reassigned_from_id is not None
    assignment = DetentionAssignment(
        tenant_id=tenant_id,
        session_id=session.id,
        student_id=student.id,
        incident_id=incident_id,
        assigned_by=assigned_by,
        reason=reason,
        status=ASSIGNMENT_STATUS_ASSIGNED,
        is_auto_reassigned=is_reassignment,
        reassigned_from_id=reassigned_from_id,
    )
    db.add(assignment)
    await db.flush()
    await log_audit(
        db,
        tenant_id,
        ENTITY_ASSIGNMENT,
        assignment.id,
        "AUTO_REASSIGNED" if is_reassignment else "ASSIGNED",
        to_status=ASSIGNMENT_STATUS_ASSIGNED,
        performed_by=assigned_by,
        remarks=reason,
    )

    if is_reassignment:
        title = "Detention Rescheduled"
        category = CATEGORY_DETENTION_REASSIGNED
        message = f"{student.full_name} has been rescheduled to detention on {session_label(session)}."
    else:
        title = "Detention Assigned"
        category = CATEGORY_DETENTION_ASSIGNED
        message = f"{student.full_name} has been assigned to detention on {session_label(session)}."
    if reason:
        message += f" Reason: {reason}"
    outbox.notify(student.guardian_user_id, category, title, message, "detention_session", session.id)
    outbox.broadcast(
        "assignment.created",
        assignment_id=assignment.id,
        session_id=session.id,
        student_id=student.id,
        auto_reassigned=is_reassignment,
    )

    logger.info("Assigned student %s to detention session %s", student.id, session.id)
    return assignment
