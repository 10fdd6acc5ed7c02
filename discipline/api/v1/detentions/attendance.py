"""
Attendance outcomes for detention assignments.

assigned -> attended | absent | late | excused | dismissed; every outcome is terminal
for the row. The status write is the primary operation and is committed first.
Incident resolution (attended) and reassignment (absent/dismissed) follow as
best-effort steps whose failures are logged, never raised.
"""

import logging
from dataclasses import dataclass
from datetime import date, datetime
from typing import Callable, Optional
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from discipline.core import demerits
from discipline.core.enums import AttendanceOutcome
from discipline.core.exceptions import InvalidTransitionError, NotFoundError
from discipline.core.models import DetentionAssignment, DetentionSession
from discipline.core.models.detention_assignment import ASSIGNMENT_STATUS_ASSIGNED
from discipline.core.models.detention_session import SESSION_STATUS_CANCELLED
from discipline.core.notifications import (
    CATEGORY_DETENTION_ATTENDANCE,
    Outbox,
)

from .assignment import AssignmentEngine
from .audit_service import ENTITY_ASSIGNMENT, log_audit
from .placement import create_assignment, get_student, session_label
from .queue import QueueManager

logger = logging.getLogger(__name__)


REASSIGN_OUTCOMES = (AttendanceOutcome.ABSENT.value, AttendanceOutcome.DISMISSED.value)

GUARDIAN_MESSAGES = {
    AttendanceOutcome.ATTENDED.value: ("Detention Completed", "{name} attended detention on {when}."),
    AttendanceOutcome.LATE.value: ("Detention Late", "{name} was late for detention on {when}."),
    AttendanceOutcome.EXCUSED.value: ("Detention Excused", "{name} was excused from detention on {when}."),
    AttendanceOutcome.ABSENT.value: ("Detention Absent", "{name} was absent from detention on {when}."),
    AttendanceOutcome.DISMISSED.value: ("Detention Dismissed", "{name} was dismissed from detention on {when}."),
}


@dataclass
class AttendanceResult:
    assignment: DetentionAssignment
    incidents_resolved: int = 0
    follow_up_assignment_id: Optional[UUID] = None
    follow_up_session_id: Optional[UUID] = None
    queue_entry_id: Optional[UUID] = None
    rescheduled_label: Optional[str] = None


class AttendanceStateMachine:
    def __init__(
        self,
        engine: AssignmentEngine,
        queue: QueueManager,
        clock: Callable[[], date] = date.today,
        now: Callable[[], datetime] = datetime.utcnow,
    ):
        self.engine = engine
        self.queue = queue
        self.clock = clock
        self.now = now

    async def _get_assignment(self, db: AsyncSession, tenant_id: UUID, assignment_id: UUID) -> DetentionAssignment:
        assignment = await db.get(DetentionAssignment, assignment_id)
        if not assignment or assignment.tenant_id != tenant_id:
            raise NotFoundError("Detention assignment not found")
        return assignment

    async def record(
        self,
        db: AsyncSession,
        tenant_id: UUID,
        assignment_id: UUID,
        outcome: AttendanceOutcome,
        outbox: Outbox,
        *,
        notes: Optional[str] = None,
        recorded_by: Optional[UUID] = None,
    ) -> AttendanceResult:
        outcome_value = AttendanceOutcome(outcome).value
        assignment = await self._get_assignment(db, tenant_id, assignment_id)
        if assignment.status != ASSIGNMENT_STATUS_ASSIGNED:
            raise InvalidTransitionError(f"Attendance already recorded as '{assignment.status}'")

        session = await db.get(DetentionSession, assignment.session_id)
        if session.status == SESSION_STATUS_CANCELLED:
            raise InvalidTransitionError("Detention session was cancelled; attendance cannot be recorded")
        student = await get_student(db, tenant_id, assignment.student_id)

        previous = assignment.status
        assignment.status = outcome_value
        if notes is not None:
            assignment.notes = notes
        if outcome_value in (AttendanceOutcome.ATTENDED.value, AttendanceOutcome.LATE.value):
            assignment.attendance_time = self.now()
        await log_audit(
            db,
            tenant_id,
            ENTITY_ASSIGNMENT,
            assignment.id,
            "ATTENDANCE_RECORDED",
            from_status=previous,
            to_status=outcome_value,
            performed_by=recorded_by,
            remarks=notes,
        )
        await db.commit()

        student_id = student.id
        guardian_id = student.guardian_user_id
        student_name = student.full_name
        missed_date = session.session_date
        when = session_label(session)
        session_id = session.id

        outbox.broadcast(
            "assignment.status_changed",
            assignment_id=assignment_id,
            session_id=session_id,
            student_id=student_id,
            status=outcome_value,
        )
        logger.info("Detention assignment %s marked %s", assignment_id, outcome_value)

        result = AttendanceResult(assignment=assignment)
        title, template = GUARDIAN_MESSAGES[outcome_value]
        message = template.format(name=student_name, when=when)

        if outcome_value == AttendanceOutcome.ATTENDED.value:
            result.incidents_resolved = await self._resolve_incidents(db, tenant_id, student_id)

        elif outcome_value in REASSIGN_OUTCOMES:
            await self._reassign(db, tenant_id, assignment_id, student_id, missed_date, outbox, recorded_by, result)
            if result.follow_up_session_id is not None:
                message += f" A new detention has been scheduled on {result.rescheduled_label}."
            elif result.queue_entry_id is not None:
                message += " A new detention will be scheduled as soon as a session has space."
            outbox.notify_admins(
                CATEGORY_DETENTION_ATTENDANCE,
                title,
                f"{student_name} was {outcome_value} from detention on {when}.",
                "detention_assignment",
                assignment_id,
            )

        outbox.notify(guardian_id, CATEGORY_DETENTION_ATTENDANCE, title, message, "detention_assignment", assignment_id)

        result.assignment = await self._get_assignment(db, tenant_id, assignment_id)
        return result

    async def _resolve_incidents(self, db: AsyncSession, tenant_id: UUID, student_id: UUID) -> int:
        try:
            resolved = await demerits.resolve_outstanding_incidents(db, tenant_id, student_id)
            await db.commit()
        except Exception:
            logger.exception("Failed to resolve incidents for student %s", student_id)
            await db.rollback()
            return 0
        logger.info("Resolved %d incidents for student %s after detention", resolved, student_id)
        return resolved

    async def _reassign(
        self,
        db: AsyncSession,
        tenant_id: UUID,
        missed_assignment_id: UUID,
        student_id: UUID,
        missed_date: date,
        outbox: Outbox,
        recorded_by: Optional[UUID],
        result: AttendanceResult,
    ) -> None:
        """Next available session strictly after the missed one, else the queue. Best-effort."""
        try:
            if await self.engine.has_pending_assignment(db, tenant_id, student_id):
                logger.info("Student %s already holds an upcoming detention; no reassignment", student_id)
                return

            reason = f"Auto-reassigned after missed detention on {missed_date.isoformat()}"
            candidate = await self.engine.find_next_available_session(
                db, tenant_id, after=missed_date, student_id=student_id
            )
            if candidate is not None:
                session = await self.engine.capacity.lock_session(db, tenant_id, candidate.id)
                if session is not None and await self.engine.capacity.available_slots(db, session) > 0:
                    student = await get_student(db, tenant_id, student_id)
                    placed = Outbox(tenant_id)
                    new_assignment = await create_assignment(
                        db, tenant_id, session, student, placed,
                        reason=reason, assigned_by=recorded_by,
                        reassigned_from_id=missed_assignment_id,
                    )
                    await db.commit()
                    # Guardian gets one combined attendance message instead
                    placed.notifications.clear()
                    outbox.extend(placed)
                    result.follow_up_assignment_id = new_assignment.id
                    result.follow_up_session_id = session.id
                    result.rescheduled_label = session_label(session)
                    return

            points = await demerits.outstanding_points(db, tenant_id, student_id)
            entry, _created = await self.queue.enqueue(
                db, tenant_id, student_id, points, outbox, reason=reason, performed_by=recorded_by
            )
            result.queue_entry_id = entry.id
        except Exception:
            logger.exception("Reassignment failed for student %s after missed detention", student_id)
            await db.rollback()
