"""
Detention assignment engine.

Places a qualifying student into a session with free capacity, or hands them to the
queue when none has room. Every write path re-checks the single-pending and capacity
invariants right before inserting.
"""

import logging
from dataclasses import dataclass
from datetime import date
from typing import Callable, Optional
from uuid import UUID

from fastapi import status
from sqlalchemy import exists, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from discipline.core import demerits
from discipline.core.exceptions import NotFoundError, ServiceError
from discipline.core.models import DetentionAssignment, DetentionQueueEntry, DetentionSession
from discipline.core.models.detention_session import SESSION_STATUS_SCHEDULED
from discipline.core.enums import PlacementOutcome
from discipline.core.notifications import Outbox

from .capacity import SessionCapacityTracker, occupancy_subquery
from .placement import assignment_exists, create_assignment, get_student, pending_assignment_session_id
from .qualification import QualificationEvaluator, describe_match
from .queue import QueueManager

logger = logging.getLogger(__name__)


@dataclass
class PlacementResult:
    outcome: PlacementOutcome
    assignment: Optional[DetentionAssignment] = None
    queue_entry: Optional[DetentionQueueEntry] = None
    session_id: Optional[UUID] = None
    reason: Optional[str] = None


@dataclass
class BatchResult:
    session_id: UUID
    qualifying: int = 0
    assigned: int = 0
    queued: int = 0
    # Already assigned or already queued
    skipped: int = 0
    failed: int = 0


class AssignmentEngine:
    def __init__(
        self,
        capacity: SessionCapacityTracker,
        queue: QueueManager,
        evaluator: QualificationEvaluator,
        clock: Callable[[], date] = date.today,
    ):
        self.capacity = capacity
        self.queue = queue
        self.evaluator = evaluator
        self.clock = clock

    async def has_pending_assignment(self, db: AsyncSession, tenant_id: UUID, student_id: UUID) -> bool:
        """Student holds an assigned/late row on a session dated today or later."""
        return await pending_assignment_session_id(db, tenant_id, student_id, self.clock()) is not None

    async def find_next_available_session(
        self,
        db: AsyncSession,
        tenant_id: UUID,
        after: Optional[date] = None,
        student_id: Optional[UUID] = None,
    ) -> Optional[DetentionSession]:
        """
        Earliest (date, time) scheduled session with free capacity, from today or strictly after `after`.
        With `student_id`, sessions the student already has a row on are skipped.
        """
        q = select(DetentionSession).where(
            DetentionSession.tenant_id == tenant_id,
            DetentionSession.status == SESSION_STATUS_SCHEDULED,
            DetentionSession.session_date >= self.clock(),
            occupancy_subquery() < DetentionSession.max_capacity,
        )
        if after is not None:
            q = q.where(DetentionSession.session_date > after)
        if student_id is not None:
            q = q.where(
                ~exists().where(
                    DetentionAssignment.session_id == DetentionSession.id,
                    DetentionAssignment.student_id == student_id,
                )
            )
        q = q.order_by(DetentionSession.session_date, DetentionSession.start_time).limit(1)
        result = await db.execute(q)
        return result.scalar_one_or_none()

    async def _enqueue(
        self,
        db: AsyncSession,
        tenant_id: UUID,
        student_id: UUID,
        outbox: Outbox,
        reason: Optional[str],
        performed_by: Optional[UUID],
    ) -> PlacementResult:
        points = await demerits.outstanding_points(db, tenant_id, student_id)
        entry, created = await self.queue.enqueue(
            db, tenant_id, student_id, points, outbox, reason=reason, performed_by=performed_by
        )
        return PlacementResult(
            outcome=PlacementOutcome.QUEUED if created else PlacementOutcome.ALREADY_QUEUED,
            queue_entry=entry,
            reason=reason,
        )

    async def assign(
        self,
        db: AsyncSession,
        tenant_id: UUID,
        student_id: UUID,
        outbox: Outbox,
        *,
        session_id: Optional[UUID] = None,
        reason: Optional[str] = None,
        incident_id: Optional[UUID] = None,
        assigned_by: Optional[UUID] = None,
    ) -> PlacementResult:
        """
        Place the student into `session_id`, or into the next available session when omitted.
        Full session / no session -> queued. Existing pending assignment -> no-op.
        """
        student = await get_student(db, tenant_id, student_id)

        if session_id is not None:
            session = await self.capacity.lock_session(db, tenant_id, session_id)
            if session is None:
                raise NotFoundError("Detention session not found")
            if not self.capacity.is_open(session):
                raise ServiceError("Detention session is not open for assignment", status.HTTP_400_BAD_REQUEST)
            if await assignment_exists(db, session.id, student_id) or await self.has_pending_assignment(
                db, tenant_id, student_id
            ):
                return PlacementResult(outcome=PlacementOutcome.ALREADY_ASSIGNED, session_id=session.id)
            if await self.capacity.available_slots(db, session) <= 0:
                logger.info("Session %s is full; queueing student %s", session.id, student_id)
                return await self._enqueue(db, tenant_id, student_id, outbox, reason, assigned_by)
        else:
            if await self.has_pending_assignment(db, tenant_id, student_id):
                return PlacementResult(outcome=PlacementOutcome.ALREADY_ASSIGNED)
            candidate = await self.find_next_available_session(db, tenant_id, student_id=student_id)
            if candidate is None:
                logger.info("No detention session with capacity; queueing student %s", student_id)
                return await self._enqueue(db, tenant_id, student_id, outbox, reason, assigned_by)
            session = await self.capacity.lock_session(db, tenant_id, candidate.id)
            if session is None or await self.capacity.available_slots(db, session) <= 0:
                return await self._enqueue(db, tenant_id, student_id, outbox, reason, assigned_by)

        target_session_id = session.id
        placed = Outbox(tenant_id)
        try:
            assignment = await create_assignment(
                db, tenant_id, session, student, placed,
                reason=reason, incident_id=incident_id, assigned_by=assigned_by,
            )
            await db.commit()
        except IntegrityError:
            await db.rollback()
            logger.info("Duplicate detention assignment for student %s absorbed", student_id)
            return PlacementResult(outcome=PlacementOutcome.ALREADY_ASSIGNED, session_id=target_session_id)

        outbox.extend(placed)
        return PlacementResult(
            outcome=PlacementOutcome.ASSIGNED,
            assignment=assignment,
            session_id=assignment.session_id,
            reason=reason,
        )

    async def assign_for_incident(
        self,
        db: AsyncSession,
        tenant_id: UUID,
        student_id: UUID,
        outbox: Outbox,
        *,
        incident_id: Optional[UUID] = None,
        assigned_by: Optional[UUID] = None,
    ) -> PlacementResult:
        """Run rule evaluation for the student and place into the next available session on a match."""
        await get_student(db, tenant_id, student_id)
        match = await self.evaluator.first_match(db, tenant_id, student_id)
        if match is None:
            return PlacementResult(outcome=PlacementOutcome.NOT_QUALIFIED)
        return await self.assign(
            db, tenant_id, student_id, outbox,
            reason=describe_match(match), incident_id=incident_id, assigned_by=assigned_by,
        )

    async def auto_assign_batch(
        self,
        db: AsyncSession,
        tenant_id: UUID,
        session_id: UUID,
        outbox: Outbox,
        assigned_by: Optional[UUID] = None,
    ) -> BatchResult:
        """
        Fill the session with students qualifying under the global points policy.
        Once slots run out, remaining candidates are queued. One candidate's failure
        never aborts the batch.
        """
        session = await self.capacity.lock_session(db, tenant_id, session_id)
        if session is None:
            raise NotFoundError("Detention session not found")

        candidates = await self.evaluator.qualifying_students(db, tenant_id)
        result = BatchResult(session_id=session_id, qualifying=len(candidates))

        for candidate in candidates:
            student_id = candidate.student_id
            try:
                if await assignment_exists(db, session_id, student_id) or await self.has_pending_assignment(
                    db, tenant_id, student_id
                ):
                    result.skipped += 1
                    continue

                reason = f"Auto-assigned: {candidate.points} demerit points"
                session = await self.capacity.lock_session(db, tenant_id, session_id)
                if session is not None and await self.capacity.available_slots(db, session) > 0:
                    student = await get_student(db, tenant_id, student_id)
                    placed = Outbox(tenant_id)
                    await create_assignment(
                        db, tenant_id, session, student, placed,
                        reason=reason, assigned_by=assigned_by,
                    )
                    await db.commit()
                    outbox.extend(placed)
                    result.assigned += 1
                else:
                    _entry, created = await self.queue.enqueue(
                        db, tenant_id, student_id, candidate.points, outbox,
                        reason=reason, performed_by=assigned_by,
                    )
                    if created:
                        result.queued += 1
                    else:
                        result.skipped += 1
            except IntegrityError:
                await db.rollback()
                result.skipped += 1
            except Exception:
                logger.exception("Auto-assign failed for student %s", student_id)
                await db.rollback()
                result.failed += 1

        logger.info(
            "Auto-assign for session %s: %d qualifying, %d assigned, %d queued, %d skipped, %d failed",
            session_id, result.qualifying, result.assigned, result.queued, result.skipped, result.failed,
        )
        return result
