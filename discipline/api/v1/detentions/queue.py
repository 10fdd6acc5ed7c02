"""
Detention waitlist.

Students that qualify while no session has room wait here. Draining a session
places the oldest pending entries first (strict FIFO on queued_at).
"""

import logging
from dataclasses import dataclass
from datetime import date, datetime
from typing import Callable, List, Optional, Tuple
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from discipline.core.exceptions import NotFoundError
from discipline.core.models import DetentionQueueEntry, DetentionSession, Student
from discipline.core.models.detention_queue_entry import QUEUE_STATUS_ASSIGNED, QUEUE_STATUS_PENDING
from discipline.core.notifications import CATEGORY_DETENTION_QUEUED, Outbox

from .audit_service import ENTITY_QUEUE_ENTRY, log_audit
from .capacity import SessionCapacityTracker
from .placement import assignment_exists, create_assignment, pending_assignment_session_id

logger = logging.getLogger(__name__)


@dataclass
class DrainResult:
    session_id: UUID
    available_slots: int = 0
    assigned: int = 0
    # Entries closed without a new row because the student was already placed
    skipped: int = 0
    failed: int = 0


class QueueManager:
    def __init__(
        self,
        capacity: SessionCapacityTracker,
        clock: Callable[[], date] = date.today,
        now: Callable[[], datetime] = datetime.utcnow,
    ):
        self.capacity = capacity
        self.clock = clock
        self.now = now

    async def get_pending_entry(
        self,
        db: AsyncSession,
        tenant_id: UUID,
        student_id: UUID,
    ) -> Optional[DetentionQueueEntry]:
        result = await db.execute(
            select(DetentionQueueEntry).where(
                DetentionQueueEntry.tenant_id == tenant_id,
                DetentionQueueEntry.student_id == student_id,
                DetentionQueueEntry.status == QUEUE_STATUS_PENDING,
            )
        )
        return result.scalars().first()

    async def pending_entries(
        self,
        db: AsyncSession,
        tenant_id: UUID,
        limit: Optional[int] = None,
    ) -> List[DetentionQueueEntry]:
        """Pending entries, oldest first."""
        q = (
            select(DetentionQueueEntry)
            .where(
                DetentionQueueEntry.tenant_id == tenant_id,
                DetentionQueueEntry.status == QUEUE_STATUS_PENDING,
            )
            .order_by(DetentionQueueEntry.queued_at, DetentionQueueEntry.id)
        )
        if limit is not None:
            q = q.limit(limit)
        result = await db.execute(q)
        return list(result.scalars().all())

    async def enqueue(
        self,
        db: AsyncSession,
        tenant_id: UUID,
        student_id: UUID,
        points_at_queue: int,
        outbox: Outbox,
        *,
        reason: Optional[str] = None,
        performed_by: Optional[UUID] = None,
    ) -> Tuple[DetentionQueueEntry, bool]:
        """
        Add the student to the waitlist and commit. Idempotent: returns (entry, created)
        where an existing pending entry comes back with created=False.
        """
        existing = await self.get_pending_entry(db, tenant_id, student_id)
        if existing is not None:
            return existing, False

        entry = DetentionQueueEntry(
            tenant_id=tenant_id,
            student_id=student_id,
            points_at_queue=points_at_queue,
            reason=reason,
            queued_at=self.now(),
            status=QUEUE_STATUS_PENDING,
        )
        db.add(entry)
        try:
            await db.flush()
            await log_audit(
                db,
                tenant_id,
                ENTITY_QUEUE_ENTRY,
                entry.id,
                "QUEUED",
                to_status=QUEUE_STATUS_PENDING,
                performed_by=performed_by,
                remarks=reason,
            )
            await db.commit()
        except IntegrityError:
            # Another request queued the student between the check and the insert
            await db.rollback()
            existing = await self.get_pending_entry(db, tenant_id, student_id)
            if existing is None:
                raise
            return existing, False

        student = await db.get(Student, student_id)
        if student is not None:
            outbox.notify(
                student.guardian_user_id,
                CATEGORY_DETENTION_QUEUED,
                "Detention Pending",
                f"{student.full_name} qualifies for detention and will be scheduled into the next session with space.",
                "detention_queue",
                entry.id,
            )
        outbox.broadcast("queue.enqueued", queue_entry_id=entry.id, student_id=student_id, points=points_at_queue)
        logger.info("Queued student %s for detention (%d points)", student_id, points_at_queue)
        return entry, True

    async def _close_entry(
        self,
        db: AsyncSession,
        tenant_id: UUID,
        entry: DetentionQueueEntry,
        session_id: UUID,
        performed_by: Optional[UUID],
        remarks: str,
    ) -> None:
        entry.status = QUEUE_STATUS_ASSIGNED
        entry.assigned_to_session_id = session_id
        entry.assigned_at = self.now()
        await log_audit(
            db,
            tenant_id,
            ENTITY_QUEUE_ENTRY,
            entry.id,
            "DEQUEUED",
            from_status=QUEUE_STATUS_PENDING,
            to_status=QUEUE_STATUS_ASSIGNED,
            performed_by=performed_by,
            remarks=remarks,
        )

    async def drain(
        self,
        db: AsyncSession,
        tenant_id: UUID,
        session_id: UUID,
        outbox: Outbox,
        performed_by: Optional[UUID] = None,
    ) -> DrainResult:
        """Fill the session's free slots from the queue, oldest entry first. Commits per entry."""
        session = await self.capacity.lock_session(db, tenant_id, session_id)
        if session is None:
            raise NotFoundError("Detention session not found")

        slots = await self.capacity.available_slots(db, session)
        result = DrainResult(session_id=session_id, available_slots=slots)
        if slots == 0:
            return result

        today = self.clock()
        candidates = [
            (e.id, e.student_id, e.points_at_queue)
            for e in await self.pending_entries(db, tenant_id)
        ]
        for entry_id, student_id, points in candidates:
            if result.assigned >= slots:
                break
            try:
                entry = await db.get(DetentionQueueEntry, entry_id)
                if entry is None or entry.status != QUEUE_STATUS_PENDING:
                    continue

                existing_session_id = await pending_assignment_session_id(db, tenant_id, student_id, today)
                if existing_session_id is not None:
                    await self._close_entry(
                        db, tenant_id, entry, existing_session_id, performed_by,
                        "Student already holds an upcoming detention",
                    )
                    await db.commit()
                    result.skipped += 1
                    continue
                if await assignment_exists(db, session_id, student_id):
                    # Already has a (finished) row on this session; wait for a later one
                    result.skipped += 1
                    continue

                session = await self.capacity.lock_session(db, tenant_id, session_id)
                if session is None or await self.capacity.available_slots(db, session) <= 0:
                    break
                student = await db.get(Student, student_id)
                if student is None:
                    result.failed += 1
                    continue

                placed = Outbox(tenant_id)
                reason = f"Assigned from detention queue ({points} points)"
                await create_assignment(
                    db, tenant_id, session, student, placed,
                    reason=reason, assigned_by=performed_by,
                )
                await self._close_entry(db, tenant_id, entry, session_id, performed_by, reason)
                await db.commit()
                outbox.extend(placed)
                result.assigned += 1
            except IntegrityError:
                await db.rollback()
                logger.info("Skipped duplicate placement for queued student %s", student_id)
                result.skipped += 1
            except Exception:
                logger.exception("Failed to place queued student %s into session %s", student_id, session_id)
                await db.rollback()
                result.failed += 1

        if result.assigned:
            outbox.broadcast("queue.drained", session_id=session_id, assigned=result.assigned)
        logger.info(
            "Drained detention queue into session %s: %d assigned, %d skipped, %d failed",
            session_id, result.assigned, result.skipped, result.failed,
        )
        return result
