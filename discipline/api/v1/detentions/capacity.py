"""Session occupancy and availability."""

from datetime import date
from typing import Callable, Dict, Iterable, Optional
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from discipline.core.models import DetentionAssignment, DetentionSession
from discipline.core.models.detention_assignment import OCCUPYING_STATUSES
from discipline.core.models.detention_session import SESSION_STATUS_SCHEDULED


def occupancy_subquery():
    """Correlated occupancy count for use inside a DetentionSession query."""
    return (
        select(func.count(DetentionAssignment.id))
        .where(
            DetentionAssignment.session_id == DetentionSession.id,
            DetentionAssignment.status.in_(OCCUPYING_STATUSES),
        )
        .correlate(DetentionSession)
        .scalar_subquery()
    )


class SessionCapacityTracker:
    """
    Occupancy = assignments in assigned/attended/late.
    A session is available iff it is scheduled, dated today or later, and not full.
    """

    def __init__(self, clock: Callable[[], date] = date.today):
        self.clock = clock

    async def occupancy(self, db: AsyncSession, session_id: UUID) -> int:
        result = await db.execute(
            select(func.count(DetentionAssignment.id)).where(
                DetentionAssignment.session_id == session_id,
                DetentionAssignment.status.in_(OCCUPYING_STATUSES),
            )
        )
        return int(result.scalar_one() or 0)

    async def occupancy_map(self, db: AsyncSession, session_ids: Iterable[UUID]) -> Dict[UUID, int]:
        ids = list(session_ids)
        if not ids:
            return {}
        result = await db.execute(
            select(DetentionAssignment.session_id, func.count(DetentionAssignment.id))
            .where(
                DetentionAssignment.session_id.in_(ids),
                DetentionAssignment.status.in_(OCCUPYING_STATUSES),
            )
            .group_by(DetentionAssignment.session_id)
        )
        counts = {row[0]: int(row[1]) for row in result.all()}
        return {sid: counts.get(sid, 0) for sid in ids}

    def is_open(self, session: DetentionSession) -> bool:
        """Scheduled and not in the past; capacity not considered."""
        return session.status == SESSION_STATUS_SCHEDULED and session.session_date >= self.clock()

    async def available_slots(self, db: AsyncSession, session: DetentionSession) -> int:
        if not self.is_open(session):
            return 0
        return max(0, session.max_capacity - await self.occupancy(db, session.id))

    async def is_available(self, db: AsyncSession, session: DetentionSession) -> bool:
        return await self.available_slots(db, session) > 0

    async def lock_session(
        self,
        db: AsyncSession,
        tenant_id: UUID,
        session_id: UUID,
    ) -> Optional[DetentionSession]:
        """Load the session row FOR UPDATE so concurrent placements serialize on it (no-op on SQLite)."""
        result = await db.execute(
            select(DetentionSession)
            .where(DetentionSession.id == session_id, DetentionSession.tenant_id == tenant_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()
