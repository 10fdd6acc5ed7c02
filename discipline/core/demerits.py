"""
Demerit ledger queries used by the detention core.

Outstanding demerits are the point deductions of incidents that are not yet resolved.
Serving a detention resolves them so the same incidents cannot qualify the student again.
"""

from dataclasses import dataclass
from datetime import date, datetime
from typing import List, Optional
from uuid import UUID

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from discipline.core.models import BehaviourIncident, Student


@dataclass
class IncidentStats:
    count: int
    points: int


@dataclass
class StudentDemerits:
    student_id: UUID
    student_name: str
    guardian_user_id: Optional[UUID]
    points: int


def _outstanding_filter(tenant_id: UUID):
    return (
        BehaviourIncident.tenant_id == tenant_id,
        BehaviourIncident.is_resolved.is_(False),
        BehaviourIncident.points > 0,
    )


async def outstanding_points(
    db: AsyncSession,
    tenant_id: UUID,
    student_id: UUID,
    since: Optional[date] = None,
) -> int:
    """Total unresolved point deductions for the student, optionally from `since` onwards."""
    q = select(func.coalesce(func.sum(BehaviourIncident.points), 0)).where(
        *_outstanding_filter(tenant_id),
        BehaviourIncident.student_id == student_id,
    )
    if since is not None:
        q = q.where(BehaviourIncident.incident_date >= since)
    result = await db.execute(q)
    return int(result.scalar_one() or 0)


async def incident_stats(
    db: AsyncSession,
    tenant_id: UUID,
    student_id: UUID,
    since: Optional[date] = None,
    severity: Optional[str] = None,
) -> IncidentStats:
    """Count and points of outstanding incidents in the window, the same set resolution clears."""
    q = select(
        func.count(BehaviourIncident.id),
        func.coalesce(func.sum(BehaviourIncident.points), 0),
    ).where(
        *_outstanding_filter(tenant_id),
        BehaviourIncident.student_id == student_id,
    )
    if since is not None:
        q = q.where(BehaviourIncident.incident_date >= since)
    if severity:
        q = q.where(func.lower(BehaviourIncident.severity) == severity.lower())
    row = (await db.execute(q)).one()
    return IncidentStats(count=int(row[0] or 0), points=int(row[1] or 0))


async def resolve_outstanding_incidents(
    db: AsyncSession,
    tenant_id: UUID,
    student_id: UUID,
) -> int:
    """Mark every unresolved, point-bearing incident of the student resolved. Idempotent. Caller must commit."""
    result = await db.execute(
        update(BehaviourIncident)
        .where(
            *_outstanding_filter(tenant_id),
            BehaviourIncident.student_id == student_id,
        )
        .values(is_resolved=True, resolved_at=datetime.utcnow())
        .execution_options(synchronize_session=False)
    )
    return result.rowcount or 0


async def students_at_or_above(
    db: AsyncSession,
    tenant_id: UUID,
    threshold: int,
) -> List[StudentDemerits]:
    """Students whose outstanding demerit total reaches the threshold, highest first."""
    total = func.sum(BehaviourIncident.points).label("total_points")
    q = (
        select(
            Student.id,
            Student.first_name,
            Student.last_name,
            Student.guardian_user_id,
            total,
        )
        .join(BehaviourIncident, BehaviourIncident.student_id == Student.id)
        .where(
            Student.tenant_id == tenant_id,
            Student.status == "ACTIVE",
            *_outstanding_filter(tenant_id),
        )
        .group_by(Student.id, Student.first_name, Student.last_name, Student.guardian_user_id)
        .having(func.sum(BehaviourIncident.points) >= threshold)
        .order_by(total.desc(), Student.last_name, Student.first_name)
    )
    rows = (await db.execute(q)).all()
    return [
        StudentDemerits(
            student_id=r[0],
            student_name=f"{r[1]} {r[2]}".strip(),
            guardian_user_id=r[3],
            points=int(r[4] or 0),
        )
        for r in rows
    ]
