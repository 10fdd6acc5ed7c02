"""Attendance outcomes, incident resolution and automatic rescheduling."""

import uuid
from datetime import date, time, timedelta

import pytest
from sqlalchemy import select

from discipline.api.v1.detentions import service
from discipline.core.enums import AttendanceOutcome
from discipline.core.exceptions import InvalidTransitionError, NotFoundError
from discipline.core.models import BehaviourIncident, DetentionAssignment, Notification
from discipline.core.notifications import Outbox

from conftest import TODAY, add_incident, make_assignment, make_guardian, make_rule, make_session, make_student


async def _resolved_flags(db, student_id):
    result = await db.execute(
        select(BehaviourIncident.is_resolved)
        .where(BehaviourIncident.student_id == student_id)
        .order_by(BehaviourIncident.incident_date)
    )
    return result.scalars().all()


@pytest.mark.asyncio
async def test_absent_reschedules_strictly_after_missed_date(db_session, services, tenant_id, admin) -> None:
    guardian = await make_guardian(db_session, tenant_id)
    student = await make_student(db_session, tenant_id, guardian=guardian)
    missed = await make_session(db_session, tenant_id, date(2024, 3, 1))
    # Same day, later slot: still not a valid target
    await make_session(db_session, tenant_id, date(2024, 3, 1), start_time=time(17, 0), max_capacity=5)
    next_week = await make_session(db_session, tenant_id, date(2024, 3, 8))
    original = await make_assignment(db_session, missed, student)
    outbox = Outbox(tenant_id)

    result = await services.attendance.record(
        db_session, tenant_id, original.id, AttendanceOutcome.ABSENT, outbox, recorded_by=admin.id
    )

    assert result.assignment.status == "absent"
    assert result.follow_up_session_id == next_week.id
    follow_up = await db_session.get(DetentionAssignment, result.follow_up_assignment_id)
    assert follow_up.session_id == next_week.id
    assert follow_up.status == "assigned"
    assert follow_up.is_auto_reassigned is True
    assert follow_up.reassigned_from_id == original.id

    stored = await services.dispatcher.dispatch(db_session, outbox)
    assert stored == 2
    rows = (await db_session.execute(select(Notification))).scalars().all()
    recipients = {n.user_id: n for n in rows}
    assert set(recipients) == {guardian.id, admin.id}
    assert "2024-03-08" in recipients[guardian.id].message


@pytest.mark.asyncio
async def test_absent_without_later_session_queues_student(db_session, services, tenant_id) -> None:
    student = await make_student(db_session, tenant_id)
    await add_incident(db_session, student, 14, TODAY - timedelta(days=2))
    missed = await make_session(db_session, tenant_id, TODAY)
    await make_session(db_session, tenant_id, TODAY - timedelta(days=7))
    assignment = await make_assignment(db_session, missed, student)

    result = await services.attendance.record(
        db_session, tenant_id, assignment.id, AttendanceOutcome.ABSENT, Outbox(tenant_id)
    )

    assert result.follow_up_assignment_id is None
    assert result.queue_entry_id is not None
    pending = await services.queue.pending_entries(db_session, tenant_id)
    assert [(e.student_id, e.points_at_queue) for e in pending] == [(student.id, 14)]


@pytest.mark.asyncio
async def test_dismissed_also_reschedules(db_session, services, tenant_id) -> None:
    student = await make_student(db_session, tenant_id)
    missed = await make_session(db_session, tenant_id, TODAY)
    later = await make_session(db_session, tenant_id, TODAY + timedelta(days=1))
    assignment = await make_assignment(db_session, missed, student)

    result = await services.attendance.record(
        db_session, tenant_id, assignment.id, AttendanceOutcome.DISMISSED, Outbox(tenant_id), notes="Phone out"
    )

    assert result.assignment.status == "dismissed"
    assert result.assignment.notes == "Phone out"
    assert result.follow_up_session_id == later.id


@pytest.mark.asyncio
async def test_no_reassignment_when_student_already_has_upcoming_detention(db_session, services, tenant_id) -> None:
    student = await make_student(db_session, tenant_id)
    missed = await make_session(db_session, tenant_id, TODAY)
    upcoming = await make_session(db_session, tenant_id, TODAY + timedelta(days=3))
    await make_session(db_session, tenant_id, TODAY + timedelta(days=5))
    assignment = await make_assignment(db_session, missed, student)
    await make_assignment(db_session, upcoming, student)

    result = await services.attendance.record(
        db_session, tenant_id, assignment.id, AttendanceOutcome.ABSENT, Outbox(tenant_id)
    )

    assert result.follow_up_assignment_id is None
    assert result.queue_entry_id is None
    rows = await db_session.execute(select(DetentionAssignment.id).where(DetentionAssignment.student_id == student.id))
    assert len(rows.scalars().all()) == 2


@pytest.mark.asyncio
async def test_attended_resolves_outstanding_incidents(db_session, services, tenant_id) -> None:
    student = await make_student(db_session, tenant_id)
    await add_incident(db_session, student, 6, TODAY - timedelta(days=3))
    await add_incident(db_session, student, 6, TODAY - timedelta(days=1))
    session = await make_session(db_session, tenant_id, TODAY)
    assignment = await make_assignment(db_session, session, student)

    result = await services.attendance.record(
        db_session, tenant_id, assignment.id, AttendanceOutcome.ATTENDED, Outbox(tenant_id)
    )

    assert result.incidents_resolved == 2
    assert result.assignment.status == "attended"
    assert result.assignment.attendance_time is not None
    assert await _resolved_flags(db_session, student.id) == [True, True]
    assert await services.evaluator.qualifying_students(db_session, tenant_id) == []


@pytest.mark.asyncio
async def test_session_completion_sweep_is_idempotent(db_session, services, tenant_id) -> None:
    student = await make_student(db_session, tenant_id)
    await add_incident(db_session, student, 11, TODAY - timedelta(days=1))
    session = await make_session(db_session, tenant_id, TODAY)
    assignment = await make_assignment(db_session, session, student)
    await services.attendance.record(db_session, tenant_id, assignment.id, AttendanceOutcome.ATTENDED, Outbox(tenant_id))

    await service.change_session_status(db_session, tenant_id, session.id, "in_progress", services, Outbox(tenant_id))
    response = await service.change_session_status(
        db_session, tenant_id, session.id, "completed", services, Outbox(tenant_id)
    )

    assert response.incidents_resolved == 0
    assert response.session.status == "completed"
    assert await _resolved_flags(db_session, student.id) == [True]


@pytest.mark.parametrize("outcome", [AttendanceOutcome.LATE, AttendanceOutcome.EXCUSED])
@pytest.mark.asyncio
async def test_late_and_excused_only_record(db_session, services, tenant_id, outcome) -> None:
    guardian = await make_guardian(db_session, tenant_id)
    student = await make_student(db_session, tenant_id, guardian=guardian)
    await add_incident(db_session, student, 12, TODAY)
    session = await make_session(db_session, tenant_id, TODAY)
    await make_session(db_session, tenant_id, TODAY + timedelta(days=7))
    assignment = await make_assignment(db_session, session, student)
    outbox = Outbox(tenant_id)

    result = await services.attendance.record(db_session, tenant_id, assignment.id, outcome, outbox)

    assert result.assignment.status == outcome.value
    assert result.follow_up_assignment_id is None
    assert result.queue_entry_id is None
    assert result.incidents_resolved == 0
    assert await _resolved_flags(db_session, student.id) == [False]
    assert [n.user_id for n in outbox.notifications] == [guardian.id]


@pytest.mark.asyncio
async def test_outcome_is_terminal(db_session, services, tenant_id) -> None:
    student = await make_student(db_session, tenant_id)
    session = await make_session(db_session, tenant_id, TODAY)
    assignment = await make_assignment(db_session, session, student)
    await services.attendance.record(db_session, tenant_id, assignment.id, AttendanceOutcome.LATE, Outbox(tenant_id))

    with pytest.raises(InvalidTransitionError):
        await services.attendance.record(
            db_session, tenant_id, assignment.id, AttendanceOutcome.ATTENDED, Outbox(tenant_id)
        )


@pytest.mark.asyncio
async def test_unknown_assignment(db_session, services, tenant_id) -> None:
    with pytest.raises(NotFoundError):
        await services.attendance.record(
            db_session, tenant_id, uuid.uuid4(), AttendanceOutcome.ATTENDED, Outbox(tenant_id)
        )


@pytest.mark.asyncio
async def test_cancelled_session_rejects_attendance(db_session, services, tenant_id) -> None:
    student = await make_student(db_session, tenant_id)
    cancelled = await make_session(db_session, tenant_id, TODAY + timedelta(days=1))
    await make_session(db_session, tenant_id, TODAY + timedelta(days=8))
    assignment = await make_assignment(db_session, cancelled, student)
    student_id, assignment_id = student.id, assignment.id
    await service.change_session_status(db_session, tenant_id, cancelled.id, "cancelled", services, Outbox(tenant_id))

    with pytest.raises(InvalidTransitionError):
        await services.attendance.record(
            db_session, tenant_id, assignment_id, AttendanceOutcome.ABSENT, Outbox(tenant_id)
        )

    pending = await services.queue.pending_entries(db_session, tenant_id)
    assert [e.student_id for e in pending] == [student_id]
    rows = await db_session.execute(select(DetentionAssignment.id).where(DetentionAssignment.student_id == student_id))
    assert rows.scalars().all() == [assignment_id]


@pytest.mark.asyncio
async def test_attended_detention_clears_incident_count_rule(db_session, services, tenant_id) -> None:
    await make_rule(db_session, tenant_id, name="3+ incidents", action_type="incident_count", min_points=3)
    student = await make_student(db_session, tenant_id)
    for days_ago in (1, 2, 3):
        await add_incident(db_session, student, 2, TODAY - timedelta(days=days_ago))
    # Zero-point incidents are warnings; they never count towards a detention
    await add_incident(db_session, student, 0, TODAY)
    session = await make_session(db_session, tenant_id, TODAY)
    assignment = await make_assignment(db_session, session, student)
    assert await services.evaluator.evaluate(db_session, tenant_id, student.id) is not None

    await services.attendance.record(db_session, tenant_id, assignment.id, AttendanceOutcome.ATTENDED, Outbox(tenant_id))

    assert await services.evaluator.evaluate(db_session, tenant_id, student.id) is None
